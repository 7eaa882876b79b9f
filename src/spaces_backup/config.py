# src/spaces_backup/config.py
"""
Configuration for the spaces-backup pipeline.

This module centralizes all configuration, loading sensitive values from
environment variables and providing typed dataclasses for use throughout
the application. Nothing here touches the network, so configuration
problems are always reported before the first storage call.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

from spaces_backup.exceptions import ConfigError

REQUIRED_ENV_VARS: List[str] = [
    "SOURCE_BUCKET",
    "DEST_BUCKET",
    "SPACES_KEY",
    "SPACES_SECRET",
]

DEFAULT_REGION: str = "nyc3"
DEFAULT_ARCHIVE_PREFIX: str = "backups"

# S3 rejects multipart parts smaller than this, except the last one.
MIN_PART_SIZE: int = 5 * 1024 * 1024

_T = TypeVar("_T")


def default_endpoint(region: str) -> str:
    """
    Build the DigitalOcean Spaces endpoint for a region.

    Args:
        region (str): The Spaces region, e.g. ``nyc3``.

    Returns:
        str: The HTTPS endpoint URL.
    """
    return f"https://{region}.digitaloceanspaces.com"


@dataclass(frozen=True)
class S3Config:
    """
    Represents the configuration for an S3-compatible endpoint.

    Attributes:
        endpoint_url (str): The S3 endpoint URL.
        access_key_id (str): The access key ID.
        secret_access_key (str): The secret access key.
        bucket (str): The bucket name.
        region (str): The region name.
    """

    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str = DEFAULT_REGION

    def as_boto_dict(self) -> Dict[str, str]:
        """
        Returns the configuration as a dictionary suitable for aiobotocore clients.

        Returns:
            Dict[str, str]: A dictionary of client parameters.
        """
        return {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "region_name": self.region,
        }


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the application's operational parameters.

    Attributes:
        archive_prefix (str): Key prefix for archives in the destination bucket.
        compression_level (int): Deflate level, 0 (store) to 9 (smallest).
        read_chunk_size (int): Bytes read from a source object per step; also
            the largest piece placed on the inter-stage channel.
        channel_capacity (int): Number of pieces the channel holds before the
            archiver is suspended.
        part_size (int): Multipart upload part size in bytes.
        transfer_max_attempts (int): Attempts for a single HTTP request, handled
            by the botocore transport.
        show_progress (bool): Whether to render a progress bar.
        force_path_style (bool): Address buckets by path instead of by host
            name, for local S3-compatible servers.
    """

    archive_prefix: str = DEFAULT_ARCHIVE_PREFIX
    compression_level: int = 6
    read_chunk_size: int = 1024 * 1024
    channel_capacity: int = 8
    part_size: int = 8 * 1024 * 1024
    transfer_max_attempts: int = 3
    show_progress: bool = False
    force_path_style: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.compression_level <= 9:
            raise ConfigError(
                f"Compression level must be between 0 and 9, got {self.compression_level}."
            )
        if self.read_chunk_size <= 0:
            raise ConfigError("Read chunk size must be positive.")
        if self.channel_capacity <= 0:
            raise ConfigError("Channel capacity must be positive.")
        if self.part_size < MIN_PART_SIZE:
            raise ConfigError(
                f"Part size must be at least {MIN_PART_SIZE} bytes, got {self.part_size}."
            )


@dataclass(frozen=True)
class Config:
    """
    Top-level configuration container for one backup invocation.

    Attributes:
        source (S3Config): The bucket being backed up.
        destination (S3Config): The bucket receiving the archive.
        app (AppConfig): General application settings.
    """

    source: S3Config
    destination: S3Config
    app: AppConfig = field(default_factory=AppConfig)

    def validate(self) -> None:
        """
        Check that every required value is present.

        Raises:
            ConfigError: If a bucket name or credential is empty.
        """
        missing: List[str] = []
        if not self.source.bucket:
            missing.append("SOURCE_BUCKET")
        if not self.destination.bucket:
            missing.append("DEST_BUCKET")
        if not self.source.access_key_id or not self.destination.access_key_id:
            missing.append("SPACES_KEY")
        if not self.source.secret_access_key or not self.destination.secret_access_key:
            missing.append("SPACES_SECRET")
        if missing:
            raise ConfigError(
                f"Missing required configuration: {', '.join(missing)}",
                missing=missing,
            )


def _get_env_var(
    env: Mapping[str, str], name: str, default: Optional[str] = None
) -> Optional[str]:
    """
    Retrieves an environment variable, treating empty strings as unset.

    Args:
        env (Mapping[str, str]): The environment to read from.
        name (str): The name of the environment variable.
        default (str, optional): The default value if the variable is not set.

    Returns:
        Optional[str]: The value, or the default.
    """
    value: Optional[str] = env.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _get_number(
    env: Mapping[str, str], name: str, default: _T, convert: Callable[[str], _T]
) -> _T:
    raw: Optional[str] = _get_env_var(env, name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except ValueError as e:
        raise ConfigError(f"Environment variable '{name}' is not a valid number: {raw!r}") from e


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw: Optional[str] = _get_env_var(env, name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build a validated `Config` from environment variables.

    All missing required variables are reported together so a caller can fix
    them in one pass.

    Args:
        env (Mapping[str, str], optional): Variables to read. Defaults to
            ``os.environ``.

    Returns:
        Config: The configuration for this invocation.

    Raises:
        ConfigError: If a required variable is missing or a knob is invalid.
    """
    env = os.environ if env is None else env

    missing: List[str] = [
        name for name in REQUIRED_ENV_VARS if _get_env_var(env, name) is None
    ]
    if missing:
        raise ConfigError(
            f"Missing required environment variables: {', '.join(missing)}",
            missing=missing,
        )

    access_key: str = _get_env_var(env, "SPACES_KEY") or ""
    secret_key: str = _get_env_var(env, "SPACES_SECRET") or ""

    source_region: str = _get_env_var(env, "SOURCE_REGION", DEFAULT_REGION) or DEFAULT_REGION
    dest_region: str = _get_env_var(env, "DEST_REGION", DEFAULT_REGION) or DEFAULT_REGION

    source: S3Config = S3Config(
        endpoint_url=_get_env_var(env, "SOURCE_ENDPOINT") or default_endpoint(source_region),
        access_key_id=access_key,
        secret_access_key=secret_key,
        bucket=_get_env_var(env, "SOURCE_BUCKET") or "",
        region=source_region,
    )
    destination: S3Config = S3Config(
        endpoint_url=_get_env_var(env, "DEST_ENDPOINT") or default_endpoint(dest_region),
        access_key_id=access_key,
        secret_access_key=secret_key,
        bucket=_get_env_var(env, "DEST_BUCKET") or "",
        region=dest_region,
    )
    app: AppConfig = AppConfig(
        archive_prefix=_get_env_var(env, "ARCHIVE_PREFIX", DEFAULT_ARCHIVE_PREFIX)
        or DEFAULT_ARCHIVE_PREFIX,
        compression_level=_get_number(env, "COMPRESSION_LEVEL", 6, int),
        read_chunk_size=_get_number(env, "READ_CHUNK_SIZE_KB", 1024, int) * 1024,
        channel_capacity=_get_number(env, "CHANNEL_CAPACITY", 8, int),
        part_size=int(_get_number(env, "PART_SIZE_MB", 8.0, float) * 1024 * 1024),
        transfer_max_attempts=_get_number(env, "TRANSFER_MAX_ATTEMPTS", 3, int),
        show_progress=_get_bool(env, "SHOW_PROGRESS", False),
        force_path_style=_get_bool(env, "FORCE_PATH_STYLE", False),
    )
    return Config(source=source, destination=destination, app=app)
