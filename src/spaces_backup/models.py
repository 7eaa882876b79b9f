# src/spaces_backup/models.py
"""Data records shared by the pipeline stages."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ObjectDescriptor:
    """
    A single object returned by the source bucket listing.

    Attributes:
        key (str): The object key, used verbatim as the archive entry path.
        size (int): The size reported by the listing, in bytes.
        last_modified (datetime, optional): The listing's modification time.
    """

    key: str
    size: int = 0
    last_modified: Optional[datetime] = None


@dataclass
class BackupContext:
    """
    Per-invocation progress counters.

    One instance is created per run and handed to each stage, so concurrent
    invocations in the same process never share state.
    """

    objects_total: int = 0
    objects_archived: int = 0
    declared_bytes: int = 0
    source_bytes_read: int = 0
    channel_bytes: int = 0
    peak_channel_bytes: int = 0
    bytes_uploaded: int = 0
    parts_uploaded: int = 0


@dataclass(frozen=True)
class BackupResult:
    """
    The terminal value of a successful backup.

    Attributes:
        source_bucket (str): The bucket that was backed up.
        destination_bucket (str): The bucket holding the archive.
        archive_name (str, optional): The archive key, None if nothing was archived.
        files_backed_up (int): Number of entries written to the archive.
        total_uncompressed_bytes (int): Sum of listed object sizes.
        archive_bytes (int): Size of the stored archive as reported by the destination.
        duration_seconds (float): Wall-clock duration of the run.
    """

    source_bucket: str
    destination_bucket: str
    archive_name: Optional[str]
    files_backed_up: int
    total_uncompressed_bytes: int
    archive_bytes: int
    duration_seconds: float
    context: BackupContext = field(default_factory=BackupContext, compare=False)

    @property
    def message(self) -> str:
        if self.files_backed_up == 0:
            return "No objects found in source bucket"
        return "Backup completed successfully"

    def to_payload(self) -> Dict[str, Any]:
        """
        Render the result as the JSON body returned to the caller.

        Returns:
            Dict[str, Any]: The success body.
        """
        return {
            "message": self.message,
            "sourceBucket": self.source_bucket,
            "destinationBucket": self.destination_bucket,
            "archiveName": self.archive_name,
            "filesBackedUp": self.files_backed_up,
            "totalBytes": self.total_uncompressed_bytes,
            "archiveSize": self.archive_bytes,
            "durationSeconds": round(self.duration_seconds, 2),
        }


def format_archive_timestamp(now: datetime) -> str:
    """
    Format a moment as a key-safe, sortable UTC timestamp.

    ``2024-05-01T10:20:30.123Z`` becomes ``2024-05-01T10-20-30-123Z``.

    Args:
        now (datetime): The moment to format. Naive values are taken as UTC.

    Returns:
        str: The timestamp with colons and dots replaced by hyphens.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    iso: str = now.strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def build_archive_name(prefix: str, source_bucket: str, now: datetime) -> str:
    """
    Derive the destination key of the archive for one invocation.

    Args:
        prefix (str): The archive key prefix, e.g. ``backups``.
        source_bucket (str): The bucket being backed up.
        now (datetime): The invocation time.

    Returns:
        str: ``{prefix}/backup-{source_bucket}-{timestamp}.zip``.
    """
    name: str = f"backup-{source_bucket}-{format_archive_timestamp(now)}.zip"
    prefix = prefix.rstrip("/")
    if not prefix:
        return name
    return f"{prefix}/{name}"
