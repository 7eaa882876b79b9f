# tests/conftest.py
"""
Pytest configuration and fixtures for the spaces-backup unit tests.

Provides the in-memory S3 fake from `fakes`, preloaded with empty source and
destination buckets, plus configuration and environment factories aimed at
those buckets.
"""

from typing import Any, Callable, Dict

import pytest

from fakes import DEST_BUCKET, SOURCE_BUCKET, FakeS3Client, SyntheticObject
from spaces_backup.config import AppConfig, Config, S3Config


@pytest.fixture(scope="function")
def fake_s3() -> FakeS3Client:
    """
    Provide a fake backend with empty source and destination buckets.

    Returns:
        FakeS3Client: The fake client, shared by both sides of the pipeline.
    """
    client: FakeS3Client = FakeS3Client()
    client.create_bucket(SOURCE_BUCKET)
    client.create_bucket(DEST_BUCKET)
    return client


@pytest.fixture(scope="function")
def fake_s3_factory() -> Callable[..., FakeS3Client]:
    """
    Provide a factory for fakes with custom paging or upload storage.

    Returns:
        Callable[..., FakeS3Client]: Accepts the `FakeS3Client` keyword arguments.
    """

    def _create(**kwargs: Any) -> FakeS3Client:
        client: FakeS3Client = FakeS3Client(**kwargs)
        client.create_bucket(SOURCE_BUCKET)
        client.create_bucket(DEST_BUCKET)
        return client

    return _create


@pytest.fixture(scope="function")
def synthetic_object() -> Callable[..., SyntheticObject]:
    """Provide the `SyntheticObject` constructor to tests."""
    return SyntheticObject


@pytest.fixture(scope="function")
def make_config() -> Callable[..., Config]:
    """
    Provide a factory for configurations aimed at the fake buckets.

    Returns:
        Callable[..., Config]: Keyword arguments become `AppConfig` fields.
    """

    def _create(**app_kwargs: Any) -> Config:
        return Config(
            source=S3Config(
                endpoint_url="http://source.invalid",
                access_key_id="key",
                secret_access_key="secret",
                bucket=SOURCE_BUCKET,
            ),
            destination=S3Config(
                endpoint_url="http://dest.invalid",
                access_key_id="key",
                secret_access_key="secret",
                bucket=DEST_BUCKET,
            ),
            app=AppConfig(**app_kwargs),
        )

    return _create


@pytest.fixture(scope="function")
def backup_env() -> Dict[str, str]:
    """
    Provide a complete set of environment variables for the fake buckets.

    Returns:
        Dict[str, str]: The environment mapping.
    """
    return {
        "SOURCE_BUCKET": SOURCE_BUCKET,
        "DEST_BUCKET": DEST_BUCKET,
        "SPACES_KEY": "test-key-1234",
        "SPACES_SECRET": "test-secret-5678",
    }
