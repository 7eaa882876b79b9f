# tests/e2e/conftest.py
"""
Pytest fixtures for the spaces-backup end-to-end tests.

This module sets up the testing environment, including:
- Spinning up Docker containers for source and destination S3 services (MinIO).
- Providing fixtures for S3 services endpoints and credentials.
- Creating and cleaning up isolated S3 buckets for each test function.
- Building the environment a real invocation would receive.
"""

import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncGenerator, Dict

import boto3
import pytest
import pytest_asyncio
import requests
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from requests.exceptions import ConnectionError

if TYPE_CHECKING:
    from types_boto3_s3.service_resource import Bucket, S3ServiceResource

# --- Constants ---
S3_ACCESS_KEY: str = "minio-key"
S3_SECRET_KEY: str = "minio-secret"
S3_REGION: str = "us-east-1"


# --- Docker Fixtures ---
@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootpath) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    return "spaces-backup-tests"


def _is_s3_responsive(url: str) -> bool:
    """
    Check if the MinIO health endpoint is responsive.

    Args:
        url (str): The base URL of the MinIO API.

    Returns:
        bool: True if the service is responsive, False otherwise.
    """
    try:
        response: requests.Response = requests.get(f"{url}/minio/health/live")
        return response.status_code == 200
    except ConnectionError:
        return False


def _s3_service(docker_ip: str, docker_services: Any, service: str) -> Dict[str, Any]:
    port: int = docker_services.port_for(service, 9000)
    api_url: str = f"http://{docker_ip}:{port}"
    docker_services.wait_until_responsive(
        timeout=30.0, pause=0.1, check=lambda: _is_s3_responsive(api_url)
    )
    return {
        "endpoint_url": api_url,
        "aws_access_key_id": S3_ACCESS_KEY,
        "aws_secret_access_key": S3_SECRET_KEY,
        "region_name": S3_REGION,
    }


@pytest.fixture(scope="session")
def source_s3_service(docker_ip: str, docker_services: Any) -> Dict[str, Any]:
    """
    Ensure the source S3 service is running and return its connection details.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        Dict[str, Any]: Connection details for the source S3 service.
    """
    return _s3_service(docker_ip, docker_services, "minio-source")


@pytest.fixture(scope="session")
def dest_s3_service(docker_ip: str, docker_services: Any) -> Dict[str, Any]:
    """
    Ensure the destination S3 service is running and return its connection details.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        Dict[str, Any]: Connection details for the destination S3 service.
    """
    return _s3_service(docker_ip, docker_services, "minio-destination")


# --- Application Fixtures ---
@pytest_asyncio.fixture(scope="function")
async def s3_buckets(
    source_s3_service: Dict[str, Any],
    dest_s3_service: Dict[str, Any],
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create unique, isolated S3 buckets for a single test function.

    Buckets and their contents are removed after the test.

    Args:
        source_s3_service (Dict[str, Any]): Connection details for the source S3.
        dest_s3_service (Dict[str, Any]): Connection details for the destination S3.

    Yields:
        Dict[str, str]: The names of the created source and destination buckets.
    """
    session: AioSession = get_session()
    suffix: str = uuid.uuid4().hex[:12]
    source_bucket: str = f"source-{suffix}"
    dest_bucket: str = f"dest-{suffix}"

    async with session.create_client(
        "s3", **source_s3_service
    ) as s3_source, session.create_client("s3", **dest_s3_service) as s3_dest:
        await s3_source.create_bucket(Bucket=source_bucket)
        await s3_dest.create_bucket(Bucket=dest_bucket)

    yield {"source": source_bucket, "destination": dest_bucket}

    # Cleanup: boto3 is simpler for synchronous, recursive delete
    boto_config: BotoConfig = BotoConfig(
        retries={"max_attempts": 0, "mode": "standard"}
    )
    for service, bucket in [
        (source_s3_service, source_bucket),
        (dest_s3_service, dest_bucket),
    ]:
        resource: "S3ServiceResource" = boto3.resource(
            "s3", **service, config=boto_config
        )
        try:
            bucket_obj: "Bucket" = resource.Bucket(bucket)
            bucket_obj.objects.all().delete()
            bucket_obj.delete()
        except ClientError as e:
            if e.response["Error"]["Code"] != "NoSuchBucket":
                raise


@pytest.fixture(scope="function")
def backup_env(
    s3_buckets: Dict[str, str],
    source_s3_service: Dict[str, Any],
    dest_s3_service: Dict[str, Any],
) -> Dict[str, str]:
    """
    Provide the environment a real invocation against MinIO would receive.

    Args:
        s3_buckets (Dict[str, str]): The isolated bucket names.
        source_s3_service (Dict[str, Any]): Connection details for the source S3.
        dest_s3_service (Dict[str, Any]): Connection details for the destination S3.

    Returns:
        Dict[str, str]: The environment mapping.
    """
    return {
        "SOURCE_BUCKET": s3_buckets["source"],
        "SOURCE_ENDPOINT": source_s3_service["endpoint_url"],
        "SOURCE_REGION": S3_REGION,
        "DEST_BUCKET": s3_buckets["destination"],
        "DEST_ENDPOINT": dest_s3_service["endpoint_url"],
        "DEST_REGION": S3_REGION,
        "SPACES_KEY": S3_ACCESS_KEY,
        "SPACES_SECRET": S3_SECRET_KEY,
        "FORCE_PATH_STYLE": "true",
    }
