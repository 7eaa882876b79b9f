# src/spaces_backup/lister.py
"""Enumerates the full contents of a bucket."""

import logging
from typing import TYPE_CHECKING, AsyncIterator, List

from botocore.exceptions import BotoCoreError, ClientError

from spaces_backup.exceptions import ListingError
from spaces_backup.models import ObjectDescriptor

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListObjectsV2Paginator
    from types_aiobotocore_s3.type_defs import ListObjectsV2OutputTypeDef

logger: logging.Logger = logging.getLogger(__name__)


async def list_all_objects(client: "S3Client", bucket: str) -> List[ObjectDescriptor]:
    """
    Pages through `list_objects_v2` with the client's paginator.

    Entries are returned in the order the backend produced them. Any failing
    page discards the whole listing.

    Args:
        client (S3Client): The aiobotocore S3 client for the source bucket.
        bucket (str): The bucket to enumerate.

    Returns:
        List[ObjectDescriptor]: Every object in the bucket, possibly empty.

    Raises:
        ListingError: If any page request fails.
    """
    objects: List[ObjectDescriptor] = []
    page_count: int = 0

    try:
        paginator: "ListObjectsV2Paginator" = client.get_paginator("list_objects_v2")
        pages: AsyncIterator["ListObjectsV2OutputTypeDef"] = paginator.paginate(
            Bucket=bucket
        )
        async for page in pages:
            page_count += 1
            for entry in page.get("Contents", []):
                objects.append(
                    ObjectDescriptor(
                        key=entry["Key"],
                        size=entry.get("Size") or 0,
                        last_modified=entry.get("LastModified"),
                    )
                )
    except (ClientError, BotoCoreError) as e:
        raise ListingError(f"Failed to list bucket '{bucket}': {e}") from e
    except Exception as e:
        raise ListingError(f"Unexpected error listing bucket '{bucket}': {e}") from e

    logger.debug(f"Listed {len(objects)} objects from '{bucket}' in {page_count} page(s).")
    return objects
