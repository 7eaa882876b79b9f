# src/spaces_backup/sink.py
"""
Writes the archive stream to the destination bucket.

The total archive size is unknown until the encoder finishes, so the sink
uses an S3 multipart upload, cutting the stream into fixed-size parts. A
stream shorter than one part is written with a single `put_object` instead.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from spaces_backup.channel import ByteChannel
from spaces_backup.config import MIN_PART_SIZE
from spaces_backup.exceptions import BackupError, UploadError
from spaces_backup.models import BackupContext

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_PART_SIZE: int = 8 * 1024 * 1024


class UploadSink:
    """Consumes a `ByteChannel` and stores it as one destination object."""

    def __init__(
        self,
        client: "S3Client",
        context: BackupContext,
        part_size: int = DEFAULT_PART_SIZE,
        content_type: str = "application/zip",
    ) -> None:
        """
        Initializes the sink.

        Args:
            client (S3Client): The aiobotocore S3 client for the destination.
            context (BackupContext): Per-invocation counters to update.
            part_size (int): Multipart part size in bytes, at least 5 MiB.
            content_type (str): Content type of the stored object.
        """
        if part_size < MIN_PART_SIZE:
            raise ValueError(f"Part size must be at least {MIN_PART_SIZE} bytes.")
        self._client: "S3Client" = client
        self._context: BackupContext = context
        self._part_size: int = part_size
        self._content_type: str = content_type

    async def upload(self, channel: ByteChannel, bucket: str, key: str) -> int:
        """
        Drains the channel into `bucket/key`.

        Args:
            channel (ByteChannel): The encoded archive stream.
            bucket (str): The destination bucket.
            key (str): The archive key.

        Returns:
            int: The stored object's size as reported by the destination.

        Raises:
            UploadError: If any write fails or the stream was aborted.
        """
        buffer: bytearray = bytearray()
        upload_id: Optional[str] = None
        parts: List[Dict[str, Any]] = []

        try:
            async for piece in channel:
                buffer += piece
                while len(buffer) >= self._part_size:
                    if upload_id is None:
                        upload_id = await self._create_multipart(bucket, key)
                    part: bytes = bytes(buffer[: self._part_size])
                    del buffer[: self._part_size]
                    parts.append(
                        await self._upload_part(bucket, key, upload_id, len(parts) + 1, part)
                    )

            if upload_id is None:
                await self._put_single(bucket, key, bytes(buffer))
            else:
                if buffer:
                    parts.append(
                        await self._upload_part(
                            bucket, key, upload_id, len(parts) + 1, bytes(buffer)
                        )
                    )
                buffer.clear()
                await self._complete_multipart(bucket, key, upload_id, parts)
                upload_id = None

            size: int = await self._confirm_size(bucket, key)
            logger.info(f"Upload completed: s3://{bucket}/{key} ({size} bytes)")
            return size
        except asyncio.CancelledError:
            if upload_id is not None:
                await self._abort_multipart(bucket, key, upload_id)
            raise
        except BackupError as e:
            if upload_id is not None:
                await self._abort_multipart(bucket, key, upload_id)
            if isinstance(e, UploadError):
                raise
            raise UploadError(f"Upload of '{key}' aborted: {e}") from e
        except Exception as e:
            if upload_id is not None:
                await self._abort_multipart(bucket, key, upload_id)
            raise UploadError(f"Upload of '{key}' failed: {e}") from e

    async def _put_single(self, bucket: str, key: str, data: bytes) -> None:
        try:
            await self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentLength=len(data),
                ContentType=self._content_type,
            )
        except Exception as e:
            raise UploadError(f"Failed to upload '{key}': {e}") from e
        self._context.bytes_uploaded += len(data)
        self._context.parts_uploaded += 1
        logger.info(f"Upload progress: {self._context.bytes_uploaded} bytes in 1 request")

    async def _create_multipart(self, bucket: str, key: str) -> str:
        try:
            response: Dict[str, Any] = await self._client.create_multipart_upload(
                Bucket=bucket, Key=key, ContentType=self._content_type
            )
        except Exception as e:
            raise UploadError(f"Failed to start multipart upload of '{key}': {e}") from e
        upload_id: str = response["UploadId"]
        logger.debug(f"Started multipart upload {upload_id} for '{key}'")
        return upload_id

    async def _upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, data: bytes
    ) -> Dict[str, Any]:
        """
        Uploads one part and records progress.

        Args:
            bucket (str): The destination bucket.
            key (str): The archive key.
            upload_id (str): The multipart upload ID.
            part_number (int): The 1-based part number.
            data (bytes): The part body.

        Returns:
            Dict[str, Any]: The entry for the completion request.
        """
        try:
            response: Dict[str, Any] = await self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
                ContentLength=len(data),
            )
        except Exception as e:
            raise UploadError(
                f"Failed to upload part {part_number} of '{key}': {e}"
            ) from e
        self._context.bytes_uploaded += len(data)
        self._context.parts_uploaded += 1
        logger.info(
            f"Upload progress: part {part_number}, "
            f"{self._context.bytes_uploaded} bytes uploaded"
        )
        return {"PartNumber": part_number, "ETag": response["ETag"]}

    async def _complete_multipart(
        self, bucket: str, key: str, upload_id: str, parts: List[Dict[str, Any]]
    ) -> None:
        try:
            await self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception as e:
            raise UploadError(f"Failed to complete multipart upload of '{key}': {e}") from e

    async def _abort_multipart(self, bucket: str, key: str, upload_id: str) -> None:
        """Best-effort abort; a leftover upload is garbage for bucket lifecycle rules."""
        try:
            await self._client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
            logger.warning(f"Aborted multipart upload {upload_id} for '{key}'")
        except Exception as e:
            logger.error(f"Failed to abort multipart upload {upload_id} for '{key}': {e}")

    async def _confirm_size(self, bucket: str, key: str) -> int:
        try:
            response: Dict[str, Any] = await self._client.head_object(Bucket=bucket, Key=key)
        except Exception as e:
            # The write itself succeeded, so the archive stays in place.
            logger.error(
                f"Archive stored at s3://{bucket}/{key} but its size could not "
                f"be confirmed: {e}"
            )
            raise UploadError(
                f"Archive '{key}' was stored but its size could not be confirmed: {e}"
            ) from e
        return int(response["ContentLength"])
