# src/spaces_backup/archiver.py
"""
Streams source objects into a zip encoder.

Objects are fetched one at a time and read in fixed-size chunks. Each chunk
is deflated by the standard-library `zipfile` encoder, whose output lands in
an in-memory `ChannelWriter` that is drained onto the inter-stage channel
after every chunk. At no point is a whole object, or the whole archive, held
in memory.
"""

import asyncio
import logging
import zipfile
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence, Tuple

from spaces_backup.channel import ByteChannel
from spaces_backup.exceptions import ArchiveError, BackupError, FetchError
from spaces_backup.models import BackupContext, ObjectDescriptor

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_READ_CHUNK_SIZE: int = 1024 * 1024

# Margin zipfile itself applies when deciding whether an entry needs zip64.
_ZIP64_MARGIN: float = 1.05

# Range an MS-DOS timestamp in a zip header can represent.
_ZIP_EARLIEST: Tuple[int, ...] = (1980, 1, 1, 0, 0, 0)
_ZIP_LATEST: Tuple[int, ...] = (2107, 12, 31, 23, 59, 58)


def zip_date_time(moment: datetime) -> Tuple[int, int, int, int, int, int]:
    """
    Converts a timestamp to the field tuple a `zipfile.ZipInfo` expects.

    Aware timestamps are converted to UTC first. Values outside the range a
    zip header can hold are clamped to its ends.

    Args:
        moment (datetime): The time to encode.

    Returns:
        Tuple[int, int, int, int, int, int]: Year, month, day, hour, minute
        and second.
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    fields: Tuple[int, ...] = tuple(moment.timetuple()[:6])
    clamped: Tuple[int, ...] = min(max(fields, _ZIP_EARLIEST), _ZIP_LATEST)
    return clamped  # type: ignore[return-value]


class ChannelWriter:
    """
    An unseekable, write-only file object collecting encoder output.

    `zipfile` detects that it cannot seek and switches to data descriptors,
    which is what allows the archive to be produced as a pure stream.
    """

    def __init__(self) -> None:
        self._pending: bytearray = bytearray()
        self._written: int = 0

    @property
    def written(self) -> int:
        """
        Total bytes written by the encoder so far.

        Returns:
            int: The running byte count.
        """
        return self._written

    def write(self, data: bytes) -> int:
        self._pending += data
        self._written += len(data)
        return len(data)

    def flush(self) -> None:
        pass

    def take(self) -> bytes:
        """
        Remove and return everything written since the last call.

        Returns:
            bytes: The pending encoder output.
        """
        data: bytes = bytes(self._pending)
        self._pending.clear()
        return data


class StreamArchiver:
    """Produces a zip archive of a bucket's objects onto a `ByteChannel`."""

    def __init__(
        self,
        client: "S3Client",
        bucket: str,
        channel: ByteChannel,
        context: BackupContext,
        compression_level: int = 6,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
        on_object_archived: Optional[Callable[[ObjectDescriptor], None]] = None,
        archived_at: Optional[datetime] = None,
    ) -> None:
        """
        Initializes the archiver.

        Args:
            client (S3Client): The aiobotocore S3 client for the source bucket.
            bucket (str): The source bucket name.
            channel (ByteChannel): Where encoded bytes are sent.
            context (BackupContext): Per-invocation counters to update.
            compression_level (int): Deflate level, 0-9.
            read_chunk_size (int): Bytes read from a source body per step, and
                the largest piece sent on the channel.
            on_object_archived (Callable, optional): Called after each entry is
                complete, e.g. to advance a progress bar.
            archived_at (datetime, optional): Timestamp for entries whose
                source has no LastModified. Defaults to the current UTC time.
        """
        self._client: "S3Client" = client
        self._bucket: str = bucket
        self._channel: ByteChannel = channel
        self._context: BackupContext = context
        self._compression_level: int = compression_level
        self._read_chunk_size: int = read_chunk_size
        self._on_object_archived: Optional[Callable[[ObjectDescriptor], None]] = (
            on_object_archived
        )
        self._archived_at: datetime = archived_at or datetime.now(timezone.utc)
        self._writer: ChannelWriter = ChannelWriter()
        self._entry: Optional[IO[bytes]] = None

    @property
    def encoded_bytes(self) -> int:
        return self._writer.written

    async def archive(self, objects: Sequence[ObjectDescriptor]) -> int:
        """
        Appends every object to the archive in order, then finalizes it.

        The channel is closed with end-of-stream only after the central
        directory has been sent. On any failure the encoder is discarded and
        the channel is aborted instead, so the consumer never sees a
        complete-looking archive.

        Args:
            objects (Sequence[ObjectDescriptor]): The objects to archive.

        Returns:
            int: The sum of the listed sizes of all archived objects.

        Raises:
            FetchError: If reading a source object fails.
            ArchiveError: If the encoder rejects an entry or cannot finalize.
        """
        total_bytes: int = 0
        zip_file: Optional[zipfile.ZipFile] = None
        try:
            try:
                zip_file = zipfile.ZipFile(
                    self._writer,  # type: ignore[arg-type]
                    mode="w",
                    compression=zipfile.ZIP_DEFLATED,
                    compresslevel=self._compression_level,
                )
            except (RuntimeError, ValueError, OSError) as e:
                raise ArchiveError(f"Failed to create zip encoder: {e}") from e

            for descriptor in objects:
                logger.debug(f"Adding to archive: {descriptor.key}")
                await self._append(zip_file, descriptor)
                total_bytes += descriptor.size or 0
                self._context.objects_archived += 1
                self._context.declared_bytes += descriptor.size or 0
                if self._on_object_archived is not None:
                    self._on_object_archived(descriptor)

            logger.info("Finalizing archive...")
            try:
                zip_file.close()
            except (RuntimeError, ValueError, OSError) as e:
                raise ArchiveError(f"Failed to finalize archive: {e}") from e
            await self._drain()
            await self._channel.close()
            logger.info(
                f"Archive finished writing. Total size: {self._writer.written} bytes"
            )
            return total_bytes
        except BaseException as e:
            self._channel.abort(e)
            self._discard(zip_file)
            raise

    async def _append(
        self, zip_file: zipfile.ZipFile, descriptor: ObjectDescriptor
    ) -> None:
        """
        Streams one object into a new archive entry named by its key.

        Args:
            zip_file (zipfile.ZipFile): The open encoder.
            descriptor (ObjectDescriptor): The object to append.
        """
        key: str = descriptor.key
        try:
            response: Dict[str, Any] = await self._client.get_object(
                Bucket=self._bucket, Key=key
            )
        except Exception as e:
            raise FetchError(f"Failed to fetch '{key}': {e}", key=key) from e

        info: zipfile.ZipInfo = zipfile.ZipInfo(
            key, date_time=zip_date_time(descriptor.last_modified or self._archived_at)
        )
        info.compress_type = zipfile.ZIP_DEFLATED
        # A ZipInfo passed to open() does not inherit the archive's level.
        info._compresslevel = self._compression_level  # type: ignore[attr-defined]
        try:
            entry: IO[bytes] = zip_file.open(
                info,
                mode="w",
                force_zip64=descriptor.size * _ZIP64_MARGIN > zipfile.ZIP64_LIMIT,
            )
        except (RuntimeError, ValueError, OSError) as e:
            raise ArchiveError(f"Failed to add entry '{key}': {e}") from e

        self._entry = entry
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        async with response["Body"] as body:
            while True:
                try:
                    chunk: bytes = await body.read(self._read_chunk_size)
                except BackupError:
                    raise
                except Exception as e:
                    raise FetchError(f"Failed to read '{key}': {e}", key=key) from e
                if not chunk:
                    break
                self._context.source_bytes_read += len(chunk)
                try:
                    # Deflate off the event loop so the upload keeps flowing.
                    await loop.run_in_executor(None, entry.write, chunk)
                except (RuntimeError, ValueError, OSError) as e:
                    raise ArchiveError(f"Failed to write entry '{key}': {e}") from e
                await self._drain()

        try:
            entry.close()
        except (RuntimeError, ValueError, OSError) as e:
            raise ArchiveError(f"Failed to close entry '{key}': {e}") from e
        self._entry = None
        await self._drain()

    def _discard(self, zip_file: Optional[zipfile.ZipFile]) -> None:
        """
        Closes a failed encoder and drops its output instead of sending it.

        Args:
            zip_file (zipfile.ZipFile, optional): The encoder, if it was created.
        """
        if zip_file is None:
            return
        try:
            if self._entry is not None:
                self._entry.close()
            zip_file.close()
        except Exception as e:
            logger.debug(f"Ignoring error while discarding the encoder: {e}")
        self._entry = None
        self._writer.take()

    async def _drain(self) -> None:
        """Sends pending encoder output, in pieces of at most one read chunk."""
        data: bytes = self._writer.take()
        for start in range(0, len(data), self._read_chunk_size):
            await self._channel.send(data[start : start + self._read_chunk_size])
