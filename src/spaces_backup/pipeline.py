# src/spaces_backup/pipeline.py
"""Core orchestration logic for the spaces-backup pipeline."""

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from aiobotocore.session import AioSession, ClientCreatorContext, get_session
from botocore.config import Config as BotoConfig
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from spaces_backup.archiver import StreamArchiver
from spaces_backup.channel import ByteChannel, ChannelAbortedError
from spaces_backup.config import AppConfig, Config
from spaces_backup.exceptions import BackupError, PipelineError
from spaces_backup.lister import list_all_objects
from spaces_backup.models import (
    BackupContext,
    BackupResult,
    ObjectDescriptor,
    build_archive_name,
)
from spaces_backup.sink import UploadSink

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

# How long a failing run waits for the surviving stage to notice the aborted
# channel and clean up before it is cancelled outright.
DEFAULT_ABORT_GRACE_S: float = 5.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_secondary(error: BaseException) -> bool:
    """
    Whether a failure only reports that the partner stage aborted the channel.

    Args:
        error (BaseException): A stage failure.

    Returns:
        bool: True if a `ChannelAbortedError` is anywhere in its cause chain.
    """
    current: Optional[BaseException] = error
    while current is not None:
        if isinstance(current, ChannelAbortedError):
            return True
        current = current.__cause__
    return False


class BackupPipeline:
    """Orchestrates one backup from listing to confirmed upload."""

    def __init__(
        self,
        config: Config,
        shutdown_event: Optional[asyncio.Event] = None,
        source_client: Optional["S3Client"] = None,
        dest_client: Optional["S3Client"] = None,
        clock: Callable[[], datetime] = _utc_now,
        abort_grace_s: float = DEFAULT_ABORT_GRACE_S,
    ) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The application configuration.
            shutdown_event (asyncio.Event, optional): Event that aborts the run
                when set.
            source_client (S3Client, optional): Client to use instead of
                creating one from the configuration.
            dest_client (S3Client, optional): Client to use instead of creating
                one from the configuration.
            clock (Callable[[], datetime]): Source of the archive timestamp.
            abort_grace_s (float): Seconds a surviving stage gets to clean up
                after the other stage fails.
        """
        self._config: Config = config
        self._shutdown_event: Optional[asyncio.Event] = shutdown_event
        self._source_client: Optional["S3Client"] = source_client
        self._dest_client: Optional["S3Client"] = dest_client
        self._clock: Callable[[], datetime] = clock
        self._abort_grace_s: float = abort_grace_s
        self._session: AioSession = get_session()

    async def run(self) -> BackupResult:
        """
        Executes the full backup.

        Returns:
            BackupResult: Counts and sizes of the completed backup.

        Raises:
            ConfigError: If required configuration is missing; raised before
                any client is created.
            BackupError: The first failure of any stage, classified.
        """
        self._config.validate()
        started: float = time.monotonic()
        logger.info(f"Starting backup of bucket: {self._config.source.bucket}")

        try:
            async with AsyncExitStack() as stack:
                source_client: "S3Client" = (
                    self._source_client
                    if self._source_client is not None
                    else await stack.enter_async_context(
                        self._create_client(self._config.source.as_boto_dict())
                    )
                )
                dest_client: "S3Client" = (
                    self._dest_client
                    if self._dest_client is not None
                    else await stack.enter_async_context(
                        self._create_client(self._config.destination.as_boto_dict())
                    )
                )
                result: BackupResult = await self._run_with_clients(
                    source_client, dest_client, started
                )
        except BackupError:
            raise
        except Exception as e:
            raise PipelineError(f"Unexpected pipeline failure: {e}") from e

        logger.info(
            f"Backup finished: {result.files_backed_up} files, "
            f"{result.archive_bytes} archive bytes in {result.duration_seconds:.2f}s"
        )
        return result

    def _create_client(self, client_kwargs: Dict[str, Any]) -> ClientCreatorContext:
        boto_config: BotoConfig = BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": self._config.app.transfer_max_attempts},
            s3={
                "addressing_style": "path"
                if self._config.app.force_path_style
                else "auto"
            },
        )
        return self._session.create_client("s3", **client_kwargs, config=boto_config)

    def _raise_if_shutdown(self) -> None:
        if self._shutdown_event is not None and self._shutdown_event.is_set():
            raise PipelineError("Backup interrupted by shutdown signal")

    async def _run_with_clients(
        self,
        source_client: "S3Client",
        dest_client: "S3Client",
        started: float,
    ) -> BackupResult:
        """
        Lists the source, then streams archive and upload concurrently.

        Args:
            source_client (S3Client): Client for the source bucket.
            dest_client (S3Client): Client for the destination bucket.
            started (float): `time.monotonic()` at invocation start.

        Returns:
            BackupResult: The outcome of the run.
        """
        source_bucket: str = self._config.source.bucket
        dest_bucket: str = self._config.destination.bucket
        context: BackupContext = BackupContext()

        self._raise_if_shutdown()
        objects: List[ObjectDescriptor] = await self._list_objects(
            source_client, source_bucket
        )
        context.objects_total = len(objects)
        logger.info(f"Found {len(objects)} objects to backup")
        self._raise_if_shutdown()

        if not objects:
            logger.info("No objects found in source bucket. Nothing to back up.")
            return BackupResult(
                source_bucket=source_bucket,
                destination_bucket=dest_bucket,
                archive_name=None,
                files_backed_up=0,
                total_uncompressed_bytes=0,
                archive_bytes=0,
                duration_seconds=time.monotonic() - started,
                context=context,
            )

        archived_at: datetime = self._clock()
        archive_name: str = build_archive_name(
            self._config.app.archive_prefix, source_bucket, archived_at
        )
        logger.info(f"Creating archive: {archive_name}")

        total_bytes: int
        archive_bytes: int
        total_bytes, archive_bytes = await self._stream(
            objects, archive_name, archived_at, source_client, dest_client, context
        )

        return BackupResult(
            source_bucket=source_bucket,
            destination_bucket=dest_bucket,
            archive_name=archive_name,
            files_backed_up=context.objects_archived,
            total_uncompressed_bytes=total_bytes,
            archive_bytes=archive_bytes,
            duration_seconds=time.monotonic() - started,
            context=context,
        )

    async def _list_objects(
        self, source_client: "S3Client", source_bucket: str
    ) -> List[ObjectDescriptor]:
        """
        Lists the source bucket, giving up as soon as shutdown is requested.

        Args:
            source_client (S3Client): Client for the source bucket.
            source_bucket (str): The bucket to enumerate.

        Returns:
            List[ObjectDescriptor]: The full listing.

        Raises:
            ListingError: If any page request fails.
            PipelineError: If the shutdown event is set before listing ends.
        """
        if self._shutdown_event is None:
            return await list_all_objects(source_client, source_bucket)

        listing_task: "asyncio.Task[List[ObjectDescriptor]]" = asyncio.create_task(
            list_all_objects(source_client, source_bucket), name="lister"
        )
        shutdown_task: "asyncio.Task[bool]" = asyncio.create_task(
            self._shutdown_event.wait()
        )
        try:
            await asyncio.wait(
                {listing_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            shutdown_task.cancel()
            if not listing_task.done():
                listing_task.cancel()
            await asyncio.gather(listing_task, shutdown_task, return_exceptions=True)

        if listing_task.cancelled():
            logger.warning("Shutdown signal received during listing. Aborting backup.")
            raise PipelineError("Backup interrupted by shutdown signal")
        return listing_task.result()

    async def _stream(
        self,
        objects: Sequence[ObjectDescriptor],
        archive_name: str,
        archived_at: datetime,
        source_client: "S3Client",
        dest_client: "S3Client",
        context: BackupContext,
    ) -> Tuple[int, int]:
        """
        Runs the archiver and the sink as two tasks joined by a channel.

        Args:
            objects (Sequence[ObjectDescriptor]): The listing to archive.
            archive_name (str): The destination key.
            archived_at (datetime): The archive timestamp, also used for
                entries without a source modification time.
            source_client (S3Client): Client for the source bucket.
            dest_client (S3Client): Client for the destination bucket.
            context (BackupContext): Per-invocation counters.

        Returns:
            Tuple[int, int]: Listed bytes archived and the confirmed archive size.
        """
        app: AppConfig = self._config.app
        channel: ByteChannel = ByteChannel(app.channel_capacity, context)

        progress: Progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            transient=True,
            disable=not app.show_progress,
        )

        with progress:
            task_id: TaskID = progress.add_task("Archiving...", total=len(objects))

            archiver: StreamArchiver = StreamArchiver(
                client=source_client,
                bucket=self._config.source.bucket,
                channel=channel,
                context=context,
                compression_level=app.compression_level,
                read_chunk_size=app.read_chunk_size,
                on_object_archived=lambda _: progress.advance(task_id),
                archived_at=archived_at,
            )
            sink: UploadSink = UploadSink(
                client=dest_client,
                context=context,
                part_size=app.part_size,
            )

            archive_task: asyncio.Task[int] = asyncio.create_task(
                archiver.archive(objects), name="archiver"
            )
            upload_task: asyncio.Task[int] = asyncio.create_task(
                sink.upload(channel, self._config.destination.bucket, archive_name),
                name="sink",
            )
            await self._supervise([archive_task, upload_task], channel)

        return archive_task.result(), upload_task.result()

    async def _supervise(
        self, tasks: List["asyncio.Task[int]"], channel: ByteChannel
    ) -> None:
        """
        Waits for every stage to finish, failing fast on the first error.

        On failure the channel is aborted, which wakes a stage blocked on it.
        Surviving stages get `abort_grace_s` to clean up, then are cancelled.
        Nothing is left running when this returns.

        Args:
            tasks (List[asyncio.Task[int]]): The stage tasks, in pipeline order.
            channel (ByteChannel): The channel joining the stages.

        Raises:
            BackupError: The root-cause failure.
        """
        shutdown_task: Optional["asyncio.Task[bool]"] = None
        if self._shutdown_event is not None:
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

        pending: Set["asyncio.Task[int]"] = set(tasks)
        failure: Optional[BaseException] = None
        try:
            while pending:
                waiters: Set["asyncio.Future[object]"] = set(pending)
                if shutdown_task is not None:
                    waiters.add(shutdown_task)
                done, _ = await asyncio.wait(
                    waiters, return_when=asyncio.FIRST_COMPLETED
                )
                if shutdown_task is not None and shutdown_task in done:
                    logger.warning("Shutdown signal received. Aborting backup.")
                    failure = PipelineError("Backup interrupted by shutdown signal")
                    break

                pending -= done
                errors: List[BaseException] = []
                for task in tasks:
                    if task not in done:
                        continue
                    if task.cancelled():
                        errors.append(
                            PipelineError(f"Stage '{task.get_name()}' was cancelled")
                        )
                    elif task.exception() is not None:
                        errors.append(task.exception())  # type: ignore[arg-type]
                if errors:
                    primary: List[BaseException] = [
                        e for e in errors if not _is_secondary(e)
                    ]
                    failure = (primary or errors)[0]
                    break
        finally:
            if shutdown_task is not None:
                shutdown_task.cancel()
            if failure is not None or pending:
                channel.abort(failure or PipelineError("Backup cancelled"))
                if failure is not None and pending:
                    await asyncio.wait(pending, timeout=self._abort_grace_s)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            if shutdown_task is not None:
                await asyncio.gather(shutdown_task, return_exceptions=True)

        if failure is not None:
            logger.error(f"Backup failed: {failure}")
            if isinstance(failure, BackupError):
                raise failure
            raise PipelineError(f"Pipeline stage failed: {failure}") from failure
