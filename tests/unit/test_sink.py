# tests/unit/test_sink.py
"""Unit tests for the multipart upload sink."""

import asyncio
import logging

import pytest

from fakes import DEST_BUCKET, FakeS3Client, client_error
from spaces_backup.channel import ByteChannel
from spaces_backup.config import MIN_PART_SIZE
from spaces_backup.exceptions import UploadError
from spaces_backup.models import BackupContext
from spaces_backup.sink import UploadSink

_KEY: str = "backups/archive.zip"
_PIECE: int = 256 * 1024


async def _feed(channel: ByteChannel, data: bytes, close: bool = True) -> None:
    for start in range(0, len(data), _PIECE):
        await channel.send(data[start : start + _PIECE])
    if close:
        await channel.close()


@pytest.mark.asyncio
async def test_small_stream_uses_single_put(fake_s3: FakeS3Client) -> None:
    """
    Tests that a stream shorter than one part is stored with one request.

    Arrange:
        - A closed channel holding a few bytes.
    Act:
        - Upload it.
    Assert:
        - One `put_object`, no multipart calls.
        - The confirmed size equals the bytes sent.

    Args:
        fake_s3 (FakeS3Client): The fake backend.
    """
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=4, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)
    await _feed(channel, b"PK tiny archive")

    size: int = await sink.upload(channel, DEST_BUCKET, _KEY)

    assert size == len(b"PK tiny archive")
    assert fake_s3.get(DEST_BUCKET, _KEY) == b"PK tiny archive"
    assert fake_s3.calls["put_object"] == 1
    assert fake_s3.calls["create_multipart_upload"] == 0


@pytest.mark.asyncio
async def test_large_stream_uses_ordered_multipart(fake_s3: FakeS3Client) -> None:
    """
    Tests that a stream longer than one part is uploaded in numbered parts.

    Arrange:
        - Produce 12 MiB plus a few bytes while the sink consumes.
    Act:
        - Upload with 5 MiB parts.
    Assert:
        - Three parts are uploaded and completed in order.
        - The stored object is byte-identical to the stream.

    Args:
        fake_s3 (FakeS3Client): The fake backend.
    """
    data: bytes = bytes(range(256)) * (12 * 4096) + b"tail"
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=4, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)

    producer: asyncio.Task[None] = asyncio.create_task(_feed(channel, data))
    size: int = await sink.upload(channel, DEST_BUCKET, _KEY)
    await producer

    assert size == len(data)
    assert fake_s3.get(DEST_BUCKET, _KEY) == data
    assert fake_s3.calls["upload_part"] == 3
    assert fake_s3.completed_uploads == ["upload-1"]
    assert context.parts_uploaded == 3
    assert context.bytes_uploaded == len(data)


@pytest.mark.asyncio
async def test_part_failure_aborts_multipart_upload(fake_s3: FakeS3Client) -> None:
    """
    Tests that a failed part leaves no completed object behind.

    Arrange:
        - Make the second part fail.
    Act:
        - Upload a stream of three parts.
    Assert:
        - `UploadError` is raised.
        - The multipart upload is aborted, never completed.

    Args:
        fake_s3 (FakeS3Client): The fake backend.
    """
    fake_s3.part_errors[2] = client_error("SlowDown", "UploadPart")
    data: bytes = b"\x00" * (3 * MIN_PART_SIZE)
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=4, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)
    producer: asyncio.Task[None] = asyncio.create_task(_feed(channel, data))

    with pytest.raises(UploadError) as exc_info:
        await sink.upload(channel, DEST_BUCKET, _KEY)
    channel.abort(exc_info.value)
    await asyncio.gather(producer, return_exceptions=True)

    assert exc_info.value.stage == "upload"
    assert fake_s3.aborted_uploads == ["upload-1"]
    assert fake_s3.completed_uploads == []
    assert _KEY not in fake_s3.keys(DEST_BUCKET)


@pytest.mark.asyncio
async def test_aborted_stream_is_never_stored(fake_s3: FakeS3Client) -> None:
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=4, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)
    await _feed(channel, b"half an archive", close=False)
    channel.abort(RuntimeError("archiver failed"))

    with pytest.raises(UploadError):
        await sink.upload(channel, DEST_BUCKET, _KEY)

    assert fake_s3.calls["put_object"] == 0
    assert fake_s3.keys(DEST_BUCKET) == []


@pytest.mark.asyncio
async def test_cancellation_aborts_multipart_upload(fake_s3: FakeS3Client) -> None:
    """
    Tests that cancelling the sink mid-upload still aborts the upload.

    Arrange:
        - Make every part upload hang.
    Act:
        - Start the upload with more than one part of data, then cancel it.
    Assert:
        - The task ends cancelled.
        - The started multipart upload was aborted.

    Args:
        fake_s3 (FakeS3Client): The fake backend.
    """
    fake_s3.hang_ops.add("upload_part")
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=64, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)
    await _feed(channel, b"\x01" * (MIN_PART_SIZE + 1024))

    task: asyncio.Task[int] = asyncio.create_task(sink.upload(channel, DEST_BUCKET, _KEY))
    while fake_s3.calls["upload_part"] == 0:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert fake_s3.aborted_uploads == ["upload-1"]


@pytest.mark.asyncio
async def test_confirmation_failure_reports_stored_archive(
    fake_s3: FakeS3Client, caplog: pytest.LogCaptureFixture
) -> None:
    """
    Tests a failed size check after the archive was written.

    Arrange:
        - Make `head_object` fail.
    Act:
        - Upload a small stream.
    Assert:
        - `UploadError` says the archive was stored but is unconfirmed.
        - The archive is still in the destination.
        - The key is logged at error level.

    Args:
        fake_s3 (FakeS3Client): The fake backend.
        caplog (pytest.LogCaptureFixture): Captures log records.
    """
    fake_s3.errors["head_object"] = client_error("InternalError", "HeadObject")
    context: BackupContext = BackupContext()
    channel: ByteChannel = ByteChannel(capacity=4, context=context)
    sink: UploadSink = UploadSink(fake_s3, context, part_size=MIN_PART_SIZE)
    await _feed(channel, b"archive")

    with caplog.at_level(logging.ERROR, logger="spaces_backup.sink"):
        with pytest.raises(UploadError, match="was stored but its size could not be confirmed"):
            await sink.upload(channel, DEST_BUCKET, _KEY)

    assert fake_s3.get(DEST_BUCKET, _KEY) == b"archive"
    assert f"s3://{DEST_BUCKET}/{_KEY}" in caplog.text
    assert fake_s3.aborted_uploads == []


def test_part_size_below_minimum_is_rejected(fake_s3: FakeS3Client) -> None:
    with pytest.raises(ValueError):
        UploadSink(fake_s3, BackupContext(), part_size=MIN_PART_SIZE - 1)
