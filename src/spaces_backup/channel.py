# src/spaces_backup/channel.py
"""
A bounded, single-producer single-consumer byte channel.

The archiver writes encoded zip bytes into the channel and the upload sink
drains them. The channel's capacity is what bounds memory: the producer is
suspended while it is full and the consumer while it is empty.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional, Union, cast

from spaces_backup.exceptions import PipelineError
from spaces_backup.models import BackupContext

logger: logging.Logger = logging.getLogger(__name__)


class _EndOfStream:
    pass


class _Aborted:
    pass


_EOF: _EndOfStream = _EndOfStream()
_ABORT: _Aborted = _Aborted()

_Item = Union[bytes, _EndOfStream, _Aborted]


class ChannelAbortedError(PipelineError):
    """Raised on either side of a channel after it has been aborted."""

    pass


class ByteChannel:
    """
    A FIFO of byte pieces with a fixed number of slots.

    `close()` signals a clean end of stream. `abort()` signals failure and
    wakes any side that is currently blocked, so a partner that will never
    produce or consume cannot hang the other.
    """

    def __init__(self, capacity: int, context: Optional[BackupContext] = None) -> None:
        """
        Initializes the channel.

        Args:
            capacity (int): Maximum number of pieces held at once.
            context (BackupContext, optional): Receives byte and peak counters.
        """
        if capacity <= 0:
            raise ValueError("Channel capacity must be positive.")
        self._queue: asyncio.Queue[_Item] = asyncio.Queue(maxsize=capacity)
        self._context: BackupContext = context or BackupContext()
        self._buffered: int = 0
        self._closed: bool = False
        self._error: Optional[BaseException] = None

    @property
    def buffered(self) -> int:
        """
        Bytes currently waiting in the channel.

        Returns:
            int: The number of buffered bytes.
        """
        return self._buffered

    @property
    def aborted(self) -> bool:
        return self._error is not None

    def _raise_if_aborted(self) -> None:
        if self._error is not None:
            raise ChannelAbortedError(
                f"Channel aborted: {self._error}"
            ) from self._error

    async def send(self, data: bytes) -> None:
        """
        Enqueue a piece, waiting while the channel is full.

        Args:
            data (bytes): The bytes to send. Empty pieces are ignored.

        Raises:
            ChannelAbortedError: If the channel was aborted.
            PipelineError: If the channel was already closed.
        """
        self._raise_if_aborted()
        if self._closed:
            raise PipelineError("Cannot send on a closed channel.")
        if not data:
            return
        await self._queue.put(data)
        # An abort may have drained the queue to release this put.
        self._raise_if_aborted()
        self._buffered += len(data)
        self._context.channel_bytes += len(data)
        if self._buffered > self._context.peak_channel_bytes:
            self._context.peak_channel_bytes = self._buffered

    async def close(self) -> None:
        """
        Signal a clean end of stream to the consumer.

        Raises:
            ChannelAbortedError: If the channel was aborted.
        """
        self._raise_if_aborted()
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_EOF)

    def abort(self, error: BaseException) -> None:
        """
        Fail the channel and wake both sides.

        Buffered pieces are discarded. Calling this more than once keeps the
        first error.

        Args:
            error (BaseException): The reason for the abort.
        """
        if self._error is not None:
            return
        self._error = error
        self._closed = True
        # A full queue may have a blocked producer and an empty one a blocked
        # consumer; draining wakes the former, the marker wakes the latter.
        was_full: bool = self._queue.full()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._buffered = 0
        if not was_full:
            self._queue.put_nowait(_ABORT)
        logger.debug(f"Channel aborted: {error!r}")

    async def receive(self) -> Optional[bytes]:
        """
        Dequeue the next piece, waiting while the channel is empty.

        Returns:
            Optional[bytes]: The next piece, or None at end of stream.

        Raises:
            ChannelAbortedError: If the channel was aborted.
        """
        self._raise_if_aborted()
        item: _Item = await self._queue.get()
        if isinstance(item, _Aborted):
            # Leave the marker for any later receive call.
            self._queue.put_nowait(item)
            self._raise_if_aborted()
        if isinstance(item, _EndOfStream):
            self._queue.put_nowait(item)
            return None
        self._raise_if_aborted()
        data: bytes = cast(bytes, item)
        self._buffered -= len(data)
        return data

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            piece: Optional[bytes] = await self.receive()
            if piece is None:
                return
            yield piece
