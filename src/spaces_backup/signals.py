# src/spaces_backup/signals.py
"""
Translates SIGINT/SIGTERM into an `asyncio.Event` for the backup pipeline.

The pipeline watches the event alongside its two stages; setting it aborts
the run the same way a stage failure does, so an interrupted backup never
completes a partial archive.
"""

import asyncio
import logging
import signal
from typing import Any, List, Optional

logger: logging.Logger = logging.getLogger(__name__)

_HANDLED_SIGNALS: List[signal.Signals] = [signal.SIGINT, signal.SIGTERM]


class GracefulShutdown:
    """
    An async context manager yielding an event set on the first signal.

    Handlers are installed on the running loop and removed on exit. A second
    signal while the backup is already aborting falls through to the default
    handler, which terminates the process.
    """

    def __init__(self) -> None:
        self._event: asyncio.Event = asyncio.Event()
        self._installed: List[signal.Signals] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.warning(
            f"Received shutdown signal: {signal.strsignal(sig)}. Aborting backup..."
        )
        self._event.set()
        # Let a repeated signal use the default behaviour.
        self._remove_handlers()

    def _remove_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            self._loop.remove_signal_handler(sig)
        self._installed.clear()

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers signal handlers and returns the shutdown event.

        Returns:
            asyncio.Event: Set when a handled signal is received.
        """
        self._loop = asyncio.get_running_loop()
        for sig in _HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
                self._installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Not available off the main thread or on some platforms.
                logger.warning(f"Could not set handler for {sig.name}: {e}")
        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Removes any handlers still installed."""
        self._remove_handlers()
