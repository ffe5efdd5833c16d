"""Graceful shutdown handling for the Build Sync daemon.

SIGINT and SIGTERM set a shutdown event that the main thread waits on; the
daemon then stops its watchers and the timer pool before exiting.
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Callable
from types import FrameType

from buildsync.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Coordinates shutdown requests from signals and from code."""

    def __init__(self, on_shutdown: Callable[[], None] | None = None) -> None:
        """Initialize the shutdown handler.

        Args:
            on_shutdown: Optional callback to invoke when shutdown is requested.
        """
        self._shutdown_event = threading.Event()
        self._on_shutdown = on_shutdown

    @property
    def shutdown_requested(self) -> bool:
        """Check if shutdown has been requested."""
        return self._shutdown_event.is_set()

    def request_shutdown(self) -> None:
        """Request graceful shutdown.

        Only the first request invokes the callback.
        """
        if self._shutdown_event.is_set():
            return
        logger.info("Shutdown requested")
        self._shutdown_event.set()

        if self._on_shutdown is not None:
            self._on_shutdown()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until shutdown is requested.

        Returns:
            True if shutdown was requested within the timeout.
        """
        return self._shutdown_event.wait(timeout)

    def handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Handle shutdown signals (SIGINT, SIGTERM).

        Args:
            signum: The signal number received.
            frame: The current stack frame (unused).
        """
        signal_name = signal.Signals(signum).name
        logger.info("Received %s, initiating graceful shutdown...", signal_name)
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        """Install signal handlers for SIGINT and SIGTERM."""
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)
        logger.debug("Signal handlers installed for SIGINT and SIGTERM")


def create_shutdown_handler(on_shutdown: Callable[[], None] | None = None) -> ShutdownHandler:
    """Create a ShutdownHandler with signal handlers installed."""
    handler = ShutdownHandler(on_shutdown)
    handler.install_signal_handlers()
    return handler


__all__ = [
    "ShutdownHandler",
    "create_shutdown_handler",
]
