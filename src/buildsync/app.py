"""Standalone daemon runner for Build Sync.

The daemon applies the configuration once, then idles until SIGINT or
SIGTERM. Lifecycle callbacks come from a host embedding the listener; run
standalone, the daemon keeps the sibling watchers and the client alive.
"""

from __future__ import annotations

from buildsync.bootstrap import BuildSyncContext, bootstrap
from buildsync.cli import parse_args
from buildsync.logging import get_logger
from buildsync.shutdown import ShutdownHandler, create_shutdown_handler

logger = get_logger(__name__)


def run_daemon(context: BuildSyncContext, shutdown_handler: ShutdownHandler) -> int:
    """Run until shutdown is requested.

    Args:
        context: Wired Build Sync components.
        shutdown_handler: Handler signalled on SIGINT/SIGTERM.

    Returns:
        Exit code: 0 for success.
    """
    context.start()
    logger.info("Build sync running")
    try:
        shutdown_handler.wait()
    finally:
        context.shutdown()
    logger.info("Build sync stopped")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the ``build-sync`` command.

    Args:
        args: Optional list of command-line arguments.

    Returns:
        Exit code for the application.
    """
    parsed = parse_args(args)
    context = bootstrap(parsed)
    shutdown_handler = create_shutdown_handler()
    return run_daemon(context, shutdown_handler)


__all__ = [
    "main",
    "run_daemon",
]
