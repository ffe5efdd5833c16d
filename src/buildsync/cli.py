"""Command-line interface argument parsing for the Build Sync daemon."""

from __future__ import annotations

import argparse
from pathlib import Path


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of arguments to parse. If None, uses sys.argv.

    Returns:
        Parsed arguments namespace with the following attributes:
        - env_file: Path to .env file
        - log_level: Logging level
        - poll_interval: Seconds between status sweeps
        - namespaces: Namespaces to watch (empty keeps the configured set)
    """
    parser = argparse.ArgumentParser(
        prog="build-sync",
        description="Build Sync - keep Build resources in sync with CI runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: ./.env)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (overrides BUILDSYNC_LOG_LEVEL)",
    )

    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between status sweeps (overrides BUILDSYNC_POLL_INTERVAL)",
    )

    parser.add_argument(
        "--namespace",
        dest="namespaces",
        action="append",
        default=[],
        help="Namespace to watch; repeat for several (overrides BUILDSYNC_NAMESPACES)",
    )

    return parser.parse_args(args)


__all__ = ["parse_args"]
