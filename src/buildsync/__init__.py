"""Build Sync - keeps Build resources in sync with the CI runs they trigger."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("build-sync")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from buildsync.bootstrap import BuildSyncContext, create_build_sync
from buildsync.run_listener import BuildSyncRunListener
from buildsync.types import BuildPhase, Run, RunResult, TriggerCause

__all__ = [
    "__version__",
    "BuildPhase",
    "BuildSyncContext",
    "BuildSyncRunListener",
    "Run",
    "RunResult",
    "TriggerCause",
    "create_build_sync",
]
