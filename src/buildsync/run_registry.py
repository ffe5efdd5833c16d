"""Registry of runs whose Build status is polled."""

from __future__ import annotations

import threading

from buildsync.types import Run


class RunRegistry:
    """Thread-safe set of tracked runs keyed by ``display_key``.

    Tracking a run that is already tracked keeps the first registration.
    ``snapshot()`` copies the current members so callers can iterate while
    other threads track and untrack.
    """

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    def track(self, run: Run) -> bool:
        """Add a run. Returns True if it was not tracked before."""
        with self._lock:
            if run.display_key in self._runs:
                return False
            self._runs[run.display_key] = run
            return True

    def untrack(self, run: Run) -> bool:
        """Remove a run. Returns True if it was tracked."""
        with self._lock:
            return self._runs.pop(run.display_key, None) is not None

    def snapshot(self) -> list[Run]:
        with self._lock:
            return list(self._runs.values())

    def __contains__(self, run: object) -> bool:
        key = getattr(run, "display_key", None)
        with self._lock:
            return key in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)
