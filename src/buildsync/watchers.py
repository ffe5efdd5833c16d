"""Watchers owned by the watcher supervisor.

A watcher is any long-lived synchronization subsystem with a start/stop
lifecycle. Two kinds exist:

- ``RunSyncWatcher`` wraps the run listener's status polling.
- ``ResourceListWatcher`` periodically lists one resource kind in each
  watched namespace and keeps the latest names.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Iterable
from typing import Protocol, TypeAlias, runtime_checkable

from buildsync.cluster_client import ClusterClient, ClusterClientError
from buildsync.logging import get_logger
from buildsync.run_listener import BuildSyncRunListener
from buildsync.timers import ScheduledTask, TimerPool

logger = get_logger(__name__)

# Called with (namespace, names) after every successful listing
ListingCallback: TypeAlias = Callable[[str, list[str]], object]


@runtime_checkable
class Watcher(Protocol):
    """Start/stop contract shared by every supervised watcher."""

    @property
    def name(self) -> str: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


class JobNameFilter:
    """Selects the build configurations that map to CI jobs.

    A name is kept when it fully matches ``pattern`` (any name when the
    pattern is empty), does not start with ``skip_organization_prefix`` and
    does not end with ``skip_branch_suffix``. Empty skip values disable that
    rule.
    """

    def __init__(
        self,
        pattern: str = "",
        skip_organization_prefix: str = "",
        skip_branch_suffix: str = "",
    ) -> None:
        self._pattern = re.compile(pattern) if pattern else None
        self._skip_prefix = skip_organization_prefix
        self._skip_suffix = skip_branch_suffix

    def accepts(self, name: str) -> bool:
        if self._pattern is not None and not self._pattern.fullmatch(name):
            return False
        if self._skip_prefix and name.startswith(self._skip_prefix):
            return False
        if self._skip_suffix and name.endswith(self._skip_suffix):
            return False
        return True

    def apply(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if self.accepts(name)]


class RunSyncWatcher:
    """Adapts the run listener's status polling to the watcher contract.

    Stopping suspends the listener, so started callbacks delivered while
    sync is off keep tracking runs without polling them. Starting resumes it
    with the timings of the transition that built this watcher.
    """

    name = "runs"

    def __init__(
        self,
        listener: BuildSyncRunListener,
        poll_interval: float | None = None,
        finalize_grace_period: float | None = None,
    ) -> None:
        self._listener = listener
        self._poll_interval = poll_interval
        self._finalize_grace_period = finalize_grace_period

    def start(self) -> None:
        self._listener.resume(
            poll_interval=self._poll_interval,
            finalize_grace_period=self._finalize_grace_period,
        )

    def stop(self) -> None:
        self._listener.suspend()


class ResourceListWatcher:
    """Periodically lists one resource kind across the watched namespaces.

    Listing failures are logged and retried on the next interval; the last
    successful snapshot of a namespace is kept until then.
    """

    def __init__(
        self,
        kind: str,
        namespaces: Iterable[str],
        interval: float,
        client_provider: Callable[[], ClusterClient],
        timer_pool: TimerPool,
        name_filter: JobNameFilter | None = None,
        on_listed: ListingCallback | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            kind: Resource kind, one of ``config.WATCHED_KINDS``.
            namespaces: Namespaces to list.
            interval: Seconds between listings.
            client_provider: Returns the current cluster client.
            timer_pool: Pool running the periodic listing.
            name_filter: Optional filter applied to listed names.
            on_listed: Optional callback receiving each namespace listing.
        """
        self.kind = kind
        self.namespaces = tuple(namespaces)
        self.interval = interval
        self._client_provider = client_provider
        self._timer_pool = timer_pool
        self._name_filter = name_filter
        self._on_listed = on_listed
        self._snapshots: dict[str, list[str]] = {}
        self._lock = threading.Lock()
        self._task: ScheduledTask | None = None

    @property
    def name(self) -> str:
        return self.kind

    @property
    def running(self) -> bool:
        with self._lock:
            return self._task is not None

    def start(self) -> None:
        with self._lock:
            if self._task is not None:
                return
            self._task = self._timer_pool.schedule_at_fixed_rate(
                self.refresh, initial_delay=0.0, period=self.interval, name=f"list-{self.kind}"
            )
        logger.info(
            "Watching %s in %d namespaces every %ss", self.kind, len(self.namespaces), self.interval
        )

    def stop(self) -> None:
        with self._lock:
            task = self._task
            self._task = None
        if task is not None:
            task.cancel()
            logger.info("Stopped watching %s", self.kind)

    def snapshot(self, namespace: str) -> list[str]:
        """Names seen in the latest successful listing of a namespace."""
        with self._lock:
            return list(self._snapshots.get(namespace, ()))

    def refresh(self) -> None:
        """List every namespace once."""
        for namespace in self.namespaces:
            try:
                names = self._client_provider().list_resources(namespace, self.kind)
            except ClusterClientError as e:
                logger.with_context(namespace=namespace).warning(
                    "Failed to list %s: %s", self.kind, e
                )
                continue
            if self._name_filter is not None:
                names = self._name_filter.apply(names)
            with self._lock:
                self._snapshots[namespace] = names
            logger.debug(
                "Listed %d %s in %s",
                len(names),
                self.kind,
                namespace,
                extra={"diagnostic_tag": "polling"},
            )
            if self._on_listed is not None:
                self._on_listed(namespace, names)


__all__ = [
    "JobNameFilter",
    "ListingCallback",
    "ResourceListWatcher",
    "RunSyncWatcher",
    "Watcher",
]
