"""Lifecycle listener and poll scheduler for CI runs.

The CI engine calls ``on_started``, ``on_completed``, ``on_deleted`` and
``on_finalized`` once per run, in that order, from its own threads. Runs that
qualify (workflow runs triggered by a Build resource) are tracked and swept
on a fixed-rate timer; every sweep upserts the Build status of each tracked
run and ships its new log lines.

Lifecycle of one run::

    untracked -> started (tracked, polled) -> completed/deleted (untracked)
              -> finalized -> purged (after the grace period)

All work on one run, whether from a callback or from the sweep, happens under
that run's own re-entrant lock. Different runs never wait on each other.
Exceptions never leave a callback: they are logged and the host continues.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Collection, Mapping
from typing import Any, TypeAlias

from buildsync.constants import DEFAULT_FINALIZE_GRACE_PERIOD, DEFAULT_POLL_INTERVAL
from buildsync.log_shipper import LogShipper
from buildsync.logging import get_logger
from buildsync.phases import run_to_build_phase
from buildsync.run_registry import RunRegistry
from buildsync.status_upserter import BuildStatusUpserter
from buildsync.timers import ScheduledTask, TimerPool
from buildsync.types import WORKFLOW_RUN_KIND, Run, UpsertOutcome
from buildsync.urls import join_paths

logger = get_logger(__name__)

# Renders the stage view detail blob of a run
DetailRenderer: TypeAlias = Callable[[Run], Mapping[str, Any]]

# Called once a tracked run finishes, so queued runs of the same Build
# config may be scheduled
RunFinishedHook: TypeAlias = Callable[[Run], None]


def render_basic_detail(run: Run) -> dict[str, Any]:
    """Minimal stage view detail for hosts without a pipeline renderer."""
    return {
        "id": run.display_key,
        "status": str(run_to_build_phase(run)),
        "startTimeMillis": run.start_time_ms,
        "durationMillis": run.duration_ms,
        "_links": {"self": {"href": join_paths(run.url, "wfapi/describe")}},
        "stages": [],
    }


class BuildSyncRunListener:
    """Keeps Build resources in sync with the runs they triggered.

    Thread Safety:
        Callbacks may be delivered on any thread and may interleave with the
        sweep. Per-run locks serialize all work on one run.
    """

    def __init__(
        self,
        registry: RunRegistry,
        upserter: BuildStatusUpserter,
        log_shipper: LogShipper,
        timer_pool: TimerPool,
        *,
        detail_renderer: DetailRenderer = render_basic_detail,
        on_run_finished: RunFinishedHook | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        finalize_grace_period: float = DEFAULT_FINALIZE_GRACE_PERIOD,
        suspended: bool = False,
    ) -> None:
        """Initialize the listener.

        Args:
            registry: Set of runs polled by the sweep.
            upserter: Writes run status onto Build resources.
            log_shipper: Ships run logs into Build annotations.
            timer_pool: Runs the sweep and deferred finalize cleanups.
            detail_renderer: Renders a run's stage view detail.
            on_run_finished: Hook invoked after the final upsert of a run.
            poll_interval: Seconds between sweeps.
            finalize_grace_period: Seconds between finalize and log purge.
            suspended: Start suspended; the sweep stays off until ``resume``.
        """
        self._registry = registry
        self._upserter = upserter
        self._log_shipper = log_shipper
        self._timer_pool = timer_pool
        self._detail_renderer = detail_renderer
        self._on_run_finished = on_run_finished
        self._poll_interval = poll_interval
        self._finalize_grace_period = finalize_grace_period

        self._sweep_task: ScheduledTask | None = None
        self._suspended = suspended
        self._state_lock = threading.Lock()
        self._run_locks: dict[str, threading.RLock] = {}
        self._run_locks_lock = threading.Lock()

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def is_polling(self) -> bool:
        with self._state_lock:
            return self._sweep_task is not None

    @property
    def is_suspended(self) -> bool:
        with self._state_lock:
            return self._suspended

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def finalize_grace_period(self) -> float:
        return self._finalize_grace_period

    def start(self) -> bool:
        """Start the periodic sweep if it is not running.

        Does nothing while the listener is suspended.

        Returns:
            True if this call started the sweep.
        """
        with self._state_lock:
            if self._sweep_task is not None or self._suspended:
                return False
            try:
                self._sweep_task = self._timer_pool.schedule_at_fixed_rate(
                    self.sweep,
                    initial_delay=self._poll_interval,
                    period=self._poll_interval,
                    name="build-status-sweep",
                )
            except RuntimeError as e:
                logger.error("Cannot start build status polling: %s", e)
                return False
        logger.info("Started build status polling every %.2fs", self._poll_interval)
        return True

    def stop(self) -> bool:
        """Cancel the periodic sweep. Tracked runs stay registered.

        Returns:
            True if a running sweep was cancelled.
        """
        with self._state_lock:
            task = self._sweep_task
            self._sweep_task = None
        if task is None:
            return False
        task.cancel()
        logger.info("Stopped build status polling")
        return True

    def suspend(self) -> bool:
        """Stop the sweep and keep it off until ``resume`` is called.

        Started callbacks still track runs while suspended; they are swept
        once polling resumes.

        Returns:
            True if a running sweep was cancelled.
        """
        with self._state_lock:
            self._suspended = True
        return self.stop()

    def resume(
        self,
        poll_interval: float | None = None,
        finalize_grace_period: float | None = None,
    ) -> bool:
        """Lift a suspension, apply new timings and start the sweep.

        A running sweep is rescheduled when the poll interval changes.

        Returns:
            True if this call started the sweep.
        """
        with self._state_lock:
            self._suspended = False
            restart = poll_interval is not None and poll_interval != self._poll_interval
            if poll_interval is not None:
                self._poll_interval = poll_interval
            if finalize_grace_period is not None:
                self._finalize_grace_period = finalize_grace_period
        if restart:
            self.stop()
        return self.start()

    def qualifies(self, run: Run) -> bool:
        """Whether a run is a workflow run triggered by a Build resource."""
        return run.kind == WORKFLOW_RUN_KIND and run.cause is not None

    def _run_lock(self, run: Run) -> threading.RLock:
        with self._run_locks_lock:
            lock = self._run_locks.get(run.display_key)
            if lock is None:
                lock = threading.RLock()
                self._run_locks[run.display_key] = lock
            return lock

    def _existing_run_lock(self, run: Run) -> threading.RLock | None:
        with self._run_locks_lock:
            return self._run_locks.get(run.display_key)

    def _drop_run_lock(self, run: Run) -> None:
        with self._run_locks_lock:
            self._run_locks.pop(run.display_key, None)

    def _guarded(self, action: str, run: Run, fn: Callable[[], object]) -> None:
        try:
            fn()
        except Exception:
            logger.exception("Failed to %s for run %s", action, run.display_key)

    def _upsert(self, run: Run) -> UpsertOutcome:
        # Caller holds the run lock
        outcome = self._upserter.upsert(run, self._detail_renderer(run))
        if outcome.drops_run:
            self._registry.untrack(run)
            self._log_shipper.discard(run)
            logger.warning(
                "Stopped synchronizing run %s (%s)",
                run.display_key,
                outcome,
                extra={"outcome": str(outcome)},
            )
        return outcome

    def poll_run(self, run: Run) -> UpsertOutcome | None:
        """Upsert one tracked run.

        Returns:
            The upsert outcome, or None if the run was untracked before its
            lock was acquired.

        Raises:
            ClusterClientError: For cluster failures other than a removed or
                rejected Build.
        """
        # Runs cleaned up after the snapshot was taken have no lock left
        lock = self._existing_run_lock(run)
        if lock is None:
            return None
        with lock:
            if run not in self._registry:
                return None
            return self._upsert(run)

    def sweep(self) -> None:
        """Upsert every tracked run once.

        A failure for one run is logged and the sweep moves on to the next.
        """
        runs = self._registry.snapshot()
        logger.debug("Sweeping %d tracked runs", len(runs), extra={"diagnostic_tag": "polling"})
        for run in runs:
            try:
                self.poll_run(run)
            except Exception as e:
                logger.exception(
                    "Failed to poll run %s",
                    run.display_key,
                    extra={"error_type": type(e).__name__},
                )

    def reconcile(self, namespace: str, build_names: Collection[str]) -> int:
        """Stop tracking runs whose Build is missing from a namespace listing.

        Args:
            namespace: Namespace that was listed.
            build_names: Names of the Builds that currently exist there.

        Returns:
            Number of runs untracked.
        """
        existing = set(build_names)
        dropped = 0
        for run in self._registry.snapshot():
            cause = run.cause
            if cause is None or cause.namespace != namespace or cause.name in existing:
                continue
            lock = self._existing_run_lock(run)
            if lock is None:
                continue
            with lock:
                if self._registry.untrack(run):
                    self._log_shipper.discard(run)
                    dropped += 1
                    logger.with_context(namespace=namespace, build=cause.name).info(
                        "Build removed, stopped tracking run %s", run.display_key
                    )
        return dropped

    def on_started(self, run: Run) -> None:
        """Track a qualifying run and prepare its log state."""
        try:
            cause = run.cause
            if cause is None or not self.qualifies(run):
                logger.debug("Ignoring run %s: not triggered by a build", run.display_key)
                return
            with self._run_lock(run):
                try:
                    run.set_description(cause.short_description)
                except OSError as e:
                    logger.warning("Cannot set description of run %s: %s", run.display_key, e)
                self._registry.track(run)
                self._log_shipper.register(run)
            logger.with_context(
                namespace=cause.namespace, build=cause.name, run=run.display_key
            ).info("Tracking run")
            self.start()
        except Exception:
            logger.exception("Failed to handle start of run %s", run.display_key)

    def on_completed(self, run: Run) -> None:
        self._on_finished(run, "completion")

    def on_deleted(self, run: Run) -> None:
        self._on_finished(run, "deletion")

    def _on_finished(self, run: Run, event: str) -> None:
        try:
            with self._run_lock(run):
                if self.qualifies(run):
                    self._registry.untrack(run)
                    self._guarded(f"upsert after {event}", run, lambda: self._upsert(run))
                    if self._on_run_finished is not None:
                        hook = self._on_run_finished
                        self._guarded("notify run finished", run, lambda: hook(run))
                else:
                    logger.debug("Run %s finished without a build cause", run.display_key)
                # The cause may only have been attached after the run started
                self._guarded(f"ship logs after {event}", run, lambda: self._log_shipper.ship(run))
        except Exception:
            logger.exception("Failed to handle %s of run %s", event, run.display_key)

    def on_finalized(self, run: Run) -> None:
        """Flush a finalized run and schedule its log purge.

        Log lines may still be written after the host reports finalization,
        so a last shipment and the purge run after the grace period.
        """
        try:
            with self._run_lock(run):
                if self.qualifies(run):
                    self._guarded("upsert after finalization", run, lambda: self._upsert(run))
                self._guarded(
                    "ship logs after finalization", run, lambda: self._log_shipper.ship(run)
                )
            self._schedule_cleanup(run)
        except Exception:
            logger.exception("Failed to handle finalization of run %s", run.display_key)

    def _schedule_cleanup(self, run: Run) -> None:
        try:
            self._timer_pool.schedule(
                lambda: self._cleanup(run),
                self._finalize_grace_period,
                name=f"finalize-cleanup-{run.display_key}",
            )
        except RuntimeError as e:
            logger.warning("Cleaning up run %s immediately: %s", run.display_key, e)
            self._cleanup(run)

    def _cleanup(self, run: Run) -> None:
        with self._run_lock(run):
            self._guarded("ship final logs", run, lambda: self._log_shipper.ship(run))
            self._guarded("purge logs", run, lambda: self._log_shipper.purge(run))
            self._log_shipper.discard(run)
            self._registry.untrack(run)
        self._drop_run_lock(run)
        logger.debug("Cleaned up run %s", run.display_key)


__all__ = [
    "BuildSyncRunListener",
    "DetailRenderer",
    "RunFinishedHook",
    "render_basic_detail",
]
