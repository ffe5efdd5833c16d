"""Bootstrap and dependency wiring for Build Sync.

This module is the composition root. It builds the timer pool, the run
registry, the log shipper, the status upserter, the run listener and the
watcher supervisor, and connects them:

- every component reaches the cluster through ``WatcherSupervisor.client``,
  so a configuration change swaps the client for all of them at once
- the supervisor's watcher factory always includes the run listener and adds
  one resource list watcher per enabled kind

Hosts embedding Build Sync call ``create_build_sync`` with their own detail
renderer, dashboard lookup, run-finished hook and readiness probe, deliver
lifecycle callbacks to ``BuildSyncContext.listener``, and call
``BuildSyncContext.start`` once.
"""

from __future__ import annotations

import argparse
from dataclasses import replace
from typing import Any

from buildsync.cluster_client import ClusterClient
from buildsync.config import WATCHED_KINDS, Config, load_config
from buildsync.log_shipper import LogShipper
from buildsync.logging import get_logger, setup_logging
from buildsync.run_listener import (
    BuildSyncRunListener,
    DetailRenderer,
    RunFinishedHook,
    render_basic_detail,
)
from buildsync.run_registry import RunRegistry
from buildsync.status_upserter import BuildStatusUpserter, DashboardUrlResolver
from buildsync.supervisor import (
    ClientFactory,
    ReadinessProbe,
    WatcherSupervisor,
    create_cluster_client,
)
from buildsync.timers import TimerPool
from buildsync.watchers import JobNameFilter, ResourceListWatcher, RunSyncWatcher, Watcher

logger = get_logger(__name__)


class BuildSyncContext:
    """Container for the wired Build Sync components."""

    def __init__(
        self,
        config: Config,
        timer_pool: TimerPool,
        registry: RunRegistry,
        log_shipper: LogShipper,
        upserter: BuildStatusUpserter,
        listener: BuildSyncRunListener,
        supervisor: WatcherSupervisor,
    ) -> None:
        self.config = config
        self.timer_pool = timer_pool
        self.registry = registry
        self.log_shipper = log_shipper
        self.upserter = upserter
        self.listener = listener
        self.supervisor = supervisor

    def start(self) -> None:
        """Start the timer pool and apply the configuration."""
        if not self.timer_pool.is_running():
            self.timer_pool.start()
        self.supervisor.apply(self.config)

    def reconfigure(self, config: Config) -> None:
        """Apply a changed configuration as one transition."""
        self.config = config
        self.supervisor.apply(config)

    def shutdown(self) -> None:
        """Stop every watcher, release the client and stop the timer pool."""
        self.supervisor.shutdown()


def apply_cli_overrides(config: Config, parsed: argparse.Namespace) -> Config:
    """Apply CLI argument overrides to the configuration.

    Args:
        config: Base configuration loaded from environment.
        parsed: Parsed command-line arguments.

    Returns:
        New Config instance with CLI overrides applied.
    """
    overrides: dict[str, Any] = {}

    if parsed.poll_interval is not None:
        if parsed.poll_interval > 0:
            overrides["sync"] = replace(config.sync, poll_interval=parsed.poll_interval)
        else:
            logger.warning(
                "Ignoring --poll-interval %s: must be positive", parsed.poll_interval
            )
    if parsed.log_level:
        overrides["logging_config"] = replace(config.logging_config, level=parsed.log_level)
    if parsed.namespaces:
        overrides["namespaces"] = tuple(dict.fromkeys(parsed.namespaces))

    if overrides:
        return replace(config, **overrides)
    return config


def create_build_sync(
    config: Config,
    *,
    detail_renderer: DetailRenderer = render_basic_detail,
    dashboard_url_resolver: DashboardUrlResolver | None = None,
    on_run_finished: RunFinishedHook | None = None,
    readiness_probe: ReadinessProbe | None = None,
    client_factory: ClientFactory = create_cluster_client,
    timer_pool: TimerPool | None = None,
) -> BuildSyncContext:
    """Wire the Build Sync components for a configuration.

    Nothing is started; call ``BuildSyncContext.start``.

    Args:
        config: Application configuration.
        detail_renderer: Renders a run's stage view detail.
        dashboard_url_resolver: Optional dashboard page lookup.
        on_run_finished: Hook invoked after a tracked run's final upsert.
        readiness_probe: Returns True once the host finished starting.
            Defaults to always ready.
        client_factory: Builds the cluster client for a configuration.
        timer_pool: Timer pool to use instead of a new one.

    Returns:
        BuildSyncContext holding the wired components.
    """
    sync = config.sync
    pool = timer_pool or TimerPool(max_workers=sync.timer_pool_size)

    # Late bound: the supervisor is created below
    def client_provider() -> ClusterClient:
        return supervisor.client()

    registry = RunRegistry()
    log_shipper = LogShipper(client_provider)
    upserter = BuildStatusUpserter(
        client_provider,
        log_shipper,
        dashboard_url_resolver=dashboard_url_resolver,
        max_status_json_bytes=sync.max_status_json_bytes,
    )
    listener = BuildSyncRunListener(
        registry,
        upserter,
        log_shipper,
        pool,
        detail_renderer=detail_renderer,
        on_run_finished=on_run_finished,
        poll_interval=sync.poll_interval,
        finalize_grace_period=sync.finalize_grace_period,
        # The supervisor resumes polling once the host is ready
        suspended=True,
    )

    def build_watchers(current: Config, namespaces: tuple[str, ...]) -> list[Watcher]:
        watch = current.watch
        watchers: list[Watcher] = [
            RunSyncWatcher(
                listener,
                poll_interval=current.sync.poll_interval,
                finalize_grace_period=current.sync.finalize_grace_period,
            )
        ]
        for kind in WATCHED_KINDS:
            if kind not in watch.enabled_kinds:
                continue
            name_filter = None
            if kind == "buildconfigs":
                name_filter = JobNameFilter(
                    watch.job_name_pattern,
                    watch.skip_organization_prefix,
                    watch.skip_branch_suffix,
                )
            on_listed = None
            if kind == "builds" and watch.reconcile_builds_runs:
                on_listed = listener.reconcile
            watchers.append(
                ResourceListWatcher(
                    kind,
                    namespaces,
                    watch.interval_for(kind),
                    client_provider,
                    pool,
                    name_filter=name_filter,
                    on_listed=on_listed,
                )
            )
        return watchers

    supervisor_kwargs: dict[str, Any] = {"client_factory": client_factory}
    if readiness_probe is not None:
        supervisor_kwargs["readiness_probe"] = readiness_probe
    supervisor = WatcherSupervisor(pool, build_watchers, **supervisor_kwargs)

    return BuildSyncContext(
        config=config,
        timer_pool=pool,
        registry=registry,
        log_shipper=log_shipper,
        upserter=upserter,
        listener=listener,
        supervisor=supervisor,
    )


def bootstrap(parsed: argparse.Namespace) -> BuildSyncContext:
    """Load configuration, set up logging and wire the components.

    Args:
        parsed: Parsed command-line arguments.

    Returns:
        BuildSyncContext for the standalone daemon.
    """
    config = load_config(parsed.env_file)
    config = apply_cli_overrides(config, parsed)

    logging_config = config.logging_config
    setup_logging(
        logging_config.level,
        json_format=logging_config.json,
        diagnostic_tags=logging_config.diagnostic_tags,
    )

    logger.info(
        "Loaded configuration: enabled=%s, poll interval %.2fs",
        config.enabled,
        config.sync.poll_interval,
    )
    return create_build_sync(config)


__all__ = [
    "BuildSyncContext",
    "apply_cli_overrides",
    "bootstrap",
    "create_build_sync",
]
