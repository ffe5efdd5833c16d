"""Watcher supervisor: one owner for every long-lived sync subsystem.

Every configuration change is applied as a single transition:

1. Any pending startup is cancelled and every running watcher is stopped.
   Each stop is attempted even when another one fails.
2. When disabled, the cluster client is closed and dropped.
3. When enabled, a new cluster client replaces the old one, the namespace
   set is resolved, and a startup task is scheduled on the timer pool.
4. The startup task waits until the host reports it is ready, then builds
   and starts the watchers.

Watchers call the cluster and mutate host state, so none is started before
the host finished its own initialization. Readiness is polled from the timer
pool; the thread calling ``apply`` never blocks on it.

A transition supersedes every earlier one. A startup task belonging to an
older transition does nothing, and watchers it started after being
superseded are stopped again.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from typing import TypeAlias

from buildsync.cluster_client import ClusterClient, ClusterClientError
from buildsync.config import Config
from buildsync.logging import get_logger
from buildsync.timers import ScheduledTask, TimerPool
from buildsync.watchers import Watcher

logger = get_logger(__name__)

# Builds the watchers for a configuration and its resolved namespaces
WatcherFactory: TypeAlias = Callable[[Config, tuple[str, ...]], Sequence[Watcher]]
ClientFactory: TypeAlias = Callable[[Config], ClusterClient]
ReadinessProbe: TypeAlias = Callable[[], bool]


def create_cluster_client(config: Config) -> ClusterClient:
    """Build a cluster client from configuration.

    Raises:
        OSError: If the token file cannot be read.
    """
    cluster = config.cluster
    return ClusterClient(
        cluster.server,
        cluster.resolve_token(),
        default_namespace=cluster.default_namespace,
        jenkins_route=config.sync.jenkins_route,
        fallback_root_url=config.sync.jenkins_root_url,
        root_url_cache_ttl=config.sync.root_url_cache_ttl,
        timeout=cluster.request_timeout,
        verify=cluster.verify_tls,
    )


def _always_ready() -> bool:
    return True


class WatcherSupervisor:
    """Starts and stops the watchers as configuration changes.

    Thread Safety:
        ``apply``, ``stop_all`` and ``shutdown`` are serialized. ``client()``
        may be called from any thread at any time.
    """

    def __init__(
        self,
        timer_pool: TimerPool,
        watcher_factory: WatcherFactory,
        readiness_probe: ReadinessProbe = _always_ready,
        client_factory: ClientFactory = create_cluster_client,
    ) -> None:
        """Initialize the supervisor.

        Args:
            timer_pool: Pool running the startup task.
            watcher_factory: Builds the watchers to start for a transition.
            readiness_probe: Returns True once the host finished starting.
            client_factory: Builds the cluster client for a configuration.
        """
        self._timer_pool = timer_pool
        self._watcher_factory = watcher_factory
        self._readiness_probe = readiness_probe
        self._client_factory = client_factory

        self._transition_lock = threading.RLock()
        self._lock = threading.Lock()
        self._generation = 0
        self._client: ClusterClient | None = None
        self._watchers: list[Watcher] = []
        self._namespaces: tuple[str, ...] = ()
        self._startup_task: ScheduledTask | None = None

    def client(self) -> ClusterClient:
        """Current cluster client.

        Raises:
            ClusterClientError: If build sync is disabled or not configured.
        """
        with self._lock:
            client = self._client
        if client is None:
            raise ClusterClientError("Build sync is not connected to a cluster")
        return client

    @property
    def watchers(self) -> list[Watcher]:
        """Watchers started by the current transition."""
        with self._lock:
            return list(self._watchers)

    @property
    def namespaces(self) -> tuple[str, ...]:
        with self._lock:
            return self._namespaces

    @property
    def startup_pending(self) -> bool:
        with self._lock:
            return self._startup_task is not None

    def apply(self, config: Config) -> None:
        """Apply a configuration as one start/stop transition."""
        with self._transition_lock:
            generation = self._stop_current()
            if not config.enabled:
                self._replace_client(None)
                logger.info("Build sync disabled, all watchers stopped")
                return

            try:
                client = self._client_factory(config)
            except (OSError, ValueError, ClusterClientError) as e:
                logger.error(
                    "Failed to create cluster client: %s",
                    e,
                    extra={"error_type": type(e).__name__},
                )
                self._replace_client(None)
                return
            self._replace_client(client)

            namespaces = config.namespaces or (client.default_namespace(),)
            with self._lock:
                self._namespaces = namespaces
            logger.info(
                "Build sync enabled for namespaces: %s; waiting for host startup",
                ", ".join(namespaces),
            )
            self._schedule_startup(
                config, namespaces, generation, config.sync.startup_initial_delay
            )

    def stop_all(self) -> None:
        """Stop every watcher and release the cluster client."""
        with self._transition_lock:
            self._stop_current()
            self._replace_client(None)

    def shutdown(self) -> None:
        """Stop everything, including the timer pool."""
        self.stop_all()
        self._timer_pool.shutdown()

    def _stop_current(self) -> int:
        """Supersede the current transition and stop its watchers.

        Returns:
            The generation of the new transition.
        """
        with self._lock:
            self._generation += 1
            generation = self._generation
            task = self._startup_task
            self._startup_task = None
            watchers = self._watchers
            self._watchers = []
        if task is not None:
            task.cancel()
        self._stop_watchers(watchers)
        return generation

    def _stop_watchers(self, watchers: Sequence[Watcher]) -> None:
        for watcher in watchers:
            try:
                watcher.stop()
            except Exception:
                logger.exception("Failed to stop watcher %s", watcher.name)

    def _replace_client(self, client: ClusterClient | None) -> None:
        with self._lock:
            old = self._client
            self._client = client
        if old is not None:
            old.close()

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _schedule_startup(
        self,
        config: Config,
        namespaces: tuple[str, ...],
        generation: int,
        delay: float,
    ) -> None:
        with self._lock:
            if generation != self._generation:
                return
            try:
                self._startup_task = self._timer_pool.schedule(
                    lambda: self._startup(config, namespaces, generation),
                    delay,
                    name="watcher-startup",
                )
            except RuntimeError as e:
                self._startup_task = None
                logger.error("Cannot schedule watcher startup: %s", e)

    def _startup(self, config: Config, namespaces: tuple[str, ...], generation: int) -> None:
        if not self._is_current(generation):
            return

        try:
            ready = self._readiness_probe()
        except Exception:
            logger.exception("Readiness probe failed")
            ready = False
        if not ready:
            logger.debug(
                "Host not ready, checking again in %.2fs",
                config.sync.startup_poll_interval,
                extra={"diagnostic_tag": "startup"},
            )
            self._schedule_startup(
                config, namespaces, generation, config.sync.startup_poll_interval
            )
            return

        try:
            watchers = list(self._watcher_factory(config, namespaces))
        except Exception:
            logger.exception("Failed to create watchers")
            watchers = []

        started: list[Watcher] = []
        for watcher in watchers:
            try:
                watcher.start()
            except Exception:
                logger.exception("Failed to start watcher %s", watcher.name)
                continue
            started.append(watcher)

        with self._lock:
            superseded = generation != self._generation
            if not superseded:
                self._watchers = started
                self._startup_task = None
        if superseded:
            self._stop_watchers(started)
            return
        logger.info(
            "Started %d watchers: %s",
            len(started),
            ", ".join(watcher.name for watcher in started),
        )


__all__ = [
    "ClientFactory",
    "ReadinessProbe",
    "WatcherFactory",
    "WatcherSupervisor",
    "create_cluster_client",
]
