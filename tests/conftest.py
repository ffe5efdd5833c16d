"""Shared pytest fixtures for Build Sync tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

import pytest

from buildsync.log_shipper import LogShipper
from buildsync.run_listener import BuildSyncRunListener
from buildsync.run_registry import RunRegistry
from buildsync.status_upserter import BuildStatusUpserter
from tests.mocks import FakeClusterClient, ManualTimerPool


@pytest.fixture(autouse=True)
def _clean_buildsync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove BUILDSYNC_* variables inherited from the environment."""
    for name in list(os.environ):
        if name.startswith("BUILDSYNC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cluster_client() -> FakeClusterClient:
    return FakeClusterClient()


@pytest.fixture
def timer_pool() -> ManualTimerPool:
    return ManualTimerPool()


@pytest.fixture
def log_shipper(cluster_client: FakeClusterClient) -> LogShipper:
    counter = iter(range(1_000, 1_000_000, 1_000))
    return LogShipper(lambda: cluster_client, clock_ns=lambda: next(counter))


@pytest.fixture
def upserter(cluster_client: FakeClusterClient, log_shipper: LogShipper) -> BuildStatusUpserter:
    return BuildStatusUpserter(lambda: cluster_client, log_shipper)


@pytest.fixture
def listener(
    upserter: BuildStatusUpserter,
    log_shipper: LogShipper,
    timer_pool: ManualTimerPool,
) -> BuildSyncRunListener:
    return BuildSyncRunListener(
        RunRegistry(),
        upserter,
        log_shipper,
        timer_pool,  # type: ignore[arg-type]
        poll_interval=1.0,
        finalize_grace_period=5.0,
    )


@pytest.fixture
def buildsync_caplog(caplog: pytest.LogCaptureFixture) -> Iterator[pytest.LogCaptureFixture]:
    """caplog capturing DEBUG records from the buildsync loggers."""
    with caplog.at_level(logging.DEBUG, logger="buildsync"):
        yield caplog
