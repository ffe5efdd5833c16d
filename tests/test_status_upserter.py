"""Tests for the Build status upserter."""

from __future__ import annotations

import json
import logging
import math

import pytest

from buildsync.cluster_client import ClusterClientError
from buildsync.constants import (
    ANNOTATION_BUILD_URI,
    ANNOTATION_CONSOLE_LOG_URL,
    ANNOTATION_DASHBOARD_LOG_URL,
    ANNOTATION_LOG_URL,
    ANNOTATION_STATUS_JSON,
)
from buildsync.log_shipper import LogShipper
from buildsync.status_upserter import (
    BuildStatusUpserter,
    StatusEncodingError,
    encode_status_json,
    format_timestamp,
    run_timestamps,
)
from buildsync.types import RunResult, UpsertOutcome
from tests.helpers import make_detail, not_found_error, server_error, unprocessable_error
from tests.mocks import FakeClusterClient, FakeRun

# 2024-03-01T12:00:00Z
START_MS = 1_709_294_400_000


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_format_timestamp_is_utc_seconds(self) -> None:
        assert format_timestamp(START_MS + 999) == "2024-03-01T12:00:00Z"

    def test_no_timestamps_before_start(self) -> None:
        assert run_timestamps(FakeRun(start_time_ms=0, duration_ms=5000)) == (None, None)

    def test_start_only_while_running(self) -> None:
        run = FakeRun(start_time_ms=START_MS, duration_ms=0)
        assert run_timestamps(run) == ("2024-03-01T12:00:00Z", None)

    def test_completion_is_start_plus_duration(self) -> None:
        run = FakeRun(start_time_ms=START_MS, duration_ms=90_000)
        assert run_timestamps(run) == ("2024-03-01T12:00:00Z", "2024-03-01T12:01:30Z")


class TestEncodeStatusJson:
    """Tests for encode_status_json."""

    def test_small_blob_encoded_whole(self) -> None:
        detail = make_detail()
        assert json.loads(encode_status_json(detail, 1_000_000)) == detail

    def test_oversize_blob_drops_flow_nodes(self) -> None:
        detail = make_detail(stage_count=2, nodes_per_stage=50)
        full_size = len(json.dumps(detail))

        encoded = json.loads(encode_status_json(detail, full_size // 2))

        assert [stage["id"] for stage in encoded["stages"]] == ["10", "11"]
        assert all("stageFlowNodes" not in stage for stage in encoded["stages"])
        assert "stageFlowNodes" in detail["stages"][0]

    def test_still_oversize_raises(self) -> None:
        with pytest.raises(StatusEncodingError):
            encode_status_json(make_detail(), 10)

    def test_unserializable_value_raises_type_error(self) -> None:
        with pytest.raises(TypeError):
            encode_status_json({"value": object()}, 1_000)

    def test_non_finite_float_raises_value_error(self) -> None:
        with pytest.raises(ValueError):
            encode_status_json({"value": math.nan}, 1_000)


class TestBuildStatusUpserter:
    """Tests for BuildStatusUpserter.upsert."""

    def test_applies_annotations_and_status(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(start_time_ms=START_MS, url="job/demo/1/")

        outcome = upserter.upsert(run, make_detail())

        assert outcome is UpsertOutcome.APPLIED
        annotations = cluster_client.annotations()
        assert annotations[ANNOTATION_BUILD_URI] == "https://jenkins.example.com/job/demo/1/"
        assert annotations[ANNOTATION_LOG_URL] == (
            "https://jenkins.example.com/job/demo/1/consoleText"
        )
        assert annotations[ANNOTATION_CONSOLE_LOG_URL] == (
            "https://jenkins.example.com/job/demo/1/console"
        )
        assert ANNOTATION_DASHBOARD_LOG_URL not in annotations
        assert cluster_client.status() == {
            "phase": "Running",
            "startTimestamp": "2024-03-01T12:00:00Z",
        }
        # A null completion timestamp is sent explicitly
        (status_patch,) = cluster_client.status_patches()
        assert status_patch["status"]["completionTimestamp"] is None

    def test_status_json_links_are_absolute(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        upserter.upsert(FakeRun(), make_detail())

        status = json.loads(cluster_client.annotations()[ANNOTATION_STATUS_JSON])
        assert status["_links"]["self"]["href"] == (
            "https://jenkins.example.com/job/demo/1/wfapi/describe"
        )
        node = status["stages"][0]["stageFlowNodes"][0]
        assert node["_links"]["log"]["href"].startswith("https://jenkins.example.com/job/")

    def test_completed_run_gets_both_timestamps(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(start_time_ms=START_MS)
        run.finish(RunResult.SUCCESS, duration_ms=60_000)

        upserter.upsert(run, make_detail())

        assert cluster_client.status() == {
            "phase": "Complete",
            "startTimestamp": "2024-03-01T12:00:00Z",
            "completionTimestamp": "2024-03-01T12:01:00Z",
        }

    def test_run_without_cause_is_skipped(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        assert upserter.upsert(FakeRun(cause=None), make_detail()) is UpsertOutcome.SKIPPED
        assert cluster_client.patches == []

    def test_ships_logs_before_status_patch(
        self,
        upserter: BuildStatusUpserter,
        log_shipper: LogShipper,
        cluster_client: FakeClusterClient,
    ) -> None:
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)

        upserter.upsert(run, make_detail())

        first, second = (patch for _, _, patch in cluster_client.patches)
        assert "status" not in first
        assert "status" in second

    def test_dashboard_url_added_when_resolved(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        upserter = BuildStatusUpserter(
            lambda: cluster_client,
            log_shipper,
            dashboard_url_resolver=lambda run: "blue/organizations/jenkins/demo/detail/demo/1/",
        )

        upserter.upsert(FakeRun(), make_detail())

        assert cluster_client.annotations()[ANNOTATION_DASHBOARD_LOG_URL] == (
            "https://jenkins.example.com/blue/organizations/jenkins/demo/detail/demo/1/"
        )

    def test_dashboard_lookup_failure_is_ignored(
        self,
        log_shipper: LogShipper,
        cluster_client: FakeClusterClient,
        buildsync_caplog: pytest.LogCaptureFixture,
    ) -> None:
        def broken_resolver(run: object) -> str:
            raise LookupError("dashboard not installed")

        upserter = BuildStatusUpserter(
            lambda: cluster_client, log_shipper, dashboard_url_resolver=broken_resolver
        )

        assert upserter.upsert(FakeRun(), make_detail()) is UpsertOutcome.APPLIED
        assert ANNOTATION_DASHBOARD_LOG_URL not in cluster_client.annotations()
        records = [r for r in buildsync_caplog.records if "Dashboard URL lookup" in r.message]
        assert records and records[0].levelno == logging.DEBUG

    def test_serialization_failure_applies_nothing(
        self,
        upserter: BuildStatusUpserter,
        cluster_client: FakeClusterClient,
        buildsync_caplog: pytest.LogCaptureFixture,
    ) -> None:
        outcome = upserter.upsert(FakeRun(), {"bad": object()})

        assert outcome is UpsertOutcome.SERIALIZATION_FAILED
        assert cluster_client.patches == []
        assert any(r.levelno == logging.ERROR for r in buildsync_caplog.records)

    def test_oversize_status_is_serialization_failure(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        upserter = BuildStatusUpserter(lambda: cluster_client, log_shipper, max_status_json_bytes=8)

        assert upserter.upsert(FakeRun(), make_detail()) is UpsertOutcome.SERIALIZATION_FAILED
        assert cluster_client.patches == []

    def test_missing_build_reported_as_gone(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        cluster_client.fail_next_patch(not_found_error())

        assert upserter.upsert(FakeRun(), make_detail()) is UpsertOutcome.RESOURCE_GONE

    def test_missing_build_found_by_log_shipment_skips_status_patch(
        self,
        upserter: BuildStatusUpserter,
        log_shipper: LogShipper,
        cluster_client: FakeClusterClient,
    ) -> None:
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)
        cluster_client.missing.add(("demo", "b1"))

        assert upserter.upsert(run, make_detail()) is UpsertOutcome.RESOURCE_GONE
        assert len(cluster_client.patches) == 1
        assert cluster_client.status_patches() == []

    def test_rejected_patch_reported(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        cluster_client.fail_next_patch(unprocessable_error())

        assert upserter.upsert(FakeRun(), make_detail()) is UpsertOutcome.REJECTED

    def test_other_errors_propagate(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        cluster_client.fail_next_patch(server_error())

        with pytest.raises(ClusterClientError) as exc_info:
            upserter.upsert(FakeRun(), make_detail())

        assert exc_info.value.status_code == 500

    def test_root_url_failure_propagates(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        cluster_client.root_url_error = ClusterClientError("connection refused")

        with pytest.raises(ClusterClientError):
            upserter.upsert(FakeRun(), make_detail())
        assert cluster_client.patches == []

    def test_root_url_resolved_for_cause_namespace(
        self, upserter: BuildStatusUpserter, cluster_client: FakeClusterClient
    ) -> None:
        upserter.upsert(FakeRun(), make_detail())

        assert cluster_client.root_url_calls == ["demo"]
