"""Tests for incremental log shipping."""

from __future__ import annotations

import pytest

from buildsync.cluster_client import ClusterClientError
from buildsync.constants import LOG_CONTENT_ANNOTATION_PREFIX
from buildsync.log_shipper import LogShipper, LogState, log_annotation_key, strip_console_notes
from buildsync.types import ShipOutcome
from tests.helpers import not_found_error, server_error
from tests.mocks import FakeClusterClient, FakeRun


class TestStripConsoleNotes:
    """Tests for strip_console_notes."""

    def test_removes_embedded_note(self) -> None:
        line = "Started by \x1b[8mha:AAAAlh+LCAAAAAAAAP9b\x1b[0muser admin"
        assert strip_console_notes(line) == "Started by user admin"

    def test_removes_several_notes(self) -> None:
        line = "\x1b[8mha:one\x1b[0ma\x1b[8mha:two\x1b[0mb"
        assert strip_console_notes(line) == "ab"

    def test_plain_line_unchanged(self) -> None:
        assert strip_console_notes("plain \x1b[0m text") == "plain \x1b[0m text"


class TestLogState:
    """Tests for LogState bookkeeping."""

    def test_new_lines_after_emitted_prefix(self) -> None:
        state = LogState()
        state.commit(["a", "b"], 1)
        assert state.new_lines(["a", "b", "c", "b"]) == ["c", "b"]

    def test_new_lines_falls_back_to_content_when_prefix_changed(self) -> None:
        state = LogState()
        state.commit(["a", "b"], 1)
        assert state.new_lines(["x", "b", "a", "c"]) == ["x", "c"]

    def test_next_index_strictly_increasing(self) -> None:
        state = LogState()
        state.commit(["a"], 500)
        assert state.next_index(lambda: 100) == 501
        assert state.next_index(lambda: 900) == 900


class TestLogShipperShip:
    """Tests for LogShipper.ship."""

    def test_skips_run_without_registered_state(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["hello"])

        assert log_shipper.ship(run) is ShipOutcome.SKIPPED
        assert cluster_client.patches == []

    def test_skips_run_without_cause(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(cause=None, log_lines=["hello"])
        log_shipper.register(run)

        assert log_shipper.ship(run) is ShipOutcome.SKIPPED
        assert run.log_reads == 0

    def test_ships_new_lines_as_one_annotation(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["hello", "world"])
        log_shipper.register(run)

        assert log_shipper.ship(run) is ShipOutcome.SHIPPED

        chunks = cluster_client.log_chunks()
        assert list(chunks.values()) == ["hello\nworld\n"]
        (key,) = chunks
        assert key.startswith(LOG_CONTENT_ANNOTATION_PREFIX)

    def test_second_ship_without_new_lines_is_noop(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)
        log_shipper.ship(run)

        assert log_shipper.ship(run) is ShipOutcome.NOTHING_NEW
        assert len(cluster_client.patches) == 1
        assert len(cluster_client.log_chunks()) == 1

    def test_only_appended_lines_are_shipped(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        """Test that each appended line is shipped exactly once."""
        run = FakeRun(log_lines=["one"])
        log_shipper.register(run)
        log_shipper.ship(run)
        run.append_log("two", "three")
        log_shipper.ship(run)
        run.append_log("four")
        log_shipper.ship(run)

        payloads = [
            next(iter(patch["metadata"]["annotations"].values()))
            for _, _, patch in cluster_client.patches
        ]
        assert payloads == ["one\n", "two\nthree\n", "four\n"]
        state = log_shipper.state_for(run)
        assert state is not None
        assert state.emitted_lines == ["one", "two", "three", "four"]

    def test_repeated_line_content_is_shipped_again_when_appended(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["step"])
        log_shipper.register(run)
        log_shipper.ship(run)
        run.append_log("step")

        assert log_shipper.ship(run) is ShipOutcome.SHIPPED
        assert sorted(cluster_client.log_chunks().values()) == ["step\n", "step\n"]

    def test_console_notes_stripped_from_payload(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["Started by \x1b[8mha:xyz\x1b[0muser"])
        log_shipper.register(run)

        log_shipper.ship(run)

        assert list(cluster_client.log_chunks().values()) == ["Started by user\n"]

    def test_chunk_indexes_increase(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["a"])
        log_shipper.register(run)
        log_shipper.ship(run)
        run.append_log("b")
        log_shipper.ship(run)

        state = log_shipper.state_for(run)
        assert state is not None
        indexes = [int(index) for index in state.chunk_indexes]
        assert indexes == sorted(indexes)
        assert len(set(indexes)) == 2

    def test_stalled_clock_still_yields_unique_indexes(
        self, cluster_client: FakeClusterClient
    ) -> None:
        shipper = LogShipper(lambda: cluster_client, clock_ns=lambda: 42)
        run = FakeRun(log_lines=["a"])
        shipper.register(run)
        shipper.ship(run)
        run.append_log("b")
        shipper.ship(run)

        assert set(cluster_client.log_chunks()) == {
            log_annotation_key("42"),
            log_annotation_key("43"),
        }

    def test_read_failure_is_retried_next_time(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)
        run.log_error = OSError("log missing")

        assert log_shipper.ship(run) is ShipOutcome.READ_FAILED
        assert cluster_client.patches == []

        run.log_error = None
        assert log_shipper.ship(run) is ShipOutcome.SHIPPED

    def test_failed_patch_is_retried_with_same_lines(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        """Test that a failed shipment leaves state untouched for the retry."""
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)
        cluster_client.fail_next_patch(server_error())

        with pytest.raises(ClusterClientError):
            log_shipper.ship(run)

        state = log_shipper.state_for(run)
        assert state is not None
        assert state.emitted_lines == []
        assert state.chunk_indexes == []

        assert log_shipper.ship(run) is ShipOutcome.SHIPPED
        assert list(cluster_client.log_chunks().values()) == ["hello\n"]

    def test_missing_build_discards_state(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["hello"])
        log_shipper.register(run)
        cluster_client.fail_next_patch(not_found_error())

        assert log_shipper.ship(run) is ShipOutcome.RESOURCE_GONE
        assert log_shipper.state_for(run) is None

    def test_register_keeps_existing_state(self, log_shipper: LogShipper) -> None:
        run = FakeRun(log_lines=["hello"])
        first = log_shipper.register(run)
        first.commit(["hello"], 1)

        assert log_shipper.register(run) is first
        assert log_shipper.tracked_count() == 1


class TestLogShipperPurge:
    """Tests for LogShipper.purge."""

    def test_purge_removes_every_created_chunk_and_nothing_else(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["a"])
        log_shipper.register(run)
        log_shipper.ship(run)
        run.append_log("b")
        log_shipper.ship(run)
        cluster_client.patch_build(
            "demo", "b1", {"metadata": {"annotations": {"example.com/other": "keep"}}}
        )

        removed = log_shipper.purge(run)

        assert removed == 2
        assert cluster_client.log_chunks() == {}
        assert cluster_client.annotations() == {"example.com/other": "keep"}
        removal_patches = cluster_client.patches[-2:]
        for _, _, patch in removal_patches:
            (value,) = patch["metadata"]["annotations"].values()
            assert value is None

    def test_purge_tolerates_missing_build(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["a"])
        log_shipper.register(run)
        log_shipper.ship(run)
        run.append_log("b")
        log_shipper.ship(run)
        cluster_client.missing.add(("demo", "b1"))
        patches_before = len(cluster_client.patches)

        assert log_shipper.purge(run) == 0
        assert len(cluster_client.patches) == patches_before + 1
        state = log_shipper.state_for(run)
        assert state is not None
        assert state.chunk_indexes == []

    def test_purge_keeps_unremoved_chunks_on_error(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun(log_lines=["a"])
        log_shipper.register(run)
        log_shipper.ship(run)
        cluster_client.fail_next_patch(server_error())

        with pytest.raises(ClusterClientError):
            log_shipper.purge(run)

        state = log_shipper.state_for(run)
        assert state is not None
        assert len(state.chunk_indexes) == 1

    def test_purge_without_state_is_noop(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        assert log_shipper.purge(FakeRun()) == 0
        assert cluster_client.patches == []

    def test_discard_drops_state_without_remote_calls(
        self, log_shipper: LogShipper, cluster_client: FakeClusterClient
    ) -> None:
        run = FakeRun()
        log_shipper.register(run)

        log_shipper.discard(run)

        assert log_shipper.state_for(run) is None
        assert cluster_client.patches == []
