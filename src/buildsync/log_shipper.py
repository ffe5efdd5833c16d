"""Incremental shipping of run console logs into Build annotations.

Each shipment adds one annotation ``LOG_CONTENT_ANNOTATION_PREFIX + <index>``
holding the lines that appeared since the previous shipment. Keeping every
shipment in its own annotation makes each chunk independently addressable,
so a purge can remove exactly the chunks this process created.

Delivery is at-least-once with dedupe: the lines of a shipment and its chunk
index are recorded only after the patch succeeds, inside the same critical
section, so a failed patch is retried on the next shipment and a line is
never shipped twice by successful shipments.
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from buildsync.cluster_client import ClusterClient, ClusterClientError
from buildsync.constants import LOG_CONTENT_ANNOTATION_PREFIX
from buildsync.logging import get_logger
from buildsync.types import Run, ShipOutcome

logger = get_logger(__name__)

# Console notes are hidden markup embedded in log lines by the CI engine:
# ESC[8mha:<base64 payload>ESC[0m
_CONSOLE_NOTE = re.compile(r"\x1b\[8mha:.*?\x1b\[0m", re.DOTALL)


def strip_console_notes(line: str) -> str:
    """Remove embedded console markup from a log line."""
    return _CONSOLE_NOTE.sub("", line)


def log_annotation_key(chunk_index: str) -> str:
    """Annotation key for one log shipment."""
    return f"{LOG_CONTENT_ANNOTATION_PREFIX}{chunk_index}"


@dataclass
class LogState:
    """Log shipping state for one run.

    Attributes:
        emitted_lines: Every line already shipped, in log order.
        chunk_indexes: One index per successful shipment, strictly increasing.
    """

    emitted_lines: list[str] = field(default_factory=list)
    chunk_indexes: list[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _last_index: int = 0

    def next_index(self, clock_ns: Callable[[], int]) -> int:
        """Next chunk index: a clock reading forced above the previous index."""
        return max(clock_ns(), self._last_index + 1)

    def commit(self, lines: list[str], index: int) -> None:
        self.emitted_lines.extend(lines)
        self.chunk_indexes.append(str(index))
        self._last_index = index

    def new_lines(self, current: list[str]) -> list[str]:
        """Lines of ``current`` not yet shipped, in order.

        Logs are append-only, so normally the emitted lines are a prefix of
        the current log and everything after that prefix is new. If the log
        no longer starts with that prefix, fall back to dropping lines whose
        content was already emitted.
        """
        emitted = self.emitted_lines
        if current[: len(emitted)] == emitted:
            return current[len(emitted) :]
        seen = set(emitted)
        return [line for line in current if line not in seen]


class LogShipper:
    """Ships new console log lines of tracked runs to their Build resources.

    Thread Safety:
        The state mapping is guarded by a map lock held only for lookups,
        inserts and removals. Shipping and purging hold the run's own
        ``LogState.lock``, so unrelated runs never serialize on each other.
    """

    def __init__(
        self,
        client_provider: Callable[[], ClusterClient],
        clock_ns: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        """Initialize the log shipper.

        Args:
            client_provider: Returns the current cluster client.
            clock_ns: Nanosecond clock used for chunk indexes.
        """
        self._client_provider = client_provider
        self._clock_ns = clock_ns
        self._states: dict[str, LogState] = {}
        self._states_lock = threading.Lock()

    def register(self, run: Run) -> LogState:
        """Create empty log state for a run. Existing state is kept."""
        with self._states_lock:
            state = self._states.get(run.display_key)
            if state is None:
                state = LogState()
                self._states[run.display_key] = state
            return state

    def state_for(self, run: Run) -> LogState | None:
        with self._states_lock:
            return self._states.get(run.display_key)

    def discard(self, run: Run) -> None:
        """Drop local state for a run without touching the remote resource."""
        with self._states_lock:
            self._states.pop(run.display_key, None)

    def tracked_count(self) -> int:
        with self._states_lock:
            return len(self._states)

    def _read_lines(self, run: Run) -> list[str]:
        with run.open_log() as log:
            return [strip_console_notes(line.rstrip("\r\n")) for line in log]

    def ship(self, run: Run) -> ShipOutcome:
        """Ship log lines that appeared since the previous shipment.

        Returns:
            ``SKIPPED`` when the run has no cause or no registered state,
            ``READ_FAILED`` when the log cannot be read, ``NOTHING_NEW``,
            ``SHIPPED``, or ``RESOURCE_GONE`` when the Build no longer exists
            (local state is discarded; the caller stops tracking the run).

        Raises:
            ClusterClientError: For remote failures other than not found.
        """
        cause = run.cause
        if cause is None:
            return ShipOutcome.SKIPPED
        state = self.state_for(run)
        if state is None:
            logger.debug(
                "No log state registered for %s, skipping shipment",
                run.display_key,
                extra={"diagnostic_tag": "logs"},
            )
            return ShipOutcome.SKIPPED

        run_logger = logger.with_context(
            namespace=cause.namespace, build=cause.name, run=run.display_key
        )

        with state.lock:
            try:
                current = self._read_lines(run)
            except OSError as e:
                run_logger.warning("Cannot read log of %s: %s", run.display_key, e)
                return ShipOutcome.READ_FAILED

            new_lines = state.new_lines(current)
            if not new_lines:
                return ShipOutcome.NOTHING_NEW

            index = state.next_index(self._clock_ns)
            payload = "".join(f"{line}\n" for line in new_lines)
            patch = {"metadata": {"annotations": {log_annotation_key(str(index)): payload}}}
            try:
                self._client_provider().patch_build(cause.namespace, cause.name, patch)
            except ClusterClientError as e:
                if e.is_not_found:
                    run_logger.warning(
                        "Build %s/%s no longer exists, dropping log state",
                        cause.namespace,
                        cause.name,
                    )
                    self.discard(run)
                    return ShipOutcome.RESOURCE_GONE
                raise
            state.commit(new_lines, index)

        run_logger.debug(
            "Shipped %d log lines as chunk %s",
            len(new_lines),
            index,
            extra={"diagnostic_tag": "logs"},
        )
        return ShipOutcome.SHIPPED

    def purge(self, run: Run) -> int:
        """Remove every log chunk annotation recorded for a run.

        One patch is issued per chunk index. A not-found response means the
        Build is gone along with its annotations, so the remaining chunks are
        considered clean.

        Returns:
            Number of chunk annotations removed.

        Raises:
            ClusterClientError: For remote failures other than not found.
                Chunks not yet removed stay recorded.
        """
        cause = run.cause
        state = self.state_for(run)
        if cause is None or state is None:
            logger.debug("Nothing to purge for %s", run.display_key)
            return 0

        removed = 0
        with state.lock:
            while state.chunk_indexes:
                index = state.chunk_indexes[0]
                patch = {"metadata": {"annotations": {log_annotation_key(index): None}}}
                try:
                    self._client_provider().patch_build(cause.namespace, cause.name, patch)
                except ClusterClientError as e:
                    if not e.is_not_found:
                        raise
                    state.chunk_indexes.clear()
                    break
                state.chunk_indexes.pop(0)
                removed += 1

        logger.with_context(namespace=cause.namespace, build=cause.name).info(
            "Purged %d log chunk annotations for %s", removed, run.display_key
        )
        return removed
