"""Shared types for Build Sync.

This module defines the vocabulary shared between the CI engine side (runs,
their results and trigger causes) and the cluster side (build phases), plus
the outcome enums reported by the synchronization components.

The ``Run`` protocol is the boundary with the CI engine: hosts embed Build
Sync by passing objects satisfying it to the lifecycle listener callbacks.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, TextIO, runtime_checkable

# Execution kind of runs that are eligible for status synchronization.
WORKFLOW_RUN_KIND = "workflow"


class BuildPhase(StrEnum):
    """Phase shown on the Build resource status.

    The enum value is the exact string written to ``status.phase``.
    """

    NEW = "New"
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETE = "Complete"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class RunResult(StrEnum):
    """Terminal result reported by the CI engine for a finished run."""

    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    NOT_BUILT = "NOT_BUILT"
    ABORTED = "ABORTED"


class UpsertOutcome(StrEnum):
    """Result of one status upsert for a run."""

    APPLIED = "applied"
    SKIPPED = "skipped"  # run has no trigger cause
    SERIALIZATION_FAILED = "serialization_failed"
    RESOURCE_GONE = "resource_gone"  # remote build returned 404
    REJECTED = "rejected"  # remote build returned 422

    @property
    def drops_run(self) -> bool:
        """Whether the run must stop being synchronized this session."""
        return self in (UpsertOutcome.RESOURCE_GONE, UpsertOutcome.REJECTED)


class ShipOutcome(StrEnum):
    """Result of one log shipment for a run."""

    SHIPPED = "shipped"
    NOTHING_NEW = "nothing_new"
    SKIPPED = "skipped"  # no trigger cause or no registered log state
    READ_FAILED = "read_failed"
    RESOURCE_GONE = "resource_gone"


@dataclass(frozen=True)
class TriggerCause:
    """Links a run back to the Build resource that requested it.

    Attributes:
        namespace: Namespace of the Build resource.
        name: Name of the Build resource.
        source_url: Optional source repository URL fragment, for display only.
    """

    namespace: str
    name: str
    source_url: str | None = None

    @property
    def short_description(self) -> str:
        """Human-readable description set on the run."""
        description = f"OpenShift Build {self.namespace}/{self.name}"
        if self.source_url:
            description += f" from {self.source_url}"
        return description


@runtime_checkable
class Run(Protocol):
    """One execution of a CI job, as seen by the synchronization core.

    Attributes:
        display_key: Stable full display name, used as the key for all
            per-run auxiliary state.
        url: Location of the run relative to the CI root URL.
        kind: Execution kind; only ``WORKFLOW_RUN_KIND`` runs are tracked.
        start_time_ms: Start time in epoch milliseconds (0 when unknown).
        duration_ms: Duration in milliseconds (0 while running).
        result: Terminal result, or None while unknown.
        cause: Trigger cause, or None when the run was not requested by a
            Build resource.
    """

    display_key: str
    url: str
    kind: str
    start_time_ms: int
    duration_ms: int

    @property
    def result(self) -> RunResult | None: ...

    @property
    def cause(self) -> TriggerCause | None: ...

    def has_started(self) -> bool: ...

    def is_running(self) -> bool: ...

    def open_log(self) -> TextIO:
        """Open the run's console log, positioned at the start.

        Raises:
            OSError: If the log cannot be read.
        """
        ...

    def set_description(self, text: str) -> None:
        """Set the run's human-readable description.

        Raises:
            OSError: If the description cannot be persisted.
        """
        ...


__all__ = [
    "WORKFLOW_RUN_KIND",
    "BuildPhase",
    "Run",
    "RunResult",
    "ShipOutcome",
    "TriggerCause",
    "UpsertOutcome",
]
