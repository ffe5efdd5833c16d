"""Mapping from CI run state to Build resource phase."""

from __future__ import annotations

from buildsync.types import BuildPhase, Run, RunResult

# Terminal results with a fixed phase. Anything else that finishes maps to
# Pending, which is not terminal, so the build keeps being polled.
_RESULT_PHASES: dict[RunResult, BuildPhase] = {
    RunResult.SUCCESS: BuildPhase.COMPLETE,
    RunResult.ABORTED: BuildPhase.CANCELLED,
    RunResult.FAILURE: BuildPhase.FAILED,
    RunResult.UNSTABLE: BuildPhase.FAILED,
}


def run_to_build_phase(run: Run | None) -> BuildPhase:
    """Compute the Build phase for a run.

    Rules, in order:

    - not started (or no run) -> ``New``
    - still running -> ``Running``
    - finished with SUCCESS -> ``Complete``
    - finished with ABORTED -> ``Cancelled``
    - finished with FAILURE or UNSTABLE -> ``Failed``
    - finished with any other result -> ``Pending``
    - finished with no result recorded yet -> ``New``

    Args:
        run: The run to inspect.

    Returns:
        The phase to write to the Build status.
    """
    if run is None or not run.has_started():
        return BuildPhase.NEW
    if run.is_running():
        return BuildPhase.RUNNING
    result = run.result
    if result is None:
        return BuildPhase.NEW
    return _RESULT_PHASES.get(result, BuildPhase.PENDING)
