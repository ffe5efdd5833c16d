"""Status upserts: write a run's state onto its Build resource.

One upsert resolves the CI root URL for the Build's namespace, builds the
run's page and log URLs, rewrites the rendered run detail so every link is
absolute, ships any new log lines, and finally applies a single merge patch
carrying the annotations and ``status`` fields.

Removed and rejected Builds are reported through ``UpsertOutcome`` rather
than raised; the caller decides what to untrack. Every other cluster error
propagates.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeAlias

from buildsync.cluster_client import ClusterClient, ClusterClientError
from buildsync.constants import (
    ANNOTATION_BUILD_URI,
    ANNOTATION_CONSOLE_LOG_URL,
    ANNOTATION_DASHBOARD_LOG_URL,
    ANNOTATION_LOG_URL,
    ANNOTATION_STATUS_JSON,
    CONSOLE_PATH,
    CONSOLE_TEXT_PATH,
    DEFAULT_MAX_STATUS_JSON_BYTES,
)
from buildsync.log_shipper import LogShipper
from buildsync.logging import get_logger
from buildsync.phases import run_to_build_phase
from buildsync.types import Run, ShipOutcome, UpsertOutcome
from buildsync.urls import absolutize_run_links, join_paths

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Returns the dashboard path of a run relative to the CI root, or None
DashboardUrlResolver: TypeAlias = Callable[[Run], str | None]


class StatusEncodingError(ValueError):
    """Raised when a run detail blob cannot be encoded within the size limit."""


def format_timestamp(epoch_ms: int) -> str:
    """Format epoch milliseconds as a UTC timestamp with second precision."""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=UTC).strftime(TIMESTAMP_FORMAT)


def run_timestamps(run: Run) -> tuple[str | None, str | None]:
    """Start and completion timestamps of a run.

    The start is known once ``start_time_ms`` is positive. Completion is
    start plus duration and is only known once the duration is positive.
    """
    start_ms = run.start_time_ms
    if start_ms <= 0:
        return None, None
    start = format_timestamp(start_ms)
    completion = format_timestamp(start_ms + run.duration_ms) if run.duration_ms > 0 else None
    return start, completion


def encode_status_json(detail: Mapping[str, Any], max_bytes: int) -> str:
    """Encode a run detail blob for the status annotation.

    When the full encoding exceeds ``max_bytes``, the per-stage flow nodes
    are dropped and the blob is encoded again.

    Raises:
        StatusEncodingError: If the blob is still too large without flow nodes.
        TypeError: If the blob holds values JSON cannot represent.
        ValueError: If the blob is circular or holds non-finite floats.
    """
    encoded = json.dumps(detail, allow_nan=False)
    if len(encoded.encode("utf-8")) <= max_bytes:
        return encoded

    trimmed = dict(detail)
    stages = trimmed.get("stages")
    if isinstance(stages, list):
        trimmed["stages"] = [
            {k: v for k, v in stage.items() if k != "stageFlowNodes"}
            if isinstance(stage, dict)
            else stage
            for stage in stages
        ]
    encoded = json.dumps(trimmed, allow_nan=False)
    size = len(encoded.encode("utf-8"))
    if size > max_bytes:
        raise StatusEncodingError(f"status json is {size} bytes, limit is {max_bytes}")
    logger.debug("Dropped stage flow nodes to fit status json in %d bytes", max_bytes)
    return encoded


class BuildStatusUpserter:
    """Computes and applies the status patch for a run.

    The upserter holds no per-run state. Callers serialize upserts of the
    same run; upserts of different runs may run concurrently.
    """

    def __init__(
        self,
        client_provider: Callable[[], ClusterClient],
        log_shipper: LogShipper,
        dashboard_url_resolver: DashboardUrlResolver | None = None,
        max_status_json_bytes: int = DEFAULT_MAX_STATUS_JSON_BYTES,
    ) -> None:
        """Initialize the upserter.

        Args:
            client_provider: Returns the current cluster client.
            log_shipper: Ships new log lines ahead of each status patch.
            dashboard_url_resolver: Optional lookup of a run's dashboard
                page. Absent when no dashboard is installed.
            max_status_json_bytes: Size limit of the status json annotation.
        """
        self._client_provider = client_provider
        self._log_shipper = log_shipper
        self._dashboard_url_resolver = dashboard_url_resolver
        self._max_status_json_bytes = max_status_json_bytes

    def _dashboard_url(self, run: Run, root_url: str) -> str | None:
        if self._dashboard_url_resolver is None:
            return None
        try:
            path = self._dashboard_url_resolver(run)
        except Exception as e:
            # An absent or broken dashboard never blocks the status patch
            logger.debug("Dashboard URL lookup failed for %s: %s", run.display_key, e)
            return None
        if not path:
            return None
        return join_paths(root_url, path)

    def build_patch(
        self,
        run: Run,
        root_url: str,
        status_json: str,
    ) -> dict[str, Any]:
        """Assemble the merge patch for a run."""
        build_url = join_paths(root_url, run.url)
        annotations: dict[str, str] = {
            ANNOTATION_STATUS_JSON: status_json,
            ANNOTATION_BUILD_URI: build_url,
            ANNOTATION_LOG_URL: join_paths(build_url, CONSOLE_TEXT_PATH),
            ANNOTATION_CONSOLE_LOG_URL: join_paths(build_url, CONSOLE_PATH),
        }
        dashboard_url = self._dashboard_url(run, root_url)
        if dashboard_url:
            annotations[ANNOTATION_DASHBOARD_LOG_URL] = dashboard_url

        start, completion = run_timestamps(run)
        return {
            "metadata": {"annotations": annotations},
            "status": {
                "phase": str(run_to_build_phase(run)),
                "startTimestamp": start,
                "completionTimestamp": completion,
            },
        }

    def upsert(self, run: Run, detail: Mapping[str, Any]) -> UpsertOutcome:
        """Write the current state of a run onto its Build.

        Args:
            run: The run to synchronize.
            detail: Rendered run detail blob (stage view layout).

        Returns:
            ``SKIPPED`` for runs without a trigger cause,
            ``SERIALIZATION_FAILED`` when the detail cannot be encoded,
            ``RESOURCE_GONE`` when the Build no longer exists,
            ``REJECTED`` when the Build refused the patch, else ``APPLIED``.

        Raises:
            ClusterClientError: For any other cluster failure.
        """
        cause = run.cause
        if cause is None:
            return UpsertOutcome.SKIPPED

        run_logger = logger.with_context(
            namespace=cause.namespace, build=cause.name, run=run.display_key
        )

        try:
            root_url = self._client_provider().resolve_root_url(cause.namespace)
            rewritten = absolutize_run_links(detail, root_url)
            try:
                status_json = encode_status_json(rewritten, self._max_status_json_bytes)
            except (TypeError, ValueError) as e:
                run_logger.error("Failed to serialize status of %s: %s", run.display_key, e)
                return UpsertOutcome.SERIALIZATION_FAILED

            patch = self.build_patch(run, root_url, status_json)

            if self._log_shipper.ship(run) is ShipOutcome.RESOURCE_GONE:
                return UpsertOutcome.RESOURCE_GONE

            self._client_provider().patch_build(cause.namespace, cause.name, patch)
        except ClusterClientError as e:
            if e.is_not_found:
                run_logger.warning(
                    "Build %s/%s no longer exists: %s", cause.namespace, cause.name, e
                )
                return UpsertOutcome.RESOURCE_GONE
            if e.is_unprocessable:
                run_logger.warning(
                    "Build %s/%s rejected status patch: %s", cause.namespace, cause.name, e
                )
                return UpsertOutcome.REJECTED
            raise

        run_logger.debug(
            "Applied phase %s to build %s/%s",
            patch["status"]["phase"],
            cause.namespace,
            cause.name,
            extra={"diagnostic_tag": "polling"},
        )
        return UpsertOutcome.APPLIED


__all__ = [
    "BuildStatusUpserter",
    "DashboardUrlResolver",
    "StatusEncodingError",
    "encode_status_json",
    "format_timestamp",
    "run_timestamps",
]
