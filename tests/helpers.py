"""Test helper functions for Build Sync tests.

Usage
=====

Import and use helpers directly in tests::

    from tests.helpers import make_config, make_detail, not_found_error

    def test_example():
        config = make_config(poll_interval=0.5, namespaces=("demo",))
        detail = make_detail(stage_count=2)
        # ... use in test ...
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from buildsync.cluster_client import ClusterClientError
from buildsync.config import Config, SyncConfig, WatchConfig

NODE_PATH = "/job/demo/1/execution/node"


def make_config(
    enabled: bool = True,
    namespaces: tuple[str, ...] = (),
    watch: WatchConfig | None = None,
    **sync_overrides: Any,
) -> Config:
    """Create a Config with SyncConfig fields overridden by keyword."""
    config = Config(enabled=enabled, namespaces=namespaces)
    if sync_overrides:
        config = replace(config, sync=replace(SyncConfig(), **sync_overrides))
    if watch is not None:
        config = replace(config, watch=watch)
    return config


def make_detail(stage_count: int = 1, nodes_per_stage: int = 1) -> dict[str, Any]:
    """Create a stage view detail blob with relative links."""
    stages = []
    for stage_index in range(stage_count):
        stage_id = str(10 + stage_index)
        nodes = [
            {
                "id": f"{stage_id}-{node_index}",
                "name": f"step {node_index}",
                "_links": {
                    "self": {"href": f"{NODE_PATH}/{stage_id}{node_index}/wfapi/describe"},
                    "log": {"href": f"{NODE_PATH}/{stage_id}{node_index}/wfapi/log"},
                },
            }
            for node_index in range(nodes_per_stage)
        ]
        stages.append(
            {
                "id": stage_id,
                "name": f"stage {stage_index}",
                "_links": {"self": {"href": f"{NODE_PATH}/{stage_id}/wfapi/describe"}},
                "stageFlowNodes": nodes,
            }
        )
    return {
        "id": "1",
        "name": "#1",
        "_links": {"self": {"href": "/job/demo/1/wfapi/describe"}},
        "stages": stages,
    }


def not_found_error() -> ClusterClientError:
    return ClusterClientError("builds b1 not found", status_code=404)


def unprocessable_error() -> ClusterClientError:
    return ClusterClientError("Build.build.openshift.io b1 is invalid", status_code=422)


def server_error() -> ClusterClientError:
    return ClusterClientError("internal error", status_code=500)
