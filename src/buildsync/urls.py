"""URL helpers for links written to the Build resource."""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from typing import Any

_ABSOLUTE_URL = re.compile(r"^https?://.*$")


def join_paths(*parts: str | None) -> str:
    """Join URL parts with ``/`` without doubling separators.

    ``None`` parts are skipped. Runs of slashes collapse to one, a slash
    before ``?`` or ``#`` is dropped, and the scheme separator is kept
    intact.

    Example::

        >>> join_paths("https://ci.example.com/", "/job/demo/3/", "/console")
        'https://ci.example.com/job/demo/3/console'

    Args:
        *parts: URL fragments in order.

    Returns:
        The joined URL.
    """
    joined = "/".join(part for part in parts if part is not None)
    joined = re.sub(r"/+", "/", joined)
    joined = joined.replace("/?", "?").replace("/#", "#")
    return joined.replace(":/", "://")


def is_absolute_url(href: str) -> bool:
    """Return True if ``href`` already carries an http(s) scheme."""
    return bool(_ABSOLUTE_URL.match(href))


def _absolutize_link(links: dict[str, Any], rel: str, root_url: str) -> None:
    link = links.get(rel)
    if not isinstance(link, dict):
        return
    href = link.get("href")
    if isinstance(href, str) and not is_absolute_url(href):
        link["href"] = join_paths(root_url, href)


def _absolutize_node(node: dict[str, Any], root_url: str) -> None:
    links = node.get("_links")
    if isinstance(links, dict):
        _absolutize_link(links, "self", root_url)
        _absolutize_link(links, "log", root_url)


def absolutize_run_links(detail: Mapping[str, Any], root_url: str) -> dict[str, Any]:
    """Return a copy of a run detail blob with every relative link made absolute.

    The blob follows the pipeline stage view layout: a top level ``_links``
    object, a ``stages`` list, and a ``stageFlowNodes`` list per stage. Each
    of these carries ``_links.self`` and optionally ``_links.log``.

    Args:
        detail: Rendered run detail. Not modified.
        root_url: Externally reachable CI root URL.

    Returns:
        A deep copy with absolute ``href`` values.
    """
    rewritten: dict[str, Any] = copy.deepcopy(dict(detail))

    links = rewritten.get("_links")
    if isinstance(links, dict):
        _absolutize_link(links, "self", root_url)

    for stage in rewritten.get("stages") or []:
        if not isinstance(stage, dict):
            continue
        _absolutize_node(stage, root_url)
        for node in stage.get("stageFlowNodes") or []:
            if isinstance(node, dict):
                _absolutize_node(node, root_url)

    return rewritten
