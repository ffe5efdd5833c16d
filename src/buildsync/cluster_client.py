"""REST client for the cluster API hosting Build resources.

The client speaks plain HTTP to the API server using a bearer token. Writes
use JSON merge patches, so annotations are added by setting a key and
removed by setting it to ``null``.

Rate limiting (429) and temporary unavailability (503) are retried with
exponential backoff and jitter. Every other failure surfaces as a
``ClusterClientError`` carrying the HTTP status code when there is one, so
callers can tell "not found" and "unprocessable" apart from everything else.

A closed client fails every call with a status-less ``ClusterClientError``.
The watcher supervisor replaces the client wholesale on reconfiguration, and
calls still in flight against the discarded instance end this way.
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Self

import httpx
from cachetools import TTLCache

from buildsync.constants import (
    BUILD_API_GROUP_PATH,
    MERGE_PATCH_CONTENT_TYPE,
    ROUTE_API_GROUP_PATH,
    SERVICE_ACCOUNT_NAMESPACE_FILE,
)
from buildsync.logging import get_logger

logger = get_logger(__name__)

HTTP_NOT_FOUND = 404
HTTP_UNPROCESSABLE_ENTITY = 422
RETRYABLE_STATUS_CODES = frozenset({429, 503})

# In-cluster API server address used when no server is configured
IN_CLUSTER_SERVER = "https://kubernetes.default.svc"

# API paths for list-watched kinds
_KIND_PATHS: dict[str, str] = {
    "builds": f"{BUILD_API_GROUP_PATH}/namespaces/{{namespace}}/builds",
    "buildconfigs": f"{BUILD_API_GROUP_PATH}/namespaces/{{namespace}}/buildconfigs",
    "imagestreams": "/apis/image.openshift.io/v1/namespaces/{namespace}/imagestreams",
    "configmaps": "/api/v1/namespaces/{namespace}/configmaps",
    "secrets": "/api/v1/namespaces/{namespace}/secrets",
}


class ClusterClientError(Exception):
    """Raised when a cluster API call fails.

    Attributes:
        status_code: HTTP status of the failed response, or None for
            transport failures and calls on a closed client.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        """Whether the target resource does not exist."""
        return self.status_code == HTTP_NOT_FOUND

    @property
    def is_unprocessable(self) -> bool:
        """Whether the payload was rejected as semantically invalid."""
        return self.status_code == HTTP_UNPROCESSABLE_ENTITY


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts.
        initial_delay: Initial delay in seconds before first retry.
        max_delay: Maximum delay in seconds between retries.
        jitter_min: Minimum jitter multiplier.
        jitter_max: Maximum jitter multiplier.
    """

    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3


DEFAULT_RETRY_CONFIG = RetryConfig()


def _calculate_backoff_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """Calculate the delay before the next retry attempt.

    Args:
        attempt: Current retry attempt number (0-indexed).
        config: Retry configuration.
        retry_after: Optional Retry-After header value in seconds.

    Returns:
        Delay in seconds before next retry.
    """
    if retry_after is not None:
        base_delay = min(retry_after, config.max_delay)
    else:
        base_delay = min(config.initial_delay * (2**attempt), config.max_delay)
    return base_delay * random.uniform(config.jitter_min, config.jitter_max)


def _get_retry_after(response: httpx.Response) -> float | None:
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            logger.warning("Invalid Retry-After header value: %s", retry_after)
    return None


def _error_message(response: httpx.Response) -> str:
    """Extract the API status message from an error response, if any."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.reason_phrase


class ClusterClient:
    """Client for namespace-scoped Build, Route and list operations.

    Uses a lazily created, reusable ``httpx.Client`` for connection pooling.
    Safe to share between threads.
    """

    def __init__(
        self,
        server: str,
        token: str = "",
        *,
        default_namespace: str = "",
        jenkins_route: str = "jenkins",
        fallback_root_url: str = "",
        root_url_cache_ttl: float = 60.0,
        timeout: float = 10.0,
        verify: bool = True,
        retry_config: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the cluster client.

        Args:
            server: API server base URL; empty selects the in-cluster address.
            token: Bearer token, or empty for anonymous access.
            default_namespace: Namespace returned by ``default_namespace()``
                when set.
            jenkins_route: Name of the route exposing the CI server.
            fallback_root_url: Root URL used when the route cannot be found.
            root_url_cache_ttl: Seconds a resolved root URL is reused.
            timeout: Request timeout in seconds.
            verify: Whether to verify TLS certificates.
            retry_config: Retry configuration for 429/503 responses.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
            sleep: Sleep function used between retries.
        """
        self.server = (server or IN_CLUSTER_SERVER).rstrip("/")
        self._token = token
        self._default_namespace = default_namespace
        self._jenkins_route = jenkins_route
        self._fallback_root_url = fallback_root_url
        self._timeout = httpx.Timeout(timeout)
        self._verify = verify
        self._retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.Client | None = None
        self._closed = False
        self._lock = threading.Lock()
        self._root_urls: TTLCache[str, str] = TTLCache(
            maxsize=256, ttl=max(root_url_cache_ttl, 0.001)
        )
        self._root_urls_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._closed:
                raise ClusterClientError("Cluster client has been closed")
            if self._client is None:
                headers = {"Accept": "application/json"}
                if self._token:
                    headers["Authorization"] = f"Bearer {self._token}"
                self._client = httpx.Client(
                    base_url=self.server,
                    headers=headers,
                    timeout=self._timeout,
                    verify=self._verify,
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        """Close the HTTP client. Later calls raise ``ClusterClientError``."""
        with self._lock:
            self._closed = True
            if self._client is not None:
                self._client.close()
                self._client = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        content_type: str | None = None,
    ) -> httpx.Response:
        """Send a request, retrying rate limited and unavailable responses.

        Raises:
            ClusterClientError: On any non-2xx response after retries, on
                transport errors, or if the client is closed.
        """
        config = self._retry_config
        for attempt in range(config.max_retries + 1):
            client = self._get_client()
            headers = {"Content-Type": content_type} if content_type else None
            try:
                response = client.request(method, path, json=json_body, headers=headers)
            except httpx.RequestError as e:
                raise ClusterClientError(f"{method} {path} failed: {e}") from e
            except RuntimeError as e:
                # httpx raises RuntimeError when the client was closed mid-call
                raise ClusterClientError(f"{method} {path} failed: {e}") from e

            status = response.status_code
            if status in RETRYABLE_STATUS_CODES and attempt < config.max_retries:
                delay = _calculate_backoff_delay(attempt, config, _get_retry_after(response))
                logger.warning(
                    "%s %s returned %d (attempt %d/%d), retrying in %.2fs",
                    method,
                    path,
                    status,
                    attempt + 1,
                    config.max_retries + 1,
                    delay,
                )
                self._sleep(delay)
                continue

            if status >= 400:
                raise ClusterClientError(
                    f"{method} {path} returned {status}: {_error_message(response)}",
                    status_code=status,
                )
            return response

        # Loop always returns or raises; kept for the type checker
        raise ClusterClientError(f"{method} {path} failed after retries")

    def patch_build(self, namespace: str, name: str, patch: Mapping[str, Any]) -> dict[str, Any]:
        """Apply a JSON merge patch to a Build resource.

        Args:
            namespace: Build namespace.
            name: Build name.
            patch: Merge patch document.

        Returns:
            The updated Build resource.

        Raises:
            ClusterClientError: If the patch fails.
        """
        path = f"{BUILD_API_GROUP_PATH}/namespaces/{namespace}/builds/{name}"
        response = self._request(
            "PATCH", path, json_body=patch, content_type=MERGE_PATCH_CONTENT_TYPE
        )
        return response.json() if response.content else {}

    def get_route(self, namespace: str, name: str) -> dict[str, Any] | None:
        """Fetch a Route, returning None if it does not exist."""
        path = f"{ROUTE_API_GROUP_PATH}/namespaces/{namespace}/routes/{name}"
        try:
            return self._request("GET", path).json()
        except ClusterClientError as e:
            if e.is_not_found:
                return None
            raise

    def resolve_root_url(self, namespace: str) -> str:
        """Resolve the externally reachable CI root URL for a namespace.

        Looks up the configured CI route in the namespace and builds
        ``https://<host>`` (``http://`` for routes without TLS). Falls back to
        the configured root URL when the route does not exist. Results are
        cached per namespace.

        Raises:
            ClusterClientError: If the route lookup fails for a reason other
                than the route not existing.
        """
        with self._root_urls_lock:
            cached = self._root_urls.get(namespace)
        if cached is not None:
            return cached

        root_url = self._fallback_root_url
        route = self.get_route(namespace, self._jenkins_route)
        if route:
            spec = route.get("spec") or {}
            host = spec.get("host")
            if host:
                scheme = "https" if spec.get("tls") is not None else "http"
                root_url = f"{scheme}://{host}/"

        with self._root_urls_lock:
            self._root_urls[namespace] = root_url
        return root_url

    def list_resources(self, namespace: str, kind: str) -> list[str]:
        """List the names of resources of a kind in a namespace.

        Raises:
            ValueError: If the kind is unknown.
            ClusterClientError: If the list call fails.
        """
        template = _KIND_PATHS.get(kind)
        if template is None:
            raise ValueError(f"Unknown resource kind: {kind}")
        body = self._request("GET", template.format(namespace=namespace)).json()
        names: list[str] = []
        for item in body.get("items") or []:
            name = (item.get("metadata") or {}).get("name")
            if name:
                names.append(name)
        return names

    def default_namespace(self) -> str:
        """Namespace to watch when none is configured.

        Uses the configured default, then the service account namespace
        file, then ``"default"``.
        """
        if self._default_namespace:
            return self._default_namespace
        try:
            namespace = Path(SERVICE_ACCOUNT_NAMESPACE_FILE).read_text(encoding="utf-8").strip()
        except OSError:
            namespace = ""
        return namespace or "default"


__all__ = [
    "DEFAULT_RETRY_CONFIG",
    "ClusterClient",
    "ClusterClientError",
    "RetryConfig",
]
