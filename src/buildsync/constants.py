"""Wire constants shared with the Build resource.

Annotation keys must stay stable across restarts: a purge after a restart
locates log chunks by ``LOG_CONTENT_ANNOTATION_PREFIX`` plus the recorded
chunk index.
"""

from __future__ import annotations

ANNOTATION_STATUS_JSON = "openshift.io/jenkins-status-json"
ANNOTATION_BUILD_URI = "openshift.io/jenkins-build-uri"
ANNOTATION_LOG_URL = "openshift.io/jenkins-log-url"
ANNOTATION_CONSOLE_LOG_URL = "openshift.io/jenkins-console-log-url"
ANNOTATION_DASHBOARD_LOG_URL = "openshift.io/jenkins-blueocean-log-url"
LOG_CONTENT_ANNOTATION_PREFIX = "openshift.io/log-content-"

# Relative paths appended to a run's build URL
CONSOLE_TEXT_PATH = "/consoleText"
CONSOLE_PATH = "/console"

# Build resource API
BUILD_API_GROUP_PATH = "/apis/build.openshift.io/v1"
ROUTE_API_GROUP_PATH = "/apis/route.openshift.io/v1"
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# Service account namespace file used when no namespace is configured
SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

# Timing defaults (seconds)
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_FINALIZE_GRACE_PERIOD = 5.0
DEFAULT_STARTUP_INITIAL_DELAY = 1.0
DEFAULT_STARTUP_POLL_INTERVAL = 0.5
DEFAULT_LIST_INTERVAL = 300

# Annotation values share a 256 KiB budget on the resource
DEFAULT_MAX_STATUS_JSON_BYTES = 256 * 1024
