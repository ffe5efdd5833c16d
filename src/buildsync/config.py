"""Configuration loading from environment variables."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from buildsync.constants import (
    DEFAULT_FINALIZE_GRACE_PERIOD,
    DEFAULT_LIST_INTERVAL,
    DEFAULT_MAX_STATUS_JSON_BYTES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_STARTUP_INITIAL_DELAY,
    DEFAULT_STARTUP_POLL_INTERVAL,
)

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Resource kinds that can be list-watched, in startup order
WATCHED_KINDS = ("buildconfigs", "builds", "configmaps", "imagestreams", "secrets")


@dataclass(frozen=True)
class ClusterConfig:
    """Connection settings for the cluster API.

    Attributes:
        server: API server base URL. Empty means in-cluster defaults.
        token: Bearer token. Takes precedence over ``token_file``.
        token_file: Path to a file holding the bearer token (credential reference).
        default_namespace: Namespace used when no namespaces are configured.
        request_timeout: Per-request timeout in seconds.
        verify_tls: Whether to verify the API server certificate.
    """

    server: str = ""
    token: str = ""
    token_file: Path | None = None
    default_namespace: str = ""
    request_timeout: float = 10.0
    verify_tls: bool = True

    def resolve_token(self) -> str:
        """Return the bearer token, reading ``token_file`` if needed.

        Raises:
            OSError: If the token file cannot be read.
        """
        if self.token:
            return self.token
        if self.token_file is not None:
            return self.token_file.read_text(encoding="utf-8").strip()
        return ""


@dataclass(frozen=True)
class SyncConfig:
    """Settings for the run status synchronization core."""

    poll_interval: float = DEFAULT_POLL_INTERVAL  # seconds between sweeps
    finalize_grace_period: float = DEFAULT_FINALIZE_GRACE_PERIOD
    startup_initial_delay: float = DEFAULT_STARTUP_INITIAL_DELAY
    startup_poll_interval: float = DEFAULT_STARTUP_POLL_INTERVAL
    jenkins_route: str = "jenkins"  # route name resolving the CI root URL
    jenkins_root_url: str = ""  # fallback when no route is found
    root_url_cache_ttl: float = 60.0
    max_status_json_bytes: int = DEFAULT_MAX_STATUS_JSON_BYTES
    timer_pool_size: int = 2


@dataclass(frozen=True)
class WatchConfig:
    """Per resource kind list-watch settings.

    ``intervals`` and ``enabled_kinds`` are keyed by the kinds in
    ``WATCHED_KINDS``.
    """

    intervals: dict[str, int] = field(
        default_factory=lambda: dict.fromkeys(WATCHED_KINDS, DEFAULT_LIST_INTERVAL)
    )
    enabled_kinds: frozenset[str] = frozenset()
    job_name_pattern: str = ""
    skip_organization_prefix: str = ""
    skip_branch_suffix: str = ""
    reconcile_builds_runs: bool = False

    def interval_for(self, kind: str) -> int:
        """List interval in seconds for a kind."""
        return self.intervals.get(kind, DEFAULT_LIST_INTERVAL)


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings."""

    level: str = "INFO"
    json: bool = False
    diagnostic_tags: str = ""


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable); a configuration change produces a
    new instance which is handed to the watcher supervisor as one transition.
    """

    enabled: bool = True
    namespaces: tuple[str, ...] = ()
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    logging_config: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_positive_int(value: str, name: str, default: int) -> int:
    """Parse a string as a positive integer with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive integer, or the default if invalid.
    """
    try:
        parsed = int(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %d is not positive, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_positive_float(value: str, name: str, default: float) -> float:
    """Parse a string as a strictly positive float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed float, or the default if invalid.
    """
    try:
        parsed = float(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %f is not positive, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _parse_non_negative_float(value: str, name: str, default: float) -> float:
    """Parse a string as a non-negative float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed non-negative float, or the default if invalid.
    """
    try:
        parsed = float(value)
        if parsed < 0:
            logging.warning(
                "Invalid %s: %f is negative, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid BUILDSYNC_LOG_LEVEL: '%s' is not valid, using default '%s'. Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _validate_pattern(value: str, name: str) -> str:
    """Validate a regular expression setting.

    Returns:
        The pattern, or an empty string (match everything) if it does not compile.
    """
    if not value:
        return ""
    try:
        re.compile(value)
    except re.error as e:
        logging.warning("Invalid %s: '%s' is not a valid pattern (%s), ignoring", name, value, e)
        return ""
    return value


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def _parse_namespaces(value: str) -> tuple[str, ...]:
    """Split a space or comma separated namespace list, dropping blanks and duplicates."""
    seen: dict[str, None] = {}
    for ns in re.split(r"[\s,]+", value):
        if ns:
            seen.setdefault(ns, None)
    return tuple(seen)


# Environment variable stem for each watched kind
_KIND_ENV_NAMES = {
    "buildconfigs": "BUILD_CONFIG",
    "builds": "BUILD",
    "configmaps": "CONFIG_MAP",
    "imagestreams": "IMAGE_STREAM",
    "secrets": "SECRET",
}


def _load_watch_config() -> WatchConfig:
    intervals: dict[str, int] = {}
    enabled: set[str] = set()
    for kind in WATCHED_KINDS:
        stem = _KIND_ENV_NAMES[kind]
        name = f"BUILDSYNC_{stem}_LIST_INTERVAL"
        intervals[kind] = _parse_positive_int(
            os.getenv(name, str(DEFAULT_LIST_INTERVAL)), name, DEFAULT_LIST_INTERVAL
        )
        if _parse_bool(os.getenv(f"BUILDSYNC_{stem}_WATCH", "")):
            enabled.add(kind)

    return WatchConfig(
        intervals=intervals,
        enabled_kinds=frozenset(enabled),
        job_name_pattern=_validate_pattern(
            os.getenv("BUILDSYNC_JOB_NAME_PATTERN", ""), "BUILDSYNC_JOB_NAME_PATTERN"
        ),
        skip_organization_prefix=os.getenv("BUILDSYNC_SKIP_ORGANIZATION_PREFIX", ""),
        skip_branch_suffix=os.getenv("BUILDSYNC_SKIP_BRANCH_SUFFIX", ""),
        reconcile_builds_runs=_parse_bool(os.getenv("BUILDSYNC_RECONCILE_BUILDS_RUNS", "")),
    )


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values. Invalid values fall back to their
        defaults with a logged warning.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    token_file_str = os.getenv("BUILDSYNC_TOKEN_FILE", "")

    cluster = ClusterConfig(
        server=os.getenv("BUILDSYNC_SERVER", "").strip(),
        token=os.getenv("BUILDSYNC_TOKEN", "").strip(),
        token_file=Path(token_file_str) if token_file_str else None,
        default_namespace=os.getenv("BUILDSYNC_DEFAULT_NAMESPACE", "").strip(),
        request_timeout=_parse_positive_float(
            os.getenv("BUILDSYNC_REQUEST_TIMEOUT", "10.0"), "BUILDSYNC_REQUEST_TIMEOUT", 10.0
        ),
        verify_tls=_parse_bool(os.getenv("BUILDSYNC_VERIFY_TLS", "true")),
    )

    sync = SyncConfig(
        poll_interval=_parse_positive_float(
            os.getenv("BUILDSYNC_POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL)),
            "BUILDSYNC_POLL_INTERVAL",
            DEFAULT_POLL_INTERVAL,
        ),
        finalize_grace_period=_parse_non_negative_float(
            os.getenv("BUILDSYNC_FINALIZE_GRACE_PERIOD", str(DEFAULT_FINALIZE_GRACE_PERIOD)),
            "BUILDSYNC_FINALIZE_GRACE_PERIOD",
            DEFAULT_FINALIZE_GRACE_PERIOD,
        ),
        startup_initial_delay=_parse_non_negative_float(
            os.getenv("BUILDSYNC_STARTUP_INITIAL_DELAY", str(DEFAULT_STARTUP_INITIAL_DELAY)),
            "BUILDSYNC_STARTUP_INITIAL_DELAY",
            DEFAULT_STARTUP_INITIAL_DELAY,
        ),
        startup_poll_interval=_parse_positive_float(
            os.getenv("BUILDSYNC_STARTUP_POLL_INTERVAL", str(DEFAULT_STARTUP_POLL_INTERVAL)),
            "BUILDSYNC_STARTUP_POLL_INTERVAL",
            DEFAULT_STARTUP_POLL_INTERVAL,
        ),
        jenkins_route=os.getenv("BUILDSYNC_JENKINS_ROUTE", "jenkins").strip() or "jenkins",
        jenkins_root_url=os.getenv("BUILDSYNC_JENKINS_ROOT_URL", "").strip(),
        root_url_cache_ttl=_parse_non_negative_float(
            os.getenv("BUILDSYNC_ROOT_URL_CACHE_TTL", "60"), "BUILDSYNC_ROOT_URL_CACHE_TTL", 60.0
        ),
        max_status_json_bytes=_parse_positive_int(
            os.getenv("BUILDSYNC_MAX_STATUS_JSON_BYTES", str(DEFAULT_MAX_STATUS_JSON_BYTES)),
            "BUILDSYNC_MAX_STATUS_JSON_BYTES",
            DEFAULT_MAX_STATUS_JSON_BYTES,
        ),
        timer_pool_size=_parse_positive_int(
            os.getenv("BUILDSYNC_TIMER_POOL_SIZE", "2"), "BUILDSYNC_TIMER_POOL_SIZE", 2
        ),
    )

    logging_config = LoggingConfig(
        level=_validate_log_level(os.getenv("BUILDSYNC_LOG_LEVEL", "INFO")),
        json=_parse_bool(os.getenv("BUILDSYNC_LOG_JSON", "")),
        diagnostic_tags=os.getenv("BUILDSYNC_DIAGNOSTIC_TAGS", ""),
    )

    return Config(
        enabled=_parse_bool(os.getenv("BUILDSYNC_ENABLED", "true")),
        namespaces=_parse_namespaces(os.getenv("BUILDSYNC_NAMESPACES", "")),
        cluster=cluster,
        sync=sync,
        watch=_load_watch_config(),
        logging_config=logging_config,
    )
