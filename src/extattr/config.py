"""Configuration management with validation.

All runtime knobs of the extension attribute synchronizer are read from the
environment once at startup and validated as a whole. Invalid configurations
raise ConfigurationError immediately rather than failing mid-run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 3600
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 86400

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 999  # Graph $top upper bound for /devices

# I/O-bound fan-out: bound outbound concurrency, not CPU usage
DEFAULT_CONCURRENCY_PER_CORE = 2
MAX_CONCURRENCY = 64

# Resilience defaults (per outbound call)
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 5
MAX_ATTEMPTS_LIMIT = 10
DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_MAX_JITTER_SECONDS = 1.0
DEFAULT_BREAKER_FAILURE_THRESHOLD = 5
DEFAULT_BREAKER_RESET_SECONDS = 30.0

# Audit store defaults
DEFAULT_AUDIT_BUFFER_SIZE = 1000
DEFAULT_AUDIT_FLUSH_INTERVAL_SECONDS = 300
DEFAULT_AUDIT_RECENT_CAPACITY = 1000
DEFAULT_AUDIT_DIR = Path("/var/lib/extattr/audit")

DEFAULT_EXPORT_PREFIX = "extension-attributes"
DEFAULT_FAILURE_ALERT_THRESHOLD = 10

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com"

# Limits on declarative input
MAX_MAPPINGS_FILE_SIZE_BYTES = 256 * 1024
MAX_EXTENSION_ATTRIBUTE_INDEX = 15  # extensionAttribute1..extensionAttribute15


def default_max_concurrency() -> int:
    """Concurrency bound derived from the number of logical cores."""
    cores = os.cpu_count() or 1
    return min(cores * DEFAULT_CONCURRENCY_PER_CORE, MAX_CONCURRENCY)


@dataclass(frozen=True)
class DataSourceSettings:
    """Global enable flags per data source.

    A mapping is only evaluated when its declared data source is enabled here.
    """

    enable_directory: bool = True
    enable_endpoint_management: bool = False

    @property
    def any_enabled(self) -> bool:
        return self.enable_directory or self.enable_endpoint_management


@dataclass(frozen=True)
class ResilienceConfig:
    """Timeout, retry, and circuit breaker settings for cloud directory calls."""

    timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    max_jitter_seconds: float = DEFAULT_MAX_JITTER_SECONDS
    breaker_failure_threshold: int = DEFAULT_BREAKER_FAILURE_THRESHOLD
    breaker_reset_seconds: float = DEFAULT_BREAKER_RESET_SECONDS


@dataclass(frozen=True)
class AuditConfig:
    """Audit store location and buffering."""

    directory: Path = DEFAULT_AUDIT_DIR
    buffer_size: int = DEFAULT_AUDIT_BUFFER_SIZE
    flush_interval_seconds: float = DEFAULT_AUDIT_FLUSH_INTERVAL_SECONDS
    recent_capacity: int = DEFAULT_AUDIT_RECENT_CAPACITY


@dataclass(frozen=True)
class ExportConfig:
    """Per-run CSV export. Export is disabled when path is None."""

    path: Path | None = None
    file_prefix: str = DEFAULT_EXPORT_PREFIX


@dataclass(frozen=True)
class NotificationConfig:
    """Failure alerting. Alerts are disabled when webhook_url is None."""

    webhook_url: str | None = None
    failure_threshold: int = DEFAULT_FAILURE_ALERT_THRESHOLD


@dataclass(frozen=True)
class DirectoryServiceConfig:
    """On-premises directory connection settings."""

    server_uri: str | None = None
    base_dn: str = ""
    use_kerberos: bool = True


@dataclass(frozen=True)
class Config:
    """Synchronizer configuration loaded from environment variables.

    All fields are validated at construction time.
    """

    mappings_file: Path = field(default_factory=lambda: Path("/config/mappings.yaml"))

    data_sources: DataSourceSettings = field(default_factory=DataSourceSettings)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    directory: DirectoryServiceConfig = field(default_factory=DirectoryServiceConfig)

    max_concurrency: int = field(default_factory=default_max_concurrency)
    page_size: int = DEFAULT_PAGE_SIZE
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    verify_writes: bool = False
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not 1 <= self.max_concurrency <= MAX_CONCURRENCY:
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY}")

        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            errors.append(f"PAGE_SIZE must be between 1 and {MAX_PAGE_SIZE}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not self.graph_base_url.startswith("https://"):
            errors.append(f"GRAPH_BASE_URL must use https: {self.graph_base_url}")

        # Resilience bounds
        resilience = self.resilience
        if resilience.timeout_seconds <= 0:
            errors.append("CALL_TIMEOUT must be positive")
        if not 1 <= resilience.max_attempts <= MAX_ATTEMPTS_LIMIT:
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")
        if resilience.backoff_base_seconds < 0 or resilience.max_jitter_seconds < 0:
            errors.append("Backoff base and jitter must not be negative")
        if resilience.breaker_failure_threshold < 1:
            errors.append("BREAKER_FAILURE_THRESHOLD must be at least 1")
        if resilience.breaker_reset_seconds <= 0:
            errors.append("BREAKER_RESET_SECONDS must be positive")

        # Audit bounds
        if self.audit.buffer_size < 1:
            errors.append("AUDIT_BUFFER_SIZE must be at least 1")
        if self.audit.flush_interval_seconds <= 0:
            errors.append("AUDIT_FLUSH_INTERVAL must be positive")
        if self.audit.recent_capacity < 1:
            errors.append("AUDIT_RECENT_CAPACITY must be at least 1")

        if self.export.path is not None and not self.export.file_prefix:
            errors.append("EXPORT_FILE_PREFIX is required when EXPORT_PATH is set")

        if self.notifications.failure_threshold < 1:
            errors.append("FAILURE_ALERT_THRESHOLD must be at least 1")
        if self.notifications.webhook_url and not self.notifications.webhook_url.startswith(
            "https://"
        ):
            errors.append("NOTIFICATION_WEBHOOK_URL must use https")

        if self.data_sources.enable_directory:
            if not self.directory.server_uri:
                errors.append(
                    "DIRECTORY_SERVER_URI is required when the directory source is enabled"
                )
            elif not self.directory.server_uri.lower().startswith(("ldap://", "ldaps://")):
                errors.append(f"DIRECTORY_SERVER_URI must be an ldap(s) URI: {self.directory.server_uri}")
            if not self.directory.base_dn:
                errors.append("DIRECTORY_BASE_DN is required when the directory source is enabled")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            MAPPINGS_FILE: Path to the YAML mapping declaration (default: /config/mappings.yaml)
            ENABLE_DIRECTORY: Evaluate on-prem directory mappings (default: true)
            ENABLE_ENDPOINT_MANAGEMENT: Evaluate endpoint management mappings (default: false)
            MAX_CONCURRENCY: Concurrent device tasks (default: 2 x logical cores)
            PAGE_SIZE: Device enumeration page size (default: 100)
            RECONCILE_INTERVAL: Seconds between worker runs (default: 3600)
            VERIFY_WRITES: Read back each written attribute (default: false)
            GRAPH_BASE_URL: Microsoft Graph endpoint (default: https://graph.microsoft.com)

        Resilience Variables:
            CALL_TIMEOUT: Per-attempt timeout in seconds (default: 30)
            MAX_ATTEMPTS: Attempts per call including the first (default: 5)
            BACKOFF_BASE: Exponential backoff base in seconds (default: 2)
            MAX_JITTER: Upper bound of random jitter in seconds (default: 1)
            BREAKER_FAILURE_THRESHOLD: Consecutive failures before opening (default: 5)
            BREAKER_RESET_SECONDS: Open-state cooldown (default: 30)

        Audit / Export / Alerting Variables:
            AUDIT_DIR: Directory for daily JSONL audit files
            AUDIT_BUFFER_SIZE: In-memory entries before forced flush (default: 1000)
            AUDIT_FLUSH_INTERVAL: Seconds between periodic flushes (default: 300)
            AUDIT_RECENT_CAPACITY: Audit entries kept in memory for queries (default: 1000)
            EXPORT_PATH: Directory for per-run CSV exports (unset disables export)
            EXPORT_FILE_PREFIX: CSV file name prefix
            NOTIFICATION_WEBHOOK_URL: Webhook for failure alerts (unset disables alerts)
            FAILURE_ALERT_THRESHOLD: Failed devices that trigger an alert (default: 10)

        Directory Variables:
            DIRECTORY_SERVER_URI: ldap:// or ldaps:// URI of a domain controller
            DIRECTORY_BASE_DN: Search base for computer objects
            DIRECTORY_KERBEROS: Bind with SASL/Kerberos instead of anonymously (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        export_path = os.environ.get("EXPORT_PATH")

        return cls(
            mappings_file=Path(os.environ.get("MAPPINGS_FILE", "/config/mappings.yaml")),
            data_sources=DataSourceSettings(
                enable_directory=get_bool("ENABLE_DIRECTORY", True),
                enable_endpoint_management=get_bool("ENABLE_ENDPOINT_MANAGEMENT", False),
            ),
            resilience=ResilienceConfig(
                timeout_seconds=get_float("CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
                max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_base_seconds=get_float("BACKOFF_BASE", DEFAULT_BACKOFF_BASE_SECONDS),
                max_jitter_seconds=get_float("MAX_JITTER", DEFAULT_MAX_JITTER_SECONDS),
                breaker_failure_threshold=get_int(
                    "BREAKER_FAILURE_THRESHOLD", DEFAULT_BREAKER_FAILURE_THRESHOLD
                ),
                breaker_reset_seconds=get_float(
                    "BREAKER_RESET_SECONDS", DEFAULT_BREAKER_RESET_SECONDS
                ),
            ),
            audit=AuditConfig(
                directory=Path(os.environ.get("AUDIT_DIR", str(DEFAULT_AUDIT_DIR))),
                buffer_size=get_int("AUDIT_BUFFER_SIZE", DEFAULT_AUDIT_BUFFER_SIZE),
                flush_interval_seconds=get_float(
                    "AUDIT_FLUSH_INTERVAL", DEFAULT_AUDIT_FLUSH_INTERVAL_SECONDS
                ),
                recent_capacity=get_int(
                    "AUDIT_RECENT_CAPACITY", DEFAULT_AUDIT_RECENT_CAPACITY
                ),
            ),
            export=ExportConfig(
                path=Path(export_path) if export_path else None,
                file_prefix=os.environ.get("EXPORT_FILE_PREFIX", DEFAULT_EXPORT_PREFIX),
            ),
            notifications=NotificationConfig(
                webhook_url=os.environ.get("NOTIFICATION_WEBHOOK_URL") or None,
                failure_threshold=get_int(
                    "FAILURE_ALERT_THRESHOLD", DEFAULT_FAILURE_ALERT_THRESHOLD
                ),
            ),
            directory=DirectoryServiceConfig(
                server_uri=os.environ.get("DIRECTORY_SERVER_URI") or None,
                base_dn=os.environ.get("DIRECTORY_BASE_DN", ""),
                use_kerberos=get_bool("DIRECTORY_KERBEROS", True),
            ),
            max_concurrency=get_int("MAX_CONCURRENCY", default_max_concurrency()),
            page_size=get_int("PAGE_SIZE", DEFAULT_PAGE_SIZE),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            verify_writes=get_bool("VERIFY_WRITES", False),
            graph_base_url=os.environ.get("GRAPH_BASE_URL", DEFAULT_GRAPH_BASE_URL),
        )
