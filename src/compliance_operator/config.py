"""Configuration management with validation.

Configuration is loaded once at startup and is immutable for the lifetime of
the process. Every field is validated at construction time so that a broken
deployment fails before the first scan rather than halfway through one.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ProviderName(str, Enum):
    """Supported cloud providers."""

    AWS = "aws"
    AZURE = "azure"


class ReconciliationMode(str, Enum):
    """What the operator does with a non-compliant resource.

    ENFORCE: remediate drift automatically.
    OBSERVE: report drift only, never write to the provider.
    """

    ENFORCE = "enforce"
    OBSERVE = "observe"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SCAN_INTERVAL_SECONDS = 300
MIN_SCAN_INTERVAL_SECONDS = 60
MAX_SCAN_INTERVAL_SECONDS = 3600

DEFAULT_MAX_REMEDIATION_ATTEMPTS = 5
MAX_REMEDIATION_ATTEMPTS_LIMIT = 20

DEFAULT_RETRY_BASE_DELAY_SECONDS = 60.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 900.0
MAX_RETRY_DELAY_SECONDS = 3600.0

DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
MAX_CALL_TIMEOUT_SECONDS = 600.0

DEFAULT_MAX_WORKERS = 8
MAX_WORKERS_LIMIT = 64

DEFAULT_MAX_CALLS_PER_SECOND = 10.0

DEFAULT_EVENT_POLL_INTERVAL_SECONDS = 60
MIN_EVENT_POLL_INTERVAL_SECONDS = 5
# CloudTrail and Resource Graph publish change records minutes after the change
DEFAULT_EVENT_INGESTION_LAG_SECONDS = 900
MAX_EVENT_INGESTION_LAG_SECONDS = 3600

# Security constraints - enforced limits to prevent abuse
MAX_POLICY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max policy file
MAX_MANAGED_RESOURCES = 5000
MAX_DISCOVERY_RESULTS = 1000
MAX_EVENTS_PER_POLL = 500
DUPLICATE_EVENT_WINDOW = 1024  # Recent event ids remembered for de-duplication

# Change notifications guarded against by default
DEFAULT_WATCHED_EVENTS: dict[ProviderName, tuple[str, ...]] = {
    ProviderName.AWS: ("DisassociateWebACL",),
    ProviderName.AZURE: ("DisassociateFirewallPolicy",),
}

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_AWS_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    provider: ProviderName
    policy_file: Path

    # Provider coordinates
    subscription_id: str | None = None
    client_id: str | None = None
    region: str | None = None

    mode: ReconciliationMode = ReconciliationMode.ENFORCE

    # Timing
    scan_interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS
    call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS

    # Remediation retry policy
    max_remediation_attempts: int = DEFAULT_MAX_REMEDIATION_ATTEMPTS
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS

    # Concurrency and client-side throttling
    max_workers: int = DEFAULT_MAX_WORKERS
    max_calls_per_second: float = DEFAULT_MAX_CALLS_PER_SECOND

    # Event-triggered reconciliation
    enable_events: bool = True
    event_poll_interval_seconds: int = DEFAULT_EVENT_POLL_INTERVAL_SECONDS
    event_ingestion_lag_seconds: int = DEFAULT_EVENT_INGESTION_LAG_SECONDS
    watched_events: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        match self.provider:
            case ProviderName.AZURE:
                if not self.subscription_id:
                    errors.append("AZURE_SUBSCRIPTION_ID is required when PROVIDER is azure")
                elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                    errors.append(
                        f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}"
                    )
            case ProviderName.AWS:
                if not self.region:
                    errors.append("AWS_REGION is required when PROVIDER is aws")
                elif not re.match(VALID_AWS_REGION_PATTERN, self.region):
                    errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not self.policy_file.is_file():
            errors.append(f"Policy file does not exist: {self.policy_file}")

        if not (
            MIN_SCAN_INTERVAL_SECONDS <= self.scan_interval_seconds <= MAX_SCAN_INTERVAL_SECONDS
        ):
            errors.append(
                f"SCAN_INTERVAL must be between {MIN_SCAN_INTERVAL_SECONDS} "
                f"and {MAX_SCAN_INTERVAL_SECONDS} seconds"
            )

        if not (0 < self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS):
            errors.append(
                f"CALL_TIMEOUT must be greater than 0 and at most {MAX_CALL_TIMEOUT_SECONDS}"
            )

        if not (1 <= self.max_remediation_attempts <= MAX_REMEDIATION_ATTEMPTS_LIMIT):
            errors.append(
                f"MAX_REMEDIATION_ATTEMPTS must be between 1 and {MAX_REMEDIATION_ATTEMPTS_LIMIT}"
            )

        if not (0 <= self.retry_base_delay_seconds <= MAX_RETRY_DELAY_SECONDS):
            errors.append(f"RETRY_BASE_DELAY must be between 0 and {MAX_RETRY_DELAY_SECONDS}")

        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append("RETRY_MAX_DELAY must not be lower than RETRY_BASE_DELAY")

        if not (1 <= self.max_workers <= MAX_WORKERS_LIMIT):
            errors.append(f"MAX_WORKERS must be between 1 and {MAX_WORKERS_LIMIT}")

        if self.max_calls_per_second <= 0:
            errors.append("MAX_CALLS_PER_SECOND must be greater than 0")

        if self.event_poll_interval_seconds < MIN_EVENT_POLL_INTERVAL_SECONDS:
            errors.append(
                f"EVENT_POLL_INTERVAL must be at least {MIN_EVENT_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.event_ingestion_lag_seconds <= MAX_EVENT_INGESTION_LAG_SECONDS):
            errors.append(
                "EVENT_INGESTION_LAG must be between 0 and "
                f"{MAX_EVENT_INGESTION_LAG_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def effective_watched_events(self) -> tuple[str, ...]:
        """Event names that trigger immediate reconciliation."""
        return self.watched_events or DEFAULT_WATCHED_EVENTS[self.provider]

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVIDER: One of aws, azure (required)
            POLICY_FILE: Path to the YAML policy set (default: /policies/policies.yaml)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription (azure)
            AZURE_CLIENT_ID: User-assigned managed identity client ID (azure, optional)
            AWS_REGION: Target AWS region (aws)
            RECONCILE_MODE: One of enforce, observe (default: enforce)
            SCAN_INTERVAL: Seconds between periodic fleet scans (default: 300)
            CALL_TIMEOUT: Deadline for a single provider call in seconds (default: 30)
            MAX_REMEDIATION_ATTEMPTS: Attempts before a remediation is terminal (default: 5)
            RETRY_BASE_DELAY: Base delay of the exponential backoff (default: 60)
            RETRY_MAX_DELAY: Upper bound for a single backoff delay (default: 900)
            MAX_WORKERS: Concurrent reconciliation jobs (default: 8)
            MAX_CALLS_PER_SECOND: Client-side provider call rate (default: 10)
            ENABLE_EVENTS: If "false", only periodic scans run (default: true)
            EVENT_POLL_INTERVAL: Seconds between change-notification polls (default: 60)
            EVENT_INGESTION_LAG: Seconds each poll window overlaps the previous one to
                pick up late-published events (default: 900)
            WATCHED_EVENTS: Comma-separated event names (default: per provider)
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

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_provider(value: str | None) -> ProviderName:
            valid = [p.value for p in ProviderName]
            if not value:
                raise ConfigurationError(f"PROVIDER is required, one of {valid}")
            try:
                return ProviderName(value.lower())
            except ValueError as e:
                raise ConfigurationError(f"PROVIDER must be one of {valid}: {value}") from e

        def get_mode(value: str | None) -> ReconciliationMode:
            if not value:
                return ReconciliationMode.ENFORCE
            try:
                return ReconciliationMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in ReconciliationMode]
                raise ConfigurationError(f"RECONCILE_MODE must be one of {valid}: {value}") from e

        return cls(
            provider=get_provider(os.environ.get("PROVIDER")),
            policy_file=Path(os.environ.get("POLICY_FILE", "/policies/policies.yaml")),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID"),
            client_id=os.environ.get("AZURE_CLIENT_ID"),
            region=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
            mode=get_mode(os.environ.get("RECONCILE_MODE")),
            scan_interval_seconds=get_int("SCAN_INTERVAL", DEFAULT_SCAN_INTERVAL_SECONDS),
            call_timeout_seconds=get_float("CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            max_remediation_attempts=get_int(
                "MAX_REMEDIATION_ATTEMPTS", DEFAULT_MAX_REMEDIATION_ATTEMPTS
            ),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            retry_max_delay_seconds=get_float("RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            max_calls_per_second=get_float("MAX_CALLS_PER_SECOND", DEFAULT_MAX_CALLS_PER_SECOND),
            enable_events=get_bool("ENABLE_EVENTS", True),
            event_poll_interval_seconds=get_int(
                "EVENT_POLL_INTERVAL", DEFAULT_EVENT_POLL_INTERVAL_SECONDS
            ),
            event_ingestion_lag_seconds=get_int(
                "EVENT_INGESTION_LAG", DEFAULT_EVENT_INGESTION_LAG_SECONDS
            ),
            watched_events=get_list("WATCHED_EVENTS"),
        )
