"""Main entry point for the Resource Compliance Operator.

SECRETLESS ARCHITECTURE:
- Azure authenticates with a (user-assigned) Managed Identity
- AWS authenticates through the role credential chain
- Static credentials in the environment abort startup

The operator runs two cooperating loops until SIGTERM/SIGINT:
- the periodic fleet scan (safety net, catches drift without a notification)
- the change-notification poller (immediate reconciliation on guarded events)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .aws_provider import AwsProvider
from .azure_provider import AzureProvider
from .config import Config, ConfigurationError, ProviderName
from .events import EventSource, EventTrigger, poll_events
from .executor import RemediationExecutor, RetryPolicy
from .inspector import ResourceInspector
from .models import PolicySet
from .policy_loader import PolicyLoadError, load_policies
from .provider import CallThrottle, ResourceProvider
from .scheduler import ReconciliationScheduler
from .security import (
    SecretlessViolationError,
    get_aws_session,
    get_managed_identity_credential,
)

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

NOISY_LOGGERS = ("azure", "botocore", "boto3", "urllib3")


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the cloud SDKs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@dataclass
class Operator:
    """Wired-up operator components."""

    config: Config
    policies: PolicySet
    scheduler: ReconciliationScheduler
    trigger: EventTrigger | None = None
    event_source: EventSource | None = None
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    def shutdown(self) -> None:
        """Request graceful shutdown of both loops."""
        self.shutdown_event.set()

    async def run(self) -> None:
        """Run the periodic scan and the event loop until shutdown."""
        tasks = [asyncio.create_task(self.scheduler.run(self.shutdown_event), name="scheduler")]

        if self.trigger is not None and self.event_source is not None:
            stream = poll_events(
                self.event_source,
                self.config.event_poll_interval_seconds,
                self.shutdown_event,
                ingestion_lag_seconds=self.config.event_ingestion_lag_seconds,
            )
            tasks.append(asyncio.create_task(self.trigger.consume(stream), name="events"))

        await asyncio.gather(*tasks)


def create_provider(config: Config) -> tuple[ResourceProvider, EventSource]:
    """Create the provider adapter and its change-notification source.

    Raises:
        SecretlessViolationError: If static credentials are in the environment.
    """
    if config.provider == ProviderName.AZURE:
        credential = get_managed_identity_credential(config.client_id)
        azure = AzureProvider(credential, config.subscription_id or "")
        return azure, azure.change_event_source()

    session = get_aws_session(config.region or "")
    aws = AwsProvider(session)
    return aws, aws.change_event_source(config.effective_watched_events)


def build_operator(
    config: Config,
    policies: PolicySet,
    provider: ResourceProvider,
    event_source: EventSource | None = None,
) -> Operator:
    """Wire inspector, executor, scheduler and event trigger together."""
    throttle = CallThrottle(
        max_calls_per_second=config.max_calls_per_second,
        max_concurrent=config.max_workers,
    )
    inspector = ResourceInspector(provider, throttle, config.call_timeout_seconds)
    executor = RemediationExecutor(
        provider=provider,
        inspector=inspector,
        throttle=throttle,
        retry_policy=RetryPolicy(
            max_attempts=config.max_remediation_attempts,
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
        ),
        call_timeout_seconds=config.call_timeout_seconds,
    )
    scheduler = ReconciliationScheduler(
        policies=policies,
        inspector=inspector,
        executor=executor,
        mode=config.mode,
        max_workers=config.max_workers,
        scan_interval_seconds=config.scan_interval_seconds,
    )

    trigger = None
    if config.enable_events and event_source is not None:
        trigger = EventTrigger(scheduler, config.effective_watched_events)

    return Operator(
        config=config,
        policies=policies,
        scheduler=scheduler,
        trigger=trigger,
        event_source=event_source if trigger is not None else None,
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, 1 for configuration errors, 2 for a
        security violation).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Resource Compliance Operator",
        extra={
            "provider": config.provider.value,
            "mode": config.mode.value,
            "policy_file": str(config.policy_file),
            "events_enabled": config.enable_events,
            "watched_events": list(config.effective_watched_events),
        },
    )

    try:
        policies = load_policies(config.policy_file)
        provider, event_source = create_provider(config)
        operator = build_operator(config, policies, provider, event_source)
    except PolicyLoadError as e:
        logger.error(
            "Policy loading failed",
            extra={"error": str(e), "policy_file": str(config.policy_file)},
        )
        return 1
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except Exception as e:
        logger.error(
            "Failed to initialize operator",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        operator.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await operator.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the long-running operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
