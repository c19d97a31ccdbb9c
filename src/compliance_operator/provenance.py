"""Outcome records for audit and monitoring.

Every reconciliation job emits exactly one structured record answering:
- "Was resource R compliant when we looked?"
- "What did the operator do about it, and how many attempts did it take?"
- "Which operator version / commit made the change?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


class JobStatus(str, Enum):
    """Final status of a reconciliation job."""

    COMPLIANT = "compliant"
    REMEDIATED = "remediated"
    # Drift reported but not remediated (observe mode)
    NON_COMPLIANT = "non_compliant"
    REMEDIATION_FAILED = "remediation_failed"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    # Inspection failed transiently; the next scan retries
    DEFERRED = "deferred"
    CANCELLED = "cancelled"
    ERROR = "error"


class JobAction(str, Enum):
    """What the job did to the resource."""

    NONE = "none"
    REPORTED = "reported"
    REMEDIATED = "remediated"
    REMEDIATION_ATTEMPTED = "remediation_attempted"


FAILURE_STATUSES = frozenset(
    {JobStatus.REMEDIATION_FAILED, JobStatus.PERMISSION_DENIED, JobStatus.ERROR}
)


@dataclass
class JobOutcome:
    """Structured outcome of one reconciliation job."""

    resource_id: str
    kind: str
    trigger: str
    status: JobStatus = JobStatus.COMPLIANT
    action: JobAction = JobAction.NONE
    compliant: bool | None = None
    detail: str = ""
    attempts: int = 0
    error: str | None = None
    error_kind: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_seconds: float = 0.0
    operator_version: str = OPERATOR_VERSION

    @property
    def failed(self) -> bool:
        """Terminal failures that need an operator's attention."""
        return self.status in FAILURE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["status"] = self.status.value
        result["action"] = self.action.value
        result["started_at"] = self.started_at.isoformat()
        return result


@dataclass
class ScanReport:
    """Aggregated outcomes of one periodic scan."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    outcomes: list[JobOutcome] = field(default_factory=list)
    coalesced: int = 0
    duration_seconds: float = 0.0

    def count(self, status: JobStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def failures(self) -> list[JobOutcome]:
        return [o for o in self.outcomes if o.failed]

    def summary(self) -> dict[str, Any]:
        counts = {status.value: self.count(status) for status in JobStatus}
        return {
            "resources": len(self.outcomes),
            "coalesced": self.coalesced,
            "duration_seconds": round(self.duration_seconds, 3),
            **{k: v for k, v in counts.items() if v},
        }


class OutcomeLogger:
    """Logs outcome records. Terminal failures are logged loudly."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def log_outcome(self, outcome: JobOutcome) -> None:
        log_level = logging.INFO
        if outcome.failed:
            log_level = logging.ERROR
        elif outcome.status in (JobStatus.NON_COMPLIANT, JobStatus.DEFERRED, JobStatus.NOT_FOUND):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation outcome",
            extra={
                "outcome": outcome.to_dict(),
                # Flatten key fields for easier querying
                "resource_id": outcome.resource_id,
                "status": outcome.status.value,
                "action": outcome.action.value,
                "attempts": outcome.attempts,
                "git_commit": self._git_commit_sha,
                "operator_instance_id": self._instance_id,
            },
        )

    def log_scan(self, report: ScanReport) -> None:
        log_level = logging.ERROR if report.failures else logging.INFO
        logger.log(
            log_level,
            "Scan complete",
            extra={
                "scan": report.summary(),
                "failed_resources": [o.resource_id for o in report.failures],
            },
        )


# Global singleton for outcome logging
_outcome_logger: OutcomeLogger | None = None


def get_outcome_logger() -> OutcomeLogger:
    """Get the global outcome logger instance."""
    global _outcome_logger
    if _outcome_logger is None:
        _outcome_logger = OutcomeLogger()
    return _outcome_logger
