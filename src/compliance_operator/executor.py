"""Remediation Executor: apply, verify and retry corrective actions.

Each remediation is tracked as a RemediationAttempt moving through an
explicit state machine:

    pending -> in_progress -> verified
                           -> failed_retryable -> pending (after backoff)
                           -> failed_terminal

Retries are bounded. After ``max_attempts`` consecutive transient failures
the attempt becomes terminal and is surfaced instead of retried, so a
permanently broken resource cannot generate unbounded background load.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from .config import (
    DEFAULT_MAX_REMEDIATION_ATTEMPTS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from .evaluator import ComplianceVerdict, evaluate
from .inspector import ResourceInspector
from .models import BasePolicy, ResourceKind
from .provider import CallThrottle, ErrorKind, ProviderError, ResourceProvider

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    """States of a remediation attempt."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VERIFIED = "verified"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


ALLOWED_TRANSITIONS: dict[AttemptState, frozenset[AttemptState]] = {
    AttemptState.PENDING: frozenset({AttemptState.IN_PROGRESS}),
    AttemptState.IN_PROGRESS: frozenset(
        {AttemptState.VERIFIED, AttemptState.FAILED_RETRYABLE, AttemptState.FAILED_TERMINAL}
    ),
    AttemptState.FAILED_RETRYABLE: frozenset({AttemptState.PENDING}),
    AttemptState.VERIFIED: frozenset(),
    AttemptState.FAILED_TERMINAL: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised on a state change the remediation state machine does not allow."""

    pass


@dataclass
class RemediationAttempt:
    """Retry bookkeeping for one resource. Owned by the executor."""

    resource_id: str
    attempt_count: int = 0
    state: AttemptState = AttemptState.PENDING
    last_error: ProviderError | None = None
    next_retry_at: datetime | None = None
    history: list[AttemptState] = field(default_factory=lambda: [AttemptState.PENDING])

    def transition(self, new_state: AttemptState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Illegal remediation transition {self.state.value} -> {new_state.value} "
                f"for {self.resource_id}"
            )
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""

    max_attempts: int = DEFAULT_MAX_REMEDIATION_ATTEMPTS
    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    jitter_ratio: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative")

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the attempt following ``attempt`` (1-based).

        A provider backoff hint extends the delay, it never shortens it.
        """
        backoff = self.base_delay_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * self.jitter_ratio)
        delay = min(backoff + jitter, self.max_delay_seconds)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


@dataclass
class RemediationResult:
    """Final outcome of a remediate() call."""

    resource_id: str
    state: AttemptState
    attempts: int
    verdict: ComplianceVerdict | None = None
    error: ProviderError | None = None

    @property
    def success(self) -> bool:
        return self.state == AttemptState.VERIFIED

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None


class RemediationExecutor:
    """Drives non-compliant resources back to their declared association.

    The corrective action is idempotent: repeating it on an already compliant
    resource leaves the same end state and raises no error.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        inspector: ResourceInspector,
        throttle: CallThrottle,
        retry_policy: RetryPolicy,
        call_timeout_seconds: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._inspector = inspector
        self._throttle = throttle
        self._retry_policy = retry_policy
        self._call_timeout = call_timeout_seconds
        self._sleep = sleep
        self._attempts: dict[str, RemediationAttempt] = {}

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def active_attempts(self) -> dict[str, RemediationAttempt]:
        """Snapshot of remediations currently in progress or backing off."""
        return dict(self._attempts)

    async def remediate(
        self,
        resource_id: str,
        kind: ResourceKind,
        policy: BasePolicy,
        workers: asyncio.Semaphore | None = None,
    ) -> RemediationResult:
        """Apply the policy's association and confirm it took effect.

        When ``workers`` is given, a slot is held for each write-and-verify
        attempt and released during the backoff between attempts.

        Returns:
            RemediationResult; ``success`` is True once re-inspection
            evaluates compliant.

        Raises:
            RuntimeError: If a remediation for the resource is already active.
        """
        if resource_id in self._attempts:
            raise RuntimeError(f"Remediation already in progress for {resource_id}")

        attempt = RemediationAttempt(resource_id=resource_id)
        self._attempts[resource_id] = attempt
        try:
            return await self._run(attempt, kind, policy, workers)
        finally:
            # Attempts are discarded once verified, terminal or cancelled
            del self._attempts[resource_id]

    async def _run(
        self,
        attempt: RemediationAttempt,
        kind: ResourceKind,
        policy: BasePolicy,
        workers: asyncio.Semaphore | None,
    ) -> RemediationResult:
        resource_id = attempt.resource_id
        target = policy.required_association
        slot = workers if workers is not None else contextlib.nullcontext()

        while True:
            attempt.transition(AttemptState.IN_PROGRESS)
            attempt.attempt_count += 1

            verdict: ComplianceVerdict | None = None
            error: ProviderError | None = None
            try:
                async with slot:
                    await self._apply(resource_id, kind, target)
                    observed = await self._inspector.inspect(resource_id, kind)
                verdict = evaluate(policy, observed)
            except ProviderError as e:
                error = e

            if verdict is not None and not verdict.compliant:
                # Provider accepted the write but the read does not reflect it yet
                error = ProviderError(
                    f"Verification failed: {verdict.detail}",
                    ErrorKind.TRANSIENT,
                    resource_id=resource_id,
                )

            if error is None:
                attempt.transition(AttemptState.VERIFIED)
                logger.info(
                    "Remediation verified",
                    extra={
                        "resource_id": resource_id,
                        "association": target,
                        "attempts": attempt.attempt_count,
                    },
                )
                return RemediationResult(
                    resource_id=resource_id,
                    state=attempt.state,
                    attempts=attempt.attempt_count,
                    verdict=verdict,
                )

            attempt.last_error = error

            if not error.retryable or attempt.attempt_count >= self._retry_policy.max_attempts:
                attempt.transition(AttemptState.FAILED_TERMINAL)
                logger.error(
                    "Remediation failed",
                    extra={
                        "resource_id": resource_id,
                        "attempts": attempt.attempt_count,
                        "error_kind": error.kind.value,
                        "error": str(error),
                    },
                )
                return RemediationResult(
                    resource_id=resource_id,
                    state=attempt.state,
                    attempts=attempt.attempt_count,
                    verdict=verdict,
                    error=error,
                )

            delay = self._retry_policy.delay_for(attempt.attempt_count, error.retry_after)
            attempt.next_retry_at = datetime.now(UTC) + timedelta(seconds=delay)
            attempt.transition(AttemptState.FAILED_RETRYABLE)
            logger.warning(
                "Remediation attempt failed, retrying",
                extra={
                    "resource_id": resource_id,
                    "attempt": attempt.attempt_count,
                    "max_attempts": self._retry_policy.max_attempts,
                    "wait_seconds": delay,
                    "error": str(error),
                },
            )

            await self._sleep(delay)
            attempt.transition(AttemptState.PENDING)

    async def _apply(self, resource_id: str, kind: ResourceKind, target: str) -> None:
        """Issue the corrective write.

        Once started, the write is shielded from cancellation of the calling
        job: it runs to completion or failure before the cancellation
        propagates.
        """
        write = asyncio.ensure_future(
            self._throttle.call(
                lambda: self._provider.associate(resource_id, kind, target),
                timeout=self._call_timeout,
                operation="Remediate",
                resource_id=resource_id,
            )
        )
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            logger.info(
                "Job cancelled during remediation, letting write finish",
                extra={"resource_id": resource_id},
            )
            try:
                await write
            except ProviderError as e:
                logger.warning(
                    "Write interrupted by cancellation failed",
                    extra={"resource_id": resource_id, "error": str(e)},
                )
            raise
