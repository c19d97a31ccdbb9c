"""Reconciliation Scheduler: periodic fleet scans and ad-hoc single runs.

Control flow for one job:

1. Inspect the resource (provider read, throttled, with deadline)
2. Evaluate the observed state against the policy for its kind
3. If non-compliant: remediate (enforce mode) or report (observe mode)
4. Emit one structured outcome record

CONCURRENCY:
- Jobs for distinct resources run in parallel, bounded by a worker semaphore
- At most one job per resource id is in flight. The in-flight registry is an
  explicit claim map owned by the scheduler. A request for a resource that is
  already being reconciled is coalesced into a single rerun that starts once
  the in-flight job has finished.
- The periodic scan and event-triggered runs are both always active; they
  converge because evaluation is pure and remediation is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

from .config import DEFAULT_MAX_WORKERS, DEFAULT_SCAN_INTERVAL_SECONDS, ReconciliationMode
from .evaluator import evaluate
from .executor import RemediationExecutor
from .inspector import ResourceInspector
from .models import ManagedResource, PolicySet, ResourceKind
from .provenance import (
    JobAction,
    JobOutcome,
    JobStatus,
    OutcomeLogger,
    ScanReport,
    get_outcome_logger,
)
from .provider import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

SCAN_TRIGGER = "scan"


class InFlightRegistry:
    """Claims on resource ids with a coalesced pending-rerun slot per id.

    All operations are synchronous and never await, which makes each of them
    atomic with respect to other coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()
        self._pending: dict[str, str] = {}

    def try_claim(self, resource_id: str) -> bool:
        """Claim a resource id. Returns False if it is already claimed."""
        if resource_id in self._in_flight:
            return False
        self._in_flight.add(resource_id)
        return True

    def release(self, resource_id: str) -> None:
        self._in_flight.discard(resource_id)

    def is_in_flight(self, resource_id: str) -> bool:
        return resource_id in self._in_flight

    def mark_pending(self, resource_id: str, trigger: str) -> None:
        """Queue one rerun; repeated requests collapse into the first."""
        self._pending.setdefault(resource_id, trigger)

    def take_pending(self, resource_id: str) -> str | None:
        """Pop the queued rerun trigger, if any."""
        return self._pending.pop(resource_id, None)

    def discard(self, resource_id: str) -> None:
        """Drop any queued rerun for a resource leaving the fleet."""
        self._pending.pop(resource_id, None)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)


class ReconciliationScheduler:
    """Owns the managed fleet and runs reconciliation jobs against it."""

    def __init__(
        self,
        policies: PolicySet,
        inspector: ResourceInspector,
        executor: RemediationExecutor,
        mode: ReconciliationMode = ReconciliationMode.ENFORCE,
        max_workers: int = DEFAULT_MAX_WORKERS,
        scan_interval_seconds: float = DEFAULT_SCAN_INTERVAL_SECONDS,
        outcome_logger: OutcomeLogger | None = None,
    ) -> None:
        self._policies = policies
        self._inspector = inspector
        self._executor = executor
        self._mode = mode
        self._scan_interval = scan_interval_seconds
        self._outcome_logger = outcome_logger or get_outcome_logger()

        self._registry = InFlightRegistry()
        self._workers = asyncio.Semaphore(max_workers)
        self._fleet: dict[str, ManagedResource] = {
            rid: ManagedResource(resource_id=rid, kind=kind)
            for rid, kind in policies.declared_resources().items()
        }
        # Lower-cased id -> managed id, for kinds with case-insensitive ids
        self._folded: dict[str, str] = {}
        for resource in self._fleet.values():
            if not policies.for_kind(resource.kind).case_sensitive:
                self._folded[resource.resource_id.lower()] = resource.resource_id
        # Resources the provider reported as deleted; not re-added from the
        # declared list until discovery sees them again
        self._gone: set[str] = set()
        self._jobs: dict[str, asyncio.Task[JobOutcome]] = {}
        self._submitted: set[asyncio.Task[JobOutcome | None]] = set()

    @property
    def mode(self) -> ReconciliationMode:
        return self._mode

    @property
    def inspector(self) -> ResourceInspector:
        return self._inspector

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    @property
    def fleet(self) -> dict[str, ManagedResource]:
        """Snapshot of the managed fleet."""
        return dict(self._fleet)

    # -------------------------------------------------------------------------
    # Fleet management
    # -------------------------------------------------------------------------

    def resolve(self, resource_id: str) -> str | None:
        """Map an incoming id onto a managed id.

        ARM ids are case-insensitive, so an id that differs from a managed
        one only in case resolves to it for kinds whose policy compares
        case-insensitively.
        """
        if resource_id in self._fleet:
            return resource_id
        return self._folded.get(resource_id.lower())

    def is_managed(self, resource_id: str) -> bool:
        return self.resolve(resource_id) is not None

    def add_resource(
        self, resource_id: str, kind: ResourceKind, discovered: bool = False
    ) -> ManagedResource:
        """Add a resource to the fleet (no-op if already managed).

        An id that resolves to a managed resource, including a differently
        cased ARM id, returns the existing entry so each resource has a
        single fleet entry and a single in-flight claim.

        Raises:
            KeyError: If no policy governs the resource kind.
        """
        policy = self._policies.for_kind(kind)
        self._gone.discard(policy.canonical_id(resource_id))
        managed_id = self.resolve(resource_id)
        if managed_id is not None:
            return self._fleet[managed_id]
        resource = ManagedResource(resource_id=resource_id, kind=kind, discovered=discovered)
        self._fleet[resource_id] = resource
        if not policy.case_sensitive:
            self._folded[resource_id.lower()] = resource_id
        logger.info(
            "Resource added to managed fleet",
            extra={"resource_id": resource_id, "kind": kind.value, "discovered": discovered},
        )
        return resource

    def remove_resource(self, resource_id: str) -> bool:
        """Remove a resource and cancel its in-flight job.

        A remediation write that has already started still runs to completion;
        the job is cancelled around it.

        Returns:
            True if the resource was managed.
        """
        managed_id = self.resolve(resource_id)
        if managed_id is None:
            return False
        self._forget(managed_id)
        job = self._jobs.get(managed_id)
        if job is not None and not job.done():
            job.cancel()
            logger.info("Cancelling in-flight job", extra={"resource_id": managed_id})
        logger.info("Resource removed from managed fleet", extra={"resource_id": managed_id})
        return True

    def _forget(self, managed_id: str) -> None:
        self._fleet.pop(managed_id, None)
        self._folded.pop(managed_id.lower(), None)
        self._registry.discard(managed_id)

    async def refresh_fleet(self) -> None:
        """Reconcile the fleet with declared and discovered resources."""
        for rid, kind in self._policies.declared_resources().items():
            canonical = self._policies.for_kind(kind).canonical_id(rid)
            if self.resolve(rid) is None and canonical not in self._gone:
                self.add_resource(rid, kind)

        for policy in self._policies.policies:
            if not policy.discover:
                continue
            kind = policy.resource_kind
            try:
                discovered = await self._inspector.list_resources(kind)
            except ProviderError as e:
                logger.warning(
                    "Resource discovery failed, keeping current fleet",
                    extra={"kind": kind.value, "error": str(e), "error_kind": e.kind.value},
                )
                continue

            present = {
                self.add_resource(rid, kind, discovered=True).resource_id for rid in discovered
            }
            for managed_id, resource in list(self._fleet.items()):
                if resource.kind == kind and resource.discovered and managed_id not in present:
                    self.remove_resource(managed_id)

    # -------------------------------------------------------------------------
    # Job entry points
    # -------------------------------------------------------------------------

    async def run_scan(self, resource_ids: list[str] | None = None) -> ScanReport:
        """Reconcile every managed resource (or the given subset) once.

        A failing resource never aborts the scan; its failure is recorded in
        its own outcome.
        """
        report = ScanReport()
        start = time.monotonic()

        candidates = list(self._fleet) if resource_ids is None else list(resource_ids)
        targets: list[str] = []
        for rid in candidates:
            resolved = self.resolve(rid)
            if resolved is None:
                logger.warning("Skipping unmanaged resource", extra={"resource_id": rid})
                continue
            targets.append(resolved)

        results = await asyncio.gather(
            *(self.run_one(rid, trigger=SCAN_TRIGGER) for rid in targets)
        )
        for outcome in results:
            if outcome is None:
                report.coalesced += 1
            else:
                report.outcomes.append(outcome)

        report.duration_seconds = time.monotonic() - start
        self._outcome_logger.log_scan(report)
        return report

    async def run_one(self, resource_id: str, trigger: str = "manual") -> JobOutcome | None:
        """Reconcile a single resource now.

        Returns:
            The outcome of the last job run for the resource, or None if the
            request was coalesced into an in-flight job (or the resource is
            not managed).
        """
        resolved = self.resolve(resource_id)
        if resolved is None:
            logger.warning(
                "Reconciliation requested for unmanaged resource",
                extra={"resource_id": resource_id, "trigger": trigger},
            )
            return None

        if not self._registry.try_claim(resolved):
            self._registry.mark_pending(resolved, trigger)
            logger.info(
                "Job already in flight, request coalesced",
                extra={"resource_id": resolved, "trigger": trigger},
            )
            return None

        try:
            outcome = await self._run_claimed(resolved, trigger)
            while resolved in self._fleet:
                rerun_trigger = self._registry.take_pending(resolved)
                if rerun_trigger is None:
                    break
                outcome = await self._run_claimed(resolved, rerun_trigger)
            return outcome
        finally:
            self._registry.release(resolved)

    def submit(self, resource_id: str, trigger: str = "manual") -> asyncio.Task[JobOutcome | None]:
        """Schedule run_one in the background and return its task."""
        task = asyncio.create_task(self.run_one(resource_id, trigger=trigger))
        self._submitted.add(task)
        task.add_done_callback(self._submitted.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every submitted job to finish."""
        while self._submitted:
            await asyncio.gather(*list(self._submitted), return_exceptions=True)

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run periodic scans until shutdown."""
        logger.info(
            "Starting scheduler",
            extra={
                "mode": self._mode.value,
                "interval_seconds": self._scan_interval,
                "fleet_size": len(self._fleet),
            },
        )

        while not shutdown_event.is_set():
            await self.refresh_fleet()
            await self.run_scan()

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._scan_interval)
            except TimeoutError:
                pass

        await self.wait_idle()
        logger.info("Scheduler shutdown complete")

    # -------------------------------------------------------------------------
    # Job execution
    # -------------------------------------------------------------------------

    async def _run_claimed(self, resource_id: str, trigger: str) -> JobOutcome:
        resource = self._fleet.get(resource_id)
        kind = resource.kind.value if resource is not None else "unknown"

        job = asyncio.create_task(self._execute_job(resource_id, trigger))
        self._jobs[resource_id] = job
        try:
            outcome = await job
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            outcome = JobOutcome(
                resource_id=resource_id,
                kind=kind,
                trigger=trigger,
                status=JobStatus.CANCELLED,
                detail="resource removed from managed fleet",
            )
        finally:
            if self._jobs.get(resource_id) is job:
                del self._jobs[resource_id]

        self._outcome_logger.log_outcome(outcome)
        return outcome

    async def _execute_job(self, resource_id: str, trigger: str) -> JobOutcome:
        resource = self._fleet.get(resource_id)
        if resource is None:
            return JobOutcome(
                resource_id=resource_id,
                kind="unknown",
                trigger=trigger,
                status=JobStatus.CANCELLED,
                detail="resource no longer managed",
            )

        outcome = JobOutcome(resource_id=resource_id, kind=resource.kind.value, trigger=trigger)
        start = time.monotonic()

        try:
            await self._reconcile(resource, outcome)
        except ProviderError as e:
            self._record_provider_error(resource, outcome, e)
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"resource_id": resource_id},
            )
            outcome.status = JobStatus.ERROR
            outcome.error = str(e)
            outcome.error_kind = type(e).__name__

        outcome.duration_seconds = time.monotonic() - start
        return outcome

    async def _reconcile(self, resource: ManagedResource, outcome: JobOutcome) -> None:
        policy = self._policies.for_kind(resource.kind)

        # Worker slots are held per provider phase, never across a retry backoff
        async with self._workers:
            observed = await self._inspector.inspect(resource.resource_id, resource.kind)
        resource.last_observed = observed

        verdict = evaluate(policy, observed)
        outcome.compliant = verdict.compliant
        outcome.detail = verdict.detail

        if verdict.compliant:
            outcome.status = JobStatus.COMPLIANT
            resource.last_reconciled_at = datetime.now(UTC)
            return

        if self._mode == ReconciliationMode.OBSERVE:
            logger.warning(
                "OBSERVE mode: drift reported but not remediated",
                extra={"resource_id": resource.resource_id, "detail": verdict.detail},
            )
            outcome.status = JobStatus.NON_COMPLIANT
            outcome.action = JobAction.REPORTED
            return

        logger.info(
            "ENFORCE mode: remediating drift",
            extra={"resource_id": resource.resource_id, "detail": verdict.detail},
        )
        result = await self._executor.remediate(
            resource.resource_id, resource.kind, policy, workers=self._workers
        )
        outcome.attempts = result.attempts

        if result.success:
            outcome.status = JobStatus.REMEDIATED
            outcome.action = JobAction.REMEDIATED
            outcome.compliant = True
            if result.verdict is not None:
                outcome.detail = result.verdict.detail
            resource.last_reconciled_at = datetime.now(UTC)
            return

        outcome.action = JobAction.REMEDIATION_ATTEMPTED
        if result.error is not None:
            self._record_provider_error(resource, outcome, result.error, remediating=True)

    def _record_provider_error(
        self,
        resource: ManagedResource,
        outcome: JobOutcome,
        error: ProviderError,
        remediating: bool = False,
    ) -> None:
        outcome.error = str(error)
        outcome.error_kind = error.kind.value

        match error.kind:
            case ErrorKind.NOT_FOUND:
                outcome.status = JobStatus.NOT_FOUND
                # Drop without cancelling: this is the job's own resource
                self._forget(resource.resource_id)
                policy = self._policies.for_kind(resource.kind)
                self._gone.add(policy.canonical_id(resource.resource_id))
                logger.warning(
                    "Resource no longer exists, removed from managed fleet",
                    extra={"resource_id": resource.resource_id},
                )
            case ErrorKind.PERMISSION_DENIED:
                outcome.status = JobStatus.PERMISSION_DENIED
                logger.critical(
                    "Permission denied, operator intervention required",
                    extra={"resource_id": resource.resource_id, "error": str(error)},
                )
            case ErrorKind.INVALID_TARGET:
                # The resource exists; the policy names a target that does not
                outcome.status = JobStatus.REMEDIATION_FAILED
                logger.error(
                    "Remediation target does not exist, check the policy",
                    extra={"resource_id": resource.resource_id, "error": str(error)},
                )
            case ErrorKind.TRANSIENT:
                outcome.status = (
                    JobStatus.REMEDIATION_FAILED if remediating else JobStatus.DEFERRED
                )
