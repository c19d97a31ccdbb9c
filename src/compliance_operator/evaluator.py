"""Policy Evaluator: pure comparison of observed state against policy."""

from __future__ import annotations

from dataclasses import dataclass

from .models import BasePolicy, ObservedState


@dataclass(frozen=True)
class ComplianceVerdict:
    """Outcome of a single evaluation. Never cached across cycles."""

    resource_id: str
    compliant: bool
    detail: str


def evaluate(policy: BasePolicy, observed: ObservedState) -> ComplianceVerdict:
    """Decide whether an observed resource satisfies its policy.

    Compliant iff the observed association equals the policy's required
    association (case-insensitively for ARM ids). Deterministic and free of
    I/O.

    Raises:
        ValueError: If the policy governs a different resource kind.
    """
    if policy.resource_kind != observed.kind:
        raise ValueError(
            f"Policy for '{policy.resource_kind.value}' cannot evaluate "
            f"a '{observed.kind.value}' resource"
        )

    expected = policy.required_association
    actual = observed.association

    if policy.matches(actual):
        return ComplianceVerdict(
            resource_id=observed.resource_id,
            compliant=True,
            detail=f"associated with {expected}",
        )

    if actual is None:
        detail = f"no association, expected {expected}"
    else:
        detail = f"associated with {actual}, expected {expected}"
    return ComplianceVerdict(resource_id=observed.resource_id, compliant=False, detail=detail)
