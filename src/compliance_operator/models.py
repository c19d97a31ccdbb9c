"""Domain models: resource kinds, declared policies and observed state.

Policies are pydantic models so that the YAML policy file is validated at the
boundary (fail fast, fail loudly). Each resource kind has its own policy
variant with a fixed field set; the variants form a discriminated union on
``kind``.

Observed state and managed resources are plain dataclasses: they are produced
by the operator itself and never parsed from user input.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_MANAGED_RESOURCES


class ResourceKind(str, Enum):
    """Resource kinds the operator knows how to keep compliant."""

    # AWS Application Load Balancer guarded by a WAFv2 Web ACL
    LOAD_BALANCER = "loadBalancer"
    # Azure Application Gateway guarded by a WAF firewall policy
    APPLICATION_GATEWAY = "applicationGateway"


# =============================================================================
# Policies
# =============================================================================


class BasePolicy(BaseModel):
    """Fields shared by every policy variant."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    # Explicitly managed resource ids (ARNs or ARM ids)
    resources: list[str] = Field(default_factory=list)

    # Also manage every resource of this kind the provider can enumerate
    discover: bool = False

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: list[str]) -> list[str]:
        if any(not rid.strip() for rid in v):
            raise ValueError("resource ids must not be empty")
        return v

    @model_validator(mode="after")
    def validate_unique_resources(self) -> BasePolicy:
        canonical = [self.canonical_id(rid) for rid in self.resources]
        if len(set(canonical)) != len(canonical):
            raise ValueError("resource ids must be unique")
        return self

    @property
    def resource_kind(self) -> ResourceKind:
        return ResourceKind(self.kind)  # type: ignore[attr-defined]

    @property
    def required_association(self) -> str:
        """Identifier the resource must be associated with."""
        raise NotImplementedError("Subclasses must implement required_association")

    @property
    def case_sensitive(self) -> bool:
        """Whether resource and association identifiers compare case-sensitively."""
        return True

    def canonical_id(self, resource_id: str) -> str:
        """Identity of a resource id under this policy's case rule."""
        return resource_id if self.case_sensitive else resource_id.lower()

    def matches(self, observed: str | None) -> bool:
        """Check an observed association against the required one."""
        if observed is None:
            return False
        if self.case_sensitive:
            return observed == self.required_association
        return observed.lower() == self.required_association.lower()


class WebAclAssociationPolicy(BasePolicy):
    """AWS: an Application Load Balancer must be associated with a Web ACL."""

    kind: Literal["loadBalancer"]
    web_acl_arn: Annotated[str, Field(min_length=1, alias="webAclArn")]

    @property
    def required_association(self) -> str:
        return self.web_acl_arn


class FirewallPolicyAssociationPolicy(BasePolicy):
    """Azure: an Application Gateway must reference a WAF firewall policy.

    ARM resource ids are case-insensitive, so comparisons are too: both the
    gateway ids in ``resources`` and the firewall policy id.
    """

    kind: Literal["applicationGateway"]
    firewall_policy_id: Annotated[str, Field(min_length=1, alias="firewallPolicyId")]

    @field_validator("firewall_policy_id")
    @classmethod
    def validate_arm_id(cls, v: str) -> str:
        if not v.lower().startswith("/subscriptions/"):
            raise ValueError("firewallPolicyId must be a full ARM resource id")
        return v

    @property
    def required_association(self) -> str:
        return self.firewall_policy_id

    @property
    def case_sensitive(self) -> bool:
        return False


Policy = Annotated[
    WebAclAssociationPolicy | FirewallPolicyAssociationPolicy,
    Field(discriminator="kind"),
]


class PolicySet(BaseModel):
    """The declared desired state: at most one policy per resource kind."""

    model_config = {"extra": "forbid", "frozen": True}

    policies: list[Policy] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_policies(self) -> PolicySet:
        kinds = [p.kind for p in self.policies]
        duplicates = sorted({k for k in kinds if kinds.count(k) > 1})
        if duplicates:
            raise ValueError(f"only one policy per resource kind is allowed: {duplicates}")

        seen: set[str] = set()
        for policy in self.policies:
            for rid in policy.resources:
                canonical = policy.canonical_id(rid)
                if canonical in seen:
                    raise ValueError(f"resource is declared by more than one policy: {rid}")
                seen.add(canonical)

        if len(seen) > MAX_MANAGED_RESOURCES:
            raise ValueError(f"at most {MAX_MANAGED_RESOURCES} resources can be managed")
        return self

    def for_kind(self, kind: ResourceKind) -> BasePolicy:
        """Get the policy governing a resource kind.

        Raises:
            KeyError: If no policy is declared for the kind.
        """
        for policy in self.policies:
            if policy.kind == kind.value:
                return policy
        raise KeyError(f"No policy declared for resource kind '{kind.value}'")

    @property
    def kinds(self) -> list[ResourceKind]:
        return [ResourceKind(p.kind) for p in self.policies]

    def declared_resources(self) -> dict[str, ResourceKind]:
        """Map every explicitly declared resource id to its kind."""
        return {rid: ResourceKind(p.kind) for p in self.policies for rid in p.resources}


# =============================================================================
# Observed state
# =============================================================================


@dataclass(frozen=True)
class ObservedState:
    """Snapshot of a resource as reported by the provider.

    Attributes:
        resource_id: Provider-assigned identifier (ARN or ARM id)
        kind: Resource kind
        association: Currently associated WAF policy / Web ACL, or None
        properties: Raw provider properties, kept for audit only
        observed_at: When the snapshot was taken
    """

    resource_id: str
    kind: ResourceKind
    association: str | None
    properties: Mapping[str, Any] = field(default_factory=dict)
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ManagedResource:
    """Local cache entry for a resource in the managed fleet.

    The provider is authoritative; this record is only a cache of the last
    observation and is never used to skip an inspection.
    """

    resource_id: str
    kind: ResourceKind
    last_observed: ObservedState | None = None
    last_reconciled_at: datetime | None = None
    discovered: bool = False
