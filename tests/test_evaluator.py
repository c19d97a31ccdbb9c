"""Tests for the policy evaluator."""

import pytest

from compliance_operator.evaluator import evaluate
from compliance_operator.models import (
    FirewallPolicyAssociationPolicy,
    ObservedState,
    ResourceKind,
    WebAclAssociationPolicy,
)

WAF_POLICY = WebAclAssociationPolicy.model_validate(
    {"kind": "loadBalancer", "webAclArn": "waf-default", "resources": ["alb-1"]}
)


def observed(association: str | None, kind: ResourceKind = ResourceKind.LOAD_BALANCER) -> ObservedState:
    return ObservedState(resource_id="alb-1", kind=kind, association=association)


class TestEvaluate:
    """Tests for evaluate()."""

    def test_compliant(self) -> None:
        verdict = evaluate(WAF_POLICY, observed("waf-default"))

        assert verdict.compliant
        assert verdict.resource_id == "alb-1"
        assert verdict.detail == "associated with waf-default"

    def test_missing_association(self) -> None:
        verdict = evaluate(WAF_POLICY, observed(None))

        assert not verdict.compliant
        assert verdict.detail == "no association, expected waf-default"

    def test_wrong_association(self) -> None:
        verdict = evaluate(WAF_POLICY, observed("waf-legacy"))

        assert not verdict.compliant
        assert verdict.detail == "associated with waf-legacy, expected waf-default"

    def test_deterministic(self) -> None:
        state = observed(None)

        assert evaluate(WAF_POLICY, state) == evaluate(WAF_POLICY, state)

    def test_kind_mismatch_raises(self) -> None:
        with pytest.raises(ValueError, match="cannot evaluate"):
            evaluate(WAF_POLICY, observed("waf-default", ResourceKind.APPLICATION_GATEWAY))

    def test_arm_ids_compare_case_insensitively(self) -> None:
        policy_id = (
            "/subscriptions/12345678-1234-1234-1234-123456789012/resourceGroups/rg"
            "/providers/Microsoft.Network/ApplicationGatewayWebApplicationFirewallPolicies/wafp"
        )
        policy = FirewallPolicyAssociationPolicy.model_validate(
            {"kind": "applicationGateway", "firewallPolicyId": policy_id}
        )

        verdict = evaluate(policy, observed(policy_id.upper(), ResourceKind.APPLICATION_GATEWAY))

        assert verdict.compliant
