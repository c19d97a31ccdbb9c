"""Tests for policy models and policy file loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from compliance_operator.models import (
    FirewallPolicyAssociationPolicy,
    PolicySet,
    ResourceKind,
    WebAclAssociationPolicy,
)
from compliance_operator.policy_loader import PolicyLoadError, load_policies

FIREWALL_POLICY_ID = (
    "/subscriptions/12345678-1234-1234-1234-123456789012/resourceGroups/rg-waf"
    "/providers/Microsoft.Network/ApplicationGatewayWebApplicationFirewallPolicies/wafp-default"
)
GATEWAY_ID = (
    "/subscriptions/12345678-1234-1234-1234-123456789012/resourceGroups/rg-edge"
    "/providers/Microsoft.Network/applicationGateways/agw-1"
)


class TestPolicyModels:
    """Tests for the policy variants."""

    def test_discriminated_union_picks_variant(self) -> None:
        policies = PolicySet.model_validate(
            {
                "policies": [
                    {"kind": "loadBalancer", "webAclArn": "waf-default", "resources": ["alb-1"]},
                    {
                        "kind": "applicationGateway",
                        "firewallPolicyId": FIREWALL_POLICY_ID,
                        "resources": [GATEWAY_ID],
                    },
                ]
            }
        )

        lb = policies.for_kind(ResourceKind.LOAD_BALANCER)
        agw = policies.for_kind(ResourceKind.APPLICATION_GATEWAY)
        assert isinstance(lb, WebAclAssociationPolicy)
        assert isinstance(agw, FirewallPolicyAssociationPolicy)
        assert lb.required_association == "waf-default"
        assert policies.declared_resources() == {
            "alb-1": ResourceKind.LOAD_BALANCER,
            GATEWAY_ID: ResourceKind.APPLICATION_GATEWAY,
        }

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PolicySet.model_validate({"policies": [{"kind": "bucket", "resources": ["b"]}]})

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            WebAclAssociationPolicy.model_validate(
                {"kind": "loadBalancer", "webAclArn": "waf", "firewallPolicyId": "x"}
            )

    def test_empty_policy_set_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PolicySet.model_validate({"policies": []})

    def test_duplicate_resource_ids_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unique"):
            WebAclAssociationPolicy.model_validate(
                {"kind": "loadBalancer", "webAclArn": "waf", "resources": ["alb-1", "alb-1"]}
            )

    def test_gateway_ids_differing_only_in_case_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unique"):
            FirewallPolicyAssociationPolicy.model_validate(
                {
                    "kind": "applicationGateway",
                    "firewallPolicyId": FIREWALL_POLICY_ID,
                    "resources": [GATEWAY_ID, GATEWAY_ID.lower()],
                }
            )

    def test_load_balancer_ids_are_case_sensitive(self) -> None:
        policy = WebAclAssociationPolicy.model_validate(
            {"kind": "loadBalancer", "webAclArn": "waf", "resources": ["alb-1", "ALB-1"]}
        )

        assert policy.canonical_id("ALB-1") == "ALB-1"
        assert len(policy.resources) == 2

    def test_one_policy_per_kind(self) -> None:
        with pytest.raises(ValidationError, match="one policy per resource kind"):
            PolicySet.model_validate(
                {
                    "policies": [
                        {"kind": "loadBalancer", "webAclArn": "a", "resources": ["alb-1"]},
                        {"kind": "loadBalancer", "webAclArn": "b", "resources": ["alb-2"]},
                    ]
                }
            )

    def test_firewall_policy_must_be_arm_id(self) -> None:
        with pytest.raises(ValidationError, match="ARM resource id"):
            FirewallPolicyAssociationPolicy.model_validate(
                {"kind": "applicationGateway", "firewallPolicyId": "wafp-default"}
            )

    def test_for_kind_missing(self) -> None:
        policies = PolicySet.model_validate(
            {"policies": [{"kind": "loadBalancer", "webAclArn": "a", "resources": ["alb-1"]}]}
        )

        with pytest.raises(KeyError):
            policies.for_kind(ResourceKind.APPLICATION_GATEWAY)

    def test_web_acl_match_is_case_sensitive(self) -> None:
        policy = WebAclAssociationPolicy.model_validate(
            {"kind": "loadBalancer", "webAclArn": "waf-default"}
        )

        assert policy.matches("waf-default")
        assert not policy.matches("WAF-DEFAULT")
        assert not policy.matches(None)

    def test_firewall_policy_match_ignores_case(self) -> None:
        policy = FirewallPolicyAssociationPolicy.model_validate(
            {"kind": "applicationGateway", "firewallPolicyId": FIREWALL_POLICY_ID}
        )

        assert policy.matches(FIREWALL_POLICY_ID.lower())
        assert not policy.matches(None)


class TestLoadPolicies:
    """Tests for load_policies."""

    def test_load_flat_document(self, policy_file: Path) -> None:
        policies = load_policies(policy_file)

        assert policies.declared_resources() == {"alb-1": ResourceKind.LOAD_BALANCER}

    def test_load_wrapped_document(self, tmp_path: Path) -> None:
        path = tmp_path / "wrapped.yaml"
        path.write_text(
            "apiVersion: compliance/v1\n"
            "kind: PolicySet\n"
            "spec:\n"
            "  policies:\n"
            "    - kind: loadBalancer\n"
            "      webAclArn: waf-default\n"
            "      discover: true\n"
        )

        policies = load_policies(path)

        assert policies.for_kind(ResourceKind.LOAD_BALANCER).discover is True

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(PolicyLoadError, match="not found"):
            load_policies(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("policies: [unclosed\n")

        with pytest.raises(PolicyLoadError, match="Invalid YAML"):
            load_policies(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(PolicyLoadError, match="YAML mapping"):
            load_policies(path)

    def test_validation_errors_are_readable(self, tmp_path: Path) -> None:
        path = tmp_path / "invalid.yaml"
        path.write_text("policies:\n  - kind: loadBalancer\n    resources: [alb-1]\n")

        with pytest.raises(PolicyLoadError) as exc_info:
            load_policies(path)

        assert "Validation failed" in str(exc_info.value)
        assert "webAclArn" in str(exc_info.value)

    def test_oversized_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "huge.yaml"
        path.write_text("# " + "x" * (1024 * 1024 + 1))

        with pytest.raises(PolicyLoadError, match="maximum size"):
            load_policies(path)
