"""Tests for the AWS WAFv2 / ALB adapter using botocore's Stubber."""

from __future__ import annotations

import json
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError
from botocore.stub import Stubber

from compliance_operator.aws_provider import (
    AwsProvider,
    CloudTrailEventSource,
    classify_aws_error,
)
from compliance_operator.models import ResourceKind
from compliance_operator.provider import ErrorKind, ProviderError

REGION = "us-east-1"
ALB_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/alb-1/50dc6c495c0c9188"
ACL_ARN = "arn:aws:wafv2:us-east-1:123456789012:regional/webacl/waf-default/a1b2c3d4"
LB = ResourceKind.LOAD_BALANCER

WEB_ACL = {
    "Name": "waf-default",
    "Id": "a1b2c3d4",
    "ARN": ACL_ARN,
    "DefaultAction": {"Allow": {}},
    "VisibilityConfig": {
        "SampledRequestsEnabled": True,
        "CloudWatchMetricsEnabled": True,
        "MetricName": "waf-default",
    },
}


def make_session() -> boto3.session.Session:
    return boto3.session.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name=REGION,
    )


@pytest.fixture
def aws() -> Generator[tuple[AwsProvider, Stubber, Stubber], None, None]:
    provider = AwsProvider(make_session())
    with Stubber(provider.elbv2) as elbv2, Stubber(provider.wafv2) as wafv2:
        yield provider, elbv2, wafv2
        elbv2.assert_no_pending_responses()
        wafv2.assert_no_pending_responses()


def stub_load_balancer_exists(elbv2: Stubber) -> None:
    elbv2.add_response(
        "describe_load_balancers",
        {"LoadBalancers": [{"LoadBalancerArn": ALB_ARN, "Type": "application"}]},
        {"LoadBalancerArns": [ALB_ARN]},
    )


class TestClassifyAwsError:
    """Tests for botocore error classification."""

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("WAFNonexistentItemException", ErrorKind.NOT_FOUND),
            ("LoadBalancerNotFound", ErrorKind.NOT_FOUND),
            ("AccessDeniedException", ErrorKind.PERMISSION_DENIED),
            ("ThrottlingException", ErrorKind.TRANSIENT),
            ("WAFUnavailableEntityException", ErrorKind.TRANSIENT),
        ],
    )
    def test_client_error_codes(self, code: str, expected: ErrorKind) -> None:
        error = ClientError({"Error": {"Code": code, "Message": "boom"}}, "AssociateWebACL")

        assert classify_aws_error(error, "alb-1").kind == expected

    def test_http_status_fallback(self) -> None:
        error = ClientError(
            {"Error": {"Code": "Other"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
            "AssociateWebACL",
        )

        assert classify_aws_error(error).kind == ErrorKind.PERMISSION_DENIED

    def test_missing_credentials_is_permission_denied(self) -> None:
        assert classify_aws_error(NoCredentialsError()).kind == ErrorKind.PERMISSION_DENIED

    def test_connection_errors_are_transient(self) -> None:
        error = EndpointConnectionError(endpoint_url="https://wafv2.us-east-1.amazonaws.com")

        classified = classify_aws_error(error, "alb-1")

        assert classified.kind == ErrorKind.TRANSIENT
        assert classified.resource_id == "alb-1"


class TestAwsProvider:
    """Tests for AwsProvider against stubbed clients."""

    def test_describe_associated(self, aws: tuple[AwsProvider, Stubber, Stubber]) -> None:
        provider, elbv2, wafv2 = aws
        stub_load_balancer_exists(elbv2)
        wafv2.add_response(
            "get_web_acl_for_resource", {"WebACL": WEB_ACL}, {"ResourceArn": ALB_ARN}
        )

        state = provider.describe(ALB_ARN, LB)

        assert state.association == ACL_ARN
        assert state.properties == {"webAclName": "waf-default"}

    def test_describe_without_web_acl(self, aws: tuple[AwsProvider, Stubber, Stubber]) -> None:
        provider, elbv2, wafv2 = aws
        stub_load_balancer_exists(elbv2)
        wafv2.add_response("get_web_acl_for_resource", {}, {"ResourceArn": ALB_ARN})

        assert provider.describe(ALB_ARN, LB).association is None

    def test_describe_deleted_load_balancer(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, elbv2, _ = aws
        elbv2.add_client_error(
            "describe_load_balancers",
            service_error_code="LoadBalancerNotFound",
            http_status_code=400,
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.describe(ALB_ARN, LB)

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_describe_rejects_other_kinds(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, _, _ = aws

        with pytest.raises(ValueError, match="does not manage"):
            provider.describe(ALB_ARN, ResourceKind.APPLICATION_GATEWAY)

    def test_associate(self, aws: tuple[AwsProvider, Stubber, Stubber]) -> None:
        provider, _, wafv2 = aws
        wafv2.add_response(
            "associate_web_acl", {}, {"WebACLArn": ACL_ARN, "ResourceArn": ALB_ARN}
        )

        provider.associate(ALB_ARN, LB, ACL_ARN)

    def test_associate_throttled_is_transient(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, _, wafv2 = aws
        wafv2.add_client_error(
            "associate_web_acl",
            service_error_code="WAFUnavailableEntityException",
            http_status_code=400,
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.associate(ALB_ARN, LB, ACL_ARN)

        assert exc_info.value.kind == ErrorKind.TRANSIENT

    def test_associate_access_denied(self, aws: tuple[AwsProvider, Stubber, Stubber]) -> None:
        provider, _, wafv2 = aws
        wafv2.add_client_error(
            "associate_web_acl",
            service_error_code="AccessDeniedException",
            http_status_code=400,
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.associate(ALB_ARN, LB, ACL_ARN)

        assert exc_info.value.kind == ErrorKind.PERMISSION_DENIED

    def test_associate_missing_web_acl_is_invalid_target(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, elbv2, wafv2 = aws
        wafv2.add_client_error(
            "associate_web_acl",
            service_error_code="WAFNonexistentItemException",
            http_status_code=400,
        )
        stub_load_balancer_exists(elbv2)

        with pytest.raises(ProviderError) as exc_info:
            provider.associate(ALB_ARN, LB, ACL_ARN)

        assert exc_info.value.kind == ErrorKind.INVALID_TARGET
        assert exc_info.value.resource_id == ALB_ARN
        assert ACL_ARN in str(exc_info.value)

    def test_associate_on_deleted_load_balancer_is_not_found(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, elbv2, wafv2 = aws
        wafv2.add_client_error(
            "associate_web_acl",
            service_error_code="WAFNonexistentItemException",
            http_status_code=400,
        )
        elbv2.add_client_error(
            "describe_load_balancers",
            service_error_code="LoadBalancerNotFound",
            http_status_code=400,
        )

        with pytest.raises(ProviderError) as exc_info:
            provider.associate(ALB_ARN, LB, ACL_ARN)

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_list_resources_keeps_application_load_balancers(
        self, aws: tuple[AwsProvider, Stubber, Stubber]
    ) -> None:
        provider, elbv2, _ = aws
        nlb_arn = ALB_ARN.replace("/app/", "/net/")
        elbv2.add_response(
            "describe_load_balancers",
            {
                "LoadBalancers": [
                    {"LoadBalancerArn": ALB_ARN, "Type": "application"},
                    {"LoadBalancerArn": nlb_arn, "Type": "network"},
                ]
            },
            {},
        )

        assert provider.list_resources(LB) == [ALB_ARN]


class TestCloudTrailEventSource:
    """Tests for CloudTrail change notifications."""

    def test_fetch_events(self) -> None:
        client = make_session().client("cloudtrail")
        since = datetime.now(UTC) - timedelta(minutes=5)
        event_time = datetime.now(UTC)

        with Stubber(client) as stub:
            stub.add_response(
                "lookup_events",
                {
                    "Events": [
                        {
                            "EventId": "evt-1",
                            "EventName": "DisassociateWebACL",
                            "EventTime": event_time,
                            "CloudTrailEvent": json.dumps(
                                {"requestParameters": {"resourceArn": ALB_ARN}}
                            ),
                        },
                        {
                            "EventId": "evt-2",
                            "EventName": "DisassociateWebACL",
                            "EventTime": event_time,
                            "CloudTrailEvent": json.dumps({"requestParameters": {}}),
                        },
                    ]
                },
                {
                    "LookupAttributes": [
                        {"AttributeKey": "EventName", "AttributeValue": "DisassociateWebACL"}
                    ],
                    "StartTime": since,
                },
            )

            events = CloudTrailEventSource(client, ("DisassociateWebACL",)).fetch_events(since)

        assert len(events) == 1
        assert events[0].resource_id == ALB_ARN
        assert events[0].event_id == "evt-1"
        assert events[0].event_name == "DisassociateWebACL"

    def test_resource_arn_from_resources_list(self) -> None:
        client = make_session().client("cloudtrail")
        source = CloudTrailEventSource(client, ("DisassociateWebACL",))

        event = source._to_change_event(
            {
                "EventId": "evt-3",
                "EventName": "DisassociateWebACL",
                "Resources": [
                    {
                        "ResourceType": "AWS::ElasticLoadBalancingV2::LoadBalancer",
                        "ResourceName": ALB_ARN,
                    }
                ],
            }
        )

        assert event is not None
        assert event.resource_id == ALB_ARN

    def test_non_object_cloudtrail_payload_falls_back_to_resources(self) -> None:
        client = make_session().client("cloudtrail")
        source = CloudTrailEventSource(client, ("DisassociateWebACL",))

        event = source._to_change_event(
            {
                "EventId": "evt-4",
                "EventName": "DisassociateWebACL",
                "CloudTrailEvent": json.dumps(["not", "an", "object"]),
                "Resources": [{"ResourceName": ALB_ARN}],
            }
        )

        assert event is not None
        assert event.resource_id == ALB_ARN

    def test_non_object_request_parameters_are_skipped(self) -> None:
        client = make_session().client("cloudtrail")
        source = CloudTrailEventSource(client, ("DisassociateWebACL",))

        event = source._to_change_event(
            {
                "EventId": "evt-5",
                "EventName": "DisassociateWebACL",
                "CloudTrailEvent": json.dumps({"requestParameters": "redacted"}),
            }
        )

        assert event is None

    def test_capped_poll_keeps_oldest_events(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("compliance_operator.aws_provider.MAX_EVENTS_PER_POLL", 2)
        client = make_session().client("cloudtrail")
        since = datetime.now(UTC) - timedelta(minutes=30)
        newest = datetime.now(UTC)

        def raw_event(event_id: str, age_minutes: int) -> dict:
            return {
                "EventId": event_id,
                "EventName": "DisassociateWebACL",
                "EventTime": newest - timedelta(minutes=age_minutes),
                "CloudTrailEvent": json.dumps({"requestParameters": {"resourceArn": ALB_ARN}}),
            }

        with Stubber(client) as stub:
            # LookupEvents pages newest first
            stub.add_response(
                "lookup_events",
                {
                    "Events": [
                        raw_event("evt-3", 1),
                        raw_event("evt-2", 10),
                        raw_event("evt-1", 20),
                    ]
                },
                {
                    "LookupAttributes": [
                        {"AttributeKey": "EventName", "AttributeValue": "DisassociateWebACL"}
                    ],
                    "StartTime": since,
                },
            )

            events = CloudTrailEventSource(client, ("DisassociateWebACL",)).fetch_events(since)

        assert [e.event_id for e in events] == ["evt-1", "evt-2"]

    def test_lookup_failure_is_classified(self) -> None:
        client = make_session().client("cloudtrail")

        with Stubber(client) as stub:
            stub.add_client_error(
                "lookup_events", service_error_code="ThrottlingException", http_status_code=400
            )

            with pytest.raises(ProviderError) as exc_info:
                CloudTrailEventSource(client, ("DisassociateWebACL",)).fetch_events(
                    datetime.now(UTC)
                )

        assert exc_info.value.kind == ErrorKind.TRANSIENT
