"""AWS adapter: WAFv2 Web ACL associations on Application Load Balancers."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
)

from .config import MAX_DISCOVERY_RESULTS, MAX_EVENTS_PER_POLL
from .events import ChangeEvent
from .models import ObservedState, ResourceKind
from .provider import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

NOT_FOUND_ERROR_CODES = frozenset(
    {
        "WAFNonexistentItemException",
        "LoadBalancerNotFound",
        "LoadBalancerNotFoundException",
        "ResourceNotFoundException",
    }
)

PERMISSION_DENIED_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "AuthFailure",
    }
)

# Client-side throttling: adaptive mode backs off on provider throttling signals
DEFAULT_CLIENT_CONFIG = BotoConfig(retries={"max_attempts": 3, "mode": "adaptive"})


def classify_aws_error(
    error: ClientError | BotoCoreError, resource_id: str | None = None
) -> ProviderError:
    """Translate a botocore exception into a classified ProviderError."""
    message = str(error)

    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in NOT_FOUND_ERROR_CODES or status == 404:
            return ProviderError(message, ErrorKind.NOT_FOUND, resource_id=resource_id)
        if code in PERMISSION_DENIED_ERROR_CODES or status == 403:
            return ProviderError(message, ErrorKind.PERMISSION_DENIED, resource_id=resource_id)
        # Throttling, WAFUnavailableEntityException, internal errors and anything
        # unrecognized are retried up to the attempt limit
        return ProviderError(message, ErrorKind.TRANSIENT, resource_id=resource_id)

    if isinstance(error, NoCredentialsError):
        return ProviderError(message, ErrorKind.PERMISSION_DENIED, resource_id=resource_id)

    # EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ...
    return ProviderError(message, ErrorKind.TRANSIENT, resource_id=resource_id)


def _require_supported(kind: ResourceKind) -> None:
    if kind != ResourceKind.LOAD_BALANCER:
        raise ValueError(f"AWS provider does not manage resource kind '{kind.value}'")


class AwsProvider:
    """ResourceProvider for AWS Application Load Balancers."""

    def __init__(
        self,
        session: boto3.session.Session,
        client_config: BotoConfig | None = None,
    ) -> None:
        config = client_config or DEFAULT_CLIENT_CONFIG
        self._session = session
        self._wafv2 = session.client("wafv2", config=config)
        self._elbv2 = session.client("elbv2", config=config)
        self._client_config = config

    @property
    def wafv2(self) -> Any:
        return self._wafv2

    @property
    def elbv2(self) -> Any:
        return self._elbv2

    def describe(self, resource_id: str, kind: ResourceKind) -> ObservedState:
        _require_supported(kind)
        try:
            # A deleted load balancer must surface as NOT_FOUND rather than as
            # "no Web ACL"
            self._elbv2.describe_load_balancers(LoadBalancerArns=[resource_id])
            response = self._wafv2.get_web_acl_for_resource(ResourceArn=resource_id)
        except (ClientError, BotoCoreError) as e:
            raise classify_aws_error(e, resource_id) from e

        web_acl = response.get("WebACL") or {}
        return ObservedState(
            resource_id=resource_id,
            kind=kind,
            association=web_acl.get("ARN"),
            properties={"webAclName": web_acl.get("Name")} if web_acl else {},
        )

    def associate(self, resource_id: str, kind: ResourceKind, target: str) -> None:
        """Associate the Web ACL. WAFv2 treats a repeated association as a no-op.

        WAFv2 answers ``WAFNonexistentItemException`` both for a missing load
        balancer and for a missing Web ACL. The load balancer is looked up
        again to tell the two apart: only a deleted load balancer is
        NOT_FOUND, a missing Web ACL is INVALID_TARGET.
        """
        _require_supported(kind)
        try:
            self._wafv2.associate_web_acl(WebACLArn=target, ResourceArn=resource_id)
        except (ClientError, BotoCoreError) as e:
            error = classify_aws_error(e, resource_id)
            if error.kind == ErrorKind.NOT_FOUND:
                error = self._missing_load_balancer_or_web_acl(resource_id, target, error)
            raise error from e

        logger.info(
            "Web ACL associated",
            extra={"resource_id": resource_id, "web_acl_arn": target},
        )

    def _missing_load_balancer_or_web_acl(
        self, resource_id: str, target: str, error: ProviderError
    ) -> ProviderError:
        try:
            self._elbv2.describe_load_balancers(LoadBalancerArns=[resource_id])
        except (ClientError, BotoCoreError) as e:
            return classify_aws_error(e, resource_id)

        logger.error(
            "Web ACL does not exist",
            extra={"resource_id": resource_id, "web_acl_arn": target},
        )
        return ProviderError(
            f"Web ACL {target} does not exist: {error}",
            ErrorKind.INVALID_TARGET,
            resource_id=resource_id,
        )

    def list_resources(self, kind: ResourceKind) -> list[str]:
        _require_supported(kind)
        arns: list[str] = []
        try:
            paginator = self._elbv2.get_paginator("describe_load_balancers")
            for page in paginator.paginate():
                for lb in page.get("LoadBalancers", []):
                    if lb.get("Type") != "application":
                        continue
                    arns.append(lb["LoadBalancerArn"])
                    if len(arns) >= MAX_DISCOVERY_RESULTS:
                        return arns
        except (ClientError, BotoCoreError) as e:
            raise classify_aws_error(e) from e
        return arns

    def change_event_source(self, event_names: tuple[str, ...]) -> CloudTrailEventSource:
        """Event source reading CloudTrail management events."""
        client = self._session.client("cloudtrail", config=self._client_config)
        return CloudTrailEventSource(client, event_names)


def _resource_arn_from_event(raw: dict[str, Any]) -> str | None:
    detail_json = raw.get("CloudTrailEvent")
    if detail_json:
        try:
            detail = json.loads(detail_json)
        except ValueError:
            detail = None
        if not isinstance(detail, dict):
            detail = {}
        params = detail.get("requestParameters")
        if not isinstance(params, dict):
            params = {}
        arn = params.get("resourceArn") or params.get("ResourceArn")
        if isinstance(arn, str) and arn:
            return arn

    for resource in raw.get("Resources") or []:
        name = resource.get("ResourceName", "")
        if name.startswith("arn:") and ":loadbalancer/" in name:
            return name
    return None


class CloudTrailEventSource:
    """Change notifications from CloudTrail ``LookupEvents``."""

    def __init__(self, client: Any, event_names: tuple[str, ...]) -> None:
        self._client = client
        self._event_names = event_names

    def fetch_events(self, since: datetime) -> list[ChangeEvent]:
        """Read the whole window and keep the oldest events.

        LookupEvents pages newest first, so the window is read completely
        before the result is capped; a capped poll then resumes from the
        newest event it kept.
        """
        events: list[ChangeEvent] = []
        try:
            paginator = self._client.get_paginator("lookup_events")
            for event_name in self._event_names:
                pages = paginator.paginate(
                    LookupAttributes=[{"AttributeKey": "EventName", "AttributeValue": event_name}],
                    StartTime=since,
                )
                for page in pages:
                    for raw in page.get("Events", []):
                        event = self._to_change_event(raw)
                        if event is not None:
                            events.append(event)
        except (ClientError, BotoCoreError) as e:
            raise classify_aws_error(e) from e

        events.sort(key=lambda ev: ev.timestamp)
        return events[:MAX_EVENTS_PER_POLL]

    def _to_change_event(self, raw: dict[str, Any]) -> ChangeEvent | None:
        resource_arn = _resource_arn_from_event(raw)
        if resource_arn is None:
            logger.debug(
                "CloudTrail event without resource ARN skipped",
                extra={"event_id": raw.get("EventId")},
            )
            return None

        timestamp = raw.get("EventTime")
        if not isinstance(timestamp, datetime):
            timestamp = datetime.now(UTC)

        return ChangeEvent(
            event_name=raw.get("EventName", ""),
            resource_id=resource_arn,
            timestamp=timestamp,
            event_id=raw.get("EventId"),
        )
