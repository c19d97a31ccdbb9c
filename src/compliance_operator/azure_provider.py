"""Azure adapter: Application Gateway WAF policy associations.

Reads and writes go through the generic ARM resource API
(ResourceManagementClient.resources.*_by_id). Discovery and change
notifications use Azure Resource Graph:

- ``Resources`` table: enumerate Application Gateways in the subscription
- ``resourcechanges`` table: property-level change history, used to detect
  a firewall policy being removed from a gateway

SECURITY:
- All calls use Managed Identity authentication
- Query results are bounded to prevent OOM
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import MAX_DISCOVERY_RESULTS, MAX_EVENTS_PER_POLL
from .events import ChangeEvent
from .models import ObservedState, ResourceKind
from .provider import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

APPLICATION_GATEWAY_API_VERSION = "2023-09-01"
APPLICATION_GATEWAY_TYPE = "microsoft.network/applicationgateways"

DISASSOCIATE_FIREWALL_POLICY = "DisassociateFirewallPolicy"

PERMISSION_DENIED_STATUS_CODES = frozenset({401, 403})

# ARM error codes for a PUT that references a resource which does not exist
INVALID_TARGET_ERROR_CODES = frozenset({"InvalidResourceReference", "LinkedInvalidPropertyId"})


def _retry_after(error: HttpResponseError) -> float | None:
    """Extract a Retry-After hint (seconds) from an HTTP error response."""
    response = getattr(error, "response", None)
    if response is None or not getattr(response, "headers", None):
        return None
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_code(error: AzureError) -> str | None:
    odata_error = getattr(error, "error", None)
    return getattr(odata_error, "code", None)


def classify_azure_error(error: AzureError, resource_id: str | None = None) -> ProviderError:
    """Translate an Azure SDK exception into a classified ProviderError."""
    message = str(error)

    if isinstance(error, ResourceNotFoundError):
        return ProviderError(message, ErrorKind.NOT_FOUND, resource_id=resource_id)

    if isinstance(error, ClientAuthenticationError):
        return ProviderError(message, ErrorKind.PERMISSION_DENIED, resource_id=resource_id)

    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status == 404:
            return ProviderError(message, ErrorKind.NOT_FOUND, resource_id=resource_id)
        if status in PERMISSION_DENIED_STATUS_CODES:
            return ProviderError(message, ErrorKind.PERMISSION_DENIED, resource_id=resource_id)
        # 408, 409, 429 and 5xx are expected to clear; other 4xx are bounded by
        # the remediation attempt limit
        return ProviderError(
            message,
            ErrorKind.TRANSIENT,
            resource_id=resource_id,
            retry_after=_retry_after(error),
        )

    # ServiceRequestError, ServiceResponseError and other transport failures
    return ProviderError(message, ErrorKind.TRANSIENT, resource_id=resource_id)


def _require_supported(kind: ResourceKind) -> None:
    if kind != ResourceKind.APPLICATION_GATEWAY:
        raise ValueError(f"Azure provider does not manage resource kind '{kind.value}'")


def _firewall_policy_id(properties: Any) -> str | None:
    if not isinstance(properties, dict):
        return None
    firewall_policy = properties.get("firewallPolicy")
    if not isinstance(firewall_policy, dict):
        return None
    return firewall_policy.get("id") or None


class AzureProvider:
    """ResourceProvider for Azure Application Gateways."""

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        """Initialize ARM and Resource Graph clients.

        Args:
            credential: Azure credential (must be Managed Identity)
            subscription_id: Subscription scanned for discovery and changes
        """
        self._subscription_id = subscription_id
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )
        self._graph_client = ResourceGraphClient(credential=credential)

    def describe(self, resource_id: str, kind: ResourceKind) -> ObservedState:
        _require_supported(kind)
        try:
            resource = self._client.resources.get_by_id(
                resource_id, APPLICATION_GATEWAY_API_VERSION
            )
        except AzureError as e:
            raise classify_azure_error(e, resource_id) from e

        properties = resource.properties if isinstance(resource.properties, dict) else {}
        return ObservedState(
            resource_id=resource_id,
            kind=kind,
            association=_firewall_policy_id(properties),
            properties={
                "provisioningState": properties.get("provisioningState"),
                "operationalState": properties.get("operationalState"),
            },
        )

    def associate(self, resource_id: str, kind: ResourceKind, target: str) -> None:
        """Reference the firewall policy from the gateway and wait for the PUT.

        The gateway is re-read first; if it already references ``target`` no
        write is issued. The gateway exists once that read succeeds, so a
        not-found or invalid-reference answer to the PUT concerns the firewall
        policy and is classified INVALID_TARGET.
        """
        _require_supported(kind)
        try:
            resource = self._client.resources.get_by_id(
                resource_id, APPLICATION_GATEWAY_API_VERSION
            )
        except AzureError as e:
            raise classify_azure_error(e, resource_id) from e

        properties = dict(resource.properties or {})
        current = _firewall_policy_id(properties)
        if current is not None and current.lower() == target.lower():
            logger.info(
                "Firewall policy already associated, no write needed",
                extra={"resource_id": resource_id, "firewall_policy_id": target},
            )
            return

        properties["firewallPolicy"] = {"id": target}
        resource.properties = properties
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, APPLICATION_GATEWAY_API_VERSION, resource
            )
            poller.result()
        except AzureError as e:
            error = classify_azure_error(e, resource_id)
            if error.kind == ErrorKind.NOT_FOUND or _error_code(e) in INVALID_TARGET_ERROR_CODES:
                logger.error(
                    "Firewall policy does not exist",
                    extra={"resource_id": resource_id, "firewall_policy_id": target},
                )
                error = ProviderError(
                    f"Firewall policy {target} does not exist: {e}",
                    ErrorKind.INVALID_TARGET,
                    resource_id=resource_id,
                )
            raise error from e

        logger.info(
            "Firewall policy associated",
            extra={"resource_id": resource_id, "firewall_policy_id": target},
        )

    def list_resources(self, kind: ResourceKind) -> list[str]:
        _require_supported(kind)
        query = f"""
        Resources
        | where subscriptionId == '{self._subscription_id}'
        | where tolower(type) == '{APPLICATION_GATEWAY_TYPE}'
        | project id
        | limit {MAX_DISCOVERY_RESULTS}
        """
        rows = self._execute_query(query.strip())
        return [row["id"] for row in rows if row.get("id")]

    def change_event_source(self) -> AzureChangeEventSource:
        """Event source backed by this provider's Resource Graph client."""
        return AzureChangeEventSource(self._graph_client, self._subscription_id)

    def _execute_query(self, query: str) -> list[dict[str, Any]]:
        return execute_graph_query(self._graph_client, self._subscription_id, query)


def execute_graph_query(
    client: ResourceGraphClient, subscription_id: str, query: str
) -> list[dict[str, Any]]:
    """Execute a Resource Graph query and return rows as dictionaries.

    Raises:
        ProviderError: If the query fails.
    """
    request = QueryRequest(
        subscriptions=[subscription_id],
        query=query,
        options=QueryRequestOptions(
            result_format=ResultFormat.OBJECT_ARRAY,
            top=MAX_DISCOVERY_RESULTS,
        ),
    )
    try:
        response = client.resources(request)
    except AzureError as e:
        raise classify_azure_error(e) from e

    # response.data is a list of dictionaries when using OBJECT_ARRAY format
    if isinstance(response.data, list):
        return response.data
    return []


def event_name_for_change(change_type: str | None, changes: Any) -> str:
    """Name a Resource Graph change the way the event filter expects.

    An update whose property delta clears ``firewallPolicy`` is the guarded
    mutation; everything else keeps its raw change type.
    """
    if isinstance(changes, dict):
        for path, delta in changes.items():
            if "firewallpolicy" not in path.lower() or not isinstance(delta, dict):
                continue
            if delta.get("previousValue") and not delta.get("newValue"):
                return DISASSOCIATE_FIREWALL_POLICY
    return change_type or "Update"


class AzureChangeEventSource:
    """Change notifications from the Resource Graph ``resourcechanges`` table."""

    def __init__(self, client: ResourceGraphClient, subscription_id: str) -> None:
        self._client = client
        self._subscription_id = subscription_id

    def fetch_events(self, since: datetime) -> list[ChangeEvent]:
        since_str = since.strftime("%Y-%m-%dT%H:%M:%SZ")
        query = f"""
        resourcechanges
        | where todatetime(properties.changeAttributes.timestamp) >= datetime('{since_str}')
        | where tolower(properties.targetResourceType) == '{APPLICATION_GATEWAY_TYPE}'
        | extend
            changeId = tostring(id),
            resourceId = tostring(properties.targetResourceId),
            changeType = tostring(properties.changeType),
            timestamp = todatetime(properties.changeAttributes.timestamp),
            changes = properties.changes
        | project changeId, resourceId, changeType, timestamp, changes
        | order by timestamp asc
        | limit {MAX_EVENTS_PER_POLL}
        """
        rows = execute_graph_query(self._client, self._subscription_id, query.strip())

        events = []
        for row in rows:
            resource_id = row.get("resourceId")
            if not resource_id:
                continue

            timestamp_val = row.get("timestamp")
            if isinstance(timestamp_val, str):
                timestamp = datetime.fromisoformat(timestamp_val.replace("Z", "+00:00"))
            elif isinstance(timestamp_val, datetime):
                timestamp = timestamp_val
            else:
                timestamp = datetime.now(UTC)

            events.append(
                ChangeEvent(
                    event_name=event_name_for_change(row.get("changeType"), row.get("changes")),
                    resource_id=resource_id,
                    timestamp=timestamp,
                    event_id=row.get("changeId") or None,
                )
            )
        return events
