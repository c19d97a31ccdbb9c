"""Resource Inspector: read-only view of a resource's current state."""

from __future__ import annotations

import logging

from .models import ObservedState, ResourceKind
from .provider import CallThrottle, ProviderError, ResourceProvider

logger = logging.getLogger(__name__)


class ResourceInspector:
    """Fetches observed state from the provider.

    Inspection has no side effects. Failures surface as ProviderError:
    NOT_FOUND and PERMISSION_DENIED are terminal, everything else
    (including an exceeded deadline) is TRANSIENT.
    """

    def __init__(
        self,
        provider: ResourceProvider,
        throttle: CallThrottle,
        default_timeout_seconds: float,
    ) -> None:
        self._provider = provider
        self._throttle = throttle
        self._default_timeout = default_timeout_seconds

    async def inspect(
        self,
        resource_id: str,
        kind: ResourceKind,
        timeout: float | None = None,
    ) -> ObservedState:
        """Inspect a resource within a deadline.

        Args:
            resource_id: Provider resource id.
            kind: Resource kind.
            timeout: Deadline in seconds; defaults to the configured call timeout.

        Raises:
            ProviderError: Classified inspection failure.
        """
        try:
            return await self._throttle.call(
                lambda: self._provider.describe(resource_id, kind),
                timeout=self._default_timeout if timeout is None else timeout,
                operation="Inspect",
                resource_id=resource_id,
            )
        except ProviderError as e:
            logger.info(
                "Inspection failed",
                extra={
                    "resource_id": resource_id,
                    "error_kind": e.kind.value,
                    "error": str(e),
                },
            )
            raise

    async def list_resources(self, kind: ResourceKind, timeout: float | None = None) -> list[str]:
        """Enumerate resources of a kind for fleet discovery."""
        return await self._throttle.call(
            lambda: self._provider.list_resources(kind),
            timeout=self._default_timeout if timeout is None else timeout,
            operation="Discover",
        )
