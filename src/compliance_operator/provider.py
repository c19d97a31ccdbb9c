"""Provider contract shared by the AWS and Azure adapters.

Every failure that crosses the provider boundary is classified into an
ErrorKind. The scheduler and executor decide between retry and terminal
handling from the kind alone, never from the message text.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol, TypeVar

from .models import ObservedState, ResourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classification of provider failures."""

    # Resource no longer exists - terminal, drop it from the fleet
    NOT_FOUND = "not_found"
    # Network, timeout or throttling - retry with backoff
    TRANSIENT = "transient"
    # Operator identity lacks access - terminal, needs operator intervention
    PERMISSION_DENIED = "permission_denied"
    # Association target (Web ACL, firewall policy) does not exist - terminal,
    # the resource itself stays managed
    INVALID_TARGET = "invalid_target"


class ProviderError(Exception):
    """A classified failure of a provider call.

    Attributes:
        kind: Classification used for retry decisions
        resource_id: Resource the call targeted, if any
        retry_after: Provider backoff hint in seconds (Retry-After, throttling)
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        resource_id: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.resource_id = resource_id
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class ResourceProvider(Protocol):
    """Read and write operations on cloud resources.

    Implementations are synchronous (they wrap blocking SDK clients) and must
    raise ProviderError for every failure they can classify.
    """

    def describe(self, resource_id: str, kind: ResourceKind) -> ObservedState:
        """Fetch the current association state of a resource."""
        ...

    def associate(self, resource_id: str, kind: ResourceKind, target: str) -> None:
        """Associate a resource with a WAF policy. Must be idempotent."""
        ...

    def list_resources(self, kind: ResourceKind) -> list[str]:
        """Enumerate resource ids of a kind visible to the operator."""
        ...


class CallThrottle:
    """Client-side throttling and deadlines for blocking provider calls.

    Limits the number of provider calls in flight and spaces call starts at
    least ``1 / max_calls_per_second`` apart. Each call runs in the default
    executor and is bounded by a caller-supplied deadline.
    """

    def __init__(self, max_calls_per_second: float, max_concurrent: int) -> None:
        if max_calls_per_second <= 0:
            raise ValueError("max_calls_per_second must be greater than 0")
        self._min_interval = 1.0 / max_calls_per_second
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._next_slot = 0.0

    async def _wait_for_slot(self) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        slot = max(now, self._next_slot)
        self._next_slot = slot + self._min_interval
        if slot > now:
            await asyncio.sleep(slot - now)

    async def call(
        self,
        fn: Callable[[], T],
        *,
        timeout: float,
        operation: str,
        resource_id: str | None = None,
    ) -> T:
        """Run a blocking provider call with throttling and a deadline.

        Raises:
            ProviderError: TRANSIENT if the deadline is exceeded, or whatever
                classified error the call itself raised.
        """
        async with self._semaphore:
            await self._wait_for_slot()
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=timeout)
            except TimeoutError as e:
                logger.warning(
                    f"{operation} timed out",
                    extra={"resource_id": resource_id, "timeout_seconds": timeout},
                )
                raise ProviderError(
                    f"{operation} timed out after {timeout}s",
                    ErrorKind.TRANSIENT,
                    resource_id=resource_id,
                ) from e
