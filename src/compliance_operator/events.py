"""Event-triggered reconciliation.

Change notifications (CloudTrail events, Resource Graph changes) short-circuit
the periodic cadence: when a guarded mutation such as ``DisassociateWebACL``
is observed for a managed resource, a reconciliation job for that single
resource is submitted immediately.

Delivery is at-least-once. Duplicates are dropped by event id where one is
available; any duplicate that slips through is harmless because remediation
is idempotent and the scheduler coalesces concurrent requests.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from .config import DUPLICATE_EVENT_WINDOW, MAX_EVENTS_PER_POLL
from .provider import ProviderError

if TYPE_CHECKING:
    from .scheduler import ReconciliationScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """A provider change notification.

    Attributes:
        event_name: Provider operation name (e.g., DisassociateWebACL)
        resource_id: Resource the operation targeted
        timestamp: When the change happened
        event_id: Provider-assigned id, used to drop duplicate deliveries
    """

    event_name: str
    resource_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str | None = None


class EventSource(Protocol):
    """A pollable feed of change notifications."""

    def fetch_events(self, since: datetime) -> list[ChangeEvent]:
        """Return events that happened at or after ``since``.

        Implementations that cap the result must keep the oldest events.
        """
        ...


async def poll_events(
    source: EventSource,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
    lookback_seconds: float | None = None,
    ingestion_lag_seconds: float = 0.0,
    max_events: int | None = MAX_EVENTS_PER_POLL,
) -> AsyncIterator[ChangeEvent]:
    """Poll an event source until shutdown, yielding events as they arrive.

    Providers publish change records some time after the change happened, so
    each poll window starts ``ingestion_lag_seconds`` before the previous poll
    did. Events inside the overlap are delivered again and dropped by the
    trigger's event-id check. A poll that returns ``max_events`` events was
    truncated; the next window then starts at the newest event returned so
    the remainder is read on the following poll.

    A failed poll is logged and retried on the next tick without moving the
    poll window, so no events are lost to a transient error.
    """
    lag = timedelta(seconds=ingestion_lag_seconds)
    since = datetime.now(UTC) - timedelta(seconds=lookback_seconds or interval_seconds) - lag
    loop = asyncio.get_running_loop()

    while not shutdown_event.is_set():
        poll_started = datetime.now(UTC)
        try:
            events = await loop.run_in_executor(None, source.fetch_events, since)
        except ProviderError as e:
            logger.warning(
                "Change notification poll failed",
                extra={"error": str(e), "error_kind": e.kind.value},
            )
        else:
            ordered = sorted(events, key=lambda ev: ev.timestamp)
            if max_events is not None and len(ordered) >= max_events:
                logger.info(
                    "Change notification poll truncated, resuming from newest event",
                    extra={
                        "events": len(ordered),
                        "resume_from": ordered[-1].timestamp.isoformat(),
                    },
                )
                since = ordered[-1].timestamp
            else:
                since = poll_started - lag
            for event in ordered:
                yield event

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except TimeoutError:
            pass


class EventTrigger:
    """Filters change notifications and schedules immediate reconciliation."""

    def __init__(
        self,
        scheduler: ReconciliationScheduler,
        watched_events: Iterable[str],
        duplicate_window: int = DUPLICATE_EVENT_WINDOW,
    ) -> None:
        self._scheduler = scheduler
        self._watched = frozenset(watched_events)
        self._duplicate_window = duplicate_window
        self._seen_ids: OrderedDict[str, None] = OrderedDict()

    @property
    def watched_events(self) -> frozenset[str]:
        return self._watched

    def _is_duplicate(self, event_id: str | None) -> bool:
        if event_id is None:
            return False
        if event_id in self._seen_ids:
            return True
        self._seen_ids[event_id] = None
        while len(self._seen_ids) > self._duplicate_window:
            self._seen_ids.popitem(last=False)
        return False

    def handle(self, event: ChangeEvent) -> asyncio.Task | None:
        """Submit a job for a matching event.

        Returns:
            The scheduled task, or None if the event was filtered out.
        """
        if event.event_name not in self._watched:
            return None

        if not self._scheduler.is_managed(event.resource_id):
            logger.debug(
                "Ignoring change event for unmanaged resource",
                extra={"event_name": event.event_name, "resource_id": event.resource_id},
            )
            return None

        if self._is_duplicate(event.event_id):
            logger.info(
                "Duplicate change event dropped",
                extra={"event_id": event.event_id, "resource_id": event.resource_id},
            )
            return None

        logger.warning(
            "Guarded change detected, scheduling immediate reconciliation",
            extra={
                "event_name": event.event_name,
                "resource_id": event.resource_id,
                "event_time": event.timestamp.isoformat(),
            },
        )
        return self._scheduler.submit(event.resource_id, trigger=f"event:{event.event_name}")

    async def consume(self, stream: AsyncIterator[ChangeEvent]) -> int:
        """Handle every event of a stream until it is exhausted.

        Returns:
            Number of jobs submitted.
        """
        submitted = 0
        async for event in stream:
            if self.handle(event) is not None:
                submitted += 1
        return submitted
