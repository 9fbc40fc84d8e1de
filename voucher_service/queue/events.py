"""
In-process job event bus.

Subscribers receive every JobEvent published by the queue. A failing
subscriber is logged and dropped from that delivery only; it never affects
the job state transition that produced the event.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from voucher_service.constants import JOB_EVENT_FAILED, JOB_EVENT_WAITING
from voucher_service.observability.metrics import get_metrics
from voucher_service.types.events import JobEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[JobEvent], Awaitable[None] | None]


class JobEventBus:
    """
    Publish/subscribe hub for job lifecycle events.

    Handles subscription lifecycle and fan-out of events
    to every registered subscriber.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = asyncio.Lock()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber.

        Args:
            subscriber: Sync or async callable taking a JobEvent.

        Returns:
            A callable that removes the subscription.
        """
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, event: JobEvent) -> None:
        """
        Deliver an event to all subscribers.

        Args:
            event: The job event to deliver.
        """
        async with self._lock:
            subscribers = self._subscribers.copy()

        for subscriber in subscribers:
            try:
                outcome = subscriber(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    f"Job event subscriber failed: {e}",
                    extra={"event_type": event.event_type, "job_id": str(event.job_id)},
                )

    def subscriber_count(self) -> int:
        return len(self._subscribers)


def monitor_job_event(event: JobEvent) -> None:
    """Default subscriber: log the transition and count submissions."""
    extra = {
        "event_type": event.event_type,
        "job_id": str(event.job_id) if event.job_id else None,
        "kind": event.kind.value if event.kind else None,
        **(event.data or {}),
    }

    if event.event_type == JOB_EVENT_WAITING and event.kind is not None:
        get_metrics().record_job_enqueued(event.kind.value)

    if event.event_type == JOB_EVENT_FAILED:
        logger.warning("Job event", extra=extra)
    else:
        logger.info("Job event", extra=extra)


def create_event_bus(with_monitor: bool = True) -> JobEventBus:
    """Build an event bus, optionally with the default monitor attached."""
    bus = JobEventBus()
    if with_monitor:
        bus.subscribe(monitor_job_event)
    return bus
