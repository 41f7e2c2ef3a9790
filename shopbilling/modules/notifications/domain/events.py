"""
Real-time billing events.

Events are fanned out to the owning shop's channel (`shop:<id>`) and to the
`admin` channel. Delivery is fire-and-forget: a slow subscriber whose queue
is full loses the event instead of blocking the publisher.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from shopbilling.shared.core.config import get_settings

logger = structlog.get_logger()

ADMIN_CHANNEL = "admin"

PAYMENT_VERIFIED = "payment.verified"
PAYMENT_REJECTED = "payment.rejected"
SUBSCRIPTION_UPDATED = "subscription.updated"


class EventPublisher(Protocol):
    async def emit(self, event_name: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True, slots=True)
class BillingEvent:
    name: str
    channel: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def shop_channel(shop_id: Any) -> str:
    return f"shop:{shop_id}"


class InProcessEventPublisher:
    """Per-channel asyncio queues for websocket/SSE handlers in this process."""

    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size or get_settings().EVENT_SUBSCRIBER_QUEUE_SIZE
        self._subscribers: dict[str, set[asyncio.Queue[BillingEvent]]] = {}

    def subscribe(self, channel: str) -> asyncio.Queue[BillingEvent]:
        queue: asyncio.Queue[BillingEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        logger.debug("event_subscriber_added", channel=channel)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[BillingEvent]) -> None:
        queues = self._subscribers.get(channel)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[channel]

    def subscriber_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._subscribers.get(channel, ()))
        return sum(len(queues) for queues in self._subscribers.values())

    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        channels = [ADMIN_CHANNEL]
        if payload.get("shop_id"):
            channels.insert(0, shop_channel(payload["shop_id"]))

        delivered = 0
        for channel in channels:
            event = BillingEvent(name=event_name, channel=channel, payload=dict(payload))
            for queue in list(self._subscribers.get(channel, ())):
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    logger.warning(
                        "event_dropped_subscriber_full",
                        event_name=event_name,
                        channel=channel,
                    )

        logger.info("event_emitted", event_name=event_name, delivered=delivered)
