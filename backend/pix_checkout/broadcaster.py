from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

from .contracts import PaymentUpdate, PaymentUpdateEvent
from .logging_config import get_logger
from .metrics import payment_fanout_events_total, payment_ws_subscribers

logger = get_logger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


class ChargeBroadcaster:
    """
    Registry of real-time subscribers and the single `payment_update` channel.

    Every subscriber receives every event; clients pick the ones matching the
    charge id or order id they are watching. One instance is created per app.
    Sends run concurrently and each is bounded by `send_timeout`; a subscriber
    that fails or stalls is dropped.
    """

    def __init__(self, *, include_raw: bool = False, send_timeout: float = 5.0) -> None:
        self.include_raw = include_raw
        self.send_timeout = send_timeout
        self._subscribers: set[Subscriber] = set()

    def register(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)
        payment_ws_subscribers.set(len(self._subscribers))
        logger.info("fanout_subscriber_registered", subscribers=len(self._subscribers))

    def unregister(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)
        payment_ws_subscribers.set(len(self._subscribers))
        logger.info("fanout_subscriber_unregistered", subscribers=len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def build_event(
        self,
        *,
        charge_id: str,
        status: str,
        order_id: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> PaymentUpdateEvent:
        return PaymentUpdateEvent(
            payload=PaymentUpdate(
                id=str(charge_id),
                orderId=order_id,
                status=status,
                raw=raw if self.include_raw else None,
            )
        )

    async def publish(
        self,
        *,
        charge_id: str,
        status: str,
        order_id: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> int:
        """Send a payment_update to every subscriber. Returns how many received it."""
        event = self.build_event(charge_id=charge_id, status=status, order_id=order_id, raw=raw)
        message = json.dumps(event.to_message(), default=str)
        payment_fanout_events_total.inc()

        subscribers = list(self._subscribers)
        results = await asyncio.gather(
            *(self._deliver(subscriber, message, charge_id) for subscriber in subscribers)
        )
        delivered = sum(results)

        logger.info(
            "payment_update_published",
            payment_id=charge_id,
            order_id=order_id,
            status=status,
            delivered=delivered,
        )
        return delivered

    async def _deliver(self, subscriber: Subscriber, message: str, charge_id: str) -> bool:
        """Send to one subscriber within `send_timeout`; drop it on any failure."""
        try:
            await asyncio.wait_for(subscriber.send_text(message), timeout=self.send_timeout)
            return True
        except Exception as exc:
            logger.warning(
                "fanout_send_failed",
                payment_id=charge_id,
                error=str(exc) or "send timed out",
                error_type=type(exc).__name__,
            )
            self.unregister(subscriber)
            return False


__all__ = ["ChargeBroadcaster", "Subscriber"]
