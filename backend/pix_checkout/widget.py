"""
PIX payment dialog logic, without the rendering.

The widget asks the payment API for a charge, then waits for the payment on
two channels at once: `payment_update` events from the real-time subscription
(when one is available) and a fixed-interval status poll. A countdown bounds
the wait. States:

    pending -> completed | expired | error
    error | expired -> pending   (retry, always with a brand new charge)

Closing the widget only stops local timers; nothing is cancelled provider-side.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from .client import CheckoutApiClient, CheckoutApiError, GeneratedPix
from .contracts import is_completed, is_failed
from .logging_config import get_logger

logger = get_logger(__name__)

SubscriptionFactory = Callable[[], AsyncIterator[Any]]

GENERATION_FAILED_MESSAGE = "Não foi possível gerar o PIX. Tente novamente."
PAYMENT_FAILED_MESSAGE = "Pagamento recusado ou cancelado. Gere um novo PIX para tentar novamente."


class WidgetState(str, Enum):
    LOADING = "loading"
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ERROR = "error"


class PixPaymentWidget:
    def __init__(
        self,
        client: CheckoutApiClient,
        *,
        amount: float | str,
        order_id: str,
        order_data: dict[str, Any] | None = None,
        countdown_seconds: int = 600,
        tick_interval: float = 1.0,
        poll_interval: float = 5.0,
        close_delay: float = 2.0,
        on_payment_confirmed: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
        subscription_factory: SubscriptionFactory | None = None,
    ) -> None:
        self.client = client
        self.amount = amount
        self.order_id = str(order_id)
        self.order_data = order_data
        self.countdown_seconds = countdown_seconds
        self.tick_interval = tick_interval
        self.poll_interval = poll_interval
        self.close_delay = close_delay
        self.on_payment_confirmed = on_payment_confirmed
        self.on_close = on_close
        self.subscription_factory = subscription_factory

        self.state = WidgetState.LOADING
        self.charge: GeneratedPix | None = None
        self.error_message: str | None = None
        self.remaining_seconds = countdown_seconds
        self.closed = False
        self._confirmed = False
        self._timers: set[asyncio.Task[None]] = set()
        self._close_task: asyncio.Task[None] | None = None

    @property
    def payment_id(self) -> str | None:
        return self.charge.payment_id if self.charge else None

    @property
    def can_retry(self) -> bool:
        return self.state in (WidgetState.ERROR, WidgetState.EXPIRED)

    @property
    def timers_running(self) -> bool:
        return any(not task.done() for task in self._timers)

    # ---------------- lifecycle ----------------

    async def start(self) -> WidgetState:
        """Request a charge and, when it is usable, start the timers."""
        await self.request_charge()
        if self.state is WidgetState.PENDING and not self.closed:
            self._start_timers()
        return self.state

    async def request_charge(self) -> WidgetState:
        """
        Ask the API for a new charge.

        A widget closed while the request was in flight stays in LOADING and
        discards the answer.
        """
        self.state = WidgetState.LOADING
        self.error_message = None
        self.remaining_seconds = self.countdown_seconds
        try:
            charge = await self.client.generate_pix(
                self.amount, self.order_id, order_data=self.order_data
            )
        except CheckoutApiError as exc:
            if self.closed:
                return self.state
            logger.warning("widget_charge_failed", order_id=self.order_id, error=str(exc))
            self._fail(GENERATION_FAILED_MESSAGE)
            return self.state

        if self.closed:
            logger.info("widget_charge_discarded", order_id=self.order_id, payment_id=charge.payment_id)
            return self.state

        if not charge.is_usable:
            logger.warning("widget_charge_incomplete", order_id=self.order_id)
            self._fail(GENERATION_FAILED_MESSAGE)
            return self.state

        self.charge = charge
        self.state = WidgetState.PENDING
        logger.info("widget_charge_ready", order_id=self.order_id, payment_id=charge.payment_id)
        if charge.status:
            self._apply_status(charge.status)
        return self.state

    async def retry(self) -> WidgetState:
        """Start over with a new charge. Only allowed from error or expired, and not once closed."""
        if self.closed:
            raise RuntimeError("cannot retry a closed widget")
        if not self.can_retry:
            raise RuntimeError(f"cannot retry from state {self.state.value}")
        self._stop_timers()
        self.charge = None
        return await self.start()

    async def close(self) -> None:
        self.closed = True
        self._stop_timers()
        if self._close_task is not None and not self._close_task.done():
            self._close_task.cancel()

    # ---------------- inputs ----------------

    def handle_event(self, message: Any) -> bool:
        """
        Apply a real-time `payment_update` message.

        Returns True when the event concerned this widget's charge.
        """
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except ValueError:
                return False
        if not isinstance(message, dict) or message.get("type") != "payment_update":
            return False
        payload = message.get("payload") or {}
        if not isinstance(payload, dict):
            return False

        matches_id = self.payment_id is not None and str(payload.get("id")) == self.payment_id
        matches_order = payload.get("orderId") is not None and str(payload["orderId"]) == self.order_id
        if not (matches_id or matches_order):
            return False

        status = payload.get("status")
        if status:
            self._apply_status(str(status))
        return True

    async def poll_once(self) -> str | None:
        if self.state is not WidgetState.PENDING or not self.payment_id:
            return None
        try:
            status = await self.client.check_payment_status(self.payment_id)
        except CheckoutApiError as exc:
            logger.warning("widget_poll_failed", payment_id=self.payment_id, error=str(exc))
            return None
        if status:
            self._apply_status(status)
        return status

    def tick(self, elapsed: float = 1.0) -> None:
        if self.state is not WidgetState.PENDING:
            return
        self.remaining_seconds = max(0, self.remaining_seconds - elapsed)
        if self.remaining_seconds <= 0:
            self.state = WidgetState.EXPIRED
            logger.info("widget_expired", payment_id=self.payment_id)
            self._stop_timers()

    # ---------------- transitions ----------------

    def _apply_status(self, status: str) -> None:
        if self.state is not WidgetState.PENDING:
            return
        if is_completed(status):
            self.state = WidgetState.COMPLETED
            self._stop_timers()
            logger.info("widget_payment_confirmed", payment_id=self.payment_id)
            self._confirm()
        elif is_failed(status):
            self._fail(PAYMENT_FAILED_MESSAGE)

    def _fail(self, message: str) -> None:
        self.state = WidgetState.ERROR
        self.error_message = message
        self._stop_timers()

    def _confirm(self) -> None:
        if self._confirmed:
            return
        self._confirmed = True
        if self.on_payment_confirmed is not None:
            try:
                self.on_payment_confirmed()
            except Exception:
                logger.exception("widget_confirm_callback_failed")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._fire_close()
            return
        self._close_task = loop.create_task(self._close_later())

    async def _close_later(self) -> None:
        await asyncio.sleep(self.close_delay)
        self._fire_close()

    def _fire_close(self) -> None:
        self.closed = True
        if self.on_close is not None:
            self.on_close()

    # ---------------- timers ----------------

    def _start_timers(self) -> None:
        loop = asyncio.get_running_loop()
        runners = [self._countdown_loop(), self._poll_loop()]
        if self.subscription_factory is not None:
            runners.append(self._subscription_loop())
        for runner in runners:
            task = loop.create_task(runner)
            self._timers.add(task)
            task.add_done_callback(self._timers.discard)

    def _stop_timers(self) -> None:
        current = asyncio.current_task() if self._in_loop() else None
        for task in list(self._timers):
            if task is not current:
                task.cancel()
        self._timers.clear()

    @staticmethod
    def _in_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    async def _countdown_loop(self) -> None:
        while self.state is WidgetState.PENDING:
            await asyncio.sleep(self.tick_interval)
            self.tick(1.0)

    async def _poll_loop(self) -> None:
        while self.state is WidgetState.PENDING:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once()

    async def _subscription_loop(self) -> None:
        assert self.subscription_factory is not None
        try:
            async for message in self.subscription_factory():
                self.handle_event(message)
                if self.state is not WidgetState.PENDING:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Polling keeps running without the real-time channel.
            logger.warning("widget_subscription_lost", payment_id=self.payment_id, error=str(exc))


__all__ = ["PixPaymentWidget", "WidgetState", "SubscriptionFactory"]
