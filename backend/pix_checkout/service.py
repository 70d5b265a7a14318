from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from .broadcaster import ChargeBroadcaster
from .contracts import (
    PaymentStatusDetail,
    PixChargeRequest,
    PixChargeResponse,
    RequestShapeError,
    extract_webhook_charge_id,
    is_completed,
    normalize_charge_request,
)
from .errors import PaymentAPIError
from .logging_config import bound_payment_context, get_logger
from .metrics import (
    payment_status_checks_total,
    payment_webhooks_total,
    pix_charge_errors_total,
    pix_charges_created_total,
)
from .payer import build_payer
from .payments.base import (
    InvalidProviderResponse,
    PaymentProvider,
    ProviderCharge,
    ProviderConfigurationError,
    ProviderError,
    ProviderRejectedError,
    ProviderTransientError,
)
from .payments.simulated import SimulatedPixGateway, is_dev_charge_id
from .print_sink import PrintForwarder, PrintForwardError
from .settings import Settings
from .signatures import SignatureError, verify_webhook_signature
from .storage import ChargeStore

logger = get_logger(__name__)


def _observation_fields(charge: ProviderCharge) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "status": charge.status,
        "status_detail": charge.status_detail,
        "date_approved": charge.date_approved,
        "raw_provider_payload": charge.raw,
    }
    if charge.external_reference:
        fields["order_id"] = charge.external_reference
    return fields


class PixPaymentService:
    """
    PIX charge lifecycle: creation, status observation, webhook handling.

    Every status observation (creation, poll, webhook, simulated approval) goes
    through the charge store and is then published on the broadcaster.
    """

    def __init__(
        self,
        *,
        config: Settings,
        store: ChargeStore,
        broadcaster: ChargeBroadcaster,
        simulator: SimulatedPixGateway,
        gateway: PaymentProvider | None = None,
        printer: PrintForwarder | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.broadcaster = broadcaster
        self.simulator = simulator
        self.gateway = gateway
        self.printer = printer
        # charge id -> (lock, number of holders and waiters)
        self._print_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def mode(self) -> str:
        return "live" if self.gateway is not None else "simulated"

    # ---------------- Create ----------------

    async def create_pix_charge(
        self, body: Any, *, idempotency_key: str | None = None
    ) -> PixChargeResponse:
        try:
            request = normalize_charge_request(body)
        except RequestShapeError as exc:
            pix_charge_errors_total.labels(reason=exc.code).inc()
            logger.info("pix_request_rejected", reason=exc.code, detail=exc.detail)
            raise PaymentAPIError(400, exc.code, exc.detail) from exc

        key = (idempotency_key or "").strip() or f"{request.order_id}-{int(time.time() * 1000)}"

        if self.gateway is None:
            return await self._create_simulated(request, key, mode="simulated")

        description = request.description or f"{self.config.PIX_DESCRIPTION_PREFIX} #{request.order_id}"
        payer = build_payer(
            request.customer,
            order_id=request.order_id,
            email_domain=self.config.PAYER_EMAIL_DOMAIN,
        )
        dispatched_at = time.time_ns()
        try:
            charge = await self._with_fallback(
                "create_charge",
                self.gateway.create_charge,
                amount=request.amount,
                description=description,
                correlation_id=request.order_id,
                payer=payer,
                idempotency_key=key,
            )
        except ProviderConfigurationError as exc:
            pix_charge_errors_total.labels(reason="payment_method_not_enabled").inc()
            if self.config.ENABLE_LOCAL_QR_FALLBACK:
                logger.warning(
                    "pix_local_fallback",
                    order_id=request.order_id,
                    provider_error=exc.message,
                )
                return await self._create_simulated(request, key, mode="local_fallback")
            logger.error("pix_method_not_enabled", order_id=request.order_id, provider_error=exc.message)
            raise PaymentAPIError(
                400,
                "payment_method_not_enabled",
                {
                    "message": "The Mercado Pago account is not enabled to receive PIX. "
                    "Register a PIX key for the seller account.",
                    "provider": exc.detail,
                },
            ) from exc
        except ProviderRejectedError as exc:
            pix_charge_errors_total.labels(reason="provider_rejected").inc()
            logger.error("pix_provider_rejected", order_id=request.order_id, status_code=exc.status_code)
            raise PaymentAPIError(400, "provider_rejected", exc.detail or exc.message) from exc
        except InvalidProviderResponse as exc:
            pix_charge_errors_total.labels(reason="pix_data_missing").inc()
            logger.error("pix_data_missing", order_id=request.order_id)
            raise PaymentAPIError(502, "pix_data_missing", exc.detail or exc.message) from exc
        except ProviderTransientError as exc:
            pix_charge_errors_total.labels(reason="provider_unavailable").inc()
            logger.error("pix_provider_unavailable", order_id=request.order_id, error=exc.message)
            raise PaymentAPIError(502, "provider_unavailable", exc.detail or exc.message) from exc

        await self._persist(
            charge.id,
            {
                **_observation_fields(charge),
                "order_id": request.order_id,
                "amount": str(request.amount),
                "order_data": request.order_data,
                "idempotency_key": key,
                "simulated": False,
            },
            observed_at=dispatched_at,
        )
        await self._publish(charge.id, charge.status, request.order_id, charge.raw)
        pix_charges_created_total.labels(mode="live").inc()
        logger.info(
            "pix_charge_created",
            payment_id=charge.id,
            order_id=request.order_id,
            amount=str(request.amount),
            status=charge.status,
        )
        return PixChargeResponse(
            qrCodeBase64=charge.qr_code_base64,
            pixCopiaECola=charge.qr_code,
            paymentId=charge.id,
            status=charge.status,
        )

    async def _create_simulated(
        self, request: PixChargeRequest, key: str, *, mode: str
    ) -> PixChargeResponse:
        description = request.description or f"{self.config.PIX_DESCRIPTION_PREFIX} #{request.order_id}"
        charge = await self.simulator.create_charge(
            amount=request.amount,
            description=description,
            correlation_id=request.order_id,
            idempotency_key=key,
        )
        await self._persist(
            charge.id,
            {
                **_observation_fields(charge),
                "order_id": request.order_id,
                "amount": str(request.amount),
                "order_data": request.order_data,
                "idempotency_key": key,
                "simulated": True,
            },
            observed_at=time.time_ns(),
        )
        await self._publish(charge.id, charge.status, request.order_id, charge.raw)
        self.simulator.schedule_auto_approve(charge.id, self._on_simulated_status)
        pix_charges_created_total.labels(mode=mode).inc()
        logger.info(
            "pix_charge_simulated",
            payment_id=charge.id,
            order_id=request.order_id,
            mode=mode,
        )
        return PixChargeResponse(
            qrCodeBase64=charge.qr_code_base64,
            pixCopiaECola=charge.qr_code,
            paymentId=charge.id,
            status=charge.status,
        )

    async def _on_simulated_status(self, charge_id: str, status: str) -> None:
        charge = await self.simulator.fetch_charge(charge_id)
        record = await self._persist(charge_id, _observation_fields(charge), observed_at=time.time_ns())
        order_id = (record or {}).get("order_id") or charge.external_reference
        await self._publish(charge_id, status, order_id, charge.raw)

    # ---------------- Status ----------------

    async def check_charge_status(self, charge_id: str) -> str:
        record = await self.observe_charge(charge_id, source="poll")
        return str(record.get("status") or "pending")

    async def payment_status_detail(self, charge_id: str) -> PaymentStatusDetail:
        record = await self.observe_charge(charge_id, source="poll")
        return PaymentStatusDetail(
            status=str(record.get("status") or "pending"),
            status_detail=record.get("status_detail"),
            date_approved=record.get("date_approved"),
        )

    async def payment_summary(self, charge_id: str) -> dict[str, Any]:
        record = await self.observe_charge(charge_id, source="poll")
        raw = record.get("raw_provider_payload") or {}
        amount = raw.get("transaction_amount")
        if amount is None and record.get("amount") is not None:
            amount = float(record["amount"])
        return {
            "success": True,
            "payment": {
                "id": record.get("id", charge_id),
                "status": record.get("status"),
                "status_detail": record.get("status_detail"),
                "amount": amount,
                "date_created": raw.get("date_created") or record.get("created_at"),
                "date_approved": record.get("date_approved"),
            },
        }

    async def observe_charge(self, charge_id: str, *, source: str) -> dict[str, Any]:
        """
        Current state of `charge_id`, as a charge record.

        Simulated charges answer from the simulator. Real ones are re-fetched
        from the provider, persisted and published.
        """
        charge_id = str(charge_id).strip()
        if is_dev_charge_id(charge_id):
            return await self._observe_simulated(charge_id)

        if self.gateway is None:
            record = await self.store.get(charge_id)
            if record is None:
                raise PaymentAPIError(404, "payment_not_found", f"unknown payment {charge_id}")
            return record

        dispatched_at = time.time_ns()
        try:
            charge = await self._with_fallback(
                "fetch_charge", self.gateway.fetch_charge, charge_id=charge_id
            )
        except ProviderRejectedError as exc:
            if exc.status_code == 404:
                raise PaymentAPIError(404, "payment_not_found", exc.detail or exc.message) from exc
            raise PaymentAPIError(400, "provider_rejected", exc.detail or exc.message) from exc
        except ProviderError as exc:
            raise PaymentAPIError(502, "provider_unavailable", exc.detail or exc.message) from exc

        payment_status_checks_total.labels(source=source).inc()
        record = await self._persist(charge_id, _observation_fields(charge), observed_at=dispatched_at)
        if record is None:
            record = {"id": charge_id, **_observation_fields(charge)}
        await self._publish(
            charge_id,
            str(record.get("status") or charge.status),
            record.get("order_id") or charge.external_reference,
            record.get("raw_provider_payload"),
        )
        return record

    async def _observe_simulated(self, charge_id: str) -> dict[str, Any]:
        payment_status_checks_total.labels(source="simulated").inc()
        try:
            charge = await self.simulator.fetch_charge(charge_id)
        except KeyError:
            record = await self.store.get(charge_id)
            if record is None:
                raise PaymentAPIError(404, "payment_not_found", f"unknown payment {charge_id}") from None
            return record
        stored = await self.store.get(charge_id) or {}
        return {**stored, "id": charge_id, **_observation_fields(charge)}

    # ---------------- Webhook ----------------

    async def handle_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        secret = (self.config.MP_WEBHOOK_SECRET or "").strip()
        if secret:
            try:
                verify_webhook_signature(secret, raw_body, headers)
            except SignatureError as exc:
                payment_webhooks_total.labels(result=exc.code).inc()
                logger.warning("webhook_signature_rejected", reason=exc.code)
                raise PaymentAPIError(401, exc.code, exc.detail) from exc

        payload: Any = {}
        if raw_body.strip():
            try:
                payload = json.loads(raw_body)
            except ValueError as exc:
                payment_webhooks_total.labels(result="invalid_json").inc()
                raise PaymentAPIError(400, "invalid_json", "webhook body is not JSON") from exc

        charge_id = extract_webhook_charge_id(payload, dict(query or {}))
        if not charge_id:
            payment_webhooks_total.labels(result="ignored").inc()
            logger.info("webhook_ignored", reason="no charge id")
            return {"status": "ignored"}

        with bound_payment_context(payment_id=charge_id):
            return await self._process_webhook(charge_id)

    async def _process_webhook(self, charge_id: str) -> dict[str, str]:
        if not is_dev_charge_id(charge_id) and self.gateway is None:
            payment_webhooks_total.labels(result="ignored").inc()
            logger.warning("webhook_ignored", payment_id=charge_id, reason="simulated mode")
            return {"status": "ignored"}

        try:
            if is_dev_charge_id(charge_id):
                charge = await self.simulator.fetch_charge(charge_id)
                record = await self._persist(
                    charge_id, _observation_fields(charge), observed_at=time.time_ns()
                )
                record = record or {"id": charge_id, **_observation_fields(charge)}
                await self._publish(charge_id, charge.status, record.get("order_id"), charge.raw)
            else:
                record = await self.observe_charge(charge_id, source="webhook")
        except (PaymentAPIError, KeyError) as exc:
            payment_webhooks_total.labels(result="fetch_failed").inc()
            logger.warning("webhook_fetch_failed", payment_id=charge_id, error=str(exc))
            return {"status": "fetch_failed"}

        await self._maybe_forward_print(charge_id, record)
        payment_webhooks_total.labels(result="ok").inc()
        return {"status": "ok"}

    async def _maybe_forward_print(self, charge_id: str, record: dict[str, Any]) -> bool:
        if not is_completed(record.get("status")):
            return False
        if self.printer is None or not self.printer.configured:
            return False

        async with self._print_lock(charge_id):
            current = await self.store.get(charge_id) or record
            order_data = current.get("order_data")
            if not order_data:
                logger.info("print_skipped", payment_id=charge_id, reason="no order snapshot")
                return False
            if current.get("print_forwarded_at"):
                logger.info("print_skipped", payment_id=charge_id, reason="already forwarded")
                return False
            try:
                await self.printer.forward(order_data, source="webhook")
            except PrintForwardError as exc:
                logger.error(
                    "webhook_print_forward_failed",
                    payment_id=charge_id,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                return False
            try:
                await self.store.mark_print_forwarded(charge_id)
            except (OSError, TimeoutError) as exc:
                logger.error("print_flag_persist_failed", payment_id=charge_id, error=str(exc))
            return True

    # ---------------- Helpers ----------------

    @asynccontextmanager
    async def _print_lock(self, charge_id: str) -> AsyncIterator[None]:
        """Serialize print forwarding per charge; the entry goes away with its last user."""
        lock, users = self._print_locks.get(charge_id, (asyncio.Lock(), 0))
        self._print_locks[charge_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._print_locks[charge_id]
            if users <= 1:
                del self._print_locks[charge_id]
            else:
                self._print_locks[charge_id] = (lock, users - 1)

    async def _with_fallback(
        self, operation: str, call: Callable[..., Awaitable[ProviderCharge]], **kwargs: Any
    ) -> ProviderCharge:
        try:
            return await call(**kwargs)
        except ProviderTransientError as exc:
            logger.warning("provider_fallback_attempt", operation=operation, error=exc.message)
            return await call(**kwargs, fallback=True)

    async def _persist(
        self,
        charge_id: str,
        fields: dict[str, Any],
        *,
        observed_at: int | None = None,
    ) -> dict[str, Any] | None:
        try:
            return await self.store.upsert(charge_id, fields, observed_at=observed_at)
        except (OSError, TimeoutError, TypeError, ValueError) as exc:
            logger.error(
                "charge_persist_failed",
                payment_id=charge_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    async def _publish(
        self,
        charge_id: str,
        status: str,
        order_id: str | None,
        raw: dict[str, Any] | None,
    ) -> None:
        await self.broadcaster.publish(
            charge_id=charge_id, status=status, order_id=order_id, raw=raw
        )

    async def close(self) -> None:
        await self.simulator.close()
        if self.gateway is not None:
            await self.gateway.close()
        if self.printer is not None:
            await self.printer.close()


__all__ = ["PixPaymentService"]
