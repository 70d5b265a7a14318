from __future__ import annotations

import time
from decimal import Decimal
from typing import Any

import httpx

from ..contracts import is_valid_charge_id
from ..logging_config import get_logger
from ..metrics import provider_request_duration_seconds
from .base import (
    InvalidProviderResponse,
    ProviderCharge,
    ProviderConfigurationError,
    ProviderError,
    ProviderRejectedError,
    ProviderTransientError,
)

logger = get_logger(__name__)

# Error messages Mercado Pago returns when the seller account has no PIX key
# (or PIX is otherwise not enabled for it).
MERCHANT_NOT_ENABLED_MARKERS = (
    "without key enabled",
    "financial identity use case",
    "key enabled for qr render",
    "pix not enabled",
    "payment method not enabled",
    "unauthorized use of live credentials",
)


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        parts = [str(body.get("message") or body.get("error") or "")]
        for cause in body.get("cause") or []:
            if isinstance(cause, dict) and cause.get("description"):
                parts.append(str(cause["description"]))
        return " | ".join(part for part in parts if part)
    return str(body or "")


def _is_merchant_not_enabled(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in MERCHANT_NOT_ENABLED_MARKERS)


class MercadoPagoGateway:
    """
    Async HTTP client for the Mercado Pago payments API.

    Calls go through a pooled client. With `fallback=True` the same request is
    sent through a one-shot client on a fresh connection; callers use that
    exactly once after a ProviderTransientError.
    """

    def __init__(
        self,
        *,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        fallback_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required for Mercado Pago")

        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        self._fallback_transport = fallback_transport
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        fallback: bool,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        started = time.perf_counter()
        try:
            if fallback:
                async with httpx.AsyncClient(
                    base_url=self.base_url,
                    headers=self._headers,
                    timeout=self._timeout,
                    transport=self._fallback_transport,
                ) as one_shot:
                    resp = await one_shot.request(method, path, json=json, headers=headers)
            else:
                resp = await self._client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "mercadopago_request_failed",
                operation=operation,
                fallback=fallback,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ProviderTransientError(
                f"Mercado Pago {operation} failed: {exc}", detail=str(exc)
            ) from exc
        finally:
            provider_request_duration_seconds.labels(operation=operation).observe(
                time.perf_counter() - started
            )

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        if resp.status_code >= 500:
            raise ProviderTransientError(
                f"Mercado Pago {operation} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                detail=body,
            )
        if resp.status_code >= 400:
            message = _error_message(body)
            error_cls = (
                ProviderConfigurationError
                if _is_merchant_not_enabled(message)
                else ProviderRejectedError
            )
            raise error_cls(
                message or f"Mercado Pago {operation} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                detail=body,
            )
        if not isinstance(body, dict):
            raise InvalidProviderResponse(
                f"Mercado Pago {operation} returned a non-object body",
                status_code=resp.status_code,
                detail=body,
            )
        return body

    async def create_charge(
        self,
        *,
        amount: Decimal,
        description: str,
        correlation_id: str,
        payer: dict[str, Any],
        idempotency_key: str,
        fallback: bool = False,
    ) -> ProviderCharge:
        if amount <= 0:
            raise ValueError("amount must be greater than zero")

        payload: dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": description,
            "payment_method_id": "pix",
            "external_reference": correlation_id,
            "payer": payer,
        }
        data = await self._send(
            "create_charge",
            "POST",
            "/v1/payments",
            fallback=fallback,
            json=payload,
            headers={"X-Idempotency-Key": idempotency_key},
        )
        charge = ProviderCharge.from_provider(data)
        if not data.get("id") or not charge.has_pix_data:
            raise InvalidProviderResponse(
                "Mercado Pago did not return PIX transaction data",
                detail=data,
            )
        logger.info(
            "mercadopago_charge_created",
            payment_id=charge.id,
            order_id=correlation_id,
            status=charge.status,
            fallback=fallback,
        )
        return charge

    async def fetch_charge(self, charge_id: str, *, fallback: bool = False) -> ProviderCharge:
        if not is_valid_charge_id(charge_id):
            raise ProviderRejectedError(
                "payment id is not a Mercado Pago id", status_code=400, detail=charge_id
            )
        data = await self._send(
            "fetch_charge", "GET", f"/v1/payments/{charge_id}", fallback=fallback
        )
        return ProviderCharge.from_provider(data)

    async def validate_credential(self) -> bool:
        """Check the access token against /users/me."""
        try:
            data = await self._send("validate_credential", "GET", "/users/me", fallback=False)
        except ProviderError as exc:
            logger.error(
                "mercadopago_credential_invalid",
                status_code=exc.status_code,
                error=exc.message,
            )
            return False
        logger.info("mercadopago_credential_valid", user_id=data.get("id"))
        return True


__all__ = ["MercadoPagoGateway", "MERCHANT_NOT_ENABLED_MARKERS"]
