from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from .logging_config import get_logger

logger = get_logger(__name__)


class CheckoutApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(slots=True)
class GeneratedPix:
    """Create-charge answer with the alias fields folded into one name each."""

    payment_id: str | None
    qr_code_base64: str | None
    copy_paste: str | None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_usable(self) -> bool:
        return bool(self.payment_id) and bool(self.qr_code_base64 or self.copy_paste)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def normalize_generate_pix(data: dict[str, Any]) -> GeneratedPix:
    payment_id = _first(data, "paymentId", "id")
    return GeneratedPix(
        payment_id=str(payment_id) if payment_id is not None else None,
        qr_code_base64=_first(data, "qrCodeBase64", "qr_code_base64", "qrCode"),
        copy_paste=_first(data, "pixCopiaECola", "qr_code", "qrCode"),
        status=data.get("status"),
        raw=data,
    )


class CheckoutApiClient:
    """Storefront side of the payment API: create a charge, poll its status."""

    def __init__(
        self,
        base_url: str = "",
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("checkout_api_unreachable", path=path, error=str(exc))
            raise CheckoutApiError(f"payment API unreachable: {exc}") from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        if not resp.is_success:
            logger.warning("checkout_api_error", path=path, status_code=resp.status_code)
            raise CheckoutApiError(
                f"payment API answered HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )
        if not isinstance(body, dict):
            raise CheckoutApiError("payment API returned a non-object body", body=body)
        return body

    async def generate_pix(
        self,
        amount: float | str,
        order_id: str,
        *,
        order_data: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> GeneratedPix:
        payload: dict[str, Any] = {"amount": amount, "orderId": order_id}
        if order_data is not None:
            payload["orderData"] = order_data
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request("POST", "/api/generate-pix", json=payload, headers=headers)
        return normalize_generate_pix(data)

    async def check_payment_status(self, payment_id: str) -> str | None:
        data = await self._request("GET", f"/api/check-payment/{payment_id}")
        return data.get("status")


__all__ = ["CheckoutApiClient", "CheckoutApiError", "GeneratedPix", "normalize_generate_pix"]
