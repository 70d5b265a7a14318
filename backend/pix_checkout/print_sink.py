from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .logging_config import get_logger
from .metrics import print_forwards_total

logger = get_logger(__name__)


class PrintSinkNotConfigured(RuntimeError):
    """No PRINT_WEBHOOK_URL is configured."""


class PrintForwardError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(slots=True)
class PrintResult:
    status_code: int
    body: Any


class PrintForwarder:
    """POSTs order snapshots to the kitchen print webhook."""

    def __init__(
        self,
        url: str | None,
        *,
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = (url or "").strip() or None
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return self.url is not None

    async def close(self) -> None:
        await self._client.aclose()

    async def forward(self, order: dict[str, Any], *, source: str = "api") -> PrintResult:
        """
        Send `order` to the print webhook.

        Raises:
            PrintSinkNotConfigured: If no URL is configured
            PrintForwardError: On network failure or a non-2xx answer
        """
        if self.url is None:
            raise PrintSinkNotConfigured("PRINT_WEBHOOK_URL is not configured")

        try:
            resp = await self._client.post(self.url, json=order)
        except httpx.HTTPError as exc:
            print_forwards_total.labels(result="network_error").inc()
            logger.warning("print_forward_failed", source=source, error=str(exc))
            raise PrintForwardError(f"print webhook unreachable: {exc}") from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        if not resp.is_success:
            print_forwards_total.labels(result="upstream_error").inc()
            logger.warning(
                "print_forward_failed",
                source=source,
                status_code=resp.status_code,
            )
            raise PrintForwardError(
                f"print webhook answered HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )

        print_forwards_total.labels(result="ok").inc()
        logger.info("print_forwarded", source=source, status_code=resp.status_code)
        return PrintResult(status_code=resp.status_code, body=body)


SAMPLE_PRINT_ORDER: dict[str, Any] = {
    "orderId": "TESTE-0001",
    "test": True,
    "customer": {"name": "Cliente Teste", "phone": "(11) 99999-0000"},
    "delivery": {"type": "pickup", "address": None, "fee": 0},
    "items": [
        {"name": "Pizza Margherita (G)", "quantity": 1, "price": 49.9},
        {"name": "Refrigerante 2L", "quantity": 1, "price": 12.0},
    ],
    "totals": {"subtotal": 61.9, "deliveryFee": 0, "total": 61.9},
    "payment": {"method": "pix"},
}


__all__ = [
    "PrintForwarder",
    "PrintForwardError",
    "PrintResult",
    "PrintSinkNotConfigured",
    "SAMPLE_PRINT_ORDER",
]
