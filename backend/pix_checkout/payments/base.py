from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel


class ProviderCharge(BaseModel):
    """Normalized view of a Mercado Pago payment (or a simulated one)."""

    id: str
    status: str = "pending"
    status_detail: str | None = None
    qr_code: str | None = None
    qr_code_base64: str | None = None
    ticket_url: str | None = None
    transaction_amount: float | None = None
    date_created: str | None = None
    date_approved: str | None = None
    external_reference: str | None = None
    raw: dict[str, Any] | None = None

    @property
    def has_pix_data(self) -> bool:
        return bool(self.qr_code or self.qr_code_base64)

    @classmethod
    def from_provider(cls, data: dict[str, Any]) -> ProviderCharge:
        point_of_interaction = data.get("point_of_interaction") or {}
        transaction_data = point_of_interaction.get("transaction_data") or {}

        qr_code_base64 = transaction_data.get("qr_code_base64")
        # Some responses wrap the image as {"data": "<base64>"}
        if isinstance(qr_code_base64, dict):
            qr_code_base64 = qr_code_base64.get("data")

        amount = data.get("transaction_amount")
        return cls(
            id=str(data.get("id")),
            status=str(data.get("status") or "pending"),
            status_detail=data.get("status_detail"),
            qr_code=transaction_data.get("qr_code"),
            qr_code_base64=qr_code_base64,
            ticket_url=transaction_data.get("ticket_url"),
            transaction_amount=float(amount) if amount is not None else None,
            date_created=data.get("date_created"),
            date_approved=data.get("date_approved"),
            external_reference=data.get("external_reference"),
            raw=data,
        )


class ProviderError(Exception):
    """Base class for failed calls to the payment provider."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class ProviderTransientError(ProviderError):
    """Network failure or 5xx. Worth exactly one fallback attempt."""


class ProviderRejectedError(ProviderError):
    """The provider refused the request (4xx)."""


class ProviderConfigurationError(ProviderRejectedError):
    """The merchant account is not enabled for PIX."""


class InvalidProviderResponse(ProviderError):
    """A 2xx answer without the PIX transaction data we asked for."""


class PaymentProvider(Protocol):
    async def create_charge(
        self,
        *,
        amount: Decimal,
        description: str,
        correlation_id: str,
        payer: dict[str, Any],
        idempotency_key: str,
        fallback: bool = False,
    ) -> ProviderCharge: ...

    async def fetch_charge(self, charge_id: str, *, fallback: bool = False) -> ProviderCharge: ...

    async def validate_credential(self) -> bool: ...

    async def close(self) -> None: ...
