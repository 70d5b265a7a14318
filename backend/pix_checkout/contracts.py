from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError

CENTS = Decimal("0.01")

COMPLETED_STATUSES = frozenset({"approved", "paid", "success"})
FAILED_STATUSES = frozenset({"rejected", "cancelled", "canceled"})
TERMINAL_STATUSES = frozenset({"approved", "rejected", "cancelled"})

_DESCRIPTION_ORDER_RE = re.compile(r"#\s*([A-Za-z0-9_-]+)")

# Provider ids are numeric, simulated ones are `dev_<hex>`; both fit in a URL path segment.
CHARGE_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
_CHARGE_ID_RE = re.compile(CHARGE_ID_PATTERN)


def is_completed(status: str | None) -> bool:
    return (status or "").strip().lower() in COMPLETED_STATUSES


def is_failed(status: str | None) -> bool:
    return (status or "").strip().lower() in FAILED_STATUSES


def is_valid_charge_id(value: str | None) -> bool:
    return bool(value) and _CHARGE_ID_RE.fullmatch(value) is not None


class RequestShapeError(ValueError):
    """A create-charge body that cannot be turned into a PixChargeRequest."""

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


# --- Storefront order snapshot (kept loose: the print sink owns its schema) ---
class CustomerInfo(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    name: str | None = None
    phone: str | None = None
    email: str | None = None


# --- Inbound create-charge shapes ---
class AmountOrderBody(BaseModel):
    """`{amount, orderId, orderData?, customer?}` sent by the payment widget."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["amount_order"] = "amount_order"
    amount: Any
    orderId: Any = None
    orderData: dict[str, Any] | None = None
    customer: CustomerInfo | None = None
    description: str | None = None


class TransactionBody(BaseModel):
    """`{transaction_amount, description, orderData?}`, the Mercado Pago style body."""

    model_config = ConfigDict(extra="ignore")

    kind: Literal["transaction"] = "transaction"
    transaction_amount: Any
    description: str
    orderId: Any = None
    orderData: dict[str, Any] | None = None
    customer: CustomerInfo | None = None


class PixChargeRequest(BaseModel):
    """Normalized create-charge request, independent of the inbound shape."""

    amount: Decimal
    order_id: str
    description: str | None = None
    order_data: dict[str, Any] | None = None
    customer: CustomerInfo | None = None


def parse_amount(value: Any) -> Decimal:
    """Positive amount rounded to cents. Raises RequestShapeError('invalid_amount')."""
    if isinstance(value, bool) or value is None:
        raise RequestShapeError("invalid_amount", "amount must be a number greater than zero")
    if isinstance(value, float) and not math.isfinite(value):
        raise RequestShapeError("invalid_amount", "amount must be a number greater than zero")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise RequestShapeError(
            "invalid_amount", "amount must be a number greater than zero"
        ) from None
    if not amount.is_finite():
        raise RequestShapeError("invalid_amount", "amount must be a number greater than zero")
    amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise RequestShapeError("invalid_amount", "amount must be a number greater than zero")
    return amount


def _clean_order_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _order_id_from_order_data(order_data: dict[str, Any] | None) -> str | None:
    if not order_data:
        return None
    for key in ("orderId", "order_id", "id"):
        found = _clean_order_id(order_data.get(key))
        if found:
            return found
    return None


def _customer_from(
    explicit: CustomerInfo | None, order_data: dict[str, Any] | None
) -> CustomerInfo | None:
    if explicit is not None:
        return explicit
    if order_data and isinstance(order_data.get("customer"), dict):
        try:
            return CustomerInfo.model_validate(order_data["customer"])
        except ValidationError:
            # The snapshot is forwarded untouched; only the payer lookup loses it.
            return None
    return None


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request body"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else str(first.get("msg"))


def normalize_charge_request(body: Any) -> PixChargeRequest:
    """
    Turn either accepted body shape into a PixChargeRequest.

    A body carrying `amount` is the widget shape and needs `orderId`; a body
    carrying `transaction_amount` is the provider-style shape and needs a
    `description`. The order id of the latter comes from `orderId`, then
    `orderData`, then a `#<id>` token in the description.
    """
    if not isinstance(body, dict):
        raise RequestShapeError("invalid_request", "request body must be a JSON object")

    if "amount" in body:
        try:
            parsed = AmountOrderBody.model_validate(body)
        except ValidationError as exc:
            raise RequestShapeError("invalid_request", _first_error(exc)) from None
        amount = parse_amount(parsed.amount)
        order_id = _clean_order_id(parsed.orderId)
        if not order_id:
            raise RequestShapeError("missing_order_id", "orderId is required")
        return PixChargeRequest(
            amount=amount,
            order_id=order_id,
            description=parsed.description,
            order_data=parsed.orderData,
            customer=_customer_from(parsed.customer, parsed.orderData),
        )

    if "transaction_amount" in body:
        if not isinstance(body.get("description"), str):
            raise RequestShapeError(
                "invalid_request", "description is required with transaction_amount"
            )
        try:
            parsed_tx = TransactionBody.model_validate(body)
        except ValidationError as exc:
            raise RequestShapeError("invalid_request", _first_error(exc)) from None
        amount = parse_amount(parsed_tx.transaction_amount)
        order_id = _clean_order_id(parsed_tx.orderId) or _order_id_from_order_data(
            parsed_tx.orderData
        )
        if not order_id:
            match = _DESCRIPTION_ORDER_RE.search(parsed_tx.description)
            order_id = match.group(1) if match else None
        if not order_id:
            raise RequestShapeError("missing_order_id", "orderId is required")
        return PixChargeRequest(
            amount=amount,
            order_id=order_id,
            description=parsed_tx.description,
            order_data=parsed_tx.orderData,
            customer=_customer_from(parsed_tx.customer, parsed_tx.orderData),
        )

    raise RequestShapeError(
        "invalid_request",
        "expected {amount, orderId} or {transaction_amount, description}",
    )


# --- Responses ---
class PixChargeResponse(BaseModel):
    qrCodeBase64: str | None = None
    pixCopiaECola: str | None = None
    paymentId: str
    status: str | None = None


class PaymentStatusResponse(BaseModel):
    status: str


class PaymentStatusDetail(BaseModel):
    status: str
    status_detail: str | None = None
    date_approved: str | None = None


class PaymentUpdate(BaseModel):
    id: str
    orderId: str | None = None
    status: str
    raw: dict[str, Any] | None = None


class PaymentUpdateEvent(BaseModel):
    type: Literal["payment_update"] = "payment_update"
    payload: PaymentUpdate

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# --- Webhook ---
def extract_webhook_charge_id(payload: Any, query: dict[str, str] | None = None) -> str | None:
    """
    Charge id from `{data: {id}}`, `{id}`, or the `data.id` / `id` query params.

    Candidates that are not a plain charge id (see `CHARGE_ID_PATTERN`) are skipped.
    """
    candidates: list[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, dict):
            candidates.append(data.get("id"))
        candidates.append(payload.get("id"))
    if query:
        candidates.extend(query.get(key) for key in ("data.id", "id"))
    for candidate in candidates:
        found = _clean_order_id(candidate)
        if found and is_valid_charge_id(found):
            return found
    return None


class Charge(BaseModel):
    """Read view of a stored charge record."""

    model_config = ConfigDict(extra="allow")

    id: str
    order_id: str | None = None
    amount: str | None = None
    status: str = "pending"
    status_detail: str | None = None
    date_approved: str | None = None
    raw_provider_payload: dict[str, Any] | None = None
    order_data: dict[str, Any] | None = None
    idempotency_key: str | None = None
    simulated: bool = False
    observed_at: int | None = None
    print_forwarded_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
