from __future__ import annotations

import asyncio
import base64
import unicodedata
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from io import BytesIO
from typing import Any
from uuid import uuid4

import qrcode

from ..logging_config import get_logger
from .base import ProviderCharge

logger = get_logger(__name__)

DEV_CHARGE_PREFIX = "dev_"

StatusCallback = Callable[[str, str], Awaitable[None]]


def is_dev_charge_id(charge_id: str | None) -> bool:
    return bool(charge_id) and str(charge_id).startswith(DEV_CHARGE_PREFIX)


def _crc16_ccitt(payload: str) -> str:
    crc = 0xFFFF
    for byte in payload.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
            crc &= 0xFFFF
    return f"{crc:04X}"


def _emv(field_id: str, value: str) -> str:
    return f"{field_id}{len(value):02d}{value}"


def _ascii_upper(text: str, limit: int) -> str:
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return folded.upper()[:limit] or "NA"


def build_brcode(*, pix_key: str, amount: Decimal, merchant_name: str, merchant_city: str, txid: str) -> str:
    """Static BR Code ("PIX copia e cola") payload with its CRC16 checksum."""
    account = _emv("00", "BR.GOV.BCB.PIX") + _emv("01", pix_key)
    reference = "".join(ch for ch in txid if ch.isalnum())[:25] or "***"
    body = (
        _emv("00", "01")
        + _emv("26", account)
        + _emv("52", "0000")
        + _emv("53", "986")
        + _emv("54", f"{amount:.2f}")
        + _emv("58", "BR")
        + _emv("59", _ascii_upper(merchant_name, 25))
        + _emv("60", _ascii_upper(merchant_city, 15))
        + _emv("62", _emv("05", reference))
        + "6304"
    )
    return body + _crc16_ccitt(body)


def render_qr_base64(payload: str) -> str:
    """PNG QR code for `payload`, base64 encoded without a data: prefix."""
    image = qrcode.make(payload)
    buf = BytesIO()
    image.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class SimulatedPixGateway:
    """
    Local stand-in for Mercado Pago used with test credentials and as the
    local QR fallback.

    Owns the in-memory status of every simulated charge for the lifetime of
    the process and the auto-approve timers.
    """

    def __init__(
        self,
        *,
        pix_key: str,
        merchant_name: str,
        merchant_city: str,
        auto_approve_seconds: float = 0.0,
    ) -> None:
        self.pix_key = pix_key
        self.merchant_name = merchant_name
        self.merchant_city = merchant_city
        self.auto_approve_seconds = auto_approve_seconds
        self._charges: dict[str, ProviderCharge] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    async def create_charge(
        self,
        *,
        amount: Decimal,
        description: str,
        correlation_id: str,
        payer: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        fallback: bool = False,
    ) -> ProviderCharge:
        if amount <= 0:
            raise ValueError("amount must be greater than zero")

        charge_id = f"{DEV_CHARGE_PREFIX}{uuid4().hex[:20]}"
        copy_paste = build_brcode(
            pix_key=self.pix_key,
            amount=amount,
            merchant_name=self.merchant_name,
            merchant_city=self.merchant_city,
            txid=charge_id,
        )
        qr_base64 = await asyncio.to_thread(render_qr_base64, copy_paste)
        now = datetime.now(UTC).isoformat()
        charge = ProviderCharge(
            id=charge_id,
            status="pending",
            status_detail="pending_waiting_transfer",
            qr_code=copy_paste,
            qr_code_base64=qr_base64,
            transaction_amount=float(amount),
            date_created=now,
            external_reference=correlation_id,
            raw={
                "id": charge_id,
                "simulated": True,
                "description": description,
                "external_reference": correlation_id,
                "transaction_amount": float(amount),
                "date_created": now,
            },
        )
        self._charges[charge_id] = charge
        logger.info("simulated_charge_created", payment_id=charge_id, order_id=correlation_id)
        return charge

    async def fetch_charge(self, charge_id: str, *, fallback: bool = False) -> ProviderCharge:
        charge = self._charges.get(charge_id)
        if charge is None:
            raise KeyError(charge_id)
        return charge

    def get_status(self, charge_id: str) -> str | None:
        charge = self._charges.get(charge_id)
        return charge.status if charge else None

    def set_status(self, charge_id: str, status: str) -> ProviderCharge | None:
        charge = self._charges.get(charge_id)
        if charge is None:
            return None
        updates: dict[str, Any] = {"status": status, "status_detail": status}
        if status == "approved":
            updates["date_approved"] = datetime.now(UTC).isoformat()
        updated = charge.model_copy(update=updates)
        updated.raw = {**(charge.raw or {}), "status": status}
        self._charges[charge_id] = updated
        return updated

    def schedule_auto_approve(self, charge_id: str, on_status: StatusCallback) -> bool:
        """Flip `charge_id` to approved after the configured delay, then call `on_status`."""
        if self.auto_approve_seconds <= 0:
            return False

        async def _approve_later() -> None:
            await asyncio.sleep(self.auto_approve_seconds)
            if self.set_status(charge_id, "approved") is None:
                return
            logger.info("simulated_charge_auto_approved", payment_id=charge_id)
            await on_status(charge_id, "approved")

        task = asyncio.get_running_loop().create_task(_approve_later())
        self._tasks.add(task)
        task.add_done_callback(self._task_finished)
        return True

    def _task_finished(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("simulated_auto_approve_failed", error=str(exc), error_type=type(exc).__name__)

    async def validate_credential(self) -> bool:
        return True

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


__all__ = [
    "DEV_CHARGE_PREFIX",
    "SimulatedPixGateway",
    "build_brcode",
    "is_dev_charge_id",
    "render_qr_base64",
]
