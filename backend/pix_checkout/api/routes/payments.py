from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ...contracts import PaymentStatusDetail, PaymentStatusResponse, PixChargeResponse
from ...logging_config import bound_payment_context
from ...service import PixPaymentService
from ..types import IdempotencyKey, PaymentId
from ..utils import get_service, read_json_body

router = APIRouter(tags=["payments"])


@router.post("/api/generate-pix", response_model=PixChargeResponse)
async def generate_pix(
    request: Request,
    idempotency_key: IdempotencyKey = None,
    service: PixPaymentService = Depends(get_service),
):
    body = await read_json_body(request)
    order_id = body.get("orderId") if isinstance(body, dict) else None
    with bound_payment_context(order_id=order_id if isinstance(order_id, (str, int)) else None):
        return await service.create_pix_charge(body, idempotency_key=idempotency_key)


@router.get("/api/check-payment/{payment_id}", response_model=PaymentStatusResponse)
async def check_payment(payment_id: PaymentId, service: PixPaymentService = Depends(get_service)):
    with bound_payment_context(payment_id=payment_id):
        status = await service.check_charge_status(payment_id)
    return PaymentStatusResponse(status=status)


@router.get(
    "/status-pagamento/{payment_id}",
    response_model=PaymentStatusDetail,
    response_model_exclude_none=True,
)
async def payment_status(payment_id: PaymentId, service: PixPaymentService = Depends(get_service)):
    with bound_payment_context(payment_id=payment_id):
        return await service.payment_status_detail(payment_id)


@router.get("/api/payment/{payment_id}")
async def payment_summary(
    payment_id: PaymentId, service: PixPaymentService = Depends(get_service)
) -> dict[str, Any]:
    with bound_payment_context(payment_id=payment_id):
        return await service.payment_summary(payment_id)
