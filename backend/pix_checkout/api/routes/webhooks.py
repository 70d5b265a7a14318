from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ...service import PixPaymentService
from ..utils import get_service

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhook")
async def mercado_pago_webhook(request: Request, service: PixPaymentService = Depends(get_service)):
    """Payment notifications from Mercado Pago. The signature covers the raw body."""
    raw_body = await request.body()
    return await service.handle_webhook(
        raw_body, dict(request.headers), dict(request.query_params)
    )
