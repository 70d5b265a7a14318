from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ...errors import PaymentAPIError
from ...print_sink import (
    SAMPLE_PRINT_ORDER,
    PrintForwarder,
    PrintForwardError,
    PrintResult,
    PrintSinkNotConfigured,
)
from ..utils import get_printer, read_json_body

router = APIRouter(tags=["printing"])


async def _forward(printer: PrintForwarder, order: Any, *, source: str) -> PrintResult:
    if not isinstance(order, dict):
        raise PaymentAPIError(400, "invalid_request", "order must be a JSON object")
    try:
        return await printer.forward(order, source=source)
    except PrintSinkNotConfigured as exc:
        raise PaymentAPIError(503, "print_sink_not_configured", str(exc)) from exc
    except PrintForwardError as exc:
        detail: dict[str, Any] = {"message": str(exc)}
        if exc.status_code is not None:
            detail["status"] = exc.status_code
            detail["body"] = exc.body
        raise PaymentAPIError(502, "print_forward_failed", detail) from exc


@router.post("/api/print")
@router.post("/api/print-order")
async def print_order(request: Request, printer: PrintForwarder = Depends(get_printer)):
    order = await read_json_body(request)
    result = await _forward(printer, order, source="api")
    return {"ok": True, "status": result.status_code, "upstream": result.body}


@router.post("/api/print-test")
async def print_test(printer: PrintForwarder = Depends(get_printer)):
    result = await _forward(printer, dict(SAMPLE_PRINT_ORDER), source="test")
    return {"ok": True, "status": result.status_code, "upstream": result.body}


@router.post("/api/print-echo")
async def print_echo(request: Request, printer: PrintForwarder = Depends(get_printer)):
    order = await read_json_body(request)
    result = await _forward(printer, order, source="echo")
    return {
        "sent": order,
        "upstream": {"status": result.status_code, "body": result.body},
    }
