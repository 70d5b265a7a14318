from __future__ import annotations

import json
from typing import Any

from fastapi import Request, WebSocket

from ..broadcaster import ChargeBroadcaster
from ..errors import PaymentAPIError
from ..print_sink import PrintForwarder
from ..service import PixPaymentService


def get_service(request: Request) -> PixPaymentService:
    return request.app.state.payment_service


def get_printer(request: Request) -> PrintForwarder:
    return request.app.state.print_forwarder


def get_broadcaster(websocket: WebSocket) -> ChargeBroadcaster:
    return websocket.app.state.broadcaster


async def read_json_body(request: Request) -> Any:
    """Decoded JSON body; 400 `invalid_request` when it is not JSON."""
    raw = await request.body()
    if not raw.strip():
        raise PaymentAPIError(400, "invalid_request", "request body must be JSON")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise PaymentAPIError(400, "invalid_request", "request body must be JSON") from exc
