from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ...logging_config import get_logger
from ..utils import get_broadcaster

router = APIRouter(tags=["realtime"])
logger = get_logger(__name__)

PONG = json.dumps({"type": "pong"})


async def _serve_subscriber(websocket: WebSocket) -> None:
    broadcaster = get_broadcaster(websocket)
    await websocket.accept()
    broadcaster.register(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            # Only keep-alive pings are answered; everything else is ignored.
            if message.strip().lower() == "ping":
                await websocket.send_text(PONG)
    except WebSocketDisconnect as exc:
        logger.info("ws_disconnected", code=exc.code)
    finally:
        broadcaster.unregister(websocket)


@router.websocket("/ws")
async def payment_updates(websocket: WebSocket) -> None:
    await _serve_subscriber(websocket)


@router.websocket("/")
async def payment_updates_root(websocket: WebSocket) -> None:
    await _serve_subscriber(websocket)
