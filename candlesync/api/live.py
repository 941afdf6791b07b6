"""Live subscriber endpoint.

WS /ws — after the handshake the client receives one JSON text frame per
live event: ``{"tf": "1h", "forming": [...]}`` or ``{"tf": "1h", "closed": [...]}``.
Inbound frames are read only to notice the disconnect.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from candlesync.api.deps import connection_engine

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/ws")
async def live_feed(websocket: WebSocket) -> None:
    engine = connection_engine(websocket)
    await websocket.accept()
    if not engine.broadcaster.subscribe(websocket):
        await websocket.close(code=status.WS_1001_GOING_AWAY)
        return

    logger.info("[Live] Subscriber connected (%d active)", len(engine.broadcaster))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        engine.broadcaster.unsubscribe(websocket)
        logger.info("[Live] Subscriber disconnected (%d active)", len(engine.broadcaster))
