"""Live alert feed over WebSocket."""
import json
import logging
from datetime import datetime

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from w3hub.services.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/live", tags=["Live"])


def _now() -> str:
    return datetime.utcnow().isoformat()


@router.websocket("/alerts")
async def alerts_websocket(websocket: WebSocket):
    """
    Stream balance-change and new-transaction alerts.

    Client messages (JSON):
    - `{"action": "subscribe", "chain": "ethereum", "address": "0x..."}`
      narrows the feed; omit `address` for a whole chain
    - `{"action": "unsubscribe", ...}` with the same fields
    - `{"action": "ping"}`

    Alerts arrive as `{"type": "alert", "data": {...}, "timestamp": ...}`.
    """
    await manager.connect(websocket)
    logger.info(f"🔌 Dashboard connected ({manager.connection_count} open)")

    try:
        await websocket.send_json({"type": "connected", "timestamp": _now()})

        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON message"})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue

            action = message.get("action")
            if action == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})
            elif action in ("subscribe", "unsubscribe"):
                chain = message.get("chain")
                if not isinstance(chain, str) or not chain.strip():
                    await websocket.send_json({"type": "error", "message": "chain is required"})
                    continue
                update = manager.subscribe if action == "subscribe" else manager.unsubscribe
                address = message.get("address")
                chain, address = update(websocket, chain, address if isinstance(address, str) and address else None)
                await websocket.send_json({"type": f"{action}d", "chain": chain, "address": address})
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})

    except WebSocketDisconnect:
        logger.info("Dashboard disconnected")
    finally:
        manager.disconnect(websocket)
