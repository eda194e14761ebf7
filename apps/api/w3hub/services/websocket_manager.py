"""
WebSocket delivery backend.

Each connected dashboard gets every alert unless it narrows its feed with
subscribe messages. A subscription is a chain id, optionally with an
address; an empty subscription set means "everything".
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple

from fastapi import WebSocket

from w3hub.services.activity_detector import AlertEvent

logger = logging.getLogger(__name__)

# (chain, address); address None matches the whole chain
Subscription = Tuple[str, Optional[str]]


class ConnectionManager:
    """Track dashboard sockets and their alert filters."""

    name = "websocket"
    is_available = True

    def __init__(self):
        self.subscriptions: Dict[WebSocket, Set[Subscription]] = {}

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.subscriptions[websocket] = set()

    def disconnect(self, websocket: WebSocket):
        self.subscriptions.pop(websocket, None)

    def subscribe(self, websocket: WebSocket, chain: str, address: Optional[str] = None) -> Subscription:
        key = self._key(chain, address)
        self.subscriptions.setdefault(websocket, set()).add(key)
        return key

    def unsubscribe(self, websocket: WebSocket, chain: str, address: Optional[str] = None) -> Subscription:
        key = self._key(chain, address)
        self.subscriptions.get(websocket, set()).discard(key)
        return key

    @staticmethod
    def _key(chain: str, address: Optional[str]) -> Subscription:
        return (chain.strip().lower(), address.strip().lower() if address else None)

    @staticmethod
    def wants(filters: Set[Subscription], event: AlertEvent) -> bool:
        if not filters:
            return True
        return (event.chain, None) in filters or (event.chain, event.address) in filters

    async def send(self, event: AlertEvent) -> Dict[str, Any]:
        """Push one alert to every socket whose filters match it."""
        message = {
            "type": "alert",
            "data": event.to_dict(),
            "timestamp": datetime.utcnow().isoformat(),
        }
        delivered = 0
        dead = []
        for websocket, filters in list(self.subscriptions.items()):
            if not self.wants(filters, event):
                continue
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping dashboard socket: {e}")
                dead.append(websocket)

        for websocket in dead:
            self.disconnect(websocket)
        return {"success": True, "delivered": delivered}

    @property
    def connection_count(self) -> int:
        return len(self.subscriptions)


manager = ConnectionManager()
