"""
Best-effort real-time delivery over WebSockets.

The messaging code only calls `notify` after a write has been persisted; a
missed or failed delivery is reconciled by the client re-fetching the
conversation, so nothing here is retried or raised to the caller.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self.active: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active[user_id].add(websocket)
        logger.info("Socket connected for user %s (%d open)", user_id, len(self.active[user_id]))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self.active.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            self.active.pop(user_id, None)

    def is_online(self, user_id: str) -> bool:
        return bool(self.active.get(user_id))

    async def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> int:
        """Push `event` to every open socket of `user_id`; returns how many sockets got it."""
        delivered = 0
        for ws in list(self.active.get(user_id, ())):
            try:
                await ws.send_json({"event": event, "data": payload})
                delivered += 1
            except Exception as e:
                logger.warning("Dropping socket for user %s after send failure: %s", user_id, e)
                self.disconnect(user_id, ws)
        return delivered


manager = ConnectionManager()
