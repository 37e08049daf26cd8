from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from typing import Dict, Set
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks open WebSockets per account so alerts can be pushed to them.

    An account may hold several sockets at once (nearby feed, chat window,
    notification feed, several tabs); ``notify`` fans out to all of them.
    """

    def __init__(self, max_connections: int = 1000):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self.connection_timestamps: Dict[WebSocket, datetime] = {}
        self.max_connections = max_connections

    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())

    async def connect(self, user_id: str, websocket: WebSocket) -> bool:
        if self.connection_count() >= self.max_connections:
            logger.warning(f"Connection limit reached ({self.max_connections}), rejecting user {user_id}")
            await websocket.close(code=1013, reason="Server overloaded")
            return False

        await websocket.accept()
        self.active_connections.setdefault(user_id, set()).add(websocket)
        self.connection_timestamps[websocket] = datetime.utcnow()
        logger.info(f"User {user_id} connected. Total connections: {self.connection_count()}")
        return True

    async def disconnect(self, user_id: str, websocket: WebSocket):
        sockets = self.active_connections.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.active_connections[user_id]
        self.connection_timestamps.pop(websocket, None)
        logger.info(f"User {user_id} disconnected. Total connections: {self.connection_count()}")

    async def notify(self, user_id: str, payload: dict) -> int:
        """Push ``payload`` to every socket of ``user_id``; returns how many got it."""
        delivered = 0
        for ws in list(self.active_connections.get(user_id, ())):
            try:
                await ws.send_json(jsonable_encoder(payload))
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to send message to {user_id}: {e}")
                await self.disconnect(user_id, ws)
        return delivered

    def get_connection_stats(self) -> dict:
        return {
            "active_connections": self.connection_count(),
            "connected_users": len(self.active_connections),
            "max_connections": self.max_connections
        }


# Global instance
manager = ConnectionManager()
