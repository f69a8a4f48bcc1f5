# backend/websocket_manager.py
from fastapi import WebSocket
from typing import Dict, List
import json
import logging

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Track WebSocket connections per user for live notifications"""

    def __init__(self):
        self.active_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: int):
        """Accept and store new WebSocket connection"""
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)
        logger.info(f"User {user_id} connected. Total users online: {len(self.active_connections)}")

    def disconnect(self, user_id: int, websocket: WebSocket = None):
        """Remove a user's WebSocket connection (all of them if none given)"""
        sockets = self.active_connections.get(user_id)
        if not sockets:
            return
        if websocket is not None and websocket in sockets:
            sockets.remove(websocket)
        if websocket is None or not sockets:
            del self.active_connections[user_id]
        logger.info(f"User {user_id} disconnected. Total users online: {len(self.active_connections)}")

    def is_connected(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))

    async def send_to_user(self, user_id: int, payload: dict):
        """Send a JSON payload to every socket a user has open"""
        for websocket in list(self.active_connections.get(user_id, [])):
            try:
                await websocket.send_text(json.dumps(payload, default=str))
            except Exception as e:
                logger.error(f"Error sending message to user {user_id}: {e}")
                self.disconnect(user_id, websocket)
