from collections import defaultdict
from typing import Any, Protocol

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = structlog.get_logger(__name__)


class Broadcaster(Protocol):
    async def notify_restaurant(self, restaurant_id: int, payload: dict[str, Any]) -> int:
        """Push `payload` to every agent of one restaurant. Returns how many received it."""
        ...


class WebSocketBroadcaster:
    """
    In-process registry of connected print agents, one room per restaurant.
    A single instance is created at startup and shared by the dispatcher
    and the websocket endpoint.
    """

    def __init__(self):
        self._rooms: dict[int, set[WebSocket]] = defaultdict(set)

    async def connect(self, restaurant_id: int, websocket: WebSocket) -> None:
        await websocket.accept()
        self._rooms[restaurant_id].add(websocket)
        await websocket.send_json({"event": "agent:registered", "restaurantId": restaurant_id})
        logger.info("print_agent_connected", restaurant_id=restaurant_id, agents=len(self._rooms[restaurant_id]))

    def disconnect(self, restaurant_id: int, websocket: WebSocket) -> None:
        room = self._rooms.get(restaurant_id)
        if room is None:
            return
        room.discard(websocket)
        if not room:
            del self._rooms[restaurant_id]
        logger.info("print_agent_disconnected", restaurant_id=restaurant_id)

    def connected(self, restaurant_id: int) -> int:
        return len(self._rooms.get(restaurant_id, ()))

    async def notify_restaurant(self, restaurant_id: int, payload: dict[str, Any]) -> int:
        delivered = 0
        for websocket in list(self._rooms.get(restaurant_id, ())):
            try:
                await websocket.send_json(payload)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError):
                # Socket went away between registration and send
                self.disconnect(restaurant_id, websocket)
        return delivered
