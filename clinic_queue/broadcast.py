"""
WebSocket broadcast channel.
Pushes the composed queue to every connected observer.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Sequence, Set

from fastapi import WebSocket

from .schemas import EntryView

logger = logging.getLogger(__name__)

QUEUE_UPDATE = "QUEUE_UPDATE"


def build_message(event: str, data: Any) -> str:
    return json.dumps({
        "event": event,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


def serialize_queue(views: Sequence[EntryView]) -> list[dict[str, Any]]:
    return [view.model_dump(mode="json") for view in views]


class QueueBroadcaster:
    """
    Tracks observer connections and fans out queue snapshots.
    A connection that fails to receive is dropped, never raised.
    """

    def __init__(self) -> None:
        self.connections: Set[WebSocket] = set()
        self.stats = {
            "total_connections": 0,
            "messages_sent": 0,
            "messages_broadcast": 0,
        }

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        self.stats["total_connections"] += 1
        logger.info("Queue observer connected (%d active)", len(self.connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.connections:
            self.connections.discard(websocket)
            logger.info("Queue observer disconnected (%d active)", len(self.connections))

    async def send_personal(self, websocket: WebSocket, event: str, data: Any) -> None:
        try:
            await websocket.send_text(build_message(event, data))
            self.stats["messages_sent"] += 1
        except Exception as exc:
            logger.warning("Failed to send %s to observer: %s", event, exc)
            self.disconnect(websocket)

    async def publish(self, views: Sequence[EntryView]) -> None:
        message = build_message(QUEUE_UPDATE, serialize_queue(views))
        disconnected = []
        for websocket in list(self.connections):
            try:
                await websocket.send_text(message)
            except Exception as exc:
                logger.warning("Dropping queue observer after failed send: %s", exc)
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(websocket)

        self.stats["messages_broadcast"] += 1
        logger.debug("Published queue of %d entries", len(views))
