"""
WebSocket manager for real-time ledger events.
Every committed ledger event is pushed to subscribers of its topic.
"""

import asyncio
from collections import deque
from typing import Deque, Dict, Optional, Set
from fastapi import WebSocket
import orjson

from shardflip.core.events import EventKind, LedgerEvent, event_to_dict
from shardflip.core.logger import get_logger

logger = get_logger("websocket")

GAME_TOPIC = "games"
ADMIN_TOPIC = "admin"


def topic_for(event: LedgerEvent) -> str:
    return GAME_TOPIC if event.kind == EventKind.GAME_PLAYED else ADMIN_TOPIC


class ConnectionManager:
    """
    Manages WebSocket connections and fans ledger events out to them.

    ``on_event`` is an EventBus subscriber. It may be called from any thread;
    sends are scheduled onto the loop bound with ``bind_loop``.
    """

    def __init__(self, history_size: int = 50):
        self.all_connections: Set[WebSocket] = set()
        self.topics: Dict[str, Set[WebSocket]] = {
            GAME_TOPIC: set(),
            ADMIN_TOPIC: set(),
        }
        self.recent_events: Deque[dict] = deque(maxlen=history_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # Pending broadcasts; the loop only keeps weak references to tasks
        self._tasks: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop

    async def _send_json(self, websocket: WebSocket, data: dict):
        # orjson.dumps returns bytes, so send_bytes avoids a decode round trip
        await websocket.send_bytes(orjson.dumps(data))

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection and replay recent game events."""
        await websocket.accept()
        self.all_connections.add(websocket)
        for members in self.topics.values():
            members.add(websocket)

        logger.info(f"WebSocket connected: total={len(self.all_connections)}")

        if self.recent_events:
            await self._send_json(
                websocket, {"type": "history", "events": list(self.recent_events)}
            )

    def disconnect(self, websocket: WebSocket):
        self.all_connections.discard(websocket)
        for members in self.topics.values():
            members.discard(websocket)
        logger.info(f"WebSocket disconnected: total={len(self.all_connections)}")

    async def subscribe(self, websocket: WebSocket, topic: str):
        if topic in self.topics:
            self.topics[topic].add(websocket)
            await self._send_json(websocket, {"type": "status", "message": f"Subscribed to {topic}"})
        else:
            await self._send_json(websocket, {"type": "error", "message": "Topic not found"})

    async def unsubscribe(self, websocket: WebSocket, topic: str):
        if topic in self.topics:
            self.topics[topic].discard(websocket)
            await self._send_json(websocket, {"type": "status", "message": f"Unsubscribed from {topic}"})

    async def broadcast(self, topic: str, message: dict, batch_size: int = 100, delay: float = 0.01):
        """
        Broadcast a message to every client subscribed to ``topic`` in batches
        to avoid blocking the event loop.
        """
        if topic not in self.topics:
            logger.warning(f"Broadcast to unknown topic: {topic}")
            return

        targets = list(self.topics[topic])
        disconnected = []

        for i in range(0, len(targets), batch_size):
            batch = targets[i : i + batch_size]
            results = await asyncio.gather(
                *(self._send_json(ws, message) for ws in batch), return_exceptions=True
            )
            for ws, result in zip(batch, results):
                if isinstance(result, Exception):
                    disconnected.append(ws)

            is_last_batch = (i + batch_size) >= len(targets)
            if delay > 0 and not is_last_batch:
                await asyncio.sleep(delay)

        if disconnected:
            logger.info(f"Found {len(disconnected)} disconnected clients during broadcast.")
            for ws in disconnected:
                self.disconnect(ws)

    def on_event(self, event: LedgerEvent):
        message = {"type": "event", "event": event_to_dict(event)}
        if event.kind == EventKind.GAME_PLAYED:
            self.recent_events.append(message["event"])

        loop = self._loop
        if loop is None or loop.is_closed() or not self.all_connections:
            return
        topic = topic_for(event)
        loop.call_soon_threadsafe(self._spawn, topic, message)

    def _spawn(self, topic: str, message: dict):
        task = self._loop.create_task(self.broadcast(topic, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def get_connection_count(self) -> int:
        return len(self.all_connections)
