from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Sequence, Set

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from callcore.layout import TileSize

logger = logging.getLogger(__name__)


class WebSocketHub:
    """Tracks active UI WebSocket connections."""

    def __init__(self) -> None:
        self._connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._connections.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._connections:
                self._connections.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            for ws in list(self._connections):
                try:
                    if ws.application_state == WebSocketState.CONNECTED:
                        await ws.send_json(message)
                except Exception:
                    logger.exception("Failed to send WebSocket message")


class WebSocketSurface:
    """Rendering surface that mirrors the tile grid into connected browsers.

    The browser owns the diffing: it receives the full ordered list on every
    change and reconciles its video elements against what it shows.
    """

    def __init__(self, hub: WebSocketHub) -> None:
        self._hub = hub
        self._tasks: Set[asyncio.Task[None]] = set()

    def update_tiles(self, ordered_ids: Sequence[int], tiles: Sequence[TileSize]) -> None:
        message: Dict[str, object] = {
            "type": "tiles",
            "payload": {
                "participants": [
                    {"uid": uid, "width": tile.width, "height": tile.height}
                    for uid, tile in zip(ordered_ids, tiles)
                ],
            },
        }
        self._send(message)

    def reset(self) -> None:
        self._send({"type": "tiles_reset", "payload": {}})

    async def flush(self) -> None:
        """Wait until every queued update has been broadcast."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _send(self, message: Dict[str, object]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping %s update", message["type"])
            return
        # tasks start in creation order and the hub lock is FIFO, so updates stay ordered
        task = loop.create_task(self._hub.broadcast(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
