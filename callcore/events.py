"""Typed engine notifications and the queue that serializes them."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Union

from callshared.protocol import LeaveReason

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ParticipantJoined:
    uid: int


@dataclass(frozen=True, slots=True)
class ParticipantLeft:
    uid: int
    reason: LeaveReason = LeaveReason.QUIT


@dataclass(frozen=True, slots=True)
class ConnectionStateChanged:
    state: ConnectionState
    reason: Optional[str] = None


SessionEvent = Union[ParticipantJoined, ParticipantLeft, ConnectionStateChanged]

_CLOSED = object()


class EventChannel:
    """Single-writer FIFO carrying engine events into the router.

    ``publish`` must be called from the event loop thread. Engines that
    deliver callbacks on their own threads use ``publish_threadsafe`` so
    ordering is still decided by the loop.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: SessionEvent) -> None:
        if self._closed:
            logger.debug("Dropping %s published after close", event)
            return
        self._queue.put_nowait(event)

    def publish_threadsafe(self, loop: asyncio.AbstractEventLoop, event: SessionEvent) -> None:
        loop.call_soon_threadsafe(self.publish, event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def discard_pending(self) -> int:
        """Drop queued events that have not been consumed yet. Returns how many."""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            dropped += 1
        return dropped

    async def get(self) -> Optional[SessionEvent]:
        """Next event, or ``None`` once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
