from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from callshared.protocol import DEFAULT_SURFACE_HEIGHT, DEFAULT_SURFACE_WIDTH

from .events import (
    ConnectionStateChanged,
    EventChannel,
    ParticipantJoined,
    ParticipantLeft,
    SessionEvent,
)
from .layout import TileSize, compute_layout
from .registry import ParticipantRegistry

logger = logging.getLogger(__name__)

ConnectionCallback = Callable[[ConnectionStateChanged], Awaitable[None] | None]


class MediaEngine(Protocol):
    """Capabilities the router needs from the real-time media engine."""

    def create(self, events: EventChannel) -> None: ...

    def destroy(self) -> None: ...

    def enable_video(self) -> None: ...

    def start_preview(self) -> None: ...

    def stop_preview(self) -> None: ...

    def join_channel(self, token: str, channel: str, uid: int) -> None: ...

    def leave_channel(self) -> None: ...

    def setup_remote_video(self, uid: int) -> None: ...

    def mute_local_audio(self, muted: bool) -> None: ...

    def mute_local_video(self, muted: bool) -> None: ...

    def enable_local_video(self, enabled: bool) -> None: ...


class RenderSurface(Protocol):
    """Displays one tile per participant. Diffing against prior state is its job."""

    def update_tiles(self, ordered_ids: Sequence[int], tiles: Sequence[TileSize]) -> None: ...

    def reset(self) -> None: ...


class SessionState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"


class SessionRouter:
    """Keeps the remote tile grid in step with channel membership.

    The router is a reactive state machine driven one event at a time. It
    never blocks and never starts concurrent work; callers that receive
    engine notifications on several threads must funnel them through an
    :class:`EventChannel` first.
    """

    def __init__(
        self,
        engine: MediaEngine,
        surface: RenderSurface,
        *,
        events: Optional[EventChannel] = None,
        surface_width: float = DEFAULT_SURFACE_WIDTH,
        surface_height: float = DEFAULT_SURFACE_HEIGHT,
        on_connection_state: Optional[ConnectionCallback] = None,
    ) -> None:
        self._engine = engine
        self._surface = surface
        self._events = events if events is not None else EventChannel()
        self._registry = ParticipantRegistry()
        self._state = SessionState.IDLE
        self._channel: Optional[str] = None
        self._surface_width = surface_width
        self._surface_height = surface_height
        self._on_connection_state = on_connection_state
        self._audio_muted = False
        self._video_paused = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def channel(self) -> Optional[str]:
        return self._channel

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def audio_muted(self) -> bool:
        return self._audio_muted

    @property
    def video_paused(self) -> bool:
        return self._video_paused

    def participants(self) -> List[int]:
        return self._registry.ordered_ids()

    def layout(self) -> List[TileSize]:
        return compute_layout(self._registry.count(), self._surface_width, self._surface_height)

    def join(self, token: str, channel: str, uid: int = 0) -> bool:
        if self._state is not SessionState.IDLE:
            logger.warning("Ignoring join for %s while %s", channel, self._state.value)
            return False
        self._state = SessionState.JOINING
        self._channel = channel
        self._registry.clear()
        logger.info("Joining channel %s (uid=%s)", channel, uid)
        try:
            self._engine.create(self._events)
            self._engine.enable_video()
            self._engine.start_preview()
            self._engine.join_channel(token, channel, uid)
        except Exception:
            logger.exception("Media engine rejected join for %s", channel)
            self._teardown()
            raise
        # local join confirmation is treated as immediate
        self._state = SessionState.ACTIVE
        return True

    def leave(self) -> bool:
        if self._state in (SessionState.IDLE, SessionState.LEAVING):
            logger.debug("Leave requested while %s; nothing to do", self._state.value)
            return False
        logger.info("Leaving channel %s", self._channel)
        self._state = SessionState.LEAVING
        self._teardown()
        return True

    def set_audio_muted(self, muted: bool) -> None:
        self._audio_muted = muted
        if self._state is SessionState.ACTIVE:
            self._engine.mute_local_audio(muted)

    def set_video_paused(self, paused: bool) -> None:
        self._video_paused = paused
        if self._state is SessionState.ACTIVE:
            self._engine.mute_local_video(paused)
            self._engine.enable_local_video(not paused)

    def resize(self, width: float, height: float) -> None:
        if width <= 0 or height <= 0:
            raise ValueError(f"surface must have a positive area, got {width}x{height}")
        self._surface_width = width
        self._surface_height = height
        if self._state is SessionState.ACTIVE:
            self._render()

    def dispatch(self, event: SessionEvent) -> Optional[Awaitable[None]]:
        """Apply a single engine event.

        Connection state changes go to the callback. When the callback is a
        coroutine function its awaitable is handed back for the caller to
        await; :meth:`run` does so before taking the next event.
        """

        if isinstance(event, ConnectionStateChanged):
            return self._notify_connection_state(event)
        if self._state is not SessionState.ACTIVE:
            logger.debug("Ignoring %s while %s", event, self._state.value)
            return None
        if isinstance(event, ParticipantJoined):
            if self._registry.add(event.uid):
                logger.info("Participant %s joined %s", event.uid, self._channel)
                self._engine.setup_remote_video(event.uid)
        elif isinstance(event, ParticipantLeft):
            if self._registry.remove(event.uid):
                logger.info("Participant %s left %s (%s)", event.uid, self._channel, event.reason.value)
        else:
            logger.warning("Unhandled session event %r", event)
            return None
        self._render()
        return None

    async def run(self) -> None:
        """Consume the event channel in order until it is closed."""

        async for event in self._events:
            try:
                pending = self.dispatch(event)
                if pending is not None:
                    await pending
            except Exception:
                logger.exception("Failed to apply %s", event)

    def _render(self) -> None:
        ordered = self._registry.ordered_ids()
        tiles = compute_layout(len(ordered), self._surface_width, self._surface_height)
        self._surface.update_tiles(ordered, tiles)

    def _teardown(self) -> None:
        engine = self._engine
        for step in (engine.stop_preview, engine.leave_channel, engine.destroy):
            try:
                step()
            except Exception:
                logger.exception("Media engine teardown step %s failed", getattr(step, "__name__", step))
        dropped = self._events.discard_pending()
        if dropped:
            logger.debug("Discarded %d queued events from the finished session", dropped)
        self._registry.clear()
        self._surface.reset()
        self._audio_muted = False
        self._video_paused = False
        self._channel = None
        self._state = SessionState.IDLE

    def _notify_connection_state(self, event: ConnectionStateChanged) -> Optional[Awaitable[None]]:
        logger.info("Engine connection %s (%s)", event.state.value, event.reason or "no reason")
        if self._on_connection_state is None:
            return None
        try:
            result = self._on_connection_state(event)
        except Exception:
            logger.exception("Connection state callback failed")
            return None
        return result if inspect.isawaitable(result) else None
