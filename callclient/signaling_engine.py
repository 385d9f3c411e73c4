from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, List, Optional, Set

from callcore.events import (
    ConnectionState,
    ConnectionStateChanged,
    EventChannel,
    ParticipantJoined,
    ParticipantLeft,
    SessionEvent,
)
from callshared.protocol import (
    DEFAULT_TCP_PORT,
    ControlAction,
    JoinRequest,
    LeaveReason,
    parse_uid_list,
)

from .control_client import HEARTBEAT_INTERVAL_SECONDS, ControlClient

logger = logging.getLogger(__name__)


class SignalingEngine:
    """Media engine backed by the signaling server.

    It carries presence only: remote joins and leaves become events on the
    router's channel, and local mute/pause flags are relayed to the server.
    Network work runs in background tasks so every engine call returns
    immediately.
    """

    def __init__(
        self,
        server_host: str,
        port: int = DEFAULT_TCP_PORT,
        *,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self._server_host = server_host
        self._port = port
        self._heartbeat_interval = heartbeat_interval
        self._events: Optional[EventChannel] = None
        self._client: Optional[ControlClient] = None
        self._tasks: Set[asyncio.Task[None]] = set()
        self._remote_views: List[int] = []

    @property
    def created(self) -> bool:
        return self._events is not None

    @property
    def uid(self) -> Optional[int]:
        return self._client.uid if self._client else None

    @property
    def remote_views(self) -> List[int]:
        return list(self._remote_views)

    def create(self, events: EventChannel) -> None:
        if self._events is not None:
            raise RuntimeError("Engine already created")
        self._events = events
        self._remote_views = []
        logger.debug("Signaling engine created for %s:%s", self._server_host, self._port)

    def destroy(self) -> None:
        self._events = None
        self._remote_views = []
        logger.debug("Signaling engine destroyed")

    # no capture pipeline; the browser owns the local camera preview
    def enable_video(self) -> None:
        logger.debug("Video enabled")

    def start_preview(self) -> None:
        logger.debug("Local preview started")

    def stop_preview(self) -> None:
        logger.debug("Local preview stopped")

    def join_channel(self, token: str, channel: str, uid: int) -> None:
        if self._events is None:
            raise RuntimeError("Engine must be created before joining")
        if self._client is not None:
            raise RuntimeError("Already joined a channel")
        self._client = ControlClient(
            self._server_host,
            self._port,
            JoinRequest(channel=channel, token=token, uid=uid),
            self._handle_message,
            on_disconnect=self._on_disconnect,
            heartbeat_interval=self._heartbeat_interval,
        )
        self._spawn(self._connect(self._client))

    def leave_channel(self) -> None:
        client = self._client
        self._client = None
        if client is None:
            return
        for task in list(self._tasks):
            task.cancel()
        self._spawn(client.close())

    def setup_remote_video(self, uid: int) -> None:
        if uid not in self._remote_views:
            self._remote_views.append(uid)

    def mute_local_audio(self, muted: bool) -> None:
        if self._client is not None:
            self._spawn(self._client.send_audio_status(muted))

    def mute_local_video(self, muted: bool) -> None:
        if self._client is not None:
            self._spawn(self._client.send_video_status(muted))

    def enable_local_video(self, enabled: bool) -> None:
        logger.debug("Local video %s", "enabled" if enabled else "disabled")

    async def wait_idle(self) -> None:
        """Wait for outstanding background work (connects, sends, closes)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _publish(self, event: SessionEvent) -> None:
        if self._events is None:
            logger.debug("Engine destroyed; dropping %s", event)
            return
        self._events.publish(event)

    async def _connect(self, client: ControlClient) -> None:
        self._publish(ConnectionStateChanged(ConnectionState.CONNECTING))
        try:
            await client.connect()
        except asyncio.CancelledError:
            await client.close()
            raise
        except Exception as exc:
            logger.warning("Could not join channel: %s", exc)
            await client.close()
            if self._client is client:
                self._client = None
            self._publish(ConnectionStateChanged(ConnectionState.FAILED, str(exc)))
            return
        logger.info("Joined signaling channel as uid %s", client.uid)
        self._publish(ConnectionStateChanged(ConnectionState.CONNECTED))

    async def _handle_message(self, action: ControlAction, payload: dict) -> None:
        own_uid = self.uid
        if action == ControlAction.WELCOME:
            for peer in parse_uid_list(payload.get("participants")):
                if peer != own_uid:
                    self._publish(ParticipantJoined(peer))
        elif action == ControlAction.USER_JOINED:
            uid = payload.get("uid")
            if isinstance(uid, int) and uid != own_uid:
                self._publish(ParticipantJoined(uid))
        elif action == ControlAction.USER_LEFT:
            uid = payload.get("uid")
            if isinstance(uid, int) and uid != own_uid:
                self._publish(ParticipantLeft(uid, LeaveReason.parse(payload.get("reason"))))
        elif action in (ControlAction.ERROR, ControlAction.KICKED):
            logger.warning("Signaling server says %s: %s", action.value, payload.get("reason"))
        else:
            logger.debug("Ignoring control action %s", action.value)

    async def _on_disconnect(self, reason: Optional[str]) -> None:
        self._client = None
        self._publish(ConnectionStateChanged(ConnectionState.DISCONNECTED, reason))
