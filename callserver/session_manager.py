from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional, Set, Tuple

from callshared.protocol import ControlAction, LeaveReason, encode_control_message

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 30.0  # seconds


@dataclass(slots=True)
class ConnectedClient:
    uid: int
    channel: str
    writer: asyncio.StreamWriter
    last_seen: float = field(default_factory=lambda: time.monotonic())
    audio_muted: bool = False
    video_paused: bool = False

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def send(self, action: ControlAction, data: Dict[str, object]) -> None:
        self.writer.write(encode_control_message(action, data))


class SessionManager:
    """Tracks channel membership and fans out signaling messages per channel."""

    def __init__(self, *, heartbeat_timeout: float = HEARTBEAT_TIMEOUT) -> None:
        self._channels: Dict[str, Dict[int, ConnectedClient]] = {}
        self._lock = asyncio.Lock()
        self._removed: Set[Tuple[str, int]] = set()
        self._next_uid = 1
        self._heartbeat_timeout = heartbeat_timeout

    async def register(
        self,
        channel: str,
        uid: int,
        writer: asyncio.StreamWriter,
    ) -> ConnectedClient:
        async with self._lock:
            if (channel, uid) in self._removed:
                raise PermissionError(f"uid {uid} is not allowed to rejoin channel '{channel}'")
            members = self._channels.setdefault(channel, {})
            if uid == 0:
                uid = self._allocate_uid_locked(channel, members)
            elif uid in members:
                raise ValueError(f"uid {uid} already joined channel '{channel}'")
            client = ConnectedClient(uid=uid, channel=channel, writer=writer)
            members[uid] = client
            logger.info("Registered uid %s in channel %s", uid, channel)
            return client

    async def unregister(
        self,
        channel: str,
        uid: int,
        *,
        reason: LeaveReason = LeaveReason.QUIT,
    ) -> bool:
        async with self._lock:
            client = self._pop_locked(channel, uid)
            if client is None:
                return False
            try:
                client.writer.close()
            except Exception:  # pragma: no cover - cleanup best effort
                logger.exception("Error while closing writer for uid %s", uid)
            logger.info("Unregistered uid %s from channel %s (%s)", uid, channel, reason.value)
            return True

    async def list_participants(self, channel: str) -> List[int]:
        async with self._lock:
            return list(self._channels.get(channel, {}))

    async def update_media_state(
        self,
        channel: str,
        uid: int,
        *,
        audio_muted: Optional[bool] = None,
        video_paused: Optional[bool] = None,
    ) -> Optional[dict[str, object]]:
        async with self._lock:
            client = self._channels.get(channel, {}).get(uid)
            if client is None:
                return None
            if audio_muted is not None:
                client.audio_muted = audio_muted
            if video_paused is not None:
                client.video_paused = video_paused
            return {
                "uid": uid,
                "audio_muted": client.audio_muted,
                "video_paused": client.video_paused,
            }

    async def broadcast(
        self,
        channel: str,
        action: ControlAction,
        data: Dict[str, object],
        *,
        exclude: Optional[Set[int]] = None,
    ) -> None:
        if exclude is None:
            exclude = set()
        drains: list[Awaitable[None]] = []
        async with self._lock:
            for uid, client in self._channels.get(channel, {}).items():
                if uid in exclude:
                    continue
                try:
                    client.send(action, data)
                    drains.append(client.writer.drain())
                except Exception:
                    logger.exception("Failed to queue message to uid %s", uid)
        if drains:
            await asyncio.gather(*drains, return_exceptions=True)

    async def send_to(self, channel: str, uid: int, action: ControlAction, data: Dict[str, object]) -> None:
        drain: Optional[Awaitable[None]] = None
        async with self._lock:
            client = self._channels.get(channel, {}).get(uid)
            if client is None:
                return
            try:
                client.send(action, data)
                drain = client.writer.drain()
            except Exception:
                logger.exception("Failed to send direct message to uid %s", uid)
        if drain is not None:
            await asyncio.gather(drain, return_exceptions=True)

    async def mark_heartbeat(self, channel: str, uid: int) -> None:
        async with self._lock:
            client = self._channels.get(channel, {}).get(uid)
            if client:
                elapsed = time.monotonic() - client.last_seen
                client.touch()
                logger.debug("Heartbeat from uid %s in %s (%.2fs since last)", uid, channel, elapsed)

    async def expire_stale(self) -> List[Tuple[str, int]]:
        """Drop clients whose heartbeat is overdue and tell their channels."""

        stale: List[Tuple[str, int]] = []
        async with self._lock:
            now = time.monotonic()
            for channel, members in list(self._channels.items()):
                for uid, client in list(members.items()):
                    if now - client.last_seen > self._heartbeat_timeout * 2:
                        stale.append((channel, uid))
        for channel, uid in stale:
            logger.warning("uid %s in channel %s timed out", uid, channel)
            removed = await self.unregister(channel, uid, reason=LeaveReason.DROPPED)
            if removed:
                await self.broadcast(
                    channel,
                    ControlAction.USER_LEFT,
                    {
                        "uid": uid,
                        "reason": LeaveReason.DROPPED.value,
                        "participants": await self.list_participants(channel),
                    },
                )
        return stale

    async def heartbeat_watcher(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_timeout)
            await self.expire_stale()

    async def ban(self, channel: str, uid: int) -> None:
        async with self._lock:
            self._removed.add((channel, uid))

    async def is_banned(self, channel: str, uid: int) -> bool:
        async with self._lock:
            return (channel, uid) in self._removed

    async def disconnect_all(self, *, reason: str = "Server shutting down") -> None:
        """Forcefully disconnect every connected client with a shutdown reason."""

        drains: list[Awaitable[None]] = []
        waiters: list[Awaitable[None]] = []
        async with self._lock:
            clients = [client for members in self._channels.values() for client in members.values()]
            if not clients:
                return
            for client in clients:
                try:
                    client.send(ControlAction.KICKED, {"reason": reason, "actor": "system"})
                    drains.append(client.writer.drain())
                except Exception:
                    logger.exception("Failed to notify uid %s about shutdown", client.uid)
                try:
                    client.writer.close()
                    waiters.append(client.writer.wait_closed())
                except Exception:
                    logger.exception("Error while closing writer for uid %s during shutdown", client.uid)
            self._channels.clear()
        pending = drains + waiters
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _allocate_uid_locked(self, channel: str, members: Dict[int, ConnectedClient]) -> int:
        while self._next_uid in members or (channel, self._next_uid) in self._removed:
            self._next_uid += 1
        uid = self._next_uid
        self._next_uid += 1
        return uid

    def _pop_locked(self, channel: str, uid: int) -> Optional[ConnectedClient]:
        members = self._channels.get(channel)
        if members is None:
            return None
        client = members.pop(uid, None)
        if not members:
            del self._channels[channel]
        return client

