from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

from callshared.protocol import (
    ControlAction,
    JoinRequest,
    LeaveReason,
    decode_control_stream,
    encode_control_message,
)

from .session_manager import SessionManager

logger = logging.getLogger(__name__)


class ControlServer:
    """TCP signaling plane: channel joins, leaves, and local media flags."""

    def __init__(self, host: str, port: int, session_manager: SessionManager) -> None:
        self._host = host
        self._port = port
        self._session_manager = session_manager
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._server and self._server.sockets:
            return int(self._server.sockets[0].getsockname()[1])
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        sockets = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Signaling server listening on %s", sockets)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def force_disconnect(self, channel: str, uid: int, *, actor: str = "operator") -> bool:
        """Remove a participant from a channel and keep that uid out of it."""

        await self._session_manager.send_to(
            channel,
            uid,
            ControlAction.KICKED,
            {
                "reason": "An operator removed you from this channel.",
                "actor": actor,
            },
        )
        removed = await self._session_manager.unregister(channel, uid, reason=LeaveReason.KICKED)
        if not removed:
            return False
        await self._session_manager.ban(channel, uid)
        await self._announce_left(channel, uid, LeaveReason.KICKED)
        logger.info("Forcefully disconnected uid %s from %s (actor=%s)", uid, channel, actor)
        return True

    async def _announce_left(self, channel: str, uid: int, reason: LeaveReason) -> None:
        participants = await self._session_manager.list_participants(channel)
        await self._session_manager.broadcast(
            channel,
            ControlAction.USER_LEFT,
            {"uid": uid, "reason": reason.value, "participants": participants},
        )

    async def _reject(self, writer: asyncio.StreamWriter, action: ControlAction, reason: str, code: str) -> None:
        try:
            writer.write(encode_control_message(action, {"reason": reason, "code": code}))
            await writer.drain()
        except Exception:
            logger.debug("Failed to notify rejected client (%s)", code)

    async def _handshake(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: Optional[Tuple[object, ...]],
    ) -> Tuple[Optional[Tuple[str, int]], bytes]:
        buffer = b""
        while True:
            data = await reader.read(4096)
            if not data:
                raise ConnectionError("connection closed before handshake")
            buffer += data
            messages, buffer = decode_control_stream(buffer)
            if not messages:
                continue
            message = messages[0]
            if ControlAction(message["action"]) != ControlAction.HELLO:
                raise ValueError("Expected HELLO as first message")
            request = JoinRequest.from_dict(message["data"])
            try:
                client = await self._session_manager.register(request.channel, request.uid, writer)
            except PermissionError as exc:
                logger.warning("Rejected uid %s for %s from %s: %s", request.uid, request.channel, peer, exc)
                await self._reject(writer, ControlAction.KICKED, str(exc), "removed")
                return None, b""
            except ValueError as exc:
                logger.warning("Rejected uid %s for %s from %s: %s", request.uid, request.channel, peer, exc)
                await self._reject(writer, ControlAction.ERROR, str(exc), "uid_conflict")
                return None, b""
            participants = await self._session_manager.list_participants(request.channel)
            client.send(
                ControlAction.WELCOME,
                {"uid": client.uid, "channel": request.channel, "participants": participants},
            )
            await writer.drain()
            await self._session_manager.broadcast(
                request.channel,
                ControlAction.USER_JOINED,
                {"uid": client.uid, "participants": participants},
                exclude={client.uid},
            )
            # anything pipelined after HELLO is replayed by the caller
            leftover = b"".join(
                encode_control_message(ControlAction(extra["action"]), extra["data"]) for extra in messages[1:]
            )
            return (request.channel, client.uid), leftover + buffer

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        logger.info("Incoming TCP connection from %s", peer)

        member: Optional[Tuple[str, int]] = None
        reason = LeaveReason.QUIT
        try:
            member, buffer = await self._handshake(reader, writer, peer)
            if member is None:
                return
            channel, uid = member
            while True:
                messages, buffer = decode_control_stream(buffer)
                for message in messages:
                    await self._handle_message(channel, uid, ControlAction(message["action"]), message["data"])
                data = await reader.read(4096)
                if not data:
                    break
                buffer += data
        except (ConnectionError, OSError) as exc:
            logger.info("Connection from %s lost: %s", peer, exc)
            reason = LeaveReason.NETWORK_FAILURE
        except Exception as exc:
            logger.exception("Error while handling client %s: %s", peer, exc)
            reason = LeaveReason.NETWORK_FAILURE
        finally:
            if member is not None:
                channel, uid = member
                removed = await self._session_manager.unregister(channel, uid, reason=reason)
                if removed:
                    await self._announce_left(channel, uid, reason)
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def _handle_message(self, channel: str, uid: int, action: ControlAction, payload: dict) -> None:
        if action == ControlAction.HEARTBEAT:
            await self._session_manager.mark_heartbeat(channel, uid)
            return

        if action == ControlAction.AUDIO_STATUS:
            state = await self._session_manager.update_media_state(
                channel, uid, audio_muted=bool(payload.get("audio_muted", False))
            )
            if state:
                await self._session_manager.broadcast(channel, ControlAction.AUDIO_STATUS, state)
            return

        if action == ControlAction.VIDEO_STATUS:
            state = await self._session_manager.update_media_state(
                channel, uid, video_paused=bool(payload.get("video_paused", False))
            )
            if state:
                await self._session_manager.broadcast(channel, ControlAction.VIDEO_STATUS, state)
            return

        logger.debug("Unhandled control action %s from uid %s", action, uid)
