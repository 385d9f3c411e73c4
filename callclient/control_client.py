from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from callshared.protocol import ControlAction, JoinRequest, decode_control_stream, encode_control_message

logger = logging.getLogger(__name__)

MessageCallback = Callable[[ControlAction, dict], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]

HEARTBEAT_INTERVAL_SECONDS = 3.0


class ControlClient:
    """Handles the TCP signaling connection for one channel membership."""

    def __init__(
        self,
        host: str,
        port: int,
        join_request: JoinRequest,
        on_message: MessageCallback,
        *,
        on_disconnect: Optional[DisconnectCallback] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ) -> None:
        self._host = host
        self._port = port
        self._join_request = join_request
        self._on_message = on_message
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._send_task: Optional[asyncio.Task[None]] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._send_queue: Deque[bytes] = deque()
        self._send_event = asyncio.Event()
        self._connected = asyncio.Event()
        self._stop = False
        self._rejection: Optional[str] = None
        self._on_disconnect = on_disconnect
        self._heartbeat_interval = heartbeat_interval
        self.uid: Optional[int] = None

    async def connect(self) -> None:
        logger.info("Connecting to signaling server %s:%s", self._host, self._port)
        self._reader, self._writer = await asyncio.open_connection(self._host, self._port)
        hello = encode_control_message(ControlAction.HELLO, self._join_request.to_dict())
        await self._send_raw(hello)
        self._send_task = asyncio.create_task(self._send_loop())
        self._recv_task = asyncio.create_task(self._recv_loop())
        await self._connected.wait()
        if self._stop or self.uid is None:
            raise ConnectionError(self._rejection or "Connection closed before handshake completed")
        await self._send_heartbeat()
        if not self._stop:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def close(self) -> None:
        self._stop = True
        self._send_event.set()
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except Exception:
                logger.debug("Writer already closed")
        self._reader = None
        self._writer = None

    async def _notify_disconnect(self, reason: Optional[str]) -> None:
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")

    async def _send_raw(self, data: bytes) -> None:
        if not self._writer:
            raise RuntimeError("Client is not connected")
        self._writer.write(data)
        await self._writer.drain()

    async def send(self, action: ControlAction, payload: Dict[str, object]) -> None:
        self._send_queue.append(encode_control_message(action, payload))
        self._send_event.set()

    async def send_audio_status(self, muted: bool) -> None:
        await self.send(ControlAction.AUDIO_STATUS, {"audio_muted": muted})

    async def send_video_status(self, paused: bool) -> None:
        await self.send(ControlAction.VIDEO_STATUS, {"video_paused": paused})

    async def _send_loop(self) -> None:
        while not self._stop:
            await self._send_event.wait()
            self._send_event.clear()
            while self._send_queue and not self._stop:
                data = self._send_queue.popleft()
                try:
                    await self._send_raw(data)
                except Exception:
                    logger.exception("Failed to send control message")
                    self._stop = True
                    break

    async def _recv_loop(self) -> None:
        assert self._reader is not None
        reader = self._reader
        disconnect_reason: Optional[str] = None
        try:
            while not self._stop:
                chunk = await reader.read(4096)
                if not chunk:
                    logger.info("Server closed signaling connection")
                    disconnect_reason = "server_closed"
                    break
                self._buffer.extend(chunk)
                messages, remaining = decode_control_stream(bytes(self._buffer))
                self._buffer = bytearray(remaining)
                for message in messages:
                    action = ControlAction(message["action"])
                    payload = message["data"]
                    if action == ControlAction.WELCOME:
                        self.uid = int(payload["uid"])
                        self._connected.set()
                    elif action in (ControlAction.ERROR, ControlAction.KICKED):
                        self._rejection = str(payload.get("reason") or action.value)
                        disconnect_reason = action.value
                    await self._dispatch(action, payload)
        except Exception:
            if not self._stop:
                logger.exception("Error while receiving from signaling server")
                disconnect_reason = "network_failure"
        finally:
            was_stopped = self._stop
            handshake_done = self._connected.is_set() and self.uid is not None
            if not self._connected.is_set():
                self._connected.set()
            await self.close()
            # handshake failures are raised from connect() instead
            if handshake_done and not was_stopped:
                await self._notify_disconnect(disconnect_reason or "connection_closed")

    async def _dispatch(self, action: ControlAction, payload: dict) -> None:
        try:
            result = self._on_message(action, payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Error while handling control message %s", action)

    async def _heartbeat_loop(self) -> None:
        try:
            while not self._stop:
                await asyncio.sleep(self._heartbeat_interval)
                await self._send_heartbeat()
        except asyncio.CancelledError:
            pass

    async def _send_heartbeat(self) -> None:
        timestamp_ms = int(time.time() * 1000)
        logger.debug("Sending heartbeat for uid %s at %s", self.uid, timestamp_ms)
        await self.send(ControlAction.HEARTBEAT, {"timestamp_ms": timestamp_ms})
