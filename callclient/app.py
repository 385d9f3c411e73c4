from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse

from callcore.events import ConnectionState, ConnectionStateChanged
from callcore.router import MediaEngine, SessionRouter, SessionState
from callshared.protocol import DEFAULT_TCP_PORT, DEFAULT_TOKEN_URL
from callshared.resource_paths import webui_root

from .signaling_engine import SignalingEngine
from .surface import WebSocketHub, WebSocketSurface
from .token_service import TokenFetchError, TokenService

logger = logging.getLogger(__name__)


class ClientApp:
    """Client runtime tying the call router to the local web UI."""

    def __init__(
        self,
        server_host: str,
        tcp_port: int = DEFAULT_TCP_PORT,
        *,
        token_url: str = DEFAULT_TOKEN_URL,
        prefill_channel: Optional[str] = None,
        token_service: Optional[TokenService] = None,
        engine: Optional[MediaEngine] = None,
    ) -> None:
        self._server_host = server_host
        self._tcp_port = tcp_port
        self._token_url = token_url
        self._prefill_channel = prefill_channel
        self._token_service = token_service or TokenService(token_url)
        self._engine = engine or SignalingEngine(server_host, tcp_port)
        self._ws_hub = WebSocketHub()
        self._surface = WebSocketSurface(self._ws_hub)
        self._router = SessionRouter(
            self._engine,
            self._surface,
            on_connection_state=self._on_connection_state,
        )
        self._router_task: Optional[asyncio.Task[None]] = None
        self._joining = False
        self._status: Dict[str, object] = {"state": "idle"}
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def router(self) -> SessionRouter:
        return self._router

    def _configure_routes(self) -> None:
        static_dir = webui_root()

        @self._app.get("/")
        async def index() -> HTMLResponse:
            html_path = static_dir / "index.html"
            if not html_path.exists():
                raise HTTPException(status_code=404, detail="Call screen assets missing")
            return HTMLResponse(html_path.read_text(encoding="utf-8"))

        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            return {
                "prefill_channel": self._prefill_channel,
                "server_host": self._server_host,
                "tcp_port": self._tcp_port,
                "token_url": self._token_url,
            }

        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._build_snapshot()

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json({"type": "session_status", "payload": dict(self._status)})
                await websocket.send_json({"type": "state_snapshot", "payload": self._build_snapshot()})
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    def _build_snapshot(self) -> Dict[str, object]:
        router = self._router
        tiles = router.layout()
        return {
            "state": router.state.value,
            "channel": router.channel,
            "audio_muted": router.audio_muted,
            "video_paused": router.video_paused,
            "participants": [
                {"uid": uid, "width": tile.width, "height": tile.height}
                for uid, tile in zip(router.participants(), tiles)
            ],
        }

    async def _broadcast_session_status(self, state: str, **payload: object) -> None:
        self._status = {"state": state, "channel": self._router.channel, **payload}
        await self._ws_hub.broadcast({"type": "session_status", "payload": dict(self._status)})

    async def _broadcast_media_state(self) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "media_state",
                "payload": {
                    "audio_muted": self._router.audio_muted,
                    "video_paused": self._router.video_paused,
                },
            }
        )

    def _ensure_router_task(self) -> None:
        if self._router_task is None or self._router_task.done():
            self._router_task = asyncio.create_task(self._router.run())

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        raw_payload = data.get("payload")
        payload: Dict[str, object] = raw_payload if isinstance(raw_payload, dict) else {}
        if kind == "join":
            channel = str(payload.get("channel") or "").strip()
            if not channel:
                await self._broadcast_session_status("error", message="Channel name is required")
                return
            await self._start_session(channel)
        elif kind == "leave_session":
            await self._leave_session()
        elif kind == "toggle_audio":
            self._router.set_audio_muted(bool(payload.get("muted", False)))
            await self._broadcast_media_state()
        elif kind == "toggle_video":
            self._router.set_video_paused(bool(payload.get("paused", False)))
            await self._broadcast_media_state()
        elif kind == "resize":
            try:
                width = float(payload.get("width", 0))  # type: ignore[arg-type]
                height = float(payload.get("height", 0))  # type: ignore[arg-type]
                self._router.resize(width, height)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid surface size %s", payload)
        elif kind == "heartbeat":
            return
        else:
            logger.warning("Unhandled UI message: %s", data)

    async def _start_session(self, channel: str) -> None:
        if self._joining or self._router.state is not SessionState.IDLE:
            logger.info("Join for %s ignored; session already %s", channel, self._router.state.value)
            return
        self._joining = True
        await self._broadcast_session_status("fetching_token", requested_channel=channel)
        try:
            token = await self._token_service.get_token(channel)
        except TokenFetchError as exc:
            logger.error("Token service error: %s", exc)
            await self._broadcast_session_status("error", message=str(exc))
            return
        finally:
            self._joining = False
        self._ensure_router_task()
        try:
            self._router.join(token, channel)
        except Exception as exc:
            await self._broadcast_session_status("error", message=str(exc))
            return
        await self._broadcast_session_status("joined")

    async def _leave_session(self, *, message: Optional[str] = None) -> None:
        self._router.leave()
        await self._broadcast_session_status("idle", message=message)
        await self._broadcast_media_state()

    async def _on_connection_state(self, event: ConnectionStateChanged) -> None:
        if event.state in (ConnectionState.FAILED, ConnectionState.DISCONNECTED):
            if self._router.state is SessionState.ACTIVE:
                self._router.leave()
            state = "error" if event.state is ConnectionState.FAILED else "disconnected"
            await self._broadcast_session_status(state, message=event.reason)
            await self._broadcast_media_state()
            return
        await self._broadcast_session_status(event.state.value)

    async def shutdown(self) -> None:
        self._router.leave()
        self._router.events.close()
        if self._router_task is not None:
            await self._router_task
            self._router_task = None
        await self._surface.flush()
        wait_idle = getattr(self._engine, "wait_idle", None)
        if wait_idle is not None:
            await wait_idle()

    async def run(self, host: str = "127.0.0.1", port: int = 8100, *, open_browser: bool = True) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        url = f"http://{host}:{port}" if host != "0.0.0.0" else f"http://127.0.0.1:{port}"
        if open_browser:
            webbrowser.open_new_tab(url)
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            await self.shutdown()
