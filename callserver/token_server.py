"""Development token backend compatible with the call client's token request.

Tokens are opaque random strings. They are not signed and nothing verifies
them; the backend only mirrors the request/response contract so the join
flow can be exercised end to end.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from callshared.protocol import TokenRequest, TokenResponse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IssuedToken:
    token: str
    channel: str
    uid: int
    role: str
    expires_at: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "channel": self.channel,
            "uid": self.uid,
            "role": self.role,
            "expires_at": self.expires_at,
        }


class TokenStore:
    """In-memory record of issued tokens, pruned as they expire."""

    def __init__(self) -> None:
        self._tokens: Dict[str, IssuedToken] = {}

    def issue(self, request: TokenRequest, *, now: Optional[float] = None) -> IssuedToken:
        current = time.time() if now is None else now
        self._prune(current)
        issued = IssuedToken(
            token=secrets.token_hex(32),
            channel=request.channel,
            uid=request.uid,
            role=request.role,
            expires_at=current + max(0, request.expire),
        )
        self._tokens[issued.token] = issued
        return issued

    def lookup(self, token: str, *, now: Optional[float] = None) -> Optional[IssuedToken]:
        self._prune(time.time() if now is None else now)
        return self._tokens.get(token)

    def __len__(self) -> int:
        return len(self._tokens)

    def _prune(self, now: float) -> None:
        expired = [token for token, issued in self._tokens.items() if issued.expires_at <= now]
        for token in expired:
            del self._tokens[token]


def create_token_app(store: Optional[TokenStore] = None) -> FastAPI:
    token_store = store or TokenStore()
    app = FastAPI()

    @app.post("/getToken")
    async def get_token(payload: dict = Body(...)) -> dict:
        try:
            request = TokenRequest.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if request.token_type != "rtc":
            raise HTTPException(status_code=400, detail=f"unsupported tokenType '{request.token_type}'")
        issued = token_store.issue(request)
        logger.info("Issued %s token for channel %s (uid=%s)", request.role, request.channel, request.uid)
        return TokenResponse(token=issued.token).to_dict()

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "tokens": len(token_store), "timestamp": time.time()}

    return app


class TokenServer:
    """Background task helper for running the token FastAPI app."""

    def __init__(self, *, host: str, port: int, store: Optional[TokenStore] = None) -> None:
        self._app = create_token_app(store)
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._app

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Token backend available at http://%s:%s/getToken", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True  # type: ignore[attr-defined]
        await self._task
        self._server = None
        self._task = None
