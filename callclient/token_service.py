from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from callshared.protocol import DEFAULT_TOKEN_URL, TokenRequest, TokenResponse

logger = logging.getLogger(__name__)

TOKEN_PATH = "/getToken"
TOKEN_TIMEOUT_SECONDS = 10.0


class TokenFetchError(RuntimeError):
    """The token backend could not produce a token for the channel."""


class TokenService:
    """One-shot client for the token backend. No retries and no caching."""

    def __init__(self, base_url: str = DEFAULT_TOKEN_URL, *, timeout: float = TOKEN_TIMEOUT_SECONDS) -> None:
        self._url = base_url.rstrip("/") + TOKEN_PATH
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def url(self) -> str:
        return self._url

    async def get_token(self, channel: str, *, uid: int = 0, expire: Optional[int] = None) -> str:
        request = TokenRequest(channel=channel, uid=uid)
        if expire is not None:
            request.expire = expire
        logger.info("Requesting token for channel %s from %s", channel, self._url)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self._url, json=request.to_dict()) as resp:
                    if resp.status != 200:
                        text = await resp.text()
                        raise TokenFetchError(f"Token backend returned {resp.status}: {text}")
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TokenFetchError(f"Token request to {self._url} failed: {exc}") from exc
        except ValueError as exc:
            raise TokenFetchError("Token backend returned invalid JSON") from exc
        try:
            return TokenResponse.from_dict(body).token
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenFetchError("Token backend response is missing a token") from exc
