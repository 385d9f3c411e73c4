"""Wire formats shared between the call client and the backend.

Two formats live here: the JSON body exchanged with the token backend, and the
length-prefixed JSON envelopes carried over the signaling TCP connection.
Keeping both in one module keeps the client and server halves in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, TypedDict

import json
import struct


class ControlAction(str, Enum):
    """Signaling events exchanged over TCP."""

    HELLO = "hello"
    WELCOME = "welcome"
    HEARTBEAT = "heartbeat"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    AUDIO_STATUS = "audio_status"
    VIDEO_STATUS = "video_status"
    ERROR = "error"
    KICKED = "kicked"


class LeaveReason(str, Enum):
    """Why a participant went offline. Consumers treat all of them alike."""

    QUIT = "quit"
    DROPPED = "dropped"
    NETWORK_FAILURE = "network_failure"
    BECAME_AUDIENCE = "became_audience"
    SWITCHED_DEVICE = "switched_device"
    KICKED = "kicked"

    @classmethod
    def parse(cls, value: Any) -> "LeaveReason":
        try:
            return cls(value)
        except ValueError:
            return cls.QUIT


DEFAULT_TCP_PORT = 55000
DEFAULT_TOKEN_PORT = 8080
DEFAULT_TOKEN_URL = f"http://localhost:{DEFAULT_TOKEN_PORT}"
DEFAULT_TOKEN_TYPE = "rtc"
DEFAULT_TOKEN_ROLE = "publisher"
DEFAULT_TOKEN_EXPIRE_SECONDS = 3600
DEFAULT_SURFACE_WIDTH = 390.0
DEFAULT_SURFACE_HEIGHT = 844.0


@dataclass(slots=True)
class TokenRequest:
    """Body of ``POST /getToken``. ``uid`` travels as a decimal string."""

    channel: str
    token_type: str = DEFAULT_TOKEN_TYPE
    role: str = DEFAULT_TOKEN_ROLE
    uid: int = 0
    expire: int = DEFAULT_TOKEN_EXPIRE_SECONDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenType": self.token_type,
            "channel": self.channel,
            "role": self.role,
            "uid": str(self.uid),
            "expire": self.expire,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRequest":
        channel = data.get("channel")
        if not isinstance(channel, str) or not channel.strip():
            raise ValueError("channel is required")
        return cls(
            channel=channel,
            token_type=str(data.get("tokenType", DEFAULT_TOKEN_TYPE)),
            role=str(data.get("role", DEFAULT_TOKEN_ROLE)),
            uid=int(data.get("uid", 0)),
            expire=int(data.get("expire", DEFAULT_TOKEN_EXPIRE_SECONDS)),
        )


@dataclass(slots=True)
class TokenResponse:
    token: str

    def to_dict(self) -> Dict[str, Any]:
        return {"token": self.token}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenResponse":
        token = data["token"]
        if not isinstance(token, str):
            raise ValueError("token must be a string")
        return cls(token=token)


@dataclass(slots=True)
class JoinRequest:
    """Identity packet sent with HELLO. ``uid`` 0 asks the server to assign one."""

    channel: str
    token: str
    uid: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "token": self.token,
            "uid": self.uid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinRequest":
        return cls(
            channel=data["channel"],
            token=data.get("token", ""),
            uid=int(data.get("uid", 0)),
        )


class ControlEnvelope(TypedDict):
    """Generic representation of control messages sent over TCP."""

    action: str
    data: Dict[str, Any]


def encode_control_message(action: ControlAction, data: Dict[str, Any]) -> bytes:
    """Serialize a control message using length-prefixed JSON."""

    envelope: ControlEnvelope = {
        "action": action.value,
        "data": data,
    }
    payload = json.dumps(envelope, separators=(',', ':')).encode("utf-8")
    return struct.pack("!I", len(payload)) + payload


def decode_control_stream(buffer: bytes) -> tuple[list[ControlEnvelope], bytes]:
    """Decode as many complete control messages from the buffer as possible.

    Returns a tuple of (messages, remaining_buffer).
    """

    offset = 0
    messages: list[ControlEnvelope] = []
    buf_len = len(buffer)

    while offset + 4 <= buf_len:
        (length,) = struct.unpack_from("!I", buffer, offset)
        if offset + 4 + length > buf_len:
            break
        start = offset + 4
        end = start + length
        envelope = json.loads(buffer[start:end].decode("utf-8"))
        messages.append(envelope)  # type: ignore[arg-type]
        offset = end

    return messages, buffer[offset:]


def parse_uid_list(raw: Any) -> List[int]:
    """Coerce a ``participants`` payload into a list of uids, dropping junk."""

    if not isinstance(raw, list):
        return []
    uids: List[int] = []
    for item in raw:
        if isinstance(item, bool):
            continue
        if isinstance(item, int) and item >= 0:
            uids.append(item)
    return uids
