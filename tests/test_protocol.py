import json

import pytest

from callshared.protocol import (
    ControlAction,
    JoinRequest,
    LeaveReason,
    TokenRequest,
    TokenResponse,
    decode_control_stream,
    encode_control_message,
    parse_uid_list,
)


def test_token_request_defaults_match_backend_contract() -> None:
    body = TokenRequest(channel="lobby").to_dict()
    assert body == {
        "tokenType": "rtc",
        "channel": "lobby",
        "role": "publisher",
        "uid": "0",
        "expire": 3600,
    }
    assert isinstance(body["uid"], str)
    assert json.loads(json.dumps(body)) == body


def test_token_request_from_dict_applies_defaults() -> None:
    request = TokenRequest.from_dict({"channel": "lobby", "uid": "12"})
    assert request.uid == 12
    assert request.role == "publisher"
    assert request.expire == 3600

    with pytest.raises(ValueError):
        TokenRequest.from_dict({"channel": "   "})
    with pytest.raises(ValueError):
        TokenRequest.from_dict({})


def test_token_response_requires_string() -> None:
    assert TokenResponse.from_dict({"token": "abc"}).token == "abc"
    with pytest.raises(ValueError):
        TokenResponse.from_dict({"token": 5})
    with pytest.raises(KeyError):
        TokenResponse.from_dict({})


def test_encode_decode_control_stream_handles_partial_frames() -> None:
    first = encode_control_message(ControlAction.HELLO, JoinRequest(channel="lobby", token="t").to_dict())
    second = encode_control_message(ControlAction.USER_LEFT, {"uid": 4, "reason": "dropped"})
    stream = first + second

    messages, remaining = decode_control_stream(stream[:-3])
    assert [m["action"] for m in messages] == ["hello"]
    assert remaining == second[:-3]

    messages, remaining = decode_control_stream(remaining + stream[-3:])
    assert remaining == b""
    assert messages[0]["data"] == {"uid": 4, "reason": "dropped"}


def test_leave_reason_parse_falls_back_to_quit() -> None:
    assert LeaveReason.parse("dropped") is LeaveReason.DROPPED
    assert LeaveReason.parse("switched_device") is LeaveReason.SWITCHED_DEVICE
    assert LeaveReason.parse("kicked") is LeaveReason.KICKED
    assert LeaveReason.parse("whatever") is LeaveReason.QUIT
    assert LeaveReason.parse(None) is LeaveReason.QUIT


def test_parse_uid_list_drops_junk() -> None:
    assert parse_uid_list([3, "4", True, -1, 8]) == [3, 8]
    assert parse_uid_list(None) == []
