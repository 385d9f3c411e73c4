from fastapi.testclient import TestClient

from callserver.token_server import TokenStore, create_token_app
from callshared.protocol import TokenRequest


def test_get_token_issues_opaque_token() -> None:
    store = TokenStore()
    client = TestClient(create_token_app(store))

    response = client.post("/getToken", json=TokenRequest(channel="lobby").to_dict())

    assert response.status_code == 200
    token = response.json()["token"]
    assert isinstance(token, str) and token
    issued = store.lookup(token)
    assert issued is not None
    assert issued.channel == "lobby"
    assert issued.role == "publisher"


def test_get_token_applies_defaults_for_minimal_body() -> None:
    store = TokenStore()
    client = TestClient(create_token_app(store))

    response = client.post("/getToken", json={"channel": "lobby"})

    assert response.status_code == 200
    assert len(store) == 1


def test_get_token_requires_channel() -> None:
    client = TestClient(create_token_app())
    response = client.post("/getToken", json={"tokenType": "rtc"})
    assert response.status_code == 400


def test_get_token_rejects_unknown_token_type() -> None:
    client = TestClient(create_token_app())
    response = client.post("/getToken", json={"channel": "lobby", "tokenType": "rtm"})
    assert response.status_code == 400


def test_store_prunes_expired_tokens() -> None:
    store = TokenStore()
    issued = store.issue(TokenRequest(channel="lobby", expire=10), now=1_000.0)
    assert store.lookup(issued.token, now=1_005.0) is not None
    assert store.lookup(issued.token, now=1_011.0) is None
    assert len(store) == 0


def test_health() -> None:
    client = TestClient(create_token_app())
    body = client.get("/health").json()
    assert body["status"] == "ok"
