"""Tests for the FastAPI gateway: upgrade endpoint, verify proxy, status."""

import tempfile

import httpx
import pytest
from fastapi.testclient import TestClient

from roomrelay.config import Settings
from roomrelay.verification import TokenVerifier
from web.backend.app.main import app
from web.backend.app.middleware.room import configure

SECRET = "hunter2"


def _upstream(request: httpx.Request) -> httpx.Response:
    if b"response=good" in request.content:
        return httpx.Response(200, json={"success": True})
    return httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})


@pytest.fixture
def client():
    with tempfile.TemporaryDirectory() as tmpdir:
        configure(
            Settings(admin_secret=SECRET, verification_secret="shh", data_dir=tmpdir),
            verifier=TokenVerifier("shh", url="https://verify.test", transport=httpx.MockTransport(_upstream)),
        )
        with TestClient(app) as test_client:
            yield test_client
        configure()


def test_plain_http_gets_upgrade_required(client):
    resp = client.get("/chat")
    assert resp.status_code == 426
    assert resp.text == "Expected WebSocket"


def test_websocket_join_and_send(client):
    with client.websocket_connect("/chat") as ws:
        ws.send_json({"type": "requestSync", "userId": "user_a", "nickname": "Alice"})
        sync = ws.receive_json()
        assert sync["type"] == "sync"
        assert sync["users"] == ["Alice"]
        assert ws.receive_json() == {"type": "users", "users": ["Alice"]}

        ws.send_json({"type": "add", "id": "m1", "content": "hello"})
        msg = ws.receive_json()
        assert msg["type"] == "add"
        assert msg["user"] == "Alice"

        ws.send_text("garbage")
        assert ws.receive_json() == {"type": "error", "message": "invalidData"}

    status = client.get("/api/room").json()
    assert status["room"] == "main"
    assert status["messages"] == 1


def test_two_sockets_see_each_other(client):
    with client.websocket_connect("/chat") as alice, client.websocket_connect("/chat") as bob:
        alice.send_json({"type": "requestSync", "userId": "user_a", "nickname": "Alice"})
        alice.receive_json()
        alice.receive_json()
        bob.send_json({"type": "requestSync", "userId": "user_b", "nickname": "Bob"})
        assert bob.receive_json()["users"] == ["Alice", "Bob"]
        assert alice.receive_json() == {"type": "users", "users": ["Alice", "Bob"]}

        bob.send_json({"type": "add", "id": "b1", "content": "hey"})
        assert alice.receive_json()["id"] == "b1"


def test_verify_proxy(client):
    ok = client.post("/api/verify", json={"token": "good"}, headers={"cf-connecting-ip": "203.0.113.7"})
    assert ok.status_code == 200
    assert ok.json() == {"success": True, "error": []}

    bad = client.post("/api/verify", json={"token": "bad"})
    assert bad.json() == {"success": False, "error": ["invalid-input-response"]}

    missing = client.post("/api/verify", json={})
    assert missing.json()["error"] == ["missing-input-response"]


def test_health_and_root(client):
    assert client.get("/health").json() == {"status": "healthy", "room_running": True}
    assert client.get("/").json()["name"] == "roomrelay"
