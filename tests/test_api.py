"""Tests for sigchat API."""

import sqlite3

import pytest
from fastapi.testclient import TestClient

from sigchat import api, db, jobs
from sigchat.api import SESSION_COOKIE, app
from sigchat.crypto import generate_keypair
from sigchat.events import get_broadcast_hub
from sigchat.relay import get_relay


@pytest.fixture
def client():
    """Create test client."""
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def admin_headers():
    """Admin auth headers."""
    return {"X-Admin-Token": "test-admin-token"}


def sign_in(client, keypair=None, username=None):
    """Run the challenge round-trip. Returns (user, keypair)."""
    keypair = keypair or generate_keypair()
    challenge = client.post("/api/auth/nonce", json={"identityKey": keypair.identity_key})
    assert challenge.status_code == 200

    body = {"identityKey": keypair.identity_key, "signature": keypair.sign(challenge.json()["message"])}
    if username:
        body["username"] = username
    response = client.post("/api/auth/verify", json=body)
    assert response.status_code == 200
    return response.json()["user"], keypair


def session_headers(client):
    """Cookie header carrying the current session, for WebSocket handshakes."""
    return {"cookie": f"{SESSION_COOKIE}={client.cookies.get(SESSION_COOKIE)}"}


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_timing_header(self, client):
        response = client.get("/health")
        assert "X-Response-Time-Ms" in response.headers


class TestNonce:
    def test_issue_nonce(self, client):
        keypair = generate_keypair()
        response = client.post("/api/auth/nonce", json={"identityKey": keypair.identity_key})

        assert response.status_code == 200
        data = response.json()
        assert data["nonce"] in data["message"]
        assert keypair.identity_key in data["message"]

    def test_missing_identity_key(self, client):
        response = client.post("/api/auth/nonce", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_identity"

    def test_malformed_identity_key(self, client):
        response = client.post("/api/auth/nonce", json={"identityKey": "not-a-key"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_identity"


class TestVerify:
    def test_first_sign_in_creates_user(self, client):
        user, keypair = sign_in(client)

        assert user["id"] == 1
        assert user["identityKey"] == keypair.identity_key
        assert user["username"] == f"User_{keypair.identity_key[:6]}"
        assert client.cookies.get(SESSION_COOKIE)

    def test_username_on_first_sign_in(self, client):
        user, _ = sign_in(client, username="alice")
        assert user["username"] == "alice"

    def test_repeat_sign_in_same_user(self, client):
        first, keypair = sign_in(client)
        second, _ = sign_in(client, keypair=keypair)
        assert first["id"] == second["id"]

    def test_padded_key_signs_into_same_account(self, client):
        first, keypair = sign_in(client)
        padded = keypair.identity_key + "="

        challenge = client.post("/api/auth/nonce", json={"identityKey": padded})
        assert f"Identity: {keypair.identity_key}" in challenge.json()["message"]
        response = client.post(
            "/api/auth/verify",
            json={"identityKey": padded, "signature": keypair.sign(challenge.json()["message"])},
        )

        assert response.status_code == 200
        assert response.json()["user"]["id"] == first["id"]
        assert response.json()["user"]["identityKey"] == keypair.identity_key

    def test_missing_fields(self, client):
        response = client.post("/api/auth/verify", json={"identityKey": "abc"})
        assert response.status_code == 400
        assert response.json() == {
            "error": "invalid_request",
            "message": "Identity key and signature required",
        }

    def test_no_challenge(self, client):
        keypair = generate_keypair()
        response = client.post(
            "/api/auth/verify",
            json={"identityKey": keypair.identity_key, "signature": keypair.sign("anything")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "challenge_not_found"

    def test_wrong_key_signature(self, client):
        keypair = generate_keypair()
        other = generate_keypair()
        challenge = client.post("/api/auth/nonce", json={"identityKey": keypair.identity_key}).json()

        response = client.post(
            "/api/auth/verify",
            json={"identityKey": keypair.identity_key, "signature": other.sign(challenge["message"])},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"
        assert client.cookies.get(SESSION_COOKIE) is None

    def test_replay_rejected(self, client):
        keypair = generate_keypair()
        challenge = client.post("/api/auth/nonce", json={"identityKey": keypair.identity_key}).json()
        body = {"identityKey": keypair.identity_key, "signature": keypair.sign(challenge["message"])}

        assert client.post("/api/auth/verify", json=body).status_code == 200
        response = client.post("/api/auth/verify", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "challenge_not_found"


class TestSession:
    def test_me(self, client):
        user, _ = sign_in(client, username="alice")
        response = client.get("/api/auth/me")
        assert response.status_code == 200
        assert response.json()["user"] == user

    def test_me_requires_session(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json() == {"error": "not_authenticated", "message": "Not authenticated"}

    def test_logout(self, client):
        sign_in(client)
        assert client.post("/api/auth/logout").json() == {"success": True}
        assert client.get("/api/auth/me").status_code == 401


class TestRooms:
    def test_list_rooms(self, client):
        user, _ = sign_in(client, username="alice")
        db.create_room("Friends", True, user["id"])

        response = client.get("/api/rooms")

        assert response.status_code == 200
        rooms = response.json()["rooms"]
        assert [r["name"] for r in rooms] == ["Friends"]
        assert rooms[0]["members"] == [{"id": user["id"], "username": "alice"}]

    def test_list_rooms_requires_session(self, client):
        assert client.get("/api/rooms").status_code == 401

    def test_room_messages(self, client):
        user, _ = sign_in(client)
        room = db.create_room("Friends", True, user["id"])
        message = db.post_message(room["id"], user["id"], "hello")
        db.add_reaction(message["id"], user["id"], "👍")

        response = client.get(f"/api/rooms/{room['id']}/messages")

        assert response.status_code == 200
        data = response.json()
        assert [m["content"] for m in data["messages"]] == ["hello"]
        assert [r["emoji"] for r in data["reactions"]] == ["👍"]

    def test_room_messages_limit(self, client):
        user, _ = sign_in(client)
        room = db.create_room("Friends", True, user["id"])
        for i in range(5):
            db.post_message(room["id"], user["id"], f"m{i}")

        response = client.get(f"/api/rooms/{room['id']}/messages", params={"limit": 2})

        assert [m["content"] for m in response.json()["messages"]] == ["m3", "m4"]

    def test_invalid_limit(self, client):
        user, _ = sign_in(client)
        room = db.create_room("Friends", True, user["id"])
        response = client.get(f"/api/rooms/{room['id']}/messages", params={"limit": 0})
        assert response.status_code == 422

    def test_public_room_readable_without_membership(self, client):
        sign_in(client)
        room = db.ensure_public_room()
        response = client.get(f"/api/rooms/{room['id']}/messages")
        assert response.status_code == 200

    def test_private_room_requires_membership(self, client):
        owner, _ = db.get_or_create_user(generate_keypair().identity_key, "owner")
        room = db.create_room("Secret", True, owner["id"])
        sign_in(client)

        response = client.get(f"/api/rooms/{room['id']}/messages")

        assert response.status_code == 403
        assert response.json()["error"] == "not_a_member"

    def test_missing_room(self, client):
        sign_in(client)
        response = client.get("/api/rooms/999/messages")
        assert response.status_code == 404
        assert response.json()["error"] == "room_not_found"

    def test_store_failure_is_503(self, client, monkeypatch):
        sign_in(client)

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "list_rooms_for_user", broken)
        response = client.get("/api/rooms")

        assert response.status_code == 503
        assert response.json() == {
            "error": "store_unavailable",
            "message": "Service temporarily unavailable",
        }


class TestMetrics:
    def test_requires_token(self, client):
        assert client.get("/metrics").status_code == 403
        assert client.get("/metrics", headers={"X-Admin-Token": "wrong"}).status_code == 403

    def test_metrics(self, client, admin_headers):
        sign_in(client)
        response = client.get("/metrics", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["version"]
        assert data["bound_connections"] == 0
        assert data["challenges"]["size"] == 0
        assert "auth/verify" in data["requests"]

    def test_disabled_without_admin_token(self, client, admin_headers, monkeypatch):
        monkeypatch.setattr(api.options, "admin_token", None)
        assert client.get("/metrics", headers=admin_headers).status_code == 404


class TestLifespan:
    def test_hub_uses_configured_send_timeout(self, monkeypatch):
        monkeypatch.setattr(api.options, "send_timeout_seconds", 1.5)
        with TestClient(app):
            hub = get_broadcast_hub()
            assert hub.send_timeout == 1.5
            assert get_relay().hub is hub

    def test_sweeper_not_started_when_disabled(self):
        assert not api.options.sweep_enabled
        with TestClient(app):
            assert jobs._sweeper_task is None

    def test_sweeper_started_when_enabled(self, monkeypatch):
        monkeypatch.setattr(api.options, "sweep_interval_seconds", 3600)
        with TestClient(app):
            assert jobs._sweeper_task is not None
        assert jobs._sweeper_task is None


class TestWebSocket:
    def test_chat_flow(self, client):
        alice, _ = sign_in(client, username="alice")
        alice_headers = session_headers(client)
        bob, _ = sign_in(client, username="bob")
        bob_headers = session_headers(client)

        with client.websocket_connect("/ws", headers=alice_headers) as alice_ws:
            alice_ws.send_json({"event": "auth"})
            auth = alice_ws.receive_json()
            assert auth["event"] == "auth_success"
            assert auth["data"]["user"]["id"] == alice["id"]
            room_id = auth["data"]["rooms"][0]["id"]

            alice_ws.send_json({"event": "send_message", "data": {"roomId": room_id, "content": "hello"}})
            sent = alice_ws.receive_json()
            assert sent["event"] == "new_message"
            assert sent["data"]["content"] == "hello"

            with client.websocket_connect("/ws", headers=bob_headers) as bob_ws:
                bob_ws.send_json({"event": "auth"})
                assert bob_ws.receive_json()["event"] == "auth_success"
                online = alice_ws.receive_json()
                assert online == {
                    "event": "user_online",
                    "data": {"id": bob["id"], "username": "bob", "identityKey": bob["identityKey"]},
                }

                bob_ws.send_json({"event": "join_room", "data": {"roomId": room_id}})
                joined = bob_ws.receive_json()
                assert joined["event"] == "room_joined"
                assert [m["content"] for m in joined["data"]["messages"]] == ["hello"]

            offline = alice_ws.receive_json()
            # user_joined_room arrives first, then presence
            if offline["event"] == "user_joined_room":
                offline = alice_ws.receive_json()
            assert offline == {"event": "user_offline", "data": {"id": bob["id"], "username": "bob"}}

    def test_requires_session(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "auth"})
            response = ws.receive_json()
            assert response["event"] == "error"
            assert "Not authenticated" in response["data"]["message"]

    def test_events_before_auth_rejected(self, client):
        sign_in(client)
        with client.websocket_connect("/ws", headers=session_headers(client)) as ws:
            ws.send_json({"event": "get_user_stats"})
            assert ws.receive_json() == {"event": "error", "data": {"message": "Not authenticated"}}

    def test_malformed_frame(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed frame"}}

            ws.send_json({"data": {}})
            assert ws.receive_json() == {"event": "error", "data": {"message": "Malformed frame"}}

    def test_unknown_event(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "launch"})
            assert ws.receive_json() == {"event": "error", "data": {"message": "Unknown event: launch"}}
