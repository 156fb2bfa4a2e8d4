"""Tests for the REST API."""

import pytest

from huddle import db
from huddle.config import ServerSettings
from huddle.metrics import metrics

STRONG = "Passw0rd!"


def seed(count, room="general", sender="alice", **kwargs):
    return [db.insert_message(room, sender, body=f"message {i}", **kwargs)[0] for i in range(count)]


class TestAccounts:
    def test_register_and_login(self, chat_app):
        response = chat_app.post(
            "/api/register",
            json={"email": "Alice@Example.com", "password": STRONG, "name": "alice"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["user"]["email"] == "alice@example.com"
        assert body["user"]["name"] == "alice"
        assert len(body["token"]) == 64

        response = chat_app.post("/api/login", json={"email": "alice@example.com", "password": STRONG})
        assert response.status_code == 200
        assert response.json()["token"] != body["token"]

    def test_weak_password(self, chat_app):
        response = chat_app.post("/api/register", json={"email": "a@example.com", "password": "password"})
        assert response.status_code == 400
        assert response.json()["code"] == "invalid"

    def test_duplicate_email(self, chat_app):
        payload = {"email": "a@example.com", "password": STRONG}
        assert chat_app.post("/api/register", json=payload).status_code == 200

        response = chat_app.post("/api/register", json=payload)

        assert response.status_code == 400
        assert "already registered" in response.json()["error"]

    def test_bad_login(self, chat_app):
        chat_app.post("/api/register", json={"email": "a@example.com", "password": STRONG})

        response = chat_app.post("/api/login", json={"email": "a@example.com", "password": "Wrong0ne!"})

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid credentials", "code": "unauthenticated"}

    def test_missing_field(self, chat_app):
        response = chat_app.post("/api/login", json={"email": "a@example.com"})
        assert response.status_code == 400
        assert "password" in response.json()["error"]


class TestHistory:
    def test_pagination_scenario(self, chat_app):
        seed(25)

        first = chat_app.get("/api/messages", params={"room": "general"}).json()
        assert first["count"] == 20
        assert first["hasMore"] is True
        assert first["messages"][0]["message"] == "message 5"
        assert first["messages"][-1]["message"] == "message 24"

        older = chat_app.get(
            "/api/messages",
            params={"room": "general", "before": first["messages"][0]["timestamp"]},
        ).json()
        assert [m["message"] for m in older["messages"]] == [f"message {i}" for i in range(5)]
        assert older["hasMore"] is False

    def test_messages_use_wire_names(self, chat_app):
        seed(1, client_id="c1")

        (message,) = chat_app.get("/api/messages", params={"room": "general"}).json()["messages"]

        assert message["readBy"] == ["alice"]
        assert message["clientId"] == "c1"
        assert message["reactions"] == []

    def test_limit_is_capped(self, chat_app):
        seed(3)
        response = chat_app.get("/api/messages", params={"room": "general", "limit": 2})
        assert response.json()["count"] == 2

    def test_invalid_before(self, chat_app):
        response = chat_app.get("/api/messages", params={"room": "general", "before": "yesterday"})
        assert response.status_code == 400

    def test_room_required(self, chat_app):
        assert chat_app.get("/api/messages").status_code == 400

    def test_search(self, chat_app):
        db.insert_message("general", "alice", body="Lunch at noon?")
        db.insert_message("general", "bob", body="sure")
        db.insert_message("random", "bob", body="lunch elsewhere")

        body = chat_app.get("/api/search", params={"room": "general", "q": "LUNCH"}).json()

        assert body["count"] == 1
        assert body["results"][0]["message"] == "Lunch at noon?"


class TestMessageUpdates:
    def test_mark_read(self, chat_app):
        seed(2)

        response = chat_app.post("/api/messages/read", json={"room": "general", "reader": "bob"})
        assert response.json() == {"success": True, "updated": 2}

        again = chat_app.post("/api/messages/read", json={"room": "general", "reader": "bob"})
        assert again.json()["updated"] == 0

    def test_mark_read_needs_reader_without_auth(self, chat_app):
        response = chat_app.post("/api/messages/read", json={"room": "general"})
        assert response.status_code == 400

    def test_edit_own_message(self, chat_app):
        (message,) = seed(1)

        response = chat_app.put(
            f"/api/messages/{message['id']}", json={"message": "fixed", "username": "alice"}
        )

        assert response.status_code == 200
        edited = response.json()["message"]
        assert edited["message"] == "fixed"
        assert edited["edited"] is True
        assert edited["editedAt"] is not None

    def test_edit_someone_elses_message(self, chat_app):
        (message,) = seed(1)

        response = chat_app.put(f"/api/messages/{message['id']}", json={"message": "x", "username": "bob"})

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"
        assert db.get_message(message["id"])["message"] == "message 0"

    def test_edit_missing_message(self, chat_app):
        response = chat_app.put("/api/messages/nope", json={"message": "x", "username": "alice"})
        assert response.status_code == 404

    def test_delete(self, chat_app):
        (message,) = seed(1)

        forbidden = chat_app.delete(f"/api/messages/{message['id']}", params={"username": "bob"})
        assert forbidden.status_code == 403

        response = chat_app.delete(f"/api/messages/{message['id']}", params={"username": "alice"})
        assert response.json() == {"success": True}
        assert db.get_message(message["id"]) is None

        gone = chat_app.delete(f"/api/messages/{message['id']}", params={"username": "alice"})
        assert gone.status_code == 404


class TestUploads:
    def test_upload_and_download(self, chat_app):
        response = chat_app.post(
            "/api/upload",
            content=b"hello world",
            headers={"X-Filename": "../notes.txt", "Content-Type": "text/plain"},
        )

        assert response.status_code == 200
        info = response.json()
        assert info["name"] == "notes.txt"
        assert info["type"] == "text/plain"
        assert info["size"] == 11
        assert info["url"].startswith("/uploads/")
        assert info["url"].endswith(".txt")

        download = chat_app.get(info["url"])
        assert download.status_code == 200
        assert download.content == b"hello world"

    def test_empty_upload(self, chat_app):
        response = chat_app.post("/api/upload", content=b"", headers={"X-Filename": "a.txt"})
        assert response.status_code == 400

    def test_unknown_upload(self, chat_app):
        assert chat_app.get("/uploads/../../etc/passwd").status_code == 404
        assert chat_app.get("/uploads/0190c1a2-0000-7000-8000-000000000000.txt").status_code == 404


class TestPresenceAndHealth:
    def test_room_users(self, chat_app):
        with chat_app.websocket_connect("/chat") as ws:
            ws.send_json({"event": "user_join", "data": {"name": "alice", "room": "general"}})
            ws.receive_json()  # user_event
            ws.receive_json()  # active_users

            body = chat_app.get("/api/rooms/general/users").json()

        assert body["room"] == "general"
        assert body["count"] == 1
        assert body["users"][0]["name"] == "alice"

    def test_health(self, chat_app):
        response = chat_app.get("/health")
        assert response.json() == {"status": "ok"}
        assert "X-Response-Time-Ms" in response.headers

    def test_metrics(self, chat_app):
        metrics.reset()
        chat_app.get("/health")

        body = chat_app.get("/metrics").json()

        assert body["requests"]["health"]["count"] == 1
        assert body["presence"] == {"connections": 0, "rooms": {}}


class TestAuthRequired:
    @pytest.fixture
    def chat_settings(self):
        return ServerSettings(no_auth=False, send_timeout=1.0)

    def _token(self, chat_app, email="alice@example.com", name="alice"):
        response = chat_app.post("/api/register", json={"email": email, "password": STRONG, "name": name})
        return response.json()["token"]

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/messages?room=general"),
            ("get", "/api/search?room=general&q=x"),
            ("get", "/api/rooms/general/users"),
            ("get", "/metrics"),
        ],
    )
    def test_missing_token(self, chat_app, method, path):
        response = getattr(chat_app, method)(path)
        assert response.status_code == 401
        assert response.json()["code"] == "unauthenticated"

    def test_invalid_token(self, chat_app):
        response = chat_app.get(
            "/api/messages", params={"room": "general"}, headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    def test_valid_token(self, chat_app):
        token = self._token(chat_app)
        response = chat_app.get(
            "/api/messages", params={"room": "general"}, headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200

    def test_actor_is_the_token_owner(self, chat_app):
        token = self._token(chat_app)
        (message,) = seed(1, sender="bob")

        # Claiming to be bob does not help when the token says alice
        response = chat_app.put(
            f"/api/messages/{message['id']}",
            json={"message": "hijacked", "username": "bob"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 403

        read = chat_app.post(
            "/api/messages/read",
            json={"room": "general", "reader": "bob"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert read.json()["updated"] == 1
        assert db.get_read_by(message["id"]) == ["bob", "alice"]
