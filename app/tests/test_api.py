"""
Integration tests for the messaging API endpoints.
Tests registration, login, logout, chat history, sending and read receipts.
"""
from fastapi.testclient import TestClient
from conftest import auth_headers, register
from services.conversation_resolver import canonical_key


class TestRegistration:
    """Tests for POST /auth/register."""

    def test_register_returns_token_and_user(self, test_client: TestClient):
        response = test_client.post(
            "/auth/register",
            json={"username": "alice", "password": "password123", "displayName": "Alice"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token"]
        assert data["user"]["username"] == "alice"
        assert data["user"]["displayName"] == "Alice"
        assert data["user"]["id"]
        assert response.cookies.get("auth-token") == data["token"]

    def test_display_name_defaults_to_username(self, test_client: TestClient):
        data = register(test_client, "  carol  ")

        assert data["user"]["username"] == "carol"
        assert data["user"]["displayName"] == "carol"

    def test_third_registration_rejected(self, test_client: TestClient, alice: dict, bob: dict):
        response = test_client.post("/auth/register", json={"username": "carol", "password": "password123"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Registration closed: only two users allowed"

    def test_cap_checked_before_missing_fields(self, test_client: TestClient, alice: dict, bob: dict):
        response = test_client.post("/auth/register", json={"username": "carol", "password": ""})

        assert response.status_code == 400
        assert response.json()["detail"] == "Registration closed: only two users allowed"

    def test_duplicate_username_conflicts(self, test_client: TestClient, alice: dict):
        response = test_client.post("/auth/register", json={"username": "alice", "password": "other"})

        assert response.status_code == 409
        assert response.json()["detail"] == "Username already exists"

    def test_missing_username(self, test_client: TestClient):
        response = test_client.post("/auth/register", json={"password": "password123"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Username is required"

    def test_missing_password(self, test_client: TestClient):
        response = test_client.post("/auth/register", json={"username": "alice"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Password is required"


class TestLogin:
    """Tests for POST /auth/login and POST /auth/logout."""

    def test_login_with_valid_credentials(self, test_client: TestClient, alice: dict):
        response = test_client.post("/auth/login", json={"username": "alice", "password": "password123"})

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == alice["user"]["id"]
        assert data["token"] != alice["token"]
        assert response.cookies.get("auth-token") == data["token"]

    def test_login_with_wrong_password(self, test_client: TestClient, alice: dict):
        response = test_client.post("/auth/login", json={"username": "alice", "password": "wrong"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid username or password"

    def test_login_with_unknown_user(self, test_client: TestClient):
        response = test_client.post("/auth/login", json={"username": "nobody", "password": "password123"})

        assert response.status_code == 401

    def test_login_missing_fields(self, test_client: TestClient):
        response = test_client.post("/auth/login", json={"username": "alice"})

        assert response.status_code == 400

    def test_logout_revokes_token(self, test_client: TestClient, alice: dict):
        headers = auth_headers(alice["token"])
        assert test_client.get("/auth/users", headers=headers).status_code == 200

        response = test_client.post("/auth/logout", headers=headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out"

        assert test_client.get("/auth/users", headers=headers).status_code == 401

    def test_logout_without_credentials(self, test_client: TestClient):
        response = test_client.post("/auth/logout")

        assert response.status_code == 200


class TestUsers:
    """Tests for GET /auth/users."""

    def test_list_users(self, test_client: TestClient, alice: dict, bob: dict):
        response = test_client.get("/auth/users", headers=auth_headers(alice["token"]))

        assert response.status_code == 200
        users = response.json()
        assert {u["username"] for u in users} == {"alice", "bob"}
        assert {u["displayName"] for u in users} == {"Alice", "Bob"}
        assert all("passwordHash" not in u for u in users)

    def test_list_users_requires_auth(self, test_client: TestClient, alice: dict):
        response = test_client.get("/auth/users")

        assert response.status_code == 401


class TestConversations:
    """Tests for POST /chat/conversation."""

    def test_same_conversation_from_both_sides(self, test_client: TestClient, alice: dict, bob: dict):
        alice_id, bob_id = alice["user"]["id"], bob["user"]["id"]

        first = test_client.post(f"/chat/conversation?other={bob_id}", headers=auth_headers(alice["token"]))
        second = test_client.post(f"/chat/conversation?other={alice_id}", headers=auth_headers(bob["token"]))

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert first.json()["key"] == canonical_key(alice_id, bob_id)

    def test_conversation_with_self_rejected(self, test_client: TestClient, alice: dict):
        response = test_client.post(
            f"/chat/conversation?other={alice['user']['id']}",
            headers=auth_headers(alice["token"])
        )

        assert response.status_code == 400

    def test_conversation_with_unknown_user(self, test_client: TestClient, alice: dict):
        response = test_client.post("/chat/conversation?other=missing", headers=auth_headers(alice["token"]))

        assert response.status_code == 404

    def test_conversation_requires_auth(self, test_client: TestClient, alice: dict, bob: dict):
        response = test_client.post(f"/chat/conversation?other={bob['user']['id']}")

        assert response.status_code == 401


class TestMessages:
    """Tests for sending, reading and marking messages read."""

    def send(self, client: TestClient, sender: dict, receiver: dict, content: str = "hi") -> dict:
        response = client.post(
            "/chat/messages",
            json={"receiverId": receiver["user"]["id"], "type": "text", "content": content},
            headers=auth_headers(sender["token"])
        )
        assert response.status_code == 200, response.text
        return response.json()

    def test_send_and_mark_read_flow(self, test_client: TestClient, alice: dict, bob: dict):
        message = self.send(test_client, alice, bob, "hi")

        assert message["conversationId"]
        assert message["delivered"] is False
        assert message["timestamp"]
        assert message["senderId"] == alice["user"]["id"]
        assert message["receiverId"] == bob["user"]["id"]

        response = test_client.post(
            "/chat/messages/mark-read",
            json={"conversationId": message["conversationId"]},
            headers=auth_headers(bob["token"])
        )
        assert response.status_code == 200
        marked = response.json()
        assert len(marked) == 1
        assert marked[0]["id"] == message["id"]
        assert marked[0]["read"] is True
        assert marked[0]["readAt"]
        assert marked[0]["delivered"] is True

        again = test_client.post(
            "/chat/messages/mark-read",
            json={"conversationId": message["conversationId"]},
            headers=auth_headers(bob["token"])
        )
        assert again.status_code == 200
        assert again.json() == []

    def test_sender_mark_read_does_not_touch_own_messages(self, test_client: TestClient, alice: dict, bob: dict):
        message = self.send(test_client, alice, bob)

        response = test_client.post(
            "/chat/messages/mark-read",
            json={"conversationId": message["conversationId"]},
            headers=auth_headers(alice["token"])
        )

        assert response.status_code == 200
        assert response.json() == []

    def test_history_includes_sender_fields(self, test_client: TestClient, alice: dict, bob: dict):
        first = self.send(test_client, alice, bob, "one")
        self.send(test_client, bob, alice, "two")

        response = test_client.get(
            f"/chat/messages?conversationId={first['conversationId']}",
            headers=auth_headers(bob["token"])
        )

        assert response.status_code == 200
        history = response.json()
        assert [m["content"] for m in history] == ["one", "two"]
        assert history[0]["senderUsername"] == "alice"
        assert history[0]["senderDisplayName"] == "Alice"
        assert history[1]["senderUsername"] == "bob"

    def test_history_without_conversation_lists_all_of_callers_messages(
        self, test_client: TestClient, alice: dict, bob: dict
    ):
        self.send(test_client, alice, bob, "one")
        self.send(test_client, bob, alice, "two")

        response = test_client.get("/chat/messages", headers=auth_headers(alice["token"]))

        assert response.status_code == 200
        assert len(response.json()) == 2

    def test_history_hidden_from_non_participant(
        self, test_client: TestClient, alice: dict, bob: dict, outsider: dict
    ):
        message = self.send(test_client, alice, bob)

        hidden = test_client.get(
            f"/chat/messages?conversationId={message['conversationId']}",
            headers=auth_headers(outsider["token"])
        )
        missing = test_client.get(
            "/chat/messages?conversationId=does-not-exist",
            headers=auth_headers(outsider["token"])
        )

        assert hidden.status_code == 200
        assert hidden.json() == []
        assert missing.json() == hidden.json()

    def test_mark_read_by_non_participant_looks_absent(
        self, test_client: TestClient, alice: dict, bob: dict, outsider: dict
    ):
        message = self.send(test_client, alice, bob)

        hidden = test_client.post(
            "/chat/messages/mark-read",
            json={"conversationId": message["conversationId"]},
            headers=auth_headers(outsider["token"])
        )
        missing = test_client.post(
            "/chat/messages/mark-read",
            json={"conversationId": "does-not-exist"},
            headers=auth_headers(outsider["token"])
        )

        assert hidden.status_code == 404
        assert hidden.json() == missing.json()
        assert hidden.json()["detail"] == "Conversation not found"

    def test_send_into_existing_conversation(self, test_client: TestClient, alice: dict, bob: dict):
        first = self.send(test_client, alice, bob)

        response = test_client.post(
            "/chat/messages",
            json={"conversationId": first["conversationId"], "content": "again"},
            headers=auth_headers(bob["token"])
        )

        assert response.status_code == 200
        assert response.json()["receiverId"] == alice["user"]["id"]
        assert response.json()["conversationId"] == first["conversationId"]

    def test_send_rejects_invalid_payloads(self, test_client: TestClient, alice: dict, bob: dict):
        headers = auth_headers(alice["token"])
        bob_id = bob["user"]["id"]

        no_target = test_client.post("/chat/messages", json={"content": "hi"}, headers=headers)
        empty = test_client.post("/chat/messages", json={"receiverId": bob_id, "content": "  "}, headers=headers)
        bad_type = test_client.post(
            "/chat/messages", json={"receiverId": bob_id, "type": "video", "content": "x"}, headers=headers
        )

        assert no_target.status_code == 400
        assert empty.status_code == 400
        assert bad_type.status_code == 400
        assert test_client.get("/chat/messages", headers=headers).json() == []

    def test_send_to_unknown_receiver(self, test_client: TestClient, alice: dict):
        response = test_client.post(
            "/chat/messages",
            json={"receiverId": "missing", "content": "hi"},
            headers=auth_headers(alice["token"])
        )

        assert response.status_code == 404

    def test_send_requires_auth(self, test_client: TestClient, alice: dict, bob: dict):
        response = test_client.post("/chat/messages", json={"receiverId": bob["user"]["id"], "content": "hi"})

        assert response.status_code == 401


class TestHealth:
    """Tests for liveness and readiness probes."""

    def test_health(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_with_dependencies_up(self, test_client: TestClient, monkeypatch):
        import api.health
        from conftest import FakeContentStore
        monkeypatch.setattr(api.health, "get_content_store", lambda: FakeContentStore())

        response = test_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["database"]["healthy"] is True

    def test_ready_with_content_store_down(self, test_client: TestClient, monkeypatch):
        import api.health

        def unavailable():
            raise ConnectionError("refused")

        monkeypatch.setattr(api.health, "get_content_store", unavailable)

        response = test_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["detail"]["checks"]["content_store"]["healthy"] is False
