"""
End-to-end tests for the /ws endpoint using the FastAPI test client.
"""
from fastapi.testclient import TestClient
from api.websocket_manager import DELETED_TOPIC, EDITED_TOPIC, user_topic
from conftest import auth_headers


def connect(client: TestClient, token: str = None):
    url = f"/ws?token={token}" if token else "/ws"
    return client.websocket_connect(url)


def expect_error(ws, code: str) -> dict:
    frame = ws.receive_json()
    assert frame["type"] == "error", frame
    assert frame["code"] == code
    return frame


class TestHandshake:

    def test_authenticated_handshake(self, test_client: TestClient, alice: dict):
        with connect(test_client, alice["token"]) as ws:
            frame = ws.receive_json()

        assert frame["type"] == "connected"
        assert frame["userId"] == alice["user"]["id"]
        assert frame["username"] == "alice"
        assert set(frame["topics"]) == {user_topic(alice["user"]["id"]), EDITED_TOPIC, DELETED_TOPIC}

    def test_header_credential(self, test_client: TestClient, alice: dict):
        with test_client.websocket_connect("/ws", headers=auth_headers(alice["token"])) as ws:
            frame = ws.receive_json()

        assert frame["userId"] == alice["user"]["id"]

    def test_invalid_token_connects_anonymously(self, test_client: TestClient, alice: dict):
        with connect(test_client, "garbage") as ws:
            frame = ws.receive_json()

        assert frame["type"] == "connected"
        assert frame["userId"] is None
        assert set(frame["topics"]) == {EDITED_TOPIC, DELETED_TOPIC}


class TestChatCommands:

    def test_send_reaches_sender_and_receiver(self, test_client: TestClient, alice: dict, bob: dict):
        alice_id, bob_id = alice["user"]["id"], bob["user"]["id"]

        with connect(test_client, alice["token"]) as alice_ws, connect(test_client, bob["token"]) as bob_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.send", "receiverId": bob_id, "type": "text", "content": "hello"})

            own = alice_ws.receive_json()
            received = bob_ws.receive_json()

        assert own["type"] == "event"
        assert own["topic"] == user_topic(alice_id)
        assert received["topic"] == user_topic(bob_id)
        message = received["payload"]
        assert message["content"] == "hello"
        assert message["senderId"] == alice_id
        assert message["senderUsername"] == "alice"
        assert message["delivered"] is True
        assert message["deliveredAt"]
        assert own["payload"]["id"] == message["id"]

    def test_read_receipt_goes_to_sender(self, test_client: TestClient, alice: dict, bob: dict):
        alice_id, bob_id = alice["user"]["id"], bob["user"]["id"]

        with connect(test_client, alice["token"]) as alice_ws, connect(test_client, bob["token"]) as bob_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.send", "receiverId": bob_id, "content": "hello"})
            alice_ws.receive_json()
            message_id = bob_ws.receive_json()["payload"]["id"]

            bob_ws.send_json({"action": "chat.read", "messageId": message_id})
            receipt = alice_ws.receive_json()

        assert receipt["topic"] == user_topic(alice_id)
        assert receipt["payload"]["type"] == "MESSAGE_READ"
        assert receipt["payload"]["message"]["id"] == message_id
        assert receipt["payload"]["message"]["read"] is True

    def test_typing_is_forwarded(self, test_client: TestClient, alice: dict, bob: dict):
        with connect(test_client, alice["token"]) as alice_ws, connect(test_client, bob["token"]) as bob_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.typing", "receiverId": bob["user"]["id"]})
            frame = bob_ws.receive_json()

        assert frame["topic"] == user_topic(bob["user"]["id"])
        assert frame["payload"] == {"type": "TYPING", "user": alice["user"]["id"]}

    def test_edit_broadcasts_to_participants_and_global_topic(
        self, test_client: TestClient, alice: dict, bob: dict
    ):
        with connect(test_client, alice["token"]) as alice_ws, connect(test_client, bob["token"]) as bob_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.send", "receiverId": bob["user"]["id"], "content": "helo"})
            message_id = alice_ws.receive_json()["payload"]["id"]
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.edit", "id": message_id, "content": "hello"})
            frames = [alice_ws.receive_json(), alice_ws.receive_json()]

        assert [f["topic"] for f in frames] == [user_topic(alice["user"]["id"]), EDITED_TOPIC]
        assert all(f["payload"]["content"] == "hello" for f in frames)
        assert all(f["payload"]["edited"] is True for f in frames)

    def test_delete_by_non_sender_is_dropped(self, test_client: TestClient, alice: dict, bob: dict):
        with connect(test_client, alice["token"]) as alice_ws, connect(test_client, bob["token"]) as bob_ws:
            alice_ws.receive_json()
            bob_ws.receive_json()

            alice_ws.send_json({"action": "chat.send", "receiverId": bob["user"]["id"], "content": "keep"})
            message_id = alice_ws.receive_json()["payload"]["id"]
            bob_ws.receive_json()

            bob_ws.send_json({"action": "chat.delete", "id": message_id})
            # No reply to the dropped command: the next frame answers the probe
            bob_ws.send_json({"action": "no.such.action"})
            expect_error(bob_ws, "INVALID_ACTION")

        history = test_client.get("/chat/messages", headers=auth_headers(alice["token"])).json()
        assert history[0]["deleted"] is False

    def test_missing_message_is_dropped(self, test_client: TestClient, alice: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_json({"action": "chat.edit", "id": "missing", "content": "x"})
            ws.send_json({"action": "no.such.action"})
            expect_error(ws, "INVALID_ACTION")

    def test_invalid_send_returns_error_frame(self, test_client: TestClient, alice: dict, bob: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_json({"action": "chat.send", "receiverId": bob["user"]["id"], "content": ""})
            expect_error(ws, "INVALID_MESSAGE")

    def test_malformed_frames(self, test_client: TestClient, alice: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_text("not json")
            expect_error(ws, "INVALID_JSON")

            ws.send_json({"action": "chat.read"})
            expect_error(ws, "INVALID_MESSAGE")

    def test_non_string_action(self, test_client: TestClient, alice: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_json({"action": ["chat.send"], "content": "hi"})
            expect_error(ws, "INVALID_ACTION")

            ws.send_json({"action": {"name": "chat.read"}})
            expect_error(ws, "INVALID_ACTION")


class TestAnonymousConnections:

    def test_anonymous_send_rejected(self, test_client: TestClient, alice: dict, bob: dict):
        with connect(test_client) as ws:
            ws.receive_json()

            ws.send_json({
                "action": "chat.send",
                "senderId": alice["user"]["id"],
                "receiverId": bob["user"]["id"],
                "content": "spoofed"
            })
            expect_error(ws, "UNAUTHORIZED")

        assert test_client.get("/chat/messages", headers=auth_headers(bob["token"])).json() == []

    def test_trusted_payload_identity(
        self, test_client: TestClient, alice: dict, bob: dict, trust_payload_identity
    ):
        with connect(test_client) as anonymous_ws, connect(test_client, bob["token"]) as bob_ws:
            anonymous_ws.receive_json()
            bob_ws.receive_json()

            anonymous_ws.send_json({
                "action": "chat.send",
                "senderId": alice["user"]["id"],
                "receiverId": bob["user"]["id"],
                "content": "from payload"
            })
            frame = bob_ws.receive_json()

        assert frame["payload"]["senderId"] == alice["user"]["id"]
        assert frame["payload"]["content"] == "from payload"

    def test_trusted_mode_still_requires_identity_for_edit(
        self, test_client: TestClient, alice: dict, trust_payload_identity
    ):
        with connect(test_client) as ws:
            ws.receive_json()

            ws.send_json({"action": "chat.edit", "id": "any", "content": "x"})
            expect_error(ws, "UNAUTHORIZED")


class TestTopicCommands:

    def test_foreign_user_topic_forbidden(self, test_client: TestClient, alice: dict, bob: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_json({"action": "subscribe", "topic": user_topic(bob["user"]["id"])})
            expect_error(ws, "FORBIDDEN")

    def test_unsubscribe_and_resubscribe(self, test_client: TestClient, alice: dict):
        with connect(test_client, alice["token"]) as ws:
            ws.receive_json()

            ws.send_json({"action": "unsubscribe", "topic": EDITED_TOPIC})
            assert ws.receive_json()["type"] == "unsubscribed"

            ws.send_json({"action": "subscribe", "topic": EDITED_TOPIC})
            frame = ws.receive_json()

        assert frame["type"] == "subscribed"
        assert frame["topic"] == EDITED_TOPIC
