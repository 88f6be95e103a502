"""
Tests for the conversation and message routes.

Tests cover:
- Conversation create/read/status change
- Message snapshot (ordering, pagination, 404)
- Sending through the delivery channel, including rejection
- Push records published by a send
"""

import pytest

from inbox_sync.channel import DeliveryChannel
from inbox_sync.main import app
from inbox_sync.schemas import MessageStatus


class UnreachableChannel(DeliveryChannel):
    name = "unreachable"

    async def deliver(self, phone, content):
        raise ConnectionError("connection reset")


@pytest.fixture
def conversation(client) -> dict:
    response = client.post("/conversations", json={"phone": "+5511999990001", "name": "Ana Souza"})
    assert response.status_code == 201
    return response.json()


class TestConversations:

    def test_create_conversation(self, conversation):
        assert conversation["phone"] == "+5511999990001"
        assert conversation["name"] == "Ana Souza"
        assert conversation["status"] == "queued"
        assert conversation["lastMessageAt"] is None

    def test_create_rejects_bad_phone(self, client):
        response = client.post("/conversations", json={"phone": "5511999990001"})

        assert response.status_code == 422

    def test_get_conversation(self, client, conversation):
        response = client.get(f"/conversations/{conversation['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == conversation["id"]

    def test_get_unknown_conversation(self, client):
        response = client.get("/conversations/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"detail": "conversation does-not-exist not found"}

    @pytest.mark.parametrize("new_status", ["active", "on_hold", "closed"])
    def test_update_status(self, client, conversation, new_status):
        response = client.patch(f"/conversations/{conversation['id']}/status", json={"status": new_status})

        assert response.status_code == 200
        assert response.json()["status"] == new_status

    def test_update_status_rejects_unknown_value(self, client, conversation):
        response = client.patch(f"/conversations/{conversation['id']}/status", json={"status": "archived"})

        assert response.status_code == 422


class TestSendMessage:

    def test_send_returns_channel_ack(self, client, conversation, channel):
        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Hello"}, "sender": "agent-1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "sent"
        assert body["channelMessageId"].startswith("wamid.")
        assert channel.outbox[0][0] == body["channelMessageId"]
        assert channel.outbox[0][1] == "+5511999990001"

    def test_send_publishes_pending_then_confirmation(self, client, conversation, hub):
        received = []
        hub.subscribe(conversation["id"], received.append)

        ack = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Hello"}},
        ).json()

        assert [record.status for record in received] == [MessageStatus.PENDING, MessageStatus.SENT]
        assert received[0].channel_message_id is None
        assert received[1].channel_message_id == ack["channelMessageId"]
        assert received[0].id == received[1].id

    def test_rejected_send_returns_502_and_stores_failure(self, client, conversation, channel):
        channel.reject_next("number not on WhatsApp")

        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Hello"}},
        )

        assert response.status_code == 502
        assert "number not on WhatsApp" in response.json()["detail"]
        snapshot = client.get(f"/conversations/{conversation['id']}/messages").json()
        assert snapshot["data"][0]["status"] == "failed"

    def test_transport_error_returns_502_and_stores_failure(self, client, conversation, hub):
        app.state.channel = UnreachableChannel()
        received = []
        hub.subscribe(conversation["id"], received.append)

        response = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Hello"}},
        )

        assert response.status_code == 502
        assert "connection reset" in response.json()["detail"]
        assert [record.status for record in received] == [MessageStatus.PENDING, MessageStatus.FAILED]
        snapshot = client.get(f"/conversations/{conversation['id']}/messages").json()
        assert snapshot["data"][0]["status"] == "failed"

    def test_channel_must_implement_deliver(self):
        class Incomplete(DeliveryChannel):
            name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete()

    def test_send_to_unknown_conversation(self, client):
        response = client.post("/conversations/nope/messages", json={"content": {"text": "Hello"}})

        assert response.status_code == 404

    def test_send_requires_content(self, client, conversation):
        response = client.post(f"/conversations/{conversation['id']}/messages", json={"content": {}})

        assert response.status_code == 422

    def test_template_send_keeps_name_and_text(self, client, conversation):
        client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Your order shipped", "templateName": "order_shipped"}},
        )

        record = client.get(f"/conversations/{conversation['id']}/messages").json()["data"][0]
        assert record["content"] == {"text": "Your order shipped", "mediaRef": None, "templateName": "order_shipped"}


class TestMessageSnapshot:

    def test_snapshot_is_ordered_and_paginated(self, client, conversation):
        for text in ("one", "two", "three"):
            client.post(f"/conversations/{conversation['id']}/messages", json={"content": {"text": text}})

        full = client.get(f"/conversations/{conversation['id']}/messages").json()
        page = client.get(f"/conversations/{conversation['id']}/messages", params={"limit": 1, "offset": 1}).json()

        assert full["total"] == 3
        assert [record["content"]["text"] for record in full["data"]] == ["one", "two", "three"]
        assert all(record["direction"] == "outbound" for record in full["data"])
        assert page["total"] == 3
        assert page["limit"] == 1
        assert [record["content"]["text"] for record in page["data"]] == ["two"]

    def test_snapshot_uses_wire_field_names(self, client, conversation):
        client.post(f"/conversations/{conversation['id']}/messages", json={"content": {"text": "Hi"}})

        record = client.get(f"/conversations/{conversation['id']}/messages").json()["data"][0]

        assert set(record) == {
            "id", "channelMessageId", "conversationId", "direction", "content", "status", "createdAt", "sender",
        }
        assert record["conversationId"] == conversation["id"]

    def test_snapshot_for_unknown_conversation(self, client):
        response = client.get("/conversations/missing/messages")

        assert response.status_code == 404

    def test_limit_bounds(self, client, conversation):
        response = client.get(f"/conversations/{conversation['id']}/messages", params={"limit": 0})

        assert response.status_code == 422
