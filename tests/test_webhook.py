"""
Tests for the provider webhook.

Tests cover:
- Valid signature with inbound message ingestion (Meta and 360Dialog shapes)
- Duplicate deliveries (idempotency)
- Delivery status updates (monotonic)
- Push fan-out of stored changes
- Signature formats and rejection (401)
- Validation errors (422)
- Subscription handshake
"""

import hashlib
import hmac
import json
import os

import pytest

from inbox_sync import models
from inbox_sync.storage import SessionLocal


TEST_WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def post_signed(client, body: str):
    return client.post(
        "/webhook",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": compute_signature(body, TEST_WEBHOOK_SECRET)
        }
    )


def meta_payload(messages=(), statuses=(), contacts=()) -> str:
    value = {"messaging_product": "whatsapp"}
    if messages:
        value["messages"] = list(messages)
    if statuses:
        value["statuses"] = list(statuses)
    if contacts:
        value["contacts"] = list(contacts)
    return json.dumps({
        "object": "whatsapp_business_account",
        "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}],
    })


def text_message(message_id: str, body: str, phone: str = "5521988880002", ts: str = "1736935200") -> dict:
    return {"id": message_id, "from": phone, "timestamp": ts, "type": "text", "text": {"body": body}}


def stored_messages(phone: str = "+5521988880002"):
    with SessionLocal() as db:
        conversation = db.query(models.Conversation).filter(models.Conversation.phone == phone).first()
        if conversation is None:
            return None, []
        rows = (
            db.query(models.Message)
            .filter(models.Message.conversation_id == conversation.id)
            .order_by(models.Message.created_at.asc())
            .all()
        )
        return conversation.id, rows


@pytest.fixture
def valid_message_body() -> str:
    return meta_payload(
        messages=[text_message("wamid.in-1", "Oi, tudo bem?")],
        contacts=[{"wa_id": "5521988880002", "profile": {"name": "Carlos Santos"}}],
    )


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_inbound_message_creates_conversation(self, client, valid_message_body):
        response = post_signed(client, valid_message_body)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "messages": 1, "statuses": 0}

        conversation_id, rows = stored_messages()
        assert conversation_id is not None
        assert len(rows) == 1
        assert rows[0].channel_message_id == "wamid.in-1"
        assert rows[0].direction == "inbound"
        assert rows[0].status == "delivered"
        assert rows[0].text == "Oi, tudo bem?"
        assert rows[0].sender == "Carlos Santos"

    def test_duplicate_delivery_is_idempotent(self, client, valid_message_body):
        first = post_signed(client, valid_message_body)
        second = post_signed(client, valid_message_body)

        assert first.json()["messages"] == 1
        assert second.status_code == 200
        assert second.json() == {"status": "ok", "messages": 0, "statuses": 0}

        _, rows = stored_messages()
        assert len(rows) == 1

    def test_messages_from_same_phone_share_conversation(self, client):
        post_signed(client, meta_payload(messages=[text_message("wamid.a", "one", ts="1736935200")]))
        post_signed(client, meta_payload(messages=[text_message("wamid.b", "two", ts="1736935260")]))

        _, rows = stored_messages()
        assert [row.text for row in rows] == ["one", "two"]

    def test_360dialog_top_level_format(self, client):
        body = json.dumps({
            "contacts": [{"wa_id": "5521988880002", "profile": {"name": "Carlos"}}],
            "messages": [text_message("wamid.top", "direct format")],
        })

        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json()["messages"] == 1
        _, rows = stored_messages()
        assert rows[0].text == "direct format"

    def test_media_message_keeps_reference(self, client):
        message = {
            "id": "wamid.img",
            "from": "5521988880002",
            "timestamp": "1736935200",
            "type": "image",
            "image": {"id": "media-77", "caption": "receipt"},
        }

        post_signed(client, meta_payload(messages=[message]))

        _, rows = stored_messages()
        assert rows[0].media_ref == "media-77"
        assert rows[0].text == "receipt"

    def test_payload_without_data_is_ignored(self, client):
        response = post_signed(client, json.dumps({"object": "whatsapp_business_account", "entry": []}))

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "messages": 0, "statuses": 0}


class TestWebhookStatusUpdates:
    """Delivery statuses for messages sent through the channel."""

    @pytest.fixture
    def sent_message(self, client, channel):
        conversation = client.post("/conversations", json={"phone": "+5521988880002", "name": "Carlos"}).json()
        ack = client.post(
            f"/conversations/{conversation['id']}/messages",
            json={"content": {"text": "Hello"}},
        ).json()
        return conversation["id"], ack["channelMessageId"]

    def test_status_advances(self, client, sent_message):
        _, channel_message_id = sent_message

        response = post_signed(client, meta_payload(statuses=[{"id": channel_message_id, "status": "delivered"}]))

        assert response.json()["statuses"] == 1
        _, rows = stored_messages()
        assert rows[0].status == "delivered"

    def test_status_never_regresses(self, client, sent_message):
        _, channel_message_id = sent_message
        post_signed(client, meta_payload(statuses=[{"id": channel_message_id, "status": "read"}]))

        response = post_signed(client, meta_payload(statuses=[{"id": channel_message_id, "status": "delivered"}]))

        assert response.json()["statuses"] == 0
        _, rows = stored_messages()
        assert rows[0].status == "read"

    def test_provider_failure_after_sent(self, client, sent_message):
        _, channel_message_id = sent_message

        post_signed(client, meta_payload(statuses=[{"id": channel_message_id, "status": "failed"}]))

        _, rows = stored_messages()
        assert rows[0].status == "failed"

    def test_unknown_message_and_status_are_skipped(self, client, sent_message):
        _, channel_message_id = sent_message
        body = meta_payload(statuses=[
            {"id": "wamid.never-sent", "status": "read"},
            {"id": channel_message_id, "status": "deleted"},
        ])

        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json()["statuses"] == 0


class TestWebhookPush:
    """Stored changes are fanned out to push subscribers."""

    def test_inbound_message_is_published(self, client, hub, valid_message_body):
        post_signed(client, meta_payload(messages=[text_message("wamid.first", "hi")]))
        conversation_id, _ = stored_messages()
        received = []
        hub.subscribe(conversation_id, received.append)

        post_signed(client, valid_message_body)

        assert len(received) == 1
        assert received[0].channel_message_id == "wamid.in-1"
        assert received[0].conversation_id == conversation_id
        assert received[0].content.text == "Oi, tudo bem?"

    def test_duplicate_is_not_republished(self, client, hub, valid_message_body):
        post_signed(client, valid_message_body)
        conversation_id, _ = stored_messages()
        received = []
        hub.subscribe(conversation_id, received.append)

        post_signed(client, valid_message_body)

        assert received == []


class TestWebhookSignature:
    """Signature checks on the raw body."""

    def test_missing_signature_header(self, client, valid_message_body):
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client, valid_message_body):
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": compute_signature(valid_message_body, "wrong-secret")
            }
        )

        assert response.status_code == 401
        assert stored_messages() == (None, [])

    def test_prefixed_signature_is_accepted(self, client, valid_message_body):
        response = client.post(
            "/webhook",
            content=valid_message_body,
            headers={
                "Content-Type": "application/json",
                "X-Signature": "sha256=" + compute_signature(valid_message_body, TEST_WEBHOOK_SECRET)
            }
        )

        assert response.status_code == 200

    def test_tampered_body(self, client, valid_message_body):
        signature = compute_signature(valid_message_body, TEST_WEBHOOK_SECRET)
        tampered = valid_message_body.replace("Oi, tudo bem?", "Tampered")

        response = client.post(
            "/webhook",
            content=tampered,
            headers={"Content-Type": "application/json", "X-Signature": signature}
        )

        assert response.status_code == 401


class TestWebhookValidation:
    """Test request body validation."""

    def test_invalid_json(self, client):
        response = post_signed(client, "not json")

        assert response.status_code == 422

    def test_message_without_id(self, client):
        body = meta_payload(messages=[{"from": "5521988880002", "type": "text", "text": {"body": "x"}}])

        response = post_signed(client, body)

        assert response.status_code == 422

    def test_sender_without_digits(self, client):
        body = meta_payload(messages=[text_message("wamid.bad", "x", phone="unknown")])

        response = post_signed(client, body)

        assert response.status_code == 422


class TestWebhookVerification:
    """Provider subscription handshake."""

    def test_matching_token_echoes_challenge(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "test-verify-token", "hub.challenge": "1158201444"},
        )

        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_wrong_token_is_forbidden(self, client):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"},
        )

        assert response.status_code == 403
