import hashlib
import hmac
from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import pytest

from chatdesk.models import Conversation, Job, Message
from chatdesk.schemas.webhook import WhatsAppInboundMessage
from chatdesk.services.events import MESSAGE_RECEIVED
from chatdesk.services.gateway_service import (
    PROCESS_INBOUND_JOB,
    WHATSAPP_QUEUE,
    ChannelGateway,
    extract_content,
    parse_timestamp,
    verify_signature,
)
from chatdesk.services.queue_service import JobQueueManager
from conftest import text_message, whatsapp_payload


@pytest.fixture
def queue_manager(session_factory):
    manager = JobQueueManager(session_factory)
    manager.register_queue(WHATSAPP_QUEUE, {PROCESS_INBOUND_JOB: lambda job: None})
    return manager


@pytest.fixture
def processor():
    return Mock()


@pytest.fixture
def gateway(queue_manager, processor, events):
    return ChannelGateway(queue_manager, processor, events, verify_token="verify-me")


class TestVerifySubscription:
    def test_valid_handshake_echoes_challenge(self, gateway):
        assert gateway.verify_subscription("subscribe", "verify-me", "12345") == "12345"

    @pytest.mark.parametrize(
        "mode, token",
        [("subscribe", "wrong"), ("unsubscribe", "verify-me"), (None, "verify-me"), ("subscribe", None)],
    )
    def test_invalid_handshake(self, gateway, mode, token):
        assert gateway.verify_subscription(mode, token, "12345") is None

    def test_no_configured_token_rejects(self, queue_manager, processor):
        gateway = ChannelGateway(queue_manager, processor, verify_token=None)
        assert gateway.verify_subscription("subscribe", "anything", "1") is None


class TestVerifySignature:
    def test_valid(self):
        body = b'{"entry": []}'
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, f"sha256={digest}", "app-secret") is True

    def test_invalid(self):
        assert verify_signature(b"{}", "sha256=deadbeef", "app-secret") is False
        assert verify_signature(b"{}", None, "app-secret") is False


class TestExtractContent:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ({"type": "text", "text": {"body": "Ciao"}}, ("Ciao", None)),
            ({"type": "image", "image": {"id": "img-1", "caption": "Fattura"}}, ("Fattura", "img-1")),
            ({"type": "audio", "audio": {"id": "aud-1"}}, ("[audio]", "aud-1")),
            ({"type": "document", "document": {"id": "doc-1"}}, ("[document]", "doc-1")),
            ({"type": "location", "location": {"name": "Studio"}}, ("[location] Studio", None)),
            (
                {"type": "interactive", "interactive": {"button_reply": {"id": "b1", "title": "Sì"}}},
                ("Sì", None),
            ),
            ({"type": "button", "button": {"text": "Conferma"}}, ("Conferma", None)),
            ({"type": "reaction", "reaction": {"emoji": "👍"}}, ("[unsupported]", None)),
        ],
    )
    def test_content_by_type(self, raw, expected):
        message = WhatsAppInboundMessage.model_validate({"from": "39333", "id": "wamid.X", **raw})
        assert extract_content(message) == expected

    def test_text_without_body_is_malformed(self):
        message = WhatsAppInboundMessage.model_validate({"from": "39333", "id": "wamid.X", "type": "text", "text": {}})
        with pytest.raises(ValueError):
            extract_content(message)


class TestParseTimestamp:
    def test_epoch_seconds(self):
        assert parse_timestamp("1792400400") == datetime.fromtimestamp(1792400400, tz=timezone.utc)

    def test_invalid_falls_back_to_now(self):
        before = datetime.now(timezone.utc)
        assert parse_timestamp("soon") >= before


class TestIngest:
    def test_stores_and_enqueues(self, db, gateway, events):
        received = []
        events.subscribe(MESSAGE_RECEIVED, lambda event, payload: received.append(payload))

        summary = gateway.ingest(db, whatsapp_payload(text_message()))

        assert summary.received == 1
        assert summary.stored == 1
        assert summary.enqueued == 1
        conversation = db.query(Conversation).one()
        assert conversation.contact_identifier == "393331234567"
        assert conversation.contact_name == "Mario Rossi"
        assert conversation.unread_count == 1
        message = db.query(Message).one()
        assert message.content == "Ciao"
        assert message.processed is False
        job = db.query(Job).one()
        assert job.queue_name == WHATSAPP_QUEUE
        assert job.job_type == PROCESS_INBOUND_JOB
        assert job.payload == {"conversation_id": str(conversation.id), "message_id": str(message.id)}
        assert received[0]["message_id"] == str(message.id)

    def test_duplicate_delivery_is_noop(self, db, gateway):
        gateway.ingest(db, whatsapp_payload(text_message()))
        summary = gateway.ingest(db, whatsapp_payload(text_message()))

        assert summary.duplicates == 1
        assert summary.enqueued == 0
        assert db.query(Message).count() == 1
        assert db.query(Job).count() == 1
        assert db.query(Conversation).one().unread_count == 1

    def test_malformed_event_skipped_others_stored(self, db, gateway):
        payload = whatsapp_payload(
            {"id": "wamid.broken", "type": "text"},
            text_message(message_id="wamid.B", body="Buongiorno"),
            "not-an-object",
        )

        summary = gateway.ingest(db, payload)

        assert summary.received == 3
        assert summary.skipped == 2
        assert summary.stored == 1
        assert db.query(Message).one().content == "Buongiorno"

    def test_status_updates_and_other_fields_ignored(self, db, gateway):
        payload = {
            "entry": [
                {"changes": [{"field": "statuses", "value": {"statuses": [{"id": "wamid.X", "status": "read"}]}}]},
                {"changes": [{"field": "messages", "value": {"statuses": [{"id": "wamid.Y"}]}}]},
            ]
        }

        summary = gateway.ingest(db, payload)

        assert summary.received == 0
        assert db.query(Message).count() == 0

    def test_out_of_order_delivery_keeps_newest_last_message(self, db, gateway):
        gateway.ingest(db, whatsapp_payload(text_message("wamid.2", "seconda", timestamp="1792400500")))
        gateway.ingest(db, whatsapp_payload(text_message("wamid.1", "prima", timestamp="1792400400")))

        conversation = db.query(Conversation).one()
        assert conversation.last_message_text == "seconda"
        assert conversation.unread_count == 2

    def test_enqueue_failure_processes_synchronously(self, db, processor, events):
        broken_queue = MagicMock()
        broken_queue.add_job.side_effect = RuntimeError("queue down")
        processor.process.return_value = Mock(status="replied")
        gateway = ChannelGateway(broken_queue, processor, events, verify_token="verify-me")

        with patch("chatdesk.services.gateway_service.alert_warning") as alert:
            summary = gateway.ingest(db, whatsapp_payload(text_message()))

        assert summary.stored == 1
        assert summary.fallback == 1
        message = db.query(Message).one()
        processor.process.assert_called_once_with(db, message.conversation_id, message.id)
        alert.assert_called_once()

    def test_synchronous_fallback_error_does_not_fail_delivery(self, db, processor):
        broken_queue = MagicMock()
        broken_queue.add_job.side_effect = RuntimeError("queue down")
        processor.process.side_effect = RuntimeError("model down")
        gateway = ChannelGateway(broken_queue, processor)

        with patch("chatdesk.services.gateway_service.alert_warning"):
            summary = gateway.ingest(db, whatsapp_payload(text_message()))

        assert summary.stored == 1
        assert db.query(Message).count() == 1

    def test_media_message_stored_with_placeholder(self, db, gateway):
        raw = {"from": "393331234567", "id": "wamid.IMG", "timestamp": "1792400400", "type": "image", "image": {"id": "media-9"}}

        gateway.ingest(db, whatsapp_payload(raw))

        message = db.query(Message).one()
        assert message.content == "[image]"
        assert message.message_type == "image"
        assert message.media_ref == "media-9"
