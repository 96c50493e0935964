from unittest.mock import patch

import pytest

from chatdesk.models import AuthorType, Message
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.events import MESSAGE_SENT
from chatdesk.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient


class TestReplyDispatcher:
    def test_sends_records_and_publishes(self, db, inbound, dispatcher, fake_whatsapp, events):
        conversation, _ = inbound("Ciao")
        published = []
        events.subscribe(MESSAGE_SENT, lambda event, payload: published.append(payload))

        message = dispatcher.dispatch(db, conversation, "Buongiorno, come posso aiutarla?", AuthorType.HUMAN_AGENT)

        assert fake_whatsapp.sent[0]["to"] == conversation.contact_identifier
        assert message.provider_message_id == "wamid.out.1"
        assert message.author_type == "HUMAN_AGENT"
        assert message.processed is True
        assert published[0]["conversation_id"] == str(conversation.id)
        assert published[0]["content"] == "Buongiorno, come posso aiutarla?"

    def test_media_reply(self, db, inbound, dispatcher, fake_whatsapp):
        conversation, _ = inbound("Mi mandi il modulo?")

        message = dispatcher.dispatch(
            db,
            conversation,
            None,
            AuthorType.HUMAN_AGENT,
            media_type="document",
            media_ref="https://cdn.example.com/modulo.pdf",
        )

        assert fake_whatsapp.sent[0]["payload"]["document"] == {"link": "https://cdn.example.com/modulo.pdf"}
        assert message.content == "[document]"
        assert message.message_type == "document"

    def test_provider_error_propagates_and_alerts(self, db, inbound, dispatcher, fake_whatsapp):
        conversation, _ = inbound("Ciao")
        fake_whatsapp.fail_with(400)

        with patch("chatdesk.services.dispatcher.alert_error") as alert:
            with pytest.raises(WhatsAppAPIError) as exc_info:
                dispatcher.dispatch(db, conversation, "Risposta", AuthorType.AI_AGENT)

        assert "Invalid recipient" in str(exc_info.value)
        alert.assert_called_once()
        # nothing recorded besides the inbound message
        assert db.query(Message).count() == 1

    def test_accepted_send_without_provider_id_is_recorded(self, db, inbound, events):
        conversation, _ = inbound("Ciao")
        dispatcher = ReplyDispatcher(WhatsAppClient("token-123", "5550001"), events)

        with patch("chatdesk.services.whatsapp_client.httpx.Client") as client_cls:
            http = client_cls.return_value.__enter__.return_value
            http.post.return_value.status_code = 200
            http.post.return_value.json.side_effect = ValueError("Expecting value")

            message = dispatcher.dispatch(db, conversation, "Buongiorno", AuthorType.AI_AGENT)

        stored = db.query(Message).filter(Message.id == message.id).one()
        assert stored.content == "Buongiorno"
        assert stored.provider_message_id is None
