"""Single outbound path for every reply: human agent, AI, auto-reply and tools."""

from typing import Optional

from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import AuthorType, Conversation, Message
from chatdesk.services.alert_service import alert_error
from chatdesk.services.conversation_service import record_outbound_message
from chatdesk.services.events import MESSAGE_SENT, EventBus
from chatdesk.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient

logger = get_logger("dispatcher")


class ReplyDispatcher:
    def __init__(self, client: WhatsAppClient, events: Optional[EventBus] = None):
        self.client = client
        self.events = events

    def dispatch(
        self,
        db: Session,
        conversation: Conversation,
        text: Optional[str],
        author_type: AuthorType,
        *,
        media_type: Optional[str] = None,
        media_ref: Optional[str] = None,
    ) -> Message:
        """Send through the provider, then record the outbound message and commit.

        Raises WhatsAppAPIError (with the provider's body) when the send is rejected;
        nothing is recorded in that case.
        """
        author_type = AuthorType(author_type)
        context = {
            "conversation_id": str(conversation.id),
            "author_type": author_type.value,
            "media_type": media_type,
        }

        try:
            provider_message_id = self.client.send(
                conversation.contact_identifier,
                text=text,
                media_type=media_type,
                media_ref=media_ref,
                caption=text if media_type else None,
            )
        except WhatsAppAPIError as exc:
            logger.error(
                "Outbound dispatch failed",
                extra={"context": {**context, "status_code": exc.status_code, "error": str(exc)}},
            )
            alert_error("WhatsApp send failed", {**context, "status_code": exc.status_code, "error": str(exc)[:300]})
            raise

        message = record_outbound_message(
            db,
            conversation,
            text or f"[{media_type}]",
            author_type,
            provider_message_id=provider_message_id,
            message_type=media_type or "text",
            media_ref=media_ref,
        )
        db.commit()

        logger.info(
            "Outbound message sent",
            extra={"context": {**context, "message_id": str(message.id), "provider_message_id": provider_message_id}},
        )
        if self.events is not None:
            self.events.publish(
                MESSAGE_SENT,
                {
                    "conversation_id": context["conversation_id"],
                    "message_id": str(message.id),
                    "author_type": author_type.value,
                    "content": message.content,
                },
            )
        return message
