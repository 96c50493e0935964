import re

from chatdesk.models import AuthorType
from chatdesk.services import conversation_service
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.tools.base import ParameterSpec, Tool, ToolContext, ToolResult
from chatdesk.services.whatsapp_client import WhatsAppAPIError

INTERNATIONAL_NUMBER_RE = re.compile(r"^\+\d{8,15}$")


class SendWhatsAppMessageTool(Tool):
    name = "send_whatsapp_message"
    description = "Invia un messaggio WhatsApp a un numero in formato internazionale (es. +393331234567)."
    parameters = {
        "phone_number": ParameterSpec("string", "Numero del destinatario con prefisso internazionale", required=True),
        "message": ParameterSpec("string", "Testo del messaggio", required=True),
    }

    def __init__(self, dispatcher: ReplyDispatcher):
        self.dispatcher = dispatcher

    def execute(self, params: dict, context: ToolContext) -> ToolResult:
        phone = re.sub(r"[\s-]", "", params["phone_number"])
        text = params["message"].strip()
        if not INTERNATIONAL_NUMBER_RE.match(phone):
            return ToolResult.fail("Il numero deve essere in formato internazionale, es. +393331234567", error="invalid_phone")
        if not text:
            return ToolResult.fail("Il messaggio non può essere vuoto", error="empty_message")

        conversation = conversation_service.get_or_create_conversation(context.db, phone.lstrip("+"))
        try:
            message = self.dispatcher.dispatch(context.db, conversation, text, AuthorType.AI_AGENT)
        except WhatsAppAPIError as exc:
            return ToolResult.fail("Invio del messaggio non riuscito", error=str(exc))

        return ToolResult.ok(
            f"Messaggio inviato a {phone}",
            data={"message_id": str(message.id), "conversation_id": str(conversation.id)},
        )
