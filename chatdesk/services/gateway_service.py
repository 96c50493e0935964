"""Inbound side of the WhatsApp channel: subscription handshake and webhook ingestion.

Ingestion only does fast, synchronous store writes and hands each new message
to the job queue; AI work never runs inside the webhook request unless the
queue is unavailable.
"""

import hashlib
import hmac
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.schemas.webhook import WhatsAppInboundMessage
from chatdesk.services import conversation_service
from chatdesk.services.alert_service import alert_warning
from chatdesk.services.events import MESSAGE_RECEIVED, EventBus

logger = get_logger("gateway")

WHATSAPP_QUEUE = "whatsapp-processing"
PROCESS_INBOUND_JOB = "process-inbound-message"

MEDIA_MESSAGE_TYPES = ("image", "audio", "video", "document", "sticker")
PLACEHOLDERS = {
    "image": "[image]",
    "audio": "[audio]",
    "video": "[video]",
    "document": "[document]",
    "sticker": "[sticker]",
    "location": "[location]",
    "contacts": "[contacts]",
    "interactive": "[interactive]",
    "button": "[button]",
}
UNSUPPORTED_PLACEHOLDER = "[unsupported]"


@dataclass(frozen=True)
class InboundEvent:
    external_message_id: str
    contact_identifier: str
    contact_name: Optional[str]
    content: str
    message_type: str
    media_ref: Optional[str]
    timestamp: datetime


@dataclass
class IngestSummary:
    received: int = 0
    stored: int = 0
    duplicates: int = 0
    skipped: int = 0
    enqueued: int = 0
    fallback: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def verify_signature(body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against the app secret."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.split("=", 1)[1])


def extract_content(message: WhatsAppInboundMessage) -> tuple[str, Optional[str]]:
    """Return (display text, media reference) for any message type."""
    kind = message.type
    if kind == "text":
        body = (message.text or {}).get("body")
        if not body:
            raise ValueError("text message without body")
        return body, None

    if kind in MEDIA_MESSAGE_TYPES:
        media = getattr(message, kind) or {}
        return media.get("caption") or PLACEHOLDERS[kind], media.get("id")

    if kind == "location":
        location = message.location or {}
        label = location.get("name") or location.get("address")
        return (f"{PLACEHOLDERS['location']} {label}" if label else PLACEHOLDERS["location"]), None

    if kind == "interactive":
        interactive = message.interactive or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title") or PLACEHOLDERS["interactive"], None

    if kind == "button":
        return (message.button or {}).get("text") or PLACEHOLDERS["button"], None

    if kind == "contacts":
        return PLACEHOLDERS["contacts"], None

    return UNSUPPORTED_PLACEHOLDER, None


def parse_timestamp(value: Optional[str]) -> datetime:
    if value:
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.warning("Invalid message timestamp, using receive time", extra={"context": {"timestamp": value}})
    return conversation_service.utcnow()


def parse_message_event(raw: dict, contact_names: dict) -> InboundEvent:
    """Validate one raw message. Raises ValueError (pydantic ValidationError included) when malformed."""
    if not isinstance(raw, dict):
        raise ValueError("message event is not an object")
    message = WhatsAppInboundMessage.model_validate(raw)
    content, media_ref = extract_content(message)
    return InboundEvent(
        external_message_id=message.id,
        contact_identifier=message.from_.lstrip("+"),
        contact_name=contact_names.get(message.from_),
        content=content,
        message_type=message.type,
        media_ref=media_ref,
        timestamp=parse_timestamp(message.timestamp),
    )


def iter_message_events(payload: dict) -> Iterator[tuple[dict, dict]]:
    """Yield (raw message, {wa_id: profile name}) for every message in a delivery."""
    if not isinstance(payload, dict):
        return
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if not isinstance(change, dict) or change.get("field", "messages") != "messages":
                continue
            value = change.get("value") or {}
            if not isinstance(value, dict):
                continue
            names = {}
            for contact in value.get("contacts") or []:
                if isinstance(contact, dict) and contact.get("wa_id"):
                    names[contact["wa_id"]] = (contact.get("profile") or {}).get("name")
            for raw in value.get("messages") or []:
                yield raw, names


class ChannelGateway:
    def __init__(self, queue_manager, processor, events: Optional[EventBus] = None, verify_token: Optional[str] = None):
        self.queue_manager = queue_manager
        self.processor = processor
        self.events = events
        self.verify_token = verify_token

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        """Echo the challenge for a valid subscribe handshake, None otherwise."""
        if mode != "subscribe" or not token or not self.verify_token or challenge is None:
            return None
        if not hmac.compare_digest(token, self.verify_token):
            return None
        return challenge

    def ingest(self, db: Session, payload: dict) -> IngestSummary:
        summary = IngestSummary()
        for raw, names in iter_message_events(payload):
            summary.received += 1
            try:
                event = parse_message_event(raw, names)
                self._ingest_event(db, event, summary)
            except ValueError as exc:
                db.rollback()
                summary.skipped += 1
                logger.warning(
                    "Malformed message event skipped",
                    extra={"context": {"error": str(exc)[:500], "message_id": raw.get("id") if isinstance(raw, dict) else None}},
                )
            except OperationalError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                summary.skipped += 1
                logger.error(
                    "Failed to store message event",
                    extra={"context": {"error": str(exc), "message_id": raw.get("id") if isinstance(raw, dict) else None}},
                )

        logger.info("Webhook delivery ingested", extra={"context": summary.to_dict()})
        return summary

    def _ingest_event(self, db: Session, event: InboundEvent, summary: IngestSummary) -> None:
        conversation = conversation_service.get_or_create_conversation(
            db, event.contact_identifier, event.contact_name
        )
        message, created = conversation_service.insert_inbound_message(
            db,
            conversation_id=conversation.id,
            external_message_id=event.external_message_id,
            content=event.content,
            timestamp=event.timestamp,
            message_type=event.message_type,
            media_ref=event.media_ref,
        )
        if not created:
            db.commit()
            summary.duplicates += 1
            logger.info(
                "Duplicate delivery ignored",
                extra={"context": {"external_message_id": event.external_message_id, "message_id": str(message.id)}},
            )
            return

        conversation_service.register_inbound(db, conversation.id, event.content, event.timestamp)
        conversation_id = conversation.id
        message_id = message.id
        db.commit()
        summary.stored += 1

        if self.events is not None:
            self.events.publish(
                MESSAGE_RECEIVED,
                {
                    "conversation_id": str(conversation_id),
                    "message_id": str(message_id),
                    "contact_identifier": event.contact_identifier,
                    "content": event.content,
                },
            )
        self._hand_off(db, conversation_id, message_id, summary)

    def _hand_off(self, db: Session, conversation_id, message_id, summary: IngestSummary) -> None:
        ids = {"conversation_id": str(conversation_id), "message_id": str(message_id)}
        try:
            self.queue_manager.add_job(
                WHATSAPP_QUEUE,
                PROCESS_INBOUND_JOB,
                {"conversation_id": str(conversation_id), "message_id": str(message_id)},
            )
            summary.enqueued += 1
            return
        except Exception as exc:
            summary.fallback += 1
            logger.error(
                "Enqueue failed, processing synchronously (degraded mode)",
                extra={"context": {**ids, "error": str(exc)}},
            )
            alert_warning("Job queue unavailable, processing inbound message synchronously", {**ids, "error": str(exc)})

        try:
            outcome = self.processor.process(db, conversation_id, message_id)
            logger.info("Synchronous fallback processed", extra={"context": {**ids, "status": outcome.status}})
        except Exception as exc:
            db.rollback()
            logger.error(
                "Synchronous fallback processing failed",
                extra={"context": {**ids, "error": str(exc)}},
                exc_info=True,
            )
