from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import AuthorType
from chatdesk.services import conversation_service
from chatdesk.services.business_hours import GateOutcome, evaluate_gate
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.orchestrator import AIOrchestrator
from chatdesk.services.settings_service import TRIGGER_WHATSAPP, get_runtime_settings

logger = get_logger("processing")

STATUS_MESSAGE_MISSING = "message_missing"
STATUS_CONVERSATION_DELETED = "conversation_deleted"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_AI_DISABLED = "ai_disabled"
STATUS_CLOSED_AUTO_REPLY = "closed_auto_reply"
STATUS_REPLIED = "replied"
STATUS_FALLBACK = "fallback"


@dataclass
class ProcessingOutcome:
    status: str
    reply_text: Optional[str] = None


class MessageProcessor:
    """Runs the gate and the orchestrator for one stored inbound message."""

    def __init__(
        self,
        orchestrator: AIOrchestrator,
        dispatcher: ReplyDispatcher,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Callable = conversation_service.utcnow,
    ):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.clock = clock

    def process(self, db: Session, conversation_id, message_id, trigger: str = TRIGGER_WHATSAPP) -> ProcessingOutcome:
        ids = {"conversation_id": str(conversation_id), "message_id": str(message_id)}

        message = conversation_service.get_message(db, message_id)
        if message is None:
            logger.info("Message no longer exists, skipping", extra={"context": ids})
            return ProcessingOutcome(STATUS_MESSAGE_MISSING)

        conversation = conversation_service.get_conversation(db, conversation_id)
        if conversation is None:
            logger.info("Conversation deleted before processing, skipping", extra={"context": ids})
            return ProcessingOutcome(STATUS_CONVERSATION_DELETED)

        if message.processed:
            return ProcessingOutcome(STATUS_ALREADY_PROCESSED, message.ai_reply_text)

        runtime = get_runtime_settings(db)
        decision = evaluate_gate(self.clock(), runtime)

        if decision.outcome == GateOutcome.SKIP:
            logger.info("Automatic reply disabled, leaving message to agents", extra={"context": {**ids, "reason": decision.reason}})
            return ProcessingOutcome(STATUS_AI_DISABLED)

        if decision.outcome == GateOutcome.CLOSED:
            marked = conversation_service.mark_message_processed(db, message.id, decision.reply_text)
            db.commit()
            if not marked:
                return ProcessingOutcome(STATUS_ALREADY_PROCESSED)
            if not conversation_service.conversation_exists(db, conversation.id):
                return ProcessingOutcome(STATUS_CONVERSATION_DELETED)
            self.dispatcher.dispatch(db, conversation, decision.reply_text, AuthorType.AI_AGENT)
            logger.info("Closed-hours auto reply sent", extra={"context": ids})
            return ProcessingOutcome(STATUS_CLOSED_AUTO_REPLY, decision.reply_text)

        outcome = self.orchestrator.handle_message(db, conversation, message, runtime, trigger=trigger, now=self.clock())
        return ProcessingOutcome(STATUS_FALLBACK if outcome.fallback else STATUS_REPLIED, outcome.reply_text)

    def handle_job(self, job) -> dict:
        """Queue handler for ``process-inbound-message`` jobs."""
        if self.session_factory is None:
            raise RuntimeError("MessageProcessor has no session factory for queue jobs")
        db = self.session_factory()
        try:
            outcome = self.process(db, job.payload["conversation_id"], job.payload["message_id"])
            return {"status": outcome.status}
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
