from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import AuthorType, Conversation, Message
from chatdesk.services.conversation_service import utcnow
from chatdesk.services.gateway_service import PROCESS_INBOUND_JOB, WHATSAPP_QUEUE
from chatdesk.services.settings_service import get_runtime_settings

logger = get_logger("health_service")


def _unprocessed_inbound(db: Session):
    return db.query(Message).filter(
        Message.author_type == AuthorType.EXTERNAL_CONTACT.value,
        Message.processed.is_(False),
    )


def requeue_stale_messages(db: Session, queue_manager, *, older_than_minutes: int = 10, limit: int = 100) -> dict:
    """Re-enqueue inbound messages stuck unprocessed, e.g. after a lost job.

    Only runs while automatic replies are on; otherwise unprocessed messages are
    waiting for a human agent on purpose. Processing is idempotent per message,
    so a message that still has a live job is harmless to enqueue again.
    """
    runtime = get_runtime_settings(db)
    if not (runtime.ai_enabled and runtime.auto_reply):
        return {"requeued_count": 0, "details": [], "skipped": "auto_reply_disabled", "checked_at": utcnow().isoformat()}

    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    stale = (
        _unprocessed_inbound(db)
        .filter(Message.timestamp <= cutoff)
        .order_by(Message.timestamp)
        .limit(limit)
        .all()
    )

    requeued = []
    for message in stale:
        queue_manager.add_job(
            WHATSAPP_QUEUE,
            PROCESS_INBOUND_JOB,
            {"conversation_id": str(message.conversation_id), "message_id": str(message.id)},
        )
        requeued.append({"conversation_id": str(message.conversation_id), "message_id": str(message.id)})

    if requeued:
        logger.warning("Requeued stale inbound messages", extra={"context": {"count": len(requeued)}})

    return {"requeued_count": len(requeued), "details": requeued, "checked_at": utcnow().isoformat()}


def get_system_health(db: Session, queue_manager) -> dict:
    """Counts for the admin dashboard plus queue health."""
    conversations = db.query(func.count(Conversation.id)).scalar() or 0
    unread = db.query(func.coalesce(func.sum(Conversation.unread_count), 0)).scalar() or 0
    unprocessed = _unprocessed_inbound(db).count()
    queues = queue_manager.health_check()

    return {
        "healthy": queues["healthy"],
        "conversations": {"total": conversations, "unread_messages": int(unread)},
        "messages": {"unprocessed_inbound": unprocessed},
        "queues": queues,
        "checked_at": utcnow().isoformat(),
    }
