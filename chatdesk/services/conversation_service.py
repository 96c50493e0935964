"""Conversation and message persistence.

Functions here flush but never commit; the caller owns the transaction.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from chatdesk.models import AuthorType, Conversation, Message

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC. Naive values (SQLite round-trips) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def coerce_uuid(value: Union[str, UUID]) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect not in _DIALECT_INSERTS:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    return _DIALECT_INSERTS[dialect](model)


def get_conversation(db: Session, conversation_id) -> Optional[Conversation]:
    return db.get(Conversation, coerce_uuid(conversation_id))


def get_message(db: Session, message_id) -> Optional[Message]:
    return db.get(Message, coerce_uuid(message_id))


def get_or_create_conversation(
    db: Session,
    contact_identifier: str,
    contact_name: Optional[str] = None,
) -> Conversation:
    """Idempotent upsert keyed by contact identifier, safe under concurrent deliveries."""
    stmt = (
        _insert(db, Conversation)
        .values(
            id=uuid.uuid4(),
            contact_identifier=contact_identifier,
            contact_name=contact_name,
            unread_count=0,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["contact_identifier"])
    )
    db.execute(stmt)

    conversation = (
        db.query(Conversation).filter(Conversation.contact_identifier == contact_identifier).one()
    )
    if contact_name and not conversation.contact_name:
        conversation.contact_name = contact_name
        db.flush()
    return conversation


def insert_inbound_message(
    db: Session,
    *,
    conversation_id: UUID,
    external_message_id: str,
    content: str,
    timestamp: datetime,
    message_type: str = "text",
    media_ref: Optional[str] = None,
) -> Tuple[Message, bool]:
    """Insert an inbound message. A redelivered external id is a no-op: returns (existing, False)."""
    stmt = (
        _insert(db, Message)
        .values(
            id=uuid.uuid4(),
            conversation_id=coerce_uuid(conversation_id),
            external_message_id=external_message_id,
            author_type=AuthorType.EXTERNAL_CONTACT.value,
            content=content,
            message_type=message_type,
            media_ref=media_ref,
            processed=False,
            timestamp=as_utc(timestamp),
        )
        .on_conflict_do_nothing(index_elements=["external_message_id"])
    )
    result = db.execute(stmt)
    created = result.rowcount > 0

    message = db.query(Message).filter(Message.external_message_id == external_message_id).one()
    return message, created


def touch_last_message(db: Session, conversation_id, text: str, timestamp: datetime) -> bool:
    """Move last_message_at forward. An older timestamp never overwrites a newer one."""
    ts = as_utc(timestamp)
    updated = (
        db.query(Conversation)
        .filter(
            Conversation.id == coerce_uuid(conversation_id),
            or_(Conversation.last_message_at.is_(None), Conversation.last_message_at <= ts),
        )
        .update(
            {Conversation.last_message_at: ts, Conversation.last_message_text: text},
            synchronize_session=False,
        )
    )
    return updated > 0


def register_inbound(db: Session, conversation_id, text: str, timestamp: datetime) -> None:
    """Atomic unread increment plus monotonic last-message update."""
    (
        db.query(Conversation)
        .filter(Conversation.id == coerce_uuid(conversation_id))
        .update({Conversation.unread_count: Conversation.unread_count + 1}, synchronize_session=False)
    )
    touch_last_message(db, conversation_id, text, timestamp)


def record_outbound_message(
    db: Session,
    conversation: Conversation,
    content: str,
    author_type: AuthorType,
    *,
    provider_message_id: Optional[str] = None,
    message_type: str = "text",
    media_ref: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Message:
    timestamp = timestamp or utcnow()
    message = Message(
        conversation_id=conversation.id,
        external_message_id=None,
        provider_message_id=provider_message_id,
        author_type=AuthorType(author_type).value,
        content=content,
        message_type=message_type,
        media_ref=media_ref,
        processed=True,
        timestamp=timestamp,
        processed_at=timestamp,
    )
    db.add(message)
    db.flush()
    touch_last_message(db, conversation.id, content, timestamp)
    return message


def mark_message_processed(db: Session, message_id, reply_text: Optional[str]) -> bool:
    """Flip processed false -> true with the reply text. Returns False if already processed."""
    updated = (
        db.query(Message)
        .filter(Message.id == coerce_uuid(message_id), Message.processed.is_(False))
        .update(
            {Message.processed: True, Message.ai_reply_text: reply_text, Message.processed_at: utcnow()},
            synchronize_session=False,
        )
    )
    return updated > 0


def get_recent_messages(
    db: Session,
    conversation_id,
    limit: int,
    exclude_message_id=None,
    until: Optional[datetime] = None,
) -> list[Message]:
    """Newest ``limit`` messages of a conversation, returned oldest first.

    ``until`` drops messages stamped after it, so a late trigger only sees
    the turns that came before it.
    """
    if limit <= 0:
        return []
    query = db.query(Message).filter(Message.conversation_id == coerce_uuid(conversation_id))
    if exclude_message_id is not None:
        query = query.filter(Message.id != coerce_uuid(exclude_message_id))
    if until is not None:
        query = query.filter(Message.timestamp <= until)
    rows = query.order_by(Message.timestamp.desc()).limit(limit).all()
    return list(reversed(rows))


def delete_conversation(db: Session, conversation_id) -> bool:
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        return False
    db.delete(conversation)
    db.flush()
    return True


def count_messages(db: Session, conversation_id=None) -> int:
    query = db.query(func.count(Message.id))
    if conversation_id is not None:
        query = query.filter(Message.conversation_id == coerce_uuid(conversation_id))
    return query.scalar() or 0


def conversation_exists(db: Session, conversation_id) -> bool:
    return (
        db.query(Conversation.id).filter(Conversation.id == coerce_uuid(conversation_id)).first()
        is not None
    )
