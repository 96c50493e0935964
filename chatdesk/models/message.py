import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from chatdesk.database import Base


class AuthorType(str, Enum):
    EXTERNAL_CONTACT = "EXTERNAL_CONTACT"
    HUMAN_AGENT = "HUMAN_AGENT"
    AI_AGENT = "AI_AGENT"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    # Provider id of inbound messages; dedup key. NULL for outbound rows.
    external_message_id = Column(Text, unique=True)
    provider_message_id = Column(Text)
    author_type = Column(Text, nullable=False)  # EXTERNAL_CONTACT, HUMAN_AGENT, AI_AGENT
    content = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")
    media_ref = Column(Text)
    processed = Column(Boolean, nullable=False, default=False)
    ai_reply_text = Column(Text)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
