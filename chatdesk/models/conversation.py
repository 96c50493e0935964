import uuid

from sqlalchemy import Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatdesk.database import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_identifier = Column(Text, nullable=False, unique=True)  # E.164 phone number, no '+'
    contact_name = Column(Text)
    assigned_agent_ref = Column(Text)
    last_message_at = Column(DateTime(timezone=True))
    last_message_text = Column(Text)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
    )
