import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, Text, Uuid
from sqlalchemy.sql import func

from chatdesk.database import Base


class ChannelSettings(Base):
    """Runtime switches for a channel. Written by the settings UI, only read here."""

    __tablename__ = "channel_settings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    channel = Column(Text, nullable=False, unique=True)  # whatsapp
    ai_enabled = Column(Boolean)
    auto_reply = Column(Boolean)
    ai_model = Column(Text)
    system_prompt = Column(Text)
    business_hours_enabled = Column(Boolean)
    business_hours_start = Column(Text)  # HH:MM
    business_hours_end = Column(Text)
    business_hours_timezone = Column(Text)
    timeout_whatsapp_seconds = Column(Float)
    timeout_chat_seconds = Column(Float)
    max_context_messages = Column(Integer)
    max_tool_iterations = Column(Integer)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
