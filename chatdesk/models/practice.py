import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatdesk.database import Base

PRACTICE_STATUSES = ("PENDING", "IN_PROGRESS", "WAITING_DOCUMENTS", "COMPLETED", "CANCELLED")


class Practice(Base):
    __tablename__ = "practices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    title = Column(Text, nullable=False)
    practice_type = Column(Text, nullable=False, default="OTHER")
    status = Column(Text, nullable=False, default="PENDING")
    description = Column(Text)
    due_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    client = relationship("Client", back_populates="practices")
