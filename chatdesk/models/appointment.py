import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatdesk.database import Base


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id = Column(Uuid, ForeignKey("clients.id"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    location = Column(Text)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    appointment_type = Column(Text, nullable=False, default="CONSULTATION")
    status = Column(Text, nullable=False, default="SCHEDULED")  # SCHEDULED, CONFIRMED, COMPLETED, CANCELLED
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    client = relationship("Client", back_populates="appointments")
