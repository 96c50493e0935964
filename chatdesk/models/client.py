import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from chatdesk.database import Base


class Client(Base):
    __tablename__ = "clients"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False, default="")
    phone = Column(Text, index=True)
    whatsapp_number = Column(Text, index=True)
    email = Column(Text)
    fiscal_code = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    practices = relationship("Practice", back_populates="client")
    appointments = relationship("Appointment", back_populates="client")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
