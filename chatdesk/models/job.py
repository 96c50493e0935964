import uuid

from sqlalchemy import Column, DateTime, Index, Integer, Text, Uuid
from sqlalchemy.sql import func

from chatdesk.database import Base, JSONType

JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_DELAYED = "delayed"

JOB_STATES = (JOB_WAITING, JOB_ACTIVE, JOB_COMPLETED, JOB_FAILED, JOB_DELAYED)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_queue_state_run_at", "queue_name", "state", "run_at"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    queue_name = Column(Text, nullable=False)
    job_type = Column(Text, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    state = Column(Text, nullable=False, default=JOB_WAITING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_at = Column(DateTime(timezone=True), nullable=False)
    last_error = Column(Text)
    result = Column(JSONType)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
