from typing import Optional

from pydantic import BaseModel, Field

from chatdesk.models.job import JOB_COMPLETED


class CleanRequest(BaseModel):
    state: str = JOB_COMPLETED
    older_than_ms: int = Field(default=24 * 60 * 60 * 1000, ge=0)


class TestJobRequest(BaseModel):
    payload: dict = Field(default_factory=dict)
    delay_seconds: float = Field(default=0.0, ge=0)


class JobResponse(BaseModel):
    id: str
    queue: str
    type: str
    state: str
    attempts: int
    max_attempts: int


class QueueActionResponse(BaseModel):
    success: bool
    queues: list[str]
    message: Optional[str] = None
