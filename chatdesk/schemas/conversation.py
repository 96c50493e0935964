from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class AgentReplyRequest(BaseModel):
    text: Optional[str] = None
    media_type: Optional[str] = None
    media_ref: Optional[str] = None
    agent_ref: Optional[str] = None

    @model_validator(mode="after")
    def require_content(self) -> "AgentReplyRequest":
        if not (self.text and self.text.strip()) and not self.media_ref:
            raise ValueError("text or media_ref is required")
        if self.media_ref and not self.media_type:
            raise ValueError("media_type is required with media_ref")
        return self


class AgentReplyResponse(BaseModel):
    success: bool
    message_id: UUID
    conversation_id: UUID


class ChatTurn(BaseModel):
    role: str = Field(pattern="^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatTurn] = Field(min_length=1)


class ChatResponse(BaseModel):
    reply: str
    fallback: bool
    tool_calls: list[dict] = Field(default_factory=list)
