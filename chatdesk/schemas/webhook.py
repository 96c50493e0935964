from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class WhatsAppInboundMessage(BaseModel):
    """One entry of ``value.messages`` in a Cloud API delivery."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(min_length=1)
    from_: str = Field(alias="from", min_length=1)
    timestamp: Optional[str] = None
    type: str = "text"
    text: Optional[dict] = None
    image: Optional[dict] = None
    audio: Optional[dict] = None
    video: Optional[dict] = None
    document: Optional[dict] = None
    sticker: Optional[dict] = None
    location: Optional[dict] = None
    interactive: Optional[dict] = None
    button: Optional[dict] = None
    contacts: Optional[list[Any]] = None


class WebhookAck(BaseModel):
    success: bool
    received: int = 0
    stored: int = 0
    duplicates: int = 0
    skipped: int = 0
    enqueued: int = 0
    fallback: int = 0
