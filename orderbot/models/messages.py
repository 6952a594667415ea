from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str = Field(min_length=1)
    text: str
    contact_name: Optional[str] = None
    trace_id: Optional[str] = None


class MediaAttachment(BaseModel):
    url: str
    caption: Optional[str] = None


class BotReply(BaseModel):
    """Text that goes back to the customer, optionally with one image."""

    text: str
    media: Optional[MediaAttachment] = None


class MessageResponse(BaseModel):
    customer_id: str
    reply: Optional[BotReply] = None
    intent: Optional[str] = None
    state: Optional[str] = None
    debug: Dict[str, Any] = Field(default_factory=dict)


class OutboundMessage(BaseModel):
    recipient: str
    text: str
    media_url: Optional[str] = None
    caption: Optional[str] = None
