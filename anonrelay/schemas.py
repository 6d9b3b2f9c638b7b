"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming transport events
- Response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from anonrelay.channel import Content, InboundEvent, ReplyTo
from anonrelay.identity import DisplayAttrs


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ContentPayload(BaseModel):
    """
    Content of a message.

    content_type is free-form on purpose: types the relay does not model are
    accepted here and discarded by the relay without storing.
    """
    content_type: str = Field(..., min_length=1, description="text, photo, sticker, voice, video, document, audio, animation")
    text: Optional[str] = Field(None, max_length=4096, description="Text body (text messages)")
    attachment_ref: Optional[str] = Field(None, description="Channel-side file reference (media)")
    caption: Optional[str] = Field(None, max_length=1024, description="Optional media caption")

    def to_content(self) -> Content:
        return Content(
            content_type=self.content_type,
            text=self.text,
            attachment_ref=self.attachment_ref,
            caption=self.caption,
        )


class ReplyToPayload(BaseModel):
    """The message being replied to."""
    ref: str = Field(..., min_length=1, description="Channel reference of the replied-to message")
    content: Optional[ContentPayload] = Field(None, description="Content of the replied-to message")


class InboundEventRequest(BaseModel):
    """
    Pydantic model for validating incoming webhook events.

    Validates:
    - sender_key / chat_ref: non-empty strings
    - content: a content payload; text messages must carry text
    """
    sender_key: str = Field(..., min_length=1, description="Stable identifier of the sender")
    chat_ref: str = Field(..., min_length=1, description="Conversation the event came from")
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    content: ContentPayload
    reply_to: Optional[ReplyToPayload] = None

    @field_validator("sender_key", "chat_ref")
    @classmethod
    def strip_refs(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @model_validator(mode="after")
    def text_requires_body(self):
        if self.content.content_type == "text" and self.content.text is None:
            raise ValueError("text content requires a text body")
        return self

    def to_event(self) -> InboundEvent:
        reply_to = None
        if self.reply_to is not None:
            reply_to = ReplyTo(
                ref=self.reply_to.ref,
                content=self.reply_to.content.to_content() if self.reply_to.content else None,
            )
        return InboundEvent(
            sender_key=self.sender_key,
            chat_ref=self.chat_ref,
            content=self.content.to_content(),
            attrs=DisplayAttrs(
                username=self.username,
                first_name=self.first_name,
                last_name=self.last_name,
            ),
            reply_to=reply_to,
        )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "sender_key": "123456789",
                    "chat_ref": "123456789",
                    "first_name": "Ada",
                    "content": {"content_type": "text", "text": "Hello"},
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")
    result: Optional[str] = Field(None, description="Routing outcome")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessagesByState(BaseModel):
    pending: int = Field(..., ge=0)
    forwarded: int = Field(..., ge=0)
    read: int = Field(..., ge=0)
    notified: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.

    Counts only; user keys never leave the service.
    """
    users_count: int = Field(..., ge=0, description="Users who have ever made contact")
    blocked_count: int = Field(..., ge=0, description="Currently blocked users")
    total_messages: int = Field(..., ge=0, description="Stored messages")
    messages_by_state: MessagesByState
    first_message_at: Optional[str] = Field(None, description="Creation time of the first message")
    last_message_at: Optional[str] = Field(None, description="Creation time of the last message")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
