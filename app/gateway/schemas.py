"""DeskPilot – Gateway Schemas.

Canonical shapes flowing between the channel adapters, the job pipeline,
the conversation store and the realtime layer.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.core.models import Channel, ConversationStatus, Sender


class NormalizedMessage(BaseModel):
    """Inbound customer message after platform normalization.

    Every channel adapter produces this shape; optional platform fields are
    carried as-is and interpreted by the ingest worker.
    """

    channel: Channel
    customer_external_id: str = Field(..., description="Platform-specific customer id")
    text: str = Field(default="", description="Message text, empty when the platform sent none")
    platform_timestamp: str | int | float | None = Field(default=None, description="Platform send time, raw")
    platform_message_id: str | None = None
    customer_name: str | None = None


class ConversationRecord(BaseModel):
    """Read model of a stored conversation."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    channel: Channel
    customer_external_id: str
    customer_name: str | None = None
    status: ConversationStatus
    created_at: datetime
    updated_at: datetime


class MessageRecord(BaseModel):
    """Read model of a stored message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: int
    sender: Sender
    content: str
    created_at: datetime
    platform_message_id: str | None = None
    delivered: bool | None = None
    ingest_job_id: str | None = None
    respond_enqueued: bool = False

    def to_event(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "sender": self.sender.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
            "delivered": self.delivered,
        }


class RealtimeEvent(BaseModel):
    """Event pushed to dashboard clients over the realtime layer."""

    room: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
