from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """Supported messaging surfaces."""

    WHATSAPP = "WHATSAPP"
    INSTAGRAM = "INSTAGRAM"
    WEBSITE = "WEBSITE"
    VOICE_CALL = "VOICE_CALL"


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    HUMAN = "HUMAN"
    RESOLVED = "RESOLVED"


class Sender(str, Enum):
    CUSTOMER = "CUSTOMER"
    AI = "AI"
    HUMAN = "HUMAN"


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("channel", "customer_external_id", name="uq_conversation_channel_customer"),
    )

    id = Column(Integer, primary_key=True, index=True)
    channel = Column(String, nullable=False, index=True)
    customer_external_id = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=True)
    status = Column(String, nullable=False, default=ConversationStatus.OPEN.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.created_at",
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(
        Integer,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sender = Column(String, nullable=False)  # CUSTOMER | AI | HUMAN
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    platform_message_id = Column(String, nullable=True, index=True)
    delivered = Column(Boolean, nullable=True)  # None = no outbound delivery attempted
    ingest_job_id = Column(String, nullable=True, index=True)  # job that stored a CUSTOMER message
    respond_enqueued = Column(Boolean, nullable=False, default=False)

    conversation = relationship("Conversation", back_populates="messages")
