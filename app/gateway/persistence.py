"""DeskPilot – Conversation Store.

Persistence collaborator for conversations and messages. The SQLAlchemy
session work is synchronous; every public method runs it in a worker thread
so callers on the event loop only ever await it.
"""

import asyncio
import threading
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.models import Channel, Conversation, ConversationStatus, Message, Sender
from app.gateway.schemas import ConversationRecord, MessageRecord

logger = structlog.get_logger()


class ConversationNotFound(LookupError):
    """Raised when a conversation id does not exist in the store."""

    def __init__(self, conversation_id: int) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _conversation_record(row: Conversation) -> ConversationRecord:
    record = ConversationRecord.model_validate(row)
    record.created_at = as_utc(record.created_at)
    record.updated_at = as_utc(record.updated_at)
    return record


def _message_record(row: Message) -> MessageRecord:
    record = MessageRecord.model_validate(row)
    record.created_at = as_utc(record.created_at)
    return record


class ConversationStore:
    """Conversation/message persistence.

    Write units (find-or-create, append-and-bump) are serialized by a
    process-local lock and backed by the (channel, customer) unique
    constraint, so concurrent inbound messages from a new customer converge
    on one conversation row even across processes.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()

    # ──────────────────────────────────────────────────────────────
    # Conversations
    # ──────────────────────────────────────────────────────────────

    async def find_or_create_conversation(
        self,
        channel: Channel,
        customer_external_id: str,
        customer_name: str | None = None,
    ) -> tuple[ConversationRecord, bool]:
        """Return the addressable conversation for a customer, creating it if needed.

        Returns:
            (conversation, created) tuple.
        """
        return await asyncio.to_thread(
            self._find_or_create_sync, channel, customer_external_id, customer_name
        )

    def _find_or_create_sync(
        self,
        channel: Channel,
        customer_external_id: str,
        customer_name: str | None,
    ) -> tuple[ConversationRecord, bool]:
        with self._lock, self._session_factory() as db:
            row = self._select_conversation(db, channel, customer_external_id)
            if row is not None:
                if row.status == ConversationStatus.RESOLVED.value:
                    row.status = ConversationStatus.OPEN.value
                    db.commit()
                    logger.info("store.conversation_reopened", conversation_id=row.id)
                return _conversation_record(row), False

            now = datetime.now(timezone.utc)
            row = Conversation(
                channel=channel.value,
                customer_external_id=customer_external_id,
                customer_name=customer_name or customer_external_id,
                status=ConversationStatus.OPEN.value,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # Another process created it between our select and insert.
                db.rollback()
                row = self._select_conversation(db, channel, customer_external_id)
                if row is None:
                    raise
                return _conversation_record(row), False

            db.refresh(row)
            logger.info("store.conversation_created", conversation_id=row.id, channel=channel.value)
            return _conversation_record(row), True

    @staticmethod
    def _select_conversation(db: Session, channel: Channel, customer_external_id: str) -> Conversation | None:
        return db.execute(
            select(Conversation).where(
                Conversation.channel == channel.value,
                Conversation.customer_external_id == customer_external_id,
            )
        ).scalar_one_or_none()

    async def get_conversation(self, conversation_id: int) -> ConversationRecord:
        return await asyncio.to_thread(self._get_conversation_sync, conversation_id)

    def _get_conversation_sync(self, conversation_id: int) -> ConversationRecord:
        with self._session_factory() as db:
            row = db.get(Conversation, conversation_id)
            if row is None:
                raise ConversationNotFound(conversation_id)
            return _conversation_record(row)

    async def update_status(self, conversation_id: int, status: ConversationStatus) -> ConversationRecord:
        return await asyncio.to_thread(self._update_status_sync, conversation_id, status)

    def _update_status_sync(self, conversation_id: int, status: ConversationStatus) -> ConversationRecord:
        with self._lock, self._session_factory() as db:
            row = db.get(Conversation, conversation_id)
            if row is None:
                raise ConversationNotFound(conversation_id)
            row.status = status.value
            row.updated_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(row)
            logger.info("store.status_updated", conversation_id=conversation_id, status=status.value)
            return _conversation_record(row)

    async def list_conversations(self) -> list[ConversationRecord]:
        return await asyncio.to_thread(self._list_conversations_sync)

    def _list_conversations_sync(self) -> list[ConversationRecord]:
        with self._session_factory() as db:
            rows = db.execute(select(Conversation).order_by(Conversation.updated_at.desc())).scalars().all()
            return [_conversation_record(row) for row in rows]

    # ──────────────────────────────────────────────────────────────
    # Messages
    # ──────────────────────────────────────────────────────────────

    async def append_message(
        self,
        conversation_id: int,
        sender: Sender,
        content: str,
        created_at: datetime | None = None,
        platform_message_id: str | None = None,
        ingest_job_id: str | None = None,
    ) -> tuple[MessageRecord, bool]:
        """Append a message and bump the conversation's updated_at in one transaction.

        A message is not appended again when the conversation already holds
        one with the same platform_message_id, or one stored by the same
        ingest job (a retried job).

        Returns:
            (message, created) tuple; created is False for a duplicate.
        """
        return await asyncio.to_thread(
            self._append_message_sync,
            conversation_id,
            sender,
            content,
            created_at,
            platform_message_id,
            ingest_job_id,
        )

    def _append_message_sync(
        self,
        conversation_id: int,
        sender: Sender,
        content: str,
        created_at: datetime | None,
        platform_message_id: str | None,
        ingest_job_id: str | None,
    ) -> tuple[MessageRecord, bool]:
        with self._lock, self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFound(conversation_id)

            existing = self._find_duplicate(db, conversation_id, platform_message_id, ingest_job_id)
            if existing is not None:
                logger.info(
                    "store.message_duplicate",
                    conversation_id=conversation_id,
                    message_id=existing.id,
                    platform_message_id=platform_message_id,
                )
                return _message_record(existing), False

            now = datetime.now(timezone.utc)
            message = Message(
                conversation_id=conversation_id,
                sender=sender.value,
                content=content,
                created_at=as_utc(created_at) if created_at else now,
                platform_message_id=platform_message_id,
                ingest_job_id=ingest_job_id,
            )
            db.add(message)
            conversation.updated_at = now
            db.commit()
            db.refresh(message)
            return _message_record(message), True

    @staticmethod
    def _find_duplicate(
        db: Session,
        conversation_id: int,
        platform_message_id: str | None,
        ingest_job_id: str | None,
    ) -> Message | None:
        keys = (
            (Message.platform_message_id, platform_message_id),
            (Message.ingest_job_id, ingest_job_id),
        )
        for column, value in keys:
            if not value:
                continue
            row = db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id, column == value)
                .order_by(Message.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if row is not None:
                return row
        return None

    async def recent_messages(self, conversation_id: int, limit: int) -> list[MessageRecord]:
        """Return the latest `limit` messages, oldest first."""
        return await asyncio.to_thread(self._recent_messages_sync, conversation_id, limit)

    def _recent_messages_sync(self, conversation_id: int, limit: int) -> list[MessageRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(limit)
            ).scalars().all()
            return [_message_record(row) for row in reversed(rows)]

    async def list_messages(self, conversation_id: int) -> list[MessageRecord]:
        """Return the full message history ordered by created_at."""
        return await asyncio.to_thread(self._list_messages_sync, conversation_id)

    def _list_messages_sync(self, conversation_id: int) -> list[MessageRecord]:
        with self._session_factory() as db:
            rows = db.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
            ).scalars().all()
            return [_message_record(row) for row in rows]

    async def mark_delivered(self, message_id: int, delivered: bool) -> MessageRecord:
        return await asyncio.to_thread(self._mark_delivered_sync, message_id, delivered)

    def _mark_delivered_sync(self, message_id: int, delivered: bool) -> MessageRecord:
        with self._session_factory() as db:
            row = db.get(Message, message_id)
            if row is None:
                raise LookupError(f"Message {message_id} not found")
            row.delivered = delivered
            db.commit()
            db.refresh(row)
            return _message_record(row)

    async def mark_respond_enqueued(self, message_id: int) -> MessageRecord:
        """Record that the reply job for a customer message is queued."""
        return await asyncio.to_thread(self._mark_respond_enqueued_sync, message_id)

    def _mark_respond_enqueued_sync(self, message_id: int) -> MessageRecord:
        with self._lock, self._session_factory() as db:
            row = db.get(Message, message_id)
            if row is None:
                raise LookupError(f"Message {message_id} not found")
            row.respond_enqueued = True
            db.commit()
            db.refresh(row)
            return _message_record(row)
