"""
SQLAlchemy-backed conversation store.

Durable 'ConversationStore' on top of SQLAlchemy's asyncio ORM. The schema
mirrors the app's 'chat_conversations' / 'chat_messages' tables. Works with any
async driver, e.g. 'sqlite+aiosqlite:///cardsense_chat.db' for local use or
'postgresql+asyncpg://...' in production.

Each operation runs in its own transaction. 'append_message' locks the parent
conversation row, inserts the message and updates 'last_message_at' and
'total_messages' before committing, so the counter can never disagree with the
stored messages. Operations are additionally serialised per process, which is
required for SQLite where all sessions may share one connection.

Driver and constraint errors are re-raised as 'PersistenceError'.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from loguru import logger
from sqlalchemy import BigInteger, ForeignKey, Integer, String, Text, UniqueConstraint, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from cardsense_chat.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    ConversationStatus,
)
from cardsense_chat.conversation_database.data_models.message import Message, Sender
from cardsense_chat.conversation_database.store import ConversationStore
from cardsense_chat.errors import ConversationNotFoundError, PersistenceError
from cardsense_chat.utils.database import generate_uid
from cardsense_chat.utils.time import get_current_timestamp


class Base(DeclarativeBase):
    pass


class ConversationRow(Base):
    __tablename__ = "chat_conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), index=True)
    started_at: Mapped[int] = mapped_column(BigInteger)
    last_message_at: Mapped[int] = mapped_column(BigInteger)
    total_messages: Mapped[int] = mapped_column(Integer, default=0)


class MessageRow(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (UniqueConstraint("conversation_id", "sequence", name="uq_chat_messages_sequence"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("chat_conversations.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    sender: Mapped[str] = mapped_column(String(20))
    text: Mapped[str] = mapped_column(Text)
    model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)
    sequence: Mapped[int] = mapped_column(Integer)


def _to_conversation(row: ConversationRow) -> Conversation:
    return Conversation.model_validate(row, from_attributes=True)


def _to_message(row: MessageRow) -> Message:
    return Message.model_validate(row, from_attributes=True)


class SQLAlchemyConversationStore(ConversationStore):
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self._lock = asyncio.Lock()

    @classmethod
    def from_url(cls, url: str, **engine_kwargs: Any) -> "SQLAlchemyConversationStore":
        if url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url):
            # A private in-memory database only lives as long as its single connection.
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        return cls(create_async_engine(url, **engine_kwargs))

    async def create_schema(self) -> None:
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            try:
                async with self._sessions() as session, session.begin():
                    yield session
            except SQLAlchemyError as exc:
                logger.error(f"Failed to {action}: {exc}")
                raise PersistenceError(f"Failed to {action}", details=str(exc)) from exc

    @staticmethod
    async def _live_row(session: AsyncSession, conversation_id: str, lock: bool = False) -> ConversationRow:
        row = await session.get(ConversationRow, conversation_id, with_for_update=lock)
        if row is None or row.status == ConversationStatus.DELETED.value:
            raise ConversationNotFoundError(conversation_id)
        return row

    @staticmethod
    async def _active_row(session: AsyncSession, user_id: str) -> ConversationRow | None:
        return await session.scalar(
            select(ConversationRow)
            .where(ConversationRow.user_id == user_id, ConversationRow.status == ConversationStatus.ACTIVE.value)
            .order_by(ConversationRow.last_message_at.desc())
            .limit(1)
        )

    @staticmethod
    def _new_row(session: AsyncSession, user_id: str, title: str) -> ConversationRow:
        now = get_current_timestamp()
        row = ConversationRow(
            id=generate_uid(),
            user_id=user_id,
            title=title,
            status=ConversationStatus.ACTIVE.value,
            started_at=now,
            last_message_at=now,
            total_messages=0,
        )
        session.add(row)
        return row

    async def create_conversation(self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE) -> Conversation:
        async with self._transaction("create conversation") as session:
            current = await self._active_row(session, user_id)
            if current is not None:
                current.status = ConversationStatus.ARCHIVED.value
            row = self._new_row(session, user_id, title)
            await session.flush()
            conversation = _to_conversation(row)
        logger.info(f"Created new conversation: {conversation.id}")
        return conversation

    async def get_or_create_active_conversation(self, user_id: str) -> str:
        async with self._transaction("get conversation ID") as session:
            current = await self._active_row(session, user_id)
            if current is not None:
                return current.id
            row = self._new_row(session, user_id, DEFAULT_CONVERSATION_TITLE)
            conversation_id = row.id
        logger.info(f"Created new conversation: {conversation_id}")
        return conversation_id

    async def get_active_conversation(self, user_id: str) -> Conversation | None:
        async with self._transaction("load active conversation") as session:
            row = await self._active_row(session, user_id)
            return _to_conversation(row) if row is not None else None

    async def get_conversation(self, conversation_id: str) -> Conversation:
        async with self._transaction("load conversation") as session:
            return _to_conversation(await self._live_row(session, conversation_id))

    async def load_history(self, conversation_id: str, limit: int) -> list[Message]:
        async with self._transaction("load conversation history") as session:
            await self._live_row(session, conversation_id)
            if limit <= 0:
                return []
            rows = await session.scalars(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(MessageRow.sequence.desc())
                .limit(limit)
            )
            messages = [_to_message(row) for row in rows]
        messages.reverse()
        logger.debug(f"Loaded {len(messages)} messages from conversation {conversation_id}")
        return messages

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        sender: Sender,
        text: str,
        model_used: str | None = None,
        response_time_ms: int | None = None,
    ) -> Message:
        async with self._transaction("save message") as session:
            conversation = await self._live_row(session, conversation_id, lock=True)
            last_created_at = await session.scalar(
                select(func.max(MessageRow.created_at)).where(MessageRow.conversation_id == conversation_id)
            )
            created_at = max(get_current_timestamp(), last_created_at or 0)
            row = MessageRow(
                id=generate_uid(),
                conversation_id=conversation_id,
                user_id=user_id,
                sender=Sender(sender).value,
                text=text,
                model_used=model_used,
                response_time_ms=response_time_ms,
                created_at=created_at,
                sequence=conversation.total_messages + 1,
            )
            session.add(row)
            conversation.total_messages += 1
            conversation.last_message_at = created_at
            await session.flush()
            message = _to_message(row)
        logger.debug(f"Saved message to conversation {conversation_id}")
        return message

    async def list_conversations(self, user_id: str, limit: int = 20) -> list[Conversation]:
        async with self._transaction("get conversations") as session:
            rows = await session.scalars(
                select(ConversationRow)
                .where(ConversationRow.user_id == user_id, ConversationRow.status != ConversationStatus.DELETED.value)
                .order_by(ConversationRow.last_message_at.desc())
                .limit(limit)
            )
            return [_to_conversation(row) for row in rows]

    async def archive_conversation(self, conversation_id: str) -> None:
        async with self._transaction("archive conversation") as session:
            row = await self._live_row(session, conversation_id, lock=True)
            row.status = ConversationStatus.ARCHIVED.value
        logger.info(f"Archived conversation {conversation_id}")

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._transaction("delete conversation") as session:
            await self._live_row(session, conversation_id, lock=True)
            await session.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
            await session.execute(delete(ConversationRow).where(ConversationRow.id == conversation_id))
        logger.info(f"Deleted conversation {conversation_id}")

    async def update_title(self, conversation_id: str, title: str) -> None:
        async with self._transaction("update conversation title") as session:
            row = await self._live_row(session, conversation_id, lock=True)
            row.title = title
        logger.debug(f"Updated conversation title: {title}")

    async def get_first_user_message(self, conversation_id: str) -> Message | None:
        async with self._transaction("load first user message") as session:
            await self._live_row(session, conversation_id)
            row = await session.scalar(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id, MessageRow.sender == Sender.USER.value)
                .order_by(MessageRow.sequence)
                .limit(1)
            )
            return _to_message(row) if row is not None else None

    async def clear_conversations(self, user_id: str) -> int:
        async with self._transaction("clear conversations") as session:
            conversation_ids = list(
                await session.scalars(select(ConversationRow.id).where(ConversationRow.user_id == user_id))
            )
            if conversation_ids:
                await session.execute(delete(MessageRow).where(MessageRow.conversation_id.in_(conversation_ids)))
                await session.execute(delete(ConversationRow).where(ConversationRow.id.in_(conversation_ids)))
        logger.info(f"Cleared {len(conversation_ids)} conversations for user {user_id}")
        return len(conversation_ids)
