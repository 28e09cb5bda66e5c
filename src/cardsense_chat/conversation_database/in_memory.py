"""
In-memory conversation store.

Dictionary-backed 'ConversationStore' for tests and local development. All
operations run under a single 'asyncio.Lock', which makes each of them atomic
with respect to other coroutines in the same event loop. Nothing survives a
restart; use 'SQLAlchemyConversationStore' for durability.
"""

import asyncio

from loguru import logger

from cardsense_chat.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    ConversationStatus,
)
from cardsense_chat.conversation_database.data_models.message import Message, Sender
from cardsense_chat.conversation_database.store import ConversationStore
from cardsense_chat.errors import ConversationNotFoundError
from cardsense_chat.utils.database import generate_uid
from cardsense_chat.utils.time import get_current_timestamp


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    def _get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or conversation.status is ConversationStatus.DELETED:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _active_for(self, user_id: str) -> Conversation | None:
        active = [
            c for c in self._conversations.values() if c.user_id == user_id and c.status is ConversationStatus.ACTIVE
        ]
        return max(active, key=lambda c: c.last_message_at, default=None)

    def _create(self, user_id: str, title: str) -> Conversation:
        now = get_current_timestamp()
        conversation = Conversation(id=generate_uid(), user_id=user_id, title=title, started_at=now, last_message_at=now)
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        logger.info(f"Created new conversation: {conversation.id}")
        return conversation

    async def create_conversation(self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE) -> Conversation:
        async with self._lock:
            current = self._active_for(user_id)
            if current is not None:
                self._conversations[current.id] = current.model_copy(update={"status": ConversationStatus.ARCHIVED})
            return self._create(user_id, title)

    async def get_or_create_active_conversation(self, user_id: str) -> str:
        async with self._lock:
            current = self._active_for(user_id)
            if current is not None:
                return current.id
            return self._create(user_id, DEFAULT_CONVERSATION_TITLE).id

    async def get_active_conversation(self, user_id: str) -> Conversation | None:
        async with self._lock:
            return self._active_for(user_id)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        async with self._lock:
            return self._get(conversation_id)

    async def load_history(self, conversation_id: str, limit: int) -> list[Message]:
        async with self._lock:
            self._get(conversation_id)
            if limit <= 0:
                return []
            return list(self._messages[conversation_id][-limit:])

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        sender: Sender,
        text: str,
        model_used: str | None = None,
        response_time_ms: int | None = None,
    ) -> Message:
        async with self._lock:
            conversation = self._get(conversation_id)
            messages = self._messages[conversation_id]
            created_at = max(get_current_timestamp(), messages[-1].created_at if messages else 0)
            message = Message(
                id=generate_uid(),
                conversation_id=conversation_id,
                user_id=user_id,
                sender=sender,
                text=text,
                model_used=model_used,
                response_time_ms=response_time_ms,
                created_at=created_at,
                sequence=len(messages) + 1,
            )
            messages.append(message)
            self._conversations[conversation_id] = conversation.model_copy(
                update={"last_message_at": created_at, "total_messages": len(messages)}
            )
            logger.debug(f"Saved message to conversation {conversation_id}")
            return message

    async def list_conversations(self, user_id: str, limit: int = 20) -> list[Conversation]:
        async with self._lock:
            conversations = [
                c
                for c in self._conversations.values()
                if c.user_id == user_id and c.status is not ConversationStatus.DELETED
            ]
            conversations.sort(key=lambda c: c.last_message_at, reverse=True)
            return conversations[:limit]

    async def archive_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            conversation = self._get(conversation_id)
            self._conversations[conversation_id] = conversation.model_copy(
                update={"status": ConversationStatus.ARCHIVED}
            )
        logger.info(f"Archived conversation {conversation_id}")

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            self._get(conversation_id)
            self._messages.pop(conversation_id, None)
            del self._conversations[conversation_id]
        logger.info(f"Deleted conversation {conversation_id}")

    async def update_title(self, conversation_id: str, title: str) -> None:
        async with self._lock:
            conversation = self._get(conversation_id)
            self._conversations[conversation_id] = conversation.model_copy(update={"title": title})
        logger.debug(f"Updated conversation title: {title}")

    async def get_first_user_message(self, conversation_id: str) -> Message | None:
        async with self._lock:
            self._get(conversation_id)
            return next((m for m in self._messages[conversation_id] if m.sender is Sender.USER), None)

    async def clear_conversations(self, user_id: str) -> int:
        async with self._lock:
            owned = [cid for cid, c in self._conversations.items() if c.user_id == user_id]
            for conversation_id in owned:
                self._messages.pop(conversation_id, None)
                del self._conversations[conversation_id]
        logger.info(f"Cleared {len(owned)} conversations for user {user_id}")
        return len(owned)
