"""
Conversation store interface.

'ConversationStore' is the single owner of conversation and message state.
The gateway never mutates records directly; it goes through these operations,
each of which is atomic on its own. In particular 'append_message' inserts the
message and updates the parent conversation ('last_message_at',
'total_messages') as one unit of work.

Concrete implementations ('InMemoryConversationStore',
'SQLAlchemyConversationStore') are interchangeable at construction time. The
title and "new conversation" rules are implemented once here on top of the
abstract primitives.

Every failure to read or write raises 'PersistenceError' (or its subclass
'ConversationNotFoundError'); nothing is swallowed.
"""

from abc import ABC, abstractmethod

from loguru import logger

from cardsense_chat.conversation_database.data_models.conversation import DEFAULT_CONVERSATION_TITLE, Conversation
from cardsense_chat.conversation_database.data_models.message import Message, Sender

TITLE_MAX_LENGTH = 50
TITLE_ELLIPSIS = "..."


def make_title(first_user_message: str | None) -> str:
    """Derive a conversation title from its first user message."""
    if first_user_message is None or not first_user_message.strip():
        return DEFAULT_CONVERSATION_TITLE
    title = first_user_message.strip()
    if len(title) > TITLE_MAX_LENGTH:
        return f"{title[:TITLE_MAX_LENGTH]}{TITLE_ELLIPSIS}"
    return title


class ConversationStore(ABC):
    """Abstract repository for conversations and their messages."""

    @abstractmethod
    async def get_or_create_active_conversation(self, user_id: str) -> str:
        """Return the user's most recently active conversation id, creating one if none is active.

        Repeated calls return the same id while that conversation stays active.
        """
        pass

    @abstractmethod
    async def get_active_conversation(self, user_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Raise 'ConversationNotFoundError' if the conversation does not exist or was deleted."""
        pass

    @abstractmethod
    async def load_history(self, conversation_id: str, limit: int) -> list[Message]:
        """Return the 'limit' most recent messages, oldest first."""
        pass

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        sender: Sender,
        text: str,
        model_used: str | None = None,
        response_time_ms: int | None = None,
    ) -> Message:
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, limit: int = 20) -> list[Conversation]:
        """Return the user's conversations, most recent first, excluding deleted ones."""
        pass

    @abstractmethod
    async def archive_conversation(self, conversation_id: str) -> None:
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete the conversation's messages, then the conversation itself."""
        pass

    @abstractmethod
    async def update_title(self, conversation_id: str, title: str) -> None:
        pass

    @abstractmethod
    async def get_first_user_message(self, conversation_id: str) -> Message | None:
        pass

    @abstractmethod
    async def clear_conversations(self, user_id: str) -> int:
        """Remove every message and conversation of a user. Returns the number of conversations removed."""
        pass

    @abstractmethod
    async def create_conversation(self, user_id: str, title: str = DEFAULT_CONVERSATION_TITLE) -> Conversation:
        pass

    async def generate_title(self, conversation_id: str) -> str:
        first_message = await self.get_first_user_message(conversation_id)
        return make_title(first_message.text if first_message else None)

    async def start_new_conversation(self, user_id: str) -> str:
        """Archive the current conversation if it has messages and open a fresh active one."""
        current = await self.get_active_conversation(user_id)
        if current is not None:
            if current.total_messages == 0:
                return current.id
            await self.archive_conversation(current.id)
        conversation = await self.create_conversation(user_id)
        logger.info(f"Started new conversation {conversation.id} for user {user_id}")
        return conversation.id

    async def close(self) -> None:
        """Release backend resources. Nothing to do by default."""
        return None
