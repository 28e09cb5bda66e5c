from cardsense_chat.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    Conversation,
    ConversationStatus,
)
from cardsense_chat.conversation_database.data_models.message import Message, Sender
from cardsense_chat.conversation_database.in_memory import InMemoryConversationStore
from cardsense_chat.conversation_database.sql_store import SQLAlchemyConversationStore
from cardsense_chat.conversation_database.store import ConversationStore, make_title

__all__ = [
    "DEFAULT_CONVERSATION_TITLE",
    "Conversation",
    "ConversationStatus",
    "ConversationStore",
    "InMemoryConversationStore",
    "Message",
    "SQLAlchemyConversationStore",
    "Sender",
    "make_title",
]
