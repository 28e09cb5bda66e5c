"""
Conversation data model.

A conversation is a titled, ordered sequence of messages owned by one user.
Its 'status' drives the lifecycle: a user has at most one 'active'
conversation, starting a new one archives the previous, and deletion removes
the messages before the conversation itself. 'total_messages' and
'last_message_at' are maintained by the store whenever a message is appended.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

DEFAULT_CONVERSATION_TITLE = "Chat with CardSense AI"


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class Conversation(BaseModel):
    """A single conversation owned by a user. Timestamps are epoch milliseconds."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    title: str = DEFAULT_CONVERSATION_TITLE
    status: ConversationStatus = ConversationStatus.ACTIVE
    started_at: int
    last_message_at: int
    total_messages: int = 0
