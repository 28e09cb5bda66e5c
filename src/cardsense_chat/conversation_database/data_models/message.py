"""
Message data model.

Messages are immutable once stored ('frozen'). Within a conversation they are
totally ordered by ('created_at', 'sequence'): the store assigns 'sequence' as
the 1-based position in the conversation and never lets 'created_at' go
backwards, so both keys agree.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from cardsense_chat.llms.base import LLMMessage, Roles


class Sender(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """
    A single chat message.

    'model_used' and 'response_time_ms' are only set on assistant messages and
    record which provider answered and how long the round trip took.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    user_id: str
    sender: Sender
    text: str
    model_used: str | None = None
    response_time_ms: int | None = None
    created_at: int
    sequence: int

    def to_llm_message(self) -> LLMMessage:
        role = Roles.USER if self.sender is Sender.USER else Roles.ASSISTANT
        return LLMMessage(role=role, content=self.text)
