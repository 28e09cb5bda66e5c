"""
Data models returned by the chat gateway.

'ExchangeResult' makes every locally recovered failure visible: which error
kind knocked out the primary provider, whether the fallback failed too, and
whether the assistant's turn could be stored. Callers and tests can branch on
these fields instead of parsing logs.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel

from cardsense_chat.conversation_database.data_models.message import Message
from cardsense_chat.errors import ErrorKind

FALLBACK_DISCLOSURE = (
    "\n\n_Note: This response is from our backup AI service. "
    "For the most accurate credit card information, please try again later._"
)
TOTAL_FAILURE_MESSAGE = (
    "Sorry, I'm having trouble connecting right now. Please check your internet connection and try again."
)


class ExchangeState(StrEnum):
    PENDING = "pending"
    PRIMARY_ATTEMPT = "primary_attempt"
    FALLBACK_ATTEMPT = "fallback_attempt"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangeState.SUCCESS, ExchangeState.FAILED)


class ExchangeResult(BaseModel):
    """
    Outcome of one 'ChatGateway.send' call.

    Attributes:
        content: Text to show the user: the answer (with the disclosure suffix
            when 'used_fallback'), or 'TOTAL_FAILURE_MESSAGE'.
        primary_error: Why the primary provider was skipped, if it was.
        fallback_error: Why the fallback failed, only set on total failure.
        persistence_error: Set when the assistant message could not be stored;
            the answer is still returned but is missing from history.
    """

    conversation_id: str
    content: str
    state: ExchangeState
    used_fallback: bool = False
    model_used: str | None = None
    response_time_ms: int | None = None
    user_message: Message
    assistant_message: Message | None = None
    primary_error: ErrorKind | None = None
    fallback_error: ErrorKind | None = None
    persistence_error: str | None = None

    @property
    def persisted(self) -> bool:
        return self.state is ExchangeState.SUCCESS and self.assistant_message is not None


class StreamEvent(BaseModel):
    """One item yielded by 'ChatGateway.send_stream': content chunks, then a single 'done' event."""

    type: Literal["chunk", "done"]
    content: str = ""
    result: ExchangeResult | None = None


class ServiceAvailability(BaseModel):
    primary: bool
    fallback: bool
