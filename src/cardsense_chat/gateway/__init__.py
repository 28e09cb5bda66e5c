from cardsense_chat.gateway.controller import ChatGateway
from cardsense_chat.gateway.data_models import (
    FALLBACK_DISCLOSURE,
    TOTAL_FAILURE_MESSAGE,
    ExchangeResult,
    ExchangeState,
    ServiceAvailability,
    StreamEvent,
)

__all__ = [
    "FALLBACK_DISCLOSURE",
    "TOTAL_FAILURE_MESSAGE",
    "ChatGateway",
    "ExchangeResult",
    "ExchangeState",
    "ServiceAvailability",
    "StreamEvent",
]
