"""
Error taxonomy for the chat gateway.

Every exception raised by the gateway, the provider clients and the
conversation store derives from 'GatewayError'. Each error carries an
'ErrorKind' so that recovered failures (primary provider down, fallback used)
can be reported in 'ExchangeResult' instead of only being logged.

Provider errors ('ProviderError' and subclasses) are recoverable: the gateway
answers them by switching to the fallback provider. 'PersistenceError' is
surfaced to the caller because a failed write is a durability gap.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Machine-readable category of a gateway failure."""

    NETWORK = "network"
    CORS = "cors"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    UPSTREAM = "upstream"
    PERSISTENCE = "persistence"
    NOT_FOUND = "not_found"
    TOTAL_FAILURE = "total_failure"
    UNEXPECTED = "unexpected"


class GatewayError(Exception):
    """
    Base exception for all gateway errors.

    Attributes:
        kind: The 'ErrorKind' categorising this error.
        message: Human-readable message, safe to log.
        details: Optional extra context (e.g. a truncated response body).
        recoverable: Whether the gateway can recover locally (fallback).
        context: Additional key-value pairs for debugging.
    """

    kind: ErrorKind = ErrorKind.UNEXPECTED
    recoverable: bool = False

    def __init__(self, message: str, details: str | None = None, **context: Any) -> None:
        self.message = message
        self.details = details
        self.context = context
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class ProviderError(GatewayError):
    """A call to an upstream AI provider failed."""

    recoverable = True

    def __init__(self, message: str, details: str | None = None, provider: str | None = None, **context: Any) -> None:
        if provider:
            context["provider"] = provider
        super().__init__(message, details, **context)
        self.provider = provider


class NetworkError(ProviderError):
    """The connection could not be established or was dropped."""

    kind = ErrorKind.NETWORK


TransportError = NetworkError


class CorsError(NetworkError):
    """The request was rejected by a cross-origin policy before reaching the provider."""

    kind = ErrorKind.CORS


class ProviderTimeoutError(ProviderError):
    """The provider did not answer before the deadline."""

    kind = ErrorKind.TIMEOUT


class MalformedResponseError(ProviderError):
    """The response body was not JSON or had no recognisable content."""

    kind = ErrorKind.MALFORMED_RESPONSE

    def __init__(
        self,
        message: str,
        details: str | None = None,
        provider: str | None = None,
        raw_body: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, details, provider=provider, **context)
        self.raw_body = raw_body


class UpstreamError(ProviderError):
    """The provider answered with a non-2xx status."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str = "",
        provider: str | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, body[:500] or None, provider=provider, status_code=status_code, **context)
        self.status_code = status_code
        self.body = body


class PersistenceError(GatewayError):
    """A conversation store read or write could not complete."""

    kind = ErrorKind.PERSISTENCE


class ConversationNotFoundError(PersistenceError):
    """The referenced conversation does not exist (or was deleted)."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, conversation_id: str, **context: Any) -> None:
        super().__init__(f"Conversation {conversation_id} not found", conversation_id=conversation_id, **context)
        self.conversation_id = conversation_id


class TotalFailureError(GatewayError):
    """Both the primary and the fallback provider failed for one exchange."""

    kind = ErrorKind.TOTAL_FAILURE

    def __init__(self, primary_error: ProviderError, fallback_error: ProviderError) -> None:
        super().__init__(
            "Both primary and fallback providers failed",
            details=f"primary={primary_error.kind}, fallback={fallback_error.kind}",
        )
        self.primary_error = primary_error
        self.fallback_error = fallback_error
