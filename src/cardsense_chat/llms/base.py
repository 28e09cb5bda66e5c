"""
Core provider abstractions and message data models.

Both upstream backends, the knowledge service ('KnowledgeClient') and the
general chat-completion service ('GeneralClient'), implement the
'ProviderClient' ABC. The shared message format ('LLMMessage') is
backend-agnostic so the gateway can hand the same history window to either
provider without knowing which one will answer.

'translate_transport_errors' maps httpx transport failures onto the gateway's
error taxonomy; every raw HTTP call made by a provider client runs inside it.
'ProviderClient.within_deadline' bounds the whole call, body included, by the
client's timeout; httpx's own timeouts bound each connect or read separately.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterable, Awaitable, Iterator
from contextlib import contextmanager
from enum import StrEnum
from typing import TypeVar

import httpx
from pydantic import BaseModel, ConfigDict

from cardsense_chat.errors import CorsError, NetworkError, ProviderTimeoutError

_CROSS_ORIGIN_MARKERS = ("failed to fetch", "cors", "cross-origin", "access-control-allow-origin")

T = TypeVar("T")


class Roles(StrEnum):
    """Conversation roles as used by chat-completion APIs."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """A single role-tagged turn sent to a provider."""

    model_config = ConfigDict(frozen=True)

    content: str = ""
    role: Roles = Roles.ASSISTANT

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


def is_cross_origin_rejection(error: BaseException) -> bool:
    """Whether a transport failure is a cross-origin policy rejection rather than an outage."""
    text = str(error).lower()
    return any(marker in text for marker in _CROSS_ORIGIN_MARKERS)


@contextmanager
def translate_transport_errors(provider: str, timeout: float) -> Iterator[None]:
    try:
        yield
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(
            f"{provider} request timed out after {timeout:g}s", details=str(exc) or None, provider=provider
        ) from exc
    except httpx.TransportError as exc:
        if is_cross_origin_rejection(exc):
            raise CorsError(
                f"{provider} request rejected by cross-origin policy", details=str(exc), provider=provider
            ) from exc
        raise NetworkError(f"{provider} connection failed", details=str(exc) or type(exc).__name__, provider=provider) from exc


class ProviderClient(ABC):
    """
    Abstract base class for upstream AI providers.

    Attributes:
        name: Short provider label used in logs and error context.
        timeout: Deadline in seconds for a whole call, response body included.
    """

    name: str

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout

    @abstractmethod
    async def probe(self) -> bool:
        """Issue a lightweight request and report whether the provider answered. Never raises."""
        pass

    @abstractmethod
    async def aclose(self) -> None:
        """Release the underlying HTTP resources."""
        pass

    def deadline(self) -> float:
        """Absolute event-loop time by which a call started now must finish."""
        return asyncio.get_running_loop().time() + self.timeout

    def _deadline_exceeded(self) -> ProviderTimeoutError:
        return ProviderTimeoutError(
            f"{self.name} request exceeded the {self.timeout:g}s deadline", provider=self.name
        )

    async def within_deadline(self, awaitable: Awaitable[T], deadline: float | None = None) -> T:
        """Await 'awaitable', raising 'ProviderTimeoutError' once 'deadline' has passed."""
        try:
            async with asyncio.timeout_at(deadline if deadline is not None else self.deadline()):
                return await awaitable
        except TimeoutError as exc:
            raise self._deadline_exceeded() from exc

    async def iterate_within_deadline(self, chunks: AsyncIterable[T], deadline: float) -> AsyncGenerator[T, None]:
        """Re-yield 'chunks', bounding every wait for the next one by the same deadline."""
        iterator = aiter(chunks)
        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    chunk = await anext(iterator)
            except StopAsyncIteration:
                return
            except TimeoutError as exc:
                raise self._deadline_exceeded() from exc
            yield chunk
