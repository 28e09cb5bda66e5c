"""
Client for the retrieval-augmented knowledge backend (primary provider).

The knowledge service exists in two incompatible API generations. Which one
is spoken is fixed by configuration ('WireFormat'), never guessed per request:

    QUESTION  ("new" API)  {"question": text}
                           -> {"response_text": "..."}
    MESSAGES  ("old" API)  {"messages": [{"role", "content"}, ...], "stream": false}
                           -> {"answer": "...", "sources": [{"content", "url"?}, ...]}

Each format has exactly one payload builder and one normaliser, registered in
'_WIRE_FORMATS'. Normalisers share one ordered list of generic content fields
('FALLBACK_CONTENT_FIELDS') tried when the format's own field is missing.
"""

import json
from collections.abc import AsyncGenerator, Callable, Sequence
from contextlib import AsyncExitStack, aclosing
from enum import StrEnum
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from cardsense_chat.errors import MalformedResponseError, UpstreamError
from cardsense_chat.llms.base import LLMMessage, ProviderClient, Roles, translate_transport_errors
from cardsense_chat.utils.logging import preview

FALLBACK_CONTENT_FIELDS = ("content", "message", "response", "text")
MAX_CITATIONS = 3
CITATION_EXCERPT_LENGTH = 100
CONNECTION_TEST_QUESTION = "Hello, this is a connection test."

_JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


class WireFormat(StrEnum):
    """Request/response format spoken by the knowledge backend."""

    QUESTION = "question"
    MESSAGES = "messages"

    @property
    def api_version(self) -> str:
        return "new" if self is WireFormat.QUESTION else "old"

    @property
    def content_field(self) -> str:
        return "response_text" if self is WireFormat.QUESTION else "answer"


class SourceCitation(BaseModel):
    """A retrieved document excerpt returned alongside an answer."""

    content: str
    url: str | None = None


class NormalizedAnswer(BaseModel):
    """Provider-independent answer: display text plus the sources it cites."""

    content: str
    sources: list[SourceCitation] = Field(default_factory=list)


def build_question_payload(text: str, history: Sequence[LLMMessage], stream: bool = False) -> dict[str, Any]:
    # The question API keeps conversation context server-side.
    return {"question": text}


def build_messages_payload(text: str, history: Sequence[LLMMessage], stream: bool = False) -> dict[str, Any]:
    messages = [message.to_wire() for message in history if message.role is not Roles.SYSTEM]
    messages.append(LLMMessage(role=Roles.USER, content=text).to_wire())
    return {"messages": messages, "stream": stream}


def _first_text(body: dict[str, Any], fields: Sequence[str]) -> str | None:
    # A present field wins even when empty.
    for field in fields:
        value = body.get(field)
        if isinstance(value, str):
            return value
    return None


def _extract_content(body: Any, primary_field: str) -> str:
    """Pick the answer text from a decoded body by field priority, else use the whole body."""
    if isinstance(body, str):
        return body
    if isinstance(body, dict):
        content = _first_text(body, (primary_field, *FALLBACK_CONTENT_FIELDS))
        if content is not None:
            return content
    return json.dumps(body, ensure_ascii=False)


def _parse_sources(raw_sources: Any) -> list[SourceCitation]:
    if not isinstance(raw_sources, list):
        return []
    sources = []
    for raw in raw_sources:
        if isinstance(raw, dict) and isinstance(raw.get("content"), str):
            url = raw.get("url")
            sources.append(SourceCitation(content=raw["content"], url=url if isinstance(url, str) and url else None))
    return sources


def format_citations(sources: Sequence[SourceCitation]) -> str:
    """Render at most 'MAX_CITATIONS' sources as a human-readable block appended to an answer."""
    if not sources:
        return ""
    lines = ["\n\n📚 Sources:"]
    for source in sources[:MAX_CITATIONS]:
        excerpt = source.content
        if len(excerpt) > CITATION_EXCERPT_LENGTH:
            excerpt = f"{excerpt[:CITATION_EXCERPT_LENGTH]}..."
        lines.append(f"\n• {excerpt}")
        if source.url:
            lines.append(f"\n  🔗 {source.url}")
    return "".join(lines)


def normalize_question_response(body: Any) -> NormalizedAnswer:
    return NormalizedAnswer(content=_extract_content(body, WireFormat.QUESTION.content_field))


def normalize_messages_response(body: Any) -> NormalizedAnswer:
    content = _extract_content(body, WireFormat.MESSAGES.content_field)
    sources = _parse_sources(body.get("sources")) if isinstance(body, dict) else []
    return NormalizedAnswer(content=content + format_citations(sources), sources=sources[:MAX_CITATIONS])


PayloadBuilder = Callable[[str, Sequence[LLMMessage], bool], dict[str, Any]]
Normalizer = Callable[[Any], NormalizedAnswer]

_WIRE_FORMATS: dict[WireFormat, tuple[PayloadBuilder, Normalizer]] = {
    WireFormat.QUESTION: (build_question_payload, normalize_question_response),
    WireFormat.MESSAGES: (build_messages_payload, normalize_messages_response),
}


def _stream_chunk(data: str) -> str:
    try:
        decoded = json.loads(data)
    except ValueError:
        return data
    if isinstance(decoded, dict):
        chunk = decoded.get("content") or decoded.get("delta")
        return chunk if isinstance(chunk, str) else ""
    return decoded if isinstance(decoded, str) else data


class KnowledgeClient(ProviderClient):
    """
    HTTP client for the knowledge backend.

    Attributes:
        endpoint: Full URL the question/messages payload is POSTed to.
        wire_format: The configured 'WireFormat'.
        timeout: Request deadline in seconds (60 by default); exceeding it
            raises 'ProviderTimeoutError' and the request is not retried.
    """

    name = "primary"

    def __init__(
        self,
        endpoint: str,
        wire_format: WireFormat = WireFormat.MESSAGES,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout)
        self.endpoint = endpoint
        self.wire_format = wire_format
        self._http = http_client or httpx.AsyncClient()

    def build_payload(self, text: str, history: Sequence[LLMMessage], stream: bool = False) -> dict[str, Any]:
        build, _ = _WIRE_FORMATS[self.wire_format]
        return build(text, history, stream)

    def normalize(self, body: Any) -> NormalizedAnswer:
        _, normalize = _WIRE_FORMATS[self.wire_format]
        return normalize(body)

    async def query(self, text: str, history: Sequence[LLMMessage]) -> NormalizedAnswer:
        payload = self.build_payload(text, history)
        logger.debug(f"Knowledge API request ({self.wire_format.api_version} format) to {self.endpoint}: {payload}")

        with translate_transport_errors(self.name, self.timeout):
            response = await self.within_deadline(
                self._http.post(self.endpoint, json=payload, headers=_JSON_HEADERS, timeout=self.timeout)
            )

        logger.debug(f"Knowledge API response status: {response.status_code}")
        if not response.is_success:
            logger.error(f"Knowledge API error: {response.status_code} - {preview(response.text, 500)}")
            raise UpstreamError(
                f"Knowledge API request failed: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
                provider=self.name,
            )

        answer = self._parse_answer(response.text)
        logger.info(f"Received knowledge answer: {preview(answer.content, 100)}")
        return answer

    def _parse_answer(self, raw: str) -> NormalizedAnswer:
        try:
            body = json.loads(raw)
        except ValueError as exc:
            logger.error(f"Knowledge API returned invalid JSON: {exc}; body: {raw!r}")
            raise MalformedResponseError(
                "Knowledge API returned invalid JSON", details=str(exc), provider=self.name, raw_body=raw
            ) from exc

        answer = self.normalize(body)
        if not answer.content.strip():
            raise MalformedResponseError("Empty response from knowledge API", provider=self.name, raw_body=raw)
        return answer

    async def query_stream(self, text: str, history: Sequence[LLMMessage]) -> AsyncGenerator[str, None]:
        """Yield answer chunks as they arrive.

        The question API has no streaming mode, so it yields the full normalised
        answer as a single chunk. Closing the generator early closes the
        upstream response. The whole stream shares one deadline.
        """
        if self.wire_format is WireFormat.QUESTION:
            logger.warning("Question API does not support streaming, falling back to a regular request")
            answer = await self.query(text, history)
            yield answer.content
            return

        payload = self.build_payload(text, history, stream=True)
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream, text/plain"}
        deadline = self.deadline()
        with translate_transport_errors(self.name, self.timeout):
            async with AsyncExitStack() as stack:
                response = await self.within_deadline(
                    stack.enter_async_context(
                        self._http.stream("POST", self.endpoint, json=payload, headers=headers, timeout=self.timeout)
                    ),
                    deadline,
                )
                if not response.is_success:
                    body = (await self.within_deadline(response.aread(), deadline)).decode(errors="replace")
                    raise UpstreamError(
                        f"Streaming request failed: {response.status_code}",
                        status_code=response.status_code,
                        body=body,
                        provider=self.name,
                    )
                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    # Streaming flag ignored; the whole answer arrived in one body.
                    raw = (await self.within_deadline(response.aread(), deadline)).decode(errors="replace")
                    yield self._parse_answer(raw).content
                elif "text/event-stream" in content_type:
                    lines = await stack.enter_async_context(
                        aclosing(self.iterate_within_deadline(response.aiter_lines(), deadline))
                    )
                    async for line in lines:
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:") :].strip()
                        if data == "[DONE]":
                            return
                        chunk = _stream_chunk(data) if data else ""
                        if chunk:
                            yield chunk
                else:
                    text_chunks = await stack.enter_async_context(
                        aclosing(self.iterate_within_deadline(response.aiter_text(), deadline))
                    )
                    async for text_chunk in text_chunks:
                        if text_chunk:
                            yield text_chunk

    async def health(self) -> dict[str, Any]:
        url = f"{self.endpoint.rstrip('/')}/health"
        try:
            response = await self._http.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
            if response.status_code == 200:
                return response.json()
            return {"status": "error", "code": response.status_code, "message": response.text}
        except (httpx.HTTPError, ValueError) as exc:
            return {"status": "error", "message": str(exc)}

    async def probe(self) -> bool:
        try:
            answer = await self.query(CONNECTION_TEST_QUESTION, [])
        except Exception as exc:
            logger.error(f"Knowledge API connection test failed: {exc}")
            return False
        return bool(answer.content)

    async def aclose(self) -> None:
        await self._http.aclose()
