"""
Shared pytest fixtures for the chat gateway tests.

Both providers are faked at the HTTP layer with 'httpx.MockTransport', so the
real request building, response parsing and error mapping of the clients run
in every test. A 'ScriptedHandler' records each request and replays the
scripted outcomes in order (the last one repeats). An outcome may also be a
zero-argument callable building a fresh response, for streamed bodies.
"""

import asyncio
import itertools
import json

import httpx
import pytest
import pytest_asyncio

from cardsense_chat.conversation_database.in_memory import InMemoryConversationStore
from cardsense_chat.conversation_database.sql_store import SQLAlchemyConversationStore
from cardsense_chat.gateway.controller import ChatGateway
from cardsense_chat.llms.general import GeneralClient
from cardsense_chat.llms.knowledge import KnowledgeClient, WireFormat

KNOWLEDGE_URL = "https://rag.cardsense.test/api/chat"
FALLBACK_BASE_URL = "https://llm.cardsense.test/api/v1"
PRIMARY_ANSWER = "The HDFC Millennia card gives 5% cashback on online shopping."
FALLBACK_ANSWER = "Cashback cards are usually best for everyday online spending."


def completion_body(content, model="openai/gpt-4o-mini"):
    """Minimal OpenAI chat-completion response body."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1700000000,
        "model": model,
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }


class ScriptedHandler:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def script(self, *outcomes):
        self.outcomes = list(outcomes)

    def __call__(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome()
        # Fresh response per request; a response object cannot be sent twice.
        return httpx.Response(outcome.status_code, headers=outcome.headers, content=outcome.content)

    @property
    def calls(self):
        return len(self.requests)

    def json_body(self, index=-1):
        return json.loads(self.requests[index].content)


def mock_http_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def trickling_response(pieces, delay, content_type="application/json"):
    """A 200 response whose body arrives one piece at a time, 'delay' seconds apart."""

    async def body():
        for piece in pieces:
            await asyncio.sleep(delay)
            yield piece

    return httpx.Response(200, headers={"content-type": content_type}, content=body())


def byte_by_byte(payload):
    return [bytes([byte]) for byte in json.dumps(payload).encode()]


@pytest.fixture
def primary_handler():
    return ScriptedHandler(httpx.Response(200, json={"answer": PRIMARY_ANSWER, "sources": []}))


@pytest.fixture
def fallback_handler():
    return ScriptedHandler(httpx.Response(200, json=completion_body(FALLBACK_ANSWER)))


@pytest.fixture
def knowledge_client(primary_handler):
    return KnowledgeClient(
        KNOWLEDGE_URL, WireFormat.MESSAGES, timeout=5.0, http_client=mock_http_client(primary_handler)
    )


@pytest.fixture
def general_client(fallback_handler):
    return GeneralClient(
        api_key="test-key",
        base_url=FALLBACK_BASE_URL,
        timeout=5.0,
        http_client=mock_http_client(fallback_handler),
    )


@pytest.fixture
def ticking_clock(monkeypatch):
    """Make every store timestamp one second later than the previous one."""
    ticks = itertools.count(1_700_000_000_000, 1000)

    def tick():
        return next(ticks)

    monkeypatch.setattr("cardsense_chat.conversation_database.in_memory.get_current_timestamp", tick)
    monkeypatch.setattr("cardsense_chat.conversation_database.sql_store.get_current_timestamp", tick)
    return ticks


@pytest.fixture
def memory_store():
    return InMemoryConversationStore()


@pytest_asyncio.fixture
async def sql_store():
    store = SQLAlchemyConversationStore.from_url("sqlite+aiosqlite:///:memory:")
    await store.create_schema()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request):
    if request.param == "memory":
        yield InMemoryConversationStore()
        return
    store = SQLAlchemyConversationStore.from_url("sqlite+aiosqlite:///:memory:")
    await store.create_schema()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def gateway(store, knowledge_client, general_client):
    """Gateway over each store backend; pending title updates finish before the store closes."""
    gateway = ChatGateway(store, knowledge_client, general_client)
    yield gateway
    await gateway.wait_for_background_tasks()
