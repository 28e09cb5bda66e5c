"""
Tests for the general chat-completion client (fallback provider).
"""

import time

import httpx
import pytest

from cardsense_chat.errors import MalformedResponseError, NetworkError, ProviderTimeoutError, UpstreamError
from cardsense_chat.llms.base import LLMMessage, Roles
from cardsense_chat.llms.general import DEFAULT_MODELS, MAX_TOKENS, TEMPERATURE, GeneralClient
from cardsense_chat.llms.prompts import DEFAULT_SYSTEM_PROMPT

from conftest import (
    FALLBACK_BASE_URL,
    ScriptedHandler,
    byte_by_byte,
    completion_body,
    mock_http_client,
    trickling_response,
)


def make_client(handler, **kwargs):
    return GeneralClient(
        api_key="test-key",
        base_url=FALLBACK_BASE_URL,
        app_name="CardSense AI",
        app_url="https://cardsense.ai",
        timeout=5.0,
        http_client=mock_http_client(handler),
        **kwargs,
    )


class TestComplete:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        handler = ScriptedHandler(httpx.Response(200, json=completion_body("Use a lounge card.")))
        client = make_client(handler)
        history = [
            LLMMessage(role=Roles.USER, content="I travel a lot"),
            LLMMessage(role=Roles.ASSISTANT, content="Noted."),
        ]

        content = await client.complete("Which card?", history)

        assert content == "Use a lounge card."
        request = handler.requests[0]
        assert str(request.url) == f"{FALLBACK_BASE_URL}/chat/completions"
        assert request.headers["authorization"] == "Bearer test-key"
        assert request.headers["http-referer"] == "https://cardsense.ai"
        assert request.headers["x-title"] == "CardSense AI"
        body = handler.json_body()
        assert body["model"] == "openai/gpt-4o-mini"
        assert body["temperature"] == TEMPERATURE
        assert body["max_tokens"] == MAX_TOKENS
        assert body["messages"] == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "I travel a lot"},
            {"role": "assistant", "content": "Noted."},
            {"role": "user", "content": "Which card?"},
        ]

    @pytest.mark.asyncio
    async def test_model_override(self):
        handler = ScriptedHandler(httpx.Response(200, json=completion_body("ok")))
        await make_client(handler).complete("hi", [], model="anthropic/claude-3-haiku")
        assert handler.json_body()["model"] == "anthropic/claude-3-haiku"

    @pytest.mark.asyncio
    async def test_status_error_is_not_retried(self):
        handler = ScriptedHandler(httpx.Response(500, json={"error": {"message": "overloaded"}}))
        with pytest.raises(UpstreamError) as exc_info:
            await make_client(handler).complete("hi", [])
        assert exc_info.value.status_code == 500
        assert "overloaded" in exc_info.value.body
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        handler = ScriptedHandler(httpx.ReadTimeout("read timed out"))
        with pytest.raises(ProviderTimeoutError):
            await make_client(handler).complete("hi", [])
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_trickling_body_is_cut_off_at_the_deadline(self):
        handler = ScriptedHandler(lambda: trickling_response(byte_by_byte(completion_body("slow")), delay=0.02))
        client = GeneralClient(
            api_key="test-key", base_url=FALLBACK_BASE_URL, timeout=0.2, http_client=mock_http_client(handler)
        )

        started = time.monotonic()
        with pytest.raises(ProviderTimeoutError) as exc_info:
            await client.complete("hi", [])

        assert time.monotonic() - started < 1.5
        assert exc_info.value.provider == "fallback"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        with pytest.raises(NetworkError):
            await make_client(ScriptedHandler(httpx.ConnectError("refused"))).complete("hi", [])

    @pytest.mark.asyncio
    async def test_missing_choices_is_malformed(self):
        body = completion_body("unused")
        body["choices"] = []
        with pytest.raises(MalformedResponseError):
            await make_client(ScriptedHandler(httpx.Response(200, json=body))).complete("hi", [])


class TestModels:
    @pytest.mark.asyncio
    async def test_list_models(self):
        catalogue = {
            "object": "list",
            "data": [
                {"id": "openai/gpt-4o", "object": "model", "created": 0, "owned_by": "openai"},
                {"id": "meta-llama/llama-3.1-8b-instruct:free", "object": "model", "created": 0, "owned_by": "meta"},
            ],
        }
        client = make_client(ScriptedHandler(httpx.Response(200, json=catalogue)))
        models = await client.list_models()
        assert [model.id for model in models] == ["openai/gpt-4o", "meta-llama/llama-3.1-8b-instruct:free"]
        assert models[0].provider == "openai"
        assert [model.id for model in await client.free_models()] == ["meta-llama/llama-3.1-8b-instruct:free"]

    @pytest.mark.asyncio
    async def test_list_models_defaults_on_error(self):
        client = make_client(ScriptedHandler(httpx.Response(503, json={"error": "unavailable"})))
        assert await client.list_models() == DEFAULT_MODELS


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_reports_availability(self):
        assert await make_client(ScriptedHandler(httpx.Response(200, json=completion_body("pong")))).probe() is True
        assert await make_client(ScriptedHandler(httpx.ConnectError("refused"))).probe() is False
