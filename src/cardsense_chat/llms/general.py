"""
Client for the general-purpose chat-completion backend (fallback provider).

The fallback speaks the OpenAI chat-completions protocol (OpenRouter by
default), so it is driven through the OpenAI SDK pointed at a custom
'base_url'. SDK retries are disabled: one exchange makes at most one fallback
call, and retrying is left to the caller.
"""

from collections.abc import Sequence

import httpx
import openai
from loguru import logger
from openai import AsyncOpenAI
from pydantic import BaseModel

from cardsense_chat.errors import (
    CorsError,
    MalformedResponseError,
    NetworkError,
    ProviderTimeoutError,
    UpstreamError,
)
from cardsense_chat.llms.base import LLMMessage, ProviderClient, Roles, is_cross_origin_rejection
from cardsense_chat.llms.prompts import PromptProvider
from cardsense_chat.utils.logging import preview

TEMPERATURE = 0.7
MAX_TOKENS = 500


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str

    @classmethod
    def from_id(cls, model_id: str) -> "ModelInfo":
        provider, _, short_name = model_id.rpartition("/")
        return cls(id=model_id, name=short_name.replace("-", " ").upper(), provider=provider or short_name)


DEFAULT_MODELS = [
    ModelInfo(id="openai/gpt-4o-mini", name="GPT-4O Mini", provider="OpenAI"),
    ModelInfo(id="openai/gpt-4o", name="GPT-4O", provider="OpenAI"),
    ModelInfo(id="anthropic/claude-3-haiku", name="Claude 3 Haiku", provider="Anthropic"),
    ModelInfo(id="anthropic/claude-3-sonnet", name="Claude 3 Sonnet", provider="Anthropic"),
    ModelInfo(id="meta-llama/llama-3.1-8b-instruct:free", name="Llama 3.1 8B (Free)", provider="Meta"),
    ModelInfo(id="google/gemini-pro", name="Gemini Pro", provider="Google"),
]


class GeneralClient(ProviderClient):
    """
    Chat-completion client with a fixed persona and sampling parameters.

    Attributes:
        model_name: Default target model, overridable per call.
        prompts: Source of the system instruction prepended to every request.
    """

    name = "fallback"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        model_name: str = "openai/gpt-4o-mini",
        app_name: str = "CardSense AI",
        app_url: str = "https://cardsense.ai",
        timeout: float = 60.0,
        prompts: PromptProvider | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout)
        self.model_name = model_name
        self.prompts = prompts or PromptProvider()
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            default_headers={"HTTP-Referer": app_url, "X-Title": app_name},
            http_client=http_client,
        )

    def build_messages(self, text: str, history: Sequence[LLMMessage]) -> list[dict[str, str]]:
        return [
            LLMMessage(role=Roles.SYSTEM, content=self.prompts.get_system_prompt()).to_wire(),
            *(message.to_wire() for message in history if message.role is not Roles.SYSTEM),
            LLMMessage(role=Roles.USER, content=text).to_wire(),
        ]

    async def complete(self, text: str, history: Sequence[LLMMessage], model: str | None = None) -> str:
        selected_model = model or self.model_name
        logger.debug(f"Sending request to general provider: {selected_model}")
        try:
            completion = await self.within_deadline(
                self._client.chat.completions.create(
                    model=selected_model,
                    messages=self.build_messages(text, history),  # type: ignore[arg-type]
                    temperature=TEMPERATURE,
                    max_tokens=MAX_TOKENS,
                )
            )
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(
                f"{self.name} request timed out after {self.timeout:g}s", provider=self.name
            ) from exc
        except openai.APIConnectionError as exc:
            cause = exc.__cause__ or exc
            if is_cross_origin_rejection(cause):
                raise CorsError(f"{self.name} request rejected by cross-origin policy", details=str(cause), provider=self.name) from exc
            raise NetworkError(f"{self.name} connection failed", details=str(cause), provider=self.name) from exc
        except openai.APIStatusError as exc:
            logger.error(f"General provider error: {exc.status_code} - {preview(exc.response.text, 500)}")
            raise UpstreamError(
                f"API request failed: {exc.status_code}",
                status_code=exc.status_code,
                body=exc.response.text,
                provider=self.name,
            ) from exc
        except (openai.APIResponseValidationError, ValueError) as exc:
            raise MalformedResponseError(
                "General provider returned an unreadable response", details=str(exc), provider=self.name
            ) from exc

        choices = getattr(completion, "choices", None)
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None)
        if not isinstance(content, str) or not content.strip():
            raw = completion if isinstance(completion, str) else None
            raise MalformedResponseError("General provider response has no content", provider=self.name, raw_body=raw)

        logger.debug(f"Received response from general provider: {preview(content)}")
        return content

    async def list_models(self) -> list[ModelInfo]:
        try:
            page = await self._client.models.list()
        except openai.OpenAIError as exc:
            logger.warning(f"Failed to fetch models, returning defaults: {exc}")
            return list(DEFAULT_MODELS)
        return [ModelInfo.from_id(model.id) for model in page.data]

    async def free_models(self) -> list[ModelInfo]:
        return [model for model in await self.list_models() if ":free" in model.id]

    async def probe(self) -> bool:
        try:
            await self.complete("test", [])
        except Exception as exc:
            logger.error(f"General provider connection test failed: {exc}")
            return False
        return True

    async def aclose(self) -> None:
        await self._client.close()
