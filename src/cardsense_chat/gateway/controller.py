"""
Chat gateway (Facade).

'ChatGateway' is the single entry point for a chat exchange. It coordinates the
conversation store and the two providers for one user message:

    1. resolve the conversation (the given id, or the user's active one)
    2. persist the user message, so it survives any provider failure
    3. load the bounded history window
    4. ask the knowledge backend (primary)
    5. on any provider error ask the general backend (fallback) exactly once and
       mark the answer with 'FALLBACK_DISCLOSURE'; if that fails too, return
       'TOTAL_FAILURE_MESSAGE' and store nothing else
    6. persist the assistant message with the model used and the round-trip time
    7. refresh the conversation title in the background for the first exchanges

Primary and fallback are never called concurrently and the primary is never
retried within an exchange. The gateway holds no conversation state between
calls; the store is the source of truth.

The public entry points are:

    'send'         - returns the final 'ExchangeResult'.
    'send_stream'  - async generator yielding content chunks, then one 'done'
                     event carrying the 'ExchangeResult'.
    'begin_stream' - stores the user message, then returns that generator.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import aclosing

from loguru import logger

from cardsense_chat.config import GatewaySettings
from cardsense_chat.conversation_database.data_models.message import Message, Sender
from cardsense_chat.conversation_database.store import ConversationStore
from cardsense_chat.errors import (
    ConversationNotFoundError,
    MalformedResponseError,
    PersistenceError,
    ProviderError,
    TotalFailureError,
)
from cardsense_chat.gateway.data_models import (
    FALLBACK_DISCLOSURE,
    TOTAL_FAILURE_MESSAGE,
    ExchangeResult,
    ExchangeState,
    ServiceAvailability,
    StreamEvent,
)
from cardsense_chat.llms.base import LLMMessage
from cardsense_chat.llms.general import GeneralClient
from cardsense_chat.llms.knowledge import KnowledgeClient
from cardsense_chat.llms.prompts import PromptProvider
from cardsense_chat.utils.logging import preview
from cardsense_chat.utils.time import Stopwatch

TITLE_REFRESH_MAX_MESSAGES = 4
FALLBACK_SWITCH_NOTICE = "\n\n_Switching to backup AI service..._\n\n"


class ChatGateway:
    def __init__(
        self,
        store: ConversationStore,
        primary: KnowledgeClient,
        fallback: GeneralClient,
        history_window: int = 20,
        primary_model_label: str = "cardsense-rag",
    ) -> None:
        self.store = store
        self.primary = primary
        self.fallback = fallback
        self.history_window = history_window
        self.primary_model_label = primary_model_label
        self._title_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(cls, settings: GatewaySettings, store: ConversationStore) -> "ChatGateway":
        primary = KnowledgeClient(
            endpoint=settings.primary_endpoint,
            wire_format=settings.wire_format,
            timeout=settings.request_timeout,
        )
        fallback = GeneralClient(
            api_key=settings.fallback_api_key,
            base_url=settings.fallback_base_url,
            model_name=settings.fallback_model,
            app_name=settings.app_name,
            app_url=settings.app_url,
            timeout=settings.request_timeout,
            prompts=PromptProvider(settings.system_prompt_path),
        )
        logger.info(
            f"Chat gateway ready (primary={settings.primary_endpoint} format={settings.wire_format.value} "
            f"fallback={settings.fallback_model} history_window={settings.history_window})"
        )
        return cls(
            store,
            primary,
            fallback,
            history_window=settings.history_window,
            primary_model_label=settings.primary_model_label,
        )

    async def _resolve_conversation(self, user_id: str, conversation_id: str | None) -> str:
        if conversation_id is None:
            return await self.store.get_or_create_active_conversation(user_id)
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.user_id != user_id:
            raise ConversationNotFoundError(conversation_id, user_id=user_id)
        return conversation.id

    async def _load_context(self, conversation_id: str, current: Message) -> list[LLMMessage]:
        if self.history_window <= 0:
            return []
        messages = await self.store.load_history(conversation_id, self.history_window + 1)
        earlier = [message for message in messages if message.id != current.id]
        return [message.to_llm_message() for message in earlier[-self.history_window :]]

    async def _open_exchange(self, user_id: str, text: str, conversation_id: str | None) -> tuple[str, Message]:
        conversation_id = await self._resolve_conversation(user_id, conversation_id)
        user_message = await self.store.append_message(conversation_id, user_id, Sender.USER, text)
        logger.debug(f"Exchange opened in conversation {conversation_id}: {preview(text)!r}")
        return conversation_id, user_message

    async def _ask_fallback(
        self, text: str, history: list[LLMMessage], primary_error: ProviderError
    ) -> tuple[str, str]:
        logger.warning(f"Knowledge API failed ({primary_error.kind}), falling back to general provider: {primary_error}")
        logger.debug(f"Exchange state: {ExchangeState.FALLBACK_ATTEMPT}")
        try:
            content = await self.fallback.complete(text, history)
        except ProviderError as fallback_error:
            logger.error(f"Both knowledge and fallback providers failed: {fallback_error}")
            raise TotalFailureError(primary_error, fallback_error) from fallback_error
        return f"{content}{FALLBACK_DISCLOSURE}", self.fallback.model_name

    async def _answer(self, text: str, history: list[LLMMessage]) -> tuple[str, str, ProviderError | None]:
        logger.debug(f"Exchange state: {ExchangeState.PRIMARY_ATTEMPT}")
        try:
            answer = await self.primary.query(text, history)
        except ProviderError as exc:
            content, model_used = await self._ask_fallback(text, history, exc)
            return content, model_used, exc
        logger.info("Successfully got knowledge API response")
        return answer.content, self.primary_model_label, None

    def _failed(self, conversation_id: str, user_message: Message, failure: TotalFailureError) -> ExchangeResult:
        return ExchangeResult(
            conversation_id=conversation_id,
            content=TOTAL_FAILURE_MESSAGE,
            state=ExchangeState.FAILED,
            used_fallback=True,
            user_message=user_message,
            primary_error=failure.primary_error.kind,
            fallback_error=failure.fallback_error.kind,
        )

    async def _close_exchange(
        self,
        conversation_id: str,
        user_message: Message,
        content: str,
        model_used: str,
        primary_error: ProviderError | None,
        response_time_ms: int,
    ) -> ExchangeResult:
        result = ExchangeResult(
            conversation_id=conversation_id,
            content=content,
            state=ExchangeState.SUCCESS,
            used_fallback=primary_error is not None,
            model_used=model_used,
            response_time_ms=response_time_ms,
            user_message=user_message,
            primary_error=primary_error.kind if primary_error else None,
        )
        try:
            assistant_message = await self.store.append_message(
                conversation_id,
                user_message.user_id,
                Sender.ASSISTANT,
                content,
                model_used=model_used,
                response_time_ms=response_time_ms,
            )
        except PersistenceError as exc:
            logger.error(
                f"Data integrity warning: assistant reply in conversation {conversation_id} "
                f"was shown but not persisted: {exc}"
            )
            return result.model_copy(update={"persistence_error": str(exc)})

        if assistant_message.sequence <= TITLE_REFRESH_MAX_MESSAGES:
            self._schedule_title_refresh(conversation_id)
        return result.model_copy(update={"assistant_message": assistant_message})

    async def send(self, user_id: str, text: str, conversation_id: str | None = None) -> ExchangeResult:
        """Run one exchange and return its outcome.

        Raises 'PersistenceError' only when the user message itself cannot be
        stored (or the conversation does not exist); every later failure is
        reported in the returned 'ExchangeResult'.
        """
        conversation_id, user_message = await self._open_exchange(user_id, text, conversation_id)
        stopwatch = Stopwatch()
        history = await self._load_context(conversation_id, user_message)
        try:
            content, model_used, primary_error = await self._answer(text, history)
        except TotalFailureError as failure:
            return self._failed(conversation_id, user_message, failure)
        return await self._close_exchange(
            conversation_id, user_message, content, model_used, primary_error, stopwatch.elapsed_ms
        )

    async def begin_stream(
        self, user_id: str, text: str, conversation_id: str | None = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """Open a streamed exchange and return its event generator.

        The conversation is resolved and the user message stored before this
        returns, so 'PersistenceError' and 'ConversationNotFoundError' are raised
        here rather than from inside the stream.
        """
        conversation_id, user_message = await self._open_exchange(user_id, text, conversation_id)
        return self._stream_exchange(conversation_id, user_message)

    async def send_stream(
        self, user_id: str, text: str, conversation_id: str | None = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream one exchange.

        Primary chunks are forwarded as they arrive. If the primary fails
        (before or during the stream) the fallback answer follows as a single
        chunk. The stored assistant message is the full answer of whichever
        provider completed. Closing the generator early stops the upstream
        request and stores no assistant message.
        """
        async with aclosing(await self.begin_stream(user_id, text, conversation_id)) as events:
            async for event in events:
                yield event

    async def _stream_exchange(self, conversation_id: str, user_message: Message) -> AsyncGenerator[StreamEvent, None]:
        text = user_message.text
        stopwatch = Stopwatch()
        history = await self._load_context(conversation_id, user_message)

        content = ""
        primary_error: ProviderError | None = None
        try:
            async with aclosing(self.primary.query_stream(text, history)) as stream:
                async for chunk in stream:
                    content += chunk
                    yield StreamEvent(type="chunk", content=chunk)
            if not content.strip():
                raise MalformedResponseError("No content received from knowledge API stream", provider=self.primary.name)
        except ProviderError as exc:
            primary_error = exc

        model_used = self.primary_model_label
        if primary_error is not None:
            if content:
                yield StreamEvent(type="chunk", content=FALLBACK_SWITCH_NOTICE)
            try:
                content, model_used = await self._ask_fallback(text, history, primary_error)
            except TotalFailureError as failure:
                result = self._failed(conversation_id, user_message, failure)
                yield StreamEvent(type="chunk", content=result.content)
                yield StreamEvent(type="done", result=result)
                return
            yield StreamEvent(type="chunk", content=content)

        result = await self._close_exchange(
            conversation_id, user_message, content, model_used, primary_error, stopwatch.elapsed_ms
        )
        yield StreamEvent(type="done", result=result)

    def _schedule_title_refresh(self, conversation_id: str) -> None:
        task = asyncio.create_task(self._refresh_title(conversation_id))
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)

    async def _refresh_title(self, conversation_id: str) -> None:
        try:
            title = await self.store.generate_title(conversation_id)
            await self.store.update_title(conversation_id, title)
        except Exception as exc:
            logger.error(f"Failed to update title of conversation {conversation_id}: {exc!r}")

    async def wait_for_background_tasks(self) -> None:
        if self._title_tasks:
            await asyncio.gather(*self._title_tasks)

    async def start_new_conversation(self, user_id: str) -> str:
        return await self.store.start_new_conversation(user_id)

    async def check_service_availability(self) -> ServiceAvailability:
        primary, fallback = await asyncio.gather(self.primary.probe(), self.fallback.probe())
        return ServiceAvailability(primary=primary, fallback=fallback)

    async def aclose(self) -> None:
        await self.wait_for_background_tasks()
        await self.primary.aclose()
        await self.fallback.aclose()
