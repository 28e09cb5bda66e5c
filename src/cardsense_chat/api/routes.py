"""
HTTP routes for the chat gateway.

Every route is scoped to the user returned by the configured 'AuthProvider';
a conversation owned by another user is reported as not found. The gateway and
the diagnostics probe are read from 'app.state', where 'create_app' puts them.
"""

from collections.abc import AsyncIterator
from contextlib import aclosing

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from cardsense_chat.api.auth.base import AuthProvider
from cardsense_chat.conversation_database.data_models.conversation import Conversation
from cardsense_chat.conversation_database.data_models.message import Message
from cardsense_chat.diagnostics.probe import ConnectionReport, DiagnosticsProbe
from cardsense_chat.errors import ConversationNotFoundError
from cardsense_chat.gateway.controller import ChatGateway
from cardsense_chat.gateway.data_models import ExchangeResult, ServiceAvailability


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1)
    conversation_id: str | None = None


class UpdateTitleRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class NewConversationResponse(BaseModel):
    conversation_id: str


def get_gateway(request: Request) -> ChatGateway:
    return request.app.state.gateway


def get_probe(request: Request) -> DiagnosticsProbe:
    return request.app.state.probe


async def _owned_conversation(gateway: ChatGateway, conversation_id: str, user_id: str) -> Conversation:
    conversation = await gateway.store.get_conversation(conversation_id)
    if conversation.user_id != user_id:
        raise ConversationNotFoundError(conversation_id, user_id=user_id)
    return conversation


def create_router(auth: AuthProvider) -> APIRouter:
    router = APIRouter(prefix="/chat", tags=["chat"])
    current_user = Depends(auth.get_current_user_id)

    @router.post("/messages", response_model=ExchangeResult)
    async def send_message(
        body: SendMessageRequest,
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> ExchangeResult:
        return await gateway.send(user_id, body.text, body.conversation_id)

    @router.post("/messages/stream")
    async def stream_message(
        body: SendMessageRequest,
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> StreamingResponse:
        # The user message is stored before the response starts.
        stream = await gateway.begin_stream(user_id, body.text, body.conversation_id)

        async def events() -> AsyncIterator[str]:
            async with aclosing(stream):
                async for event in stream:
                    yield f"data: {event.model_dump_json()}\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    @router.get("/conversations", response_model=list[Conversation])
    async def list_conversations(
        limit: int = Query(default=20, ge=1, le=100),
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> list[Conversation]:
        return await gateway.store.list_conversations(user_id, limit)

    @router.post("/conversations/new", response_model=NewConversationResponse)
    async def start_new_conversation(
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> NewConversationResponse:
        return NewConversationResponse(conversation_id=await gateway.start_new_conversation(user_id))

    @router.get("/conversations/{conversation_id}/messages", response_model=list[Message])
    async def get_messages(
        conversation_id: str,
        limit: int = Query(default=50, ge=1, le=500),
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> list[Message]:
        await _owned_conversation(gateway, conversation_id, user_id)
        return await gateway.store.load_history(conversation_id, limit)

    @router.post("/conversations/{conversation_id}/archive", status_code=204)
    async def archive_conversation(
        conversation_id: str,
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> Response:
        await _owned_conversation(gateway, conversation_id, user_id)
        await gateway.store.archive_conversation(conversation_id)
        return Response(status_code=204)

    @router.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(
        conversation_id: str,
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> Response:
        await _owned_conversation(gateway, conversation_id, user_id)
        await gateway.store.delete_conversation(conversation_id)
        return Response(status_code=204)

    @router.patch("/conversations/{conversation_id}", response_model=Conversation)
    async def rename_conversation(
        conversation_id: str,
        body: UpdateTitleRequest,
        user_id: str = current_user,
        gateway: ChatGateway = Depends(get_gateway),
    ) -> Conversation:
        await _owned_conversation(gateway, conversation_id, user_id)
        await gateway.store.update_title(conversation_id, body.title.strip())
        return await gateway.store.get_conversation(conversation_id)

    @router.get("/status", response_model=ServiceAvailability)
    async def service_status(gateway: ChatGateway = Depends(get_gateway)) -> ServiceAvailability:
        return await gateway.check_service_availability()

    @router.get("/diagnostics", response_model=ConnectionReport)
    async def diagnostics(probe: DiagnosticsProbe = Depends(get_probe)) -> ConnectionReport:
        return await probe.test_connection_detailed()

    return router
