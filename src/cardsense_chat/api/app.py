"""
FastAPI application factory.

'create_app' wires the chat routes to a 'ChatGateway'. Passing a ready-made
gateway (and probe) is how tests and embedding applications use it; otherwise
the gateway, its SQL store and the diagnostics probe are built from
'GatewaySettings' on startup and closed on shutdown.

Usage:
    uvicorn cardsense_chat.api.app:create_app --factory
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from cardsense_chat.api.auth.base import AuthProvider, HeaderUserProvider
from cardsense_chat.api.routes import create_router
from cardsense_chat.config import GatewaySettings
from cardsense_chat.conversation_database.sql_store import SQLAlchemyConversationStore
from cardsense_chat.diagnostics.probe import DiagnosticsProbe
from cardsense_chat.errors import ConversationNotFoundError, PersistenceError
from cardsense_chat.gateway.controller import ChatGateway
from cardsense_chat.utils.logging import configure_logging


async def _not_found(request: Request, exc: ConversationNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content=exc.to_dict())


async def _persistence_failed(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=503, content=exc.to_dict())


def create_app(
    settings: GatewaySettings | None = None,
    gateway: ChatGateway | None = None,
    probe: DiagnosticsProbe | None = None,
    auth: AuthProvider | None = None,
) -> FastAPI:
    auth = auth or HeaderUserProvider()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if gateway is not None:
            app.state.gateway = gateway
            app.state.probe = probe or DiagnosticsProbe(gateway.primary)
            yield
            return

        config = settings or GatewaySettings.from_env()
        configure_logging(config.log_level)
        store = SQLAlchemyConversationStore.from_url(config.database_url)
        await store.create_schema()
        app.state.gateway = ChatGateway.from_settings(config, store)
        app.state.probe = DiagnosticsProbe(app.state.gateway.primary)
        logger.info(f"Chat API started with store at {config.database_url}")
        try:
            yield
        finally:
            await app.state.gateway.aclose()
            await app.state.probe.aclose()
            await store.close()
            logger.info("Chat API stopped")

    app = FastAPI(title="CardSense Chat API", lifespan=lifespan)
    app.add_exception_handler(ConversationNotFoundError, _not_found)  # type: ignore[arg-type]
    app.add_exception_handler(PersistenceError, _persistence_failed)  # type: ignore[arg-type]
    auth.bind_to_app(app)
    app.include_router(create_router(auth))
    return app
