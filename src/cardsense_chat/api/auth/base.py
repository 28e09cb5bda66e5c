"""
Authentication provider abstractions.

An 'AuthProvider' integrates with the FastAPI application to identify the
current user on every request. User management itself lives outside the chat
gateway; the API only needs a stable user id to scope conversations.

'HeaderUserProvider' trusts an upstream component (API gateway, reverse proxy,
the app's own auth layer) to authenticate the request and forward the user id
in a header.
"""

from abc import ABC, abstractmethod

from fastapi import FastAPI, HTTPException, Request
from loguru import logger

USER_ID_HEADER = "X-User-Id"


class AuthProvider(ABC):
    """
    Identifies the user behind a chat request.

    Subclasses resolve the user id from the request ('get_current_user_id',
    used as a FastAPI dependency by every chat route) and may hook extra routes
    or middleware into the app ('bind_to_app').
    """

    @abstractmethod
    def get_current_user_id(self, request: Request) -> str:
        """Return the id conversations are scoped to; raise a 401 'HTTPException' if there is none."""
        pass

    @abstractmethod
    def bind_to_app(self, app: FastAPI) -> None:
        """Register routes and middleware required by this provider."""
        pass


class HeaderUserProvider(AuthProvider):
    def __init__(self, header: str = USER_ID_HEADER) -> None:
        self.header = header

    def get_current_user_id(self, request: Request) -> str:
        user_id = request.headers.get(self.header, "").strip()
        if not user_id:
            raise HTTPException(status_code=401, detail=f"Missing {self.header} header")
        return user_id

    def bind_to_app(self, app: FastAPI) -> None:
        logger.info(f"Identifying users by the {self.header} header")
