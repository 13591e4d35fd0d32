"""
auth/providers.py -- Provider interface and helpers shared by every provider kind.

Provider kinds:
  OAuth2Provider  (auth/oauth.py)  -- redirect + callback handshake
  DirectProvider  (auth/direct.py) -- credential check, no redirect
  VerifyProvider  (auth/direct.py) -- confirmation link/code sent by a Sender
  custom          -- any Provider subclass handed to AuthService.add_custom_provider()

All of them converge on the same terminal step: TokenService.issue() with a
fresh session claim, or an AuthError carrying the provider name.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from auth.errors import AuthError
from auth.models import User
from auth.tokens import TokenService

logger = logging.getLogger("authgate.auth.providers")


class AvatarSaver(Protocol):
    """Persists a user's picture and returns the proxied URL."""

    async def put(self, user: User) -> str: ...


class Validator(Protocol):
    """User-defined veto over otherwise valid tokens. Return False to reject."""

    def __call__(self, token: str, claims: Any) -> bool: ...


@dataclass
class ProviderParams:
    """Shared dependencies injected into every provider at registration time.

    url is the public root of the service; auth_route is where the action
    dispatcher is mounted, so callbacks land on <url><auth_route>?action=callback.
    user_attributes maps provider user-info keys to User.attributes keys.
    """

    tokens: TokenService
    url: str = "http://localhost:8000"
    auth_route: str = "/auth"
    issuer: str = "authgate"
    avatar_saver: Optional[AvatarSaver] = None
    validator: Optional[Validator] = None
    http_timeout: float = 5.0
    user_attributes: dict[str, str] = field(default_factory=dict)


class Provider(ABC):
    """Handshake handlers for one named identity provider."""

    name: str

    @abstractmethod
    async def login(self, request: Request) -> Response: ...

    async def callback(self, request: Request) -> Response:
        """Providers without a remote redirect have nothing to do on callback."""
        return JSONResponse({"error": {"code": "not_supported", "message": "callback not supported"}}, status_code=404)

    @abstractmethod
    async def logout(self, request: Request) -> Response: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def safe_from(from_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Anything absolute or protocol-relative ("//evil.example") is dropped so
    the login flow can't be used as an open redirect.
    """
    if from_url and from_url.startswith("/") and not from_url.startswith("//"):
        return from_url
    return ""


def is_flag(value: Optional[str]) -> bool:
    return bool(value) and value != "0"


async def set_avatar(saver: Optional[AvatarSaver], user: User) -> User:
    """Swap user.picture for a proxied avatar URL.

    Avatar failures never fail a login: the picture is dropped and the
    handshake carries on.
    """
    if saver is None or not user.picture:
        return user
    try:
        user.picture = await saver.put(user)
    except Exception:
        logger.warning("failed to save avatar for %s, proceeding without picture", user.id, exc_info=True)
        user.picture = ""
    return user


def error_response(exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})
