"""
api/routes/v1/auth.py -- Handshake endpoint, avatar route, and identity routes.

handshake_router (mounted at the root, paths from Settings):
  <AUTH_ROUTE>                 -- every method, dispatched by AuthService.handle()
  <AVATAR_ROUTE>/{avatar_id}   -- proxied avatar images

router (mounted under /api/v1):
  GET /auth/providers          -- registered provider names
  GET /auth/me                 -- current user (401 without a session)
  GET /auth/whoami             -- current user or null, never 401
  GET /auth/admin              -- admin users only

The handshake endpoint is rate limited (LOGIN_RATE_LIMIT) as brute-force
mitigation for the direct (password) provider.
"""

from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import ProvidersResponse, UserInfo
from auth.dependencies import optional_user, require_admin, require_user
from auth.models import User
from core.config import get_settings

_settings = get_settings()

_RE_AVATAR_ID = re.compile(r"^[a-f0-9]{40}\.image$")

handshake_router = APIRouter()
router = APIRouter()


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@handshake_router.api_route(
    _settings.auth_route,
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    tags=["Auth"],
)
async def auth_handler(request: Request) -> Response:
    """Login, callback, logout, list, user, and status actions for every provider."""
    return await request.app.state.auth.handle(request)


@handshake_router.get(_settings.avatar_route + "/{avatar_id}", tags=["Auth"])
async def avatar(avatar_id: str, request: Request) -> Response:
    """Serve a proxied avatar. Supports If-None-Match revalidation."""
    proxy = request.app.state.auth.avatar_proxy
    if proxy is None or not _RE_AVATAR_ID.match(avatar_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Avatar not found."})

    found = await run_in_threadpool(proxy.load, avatar_id)
    if found is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Avatar not found."})
    data, content_type, etag = found

    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers={"ETag": etag})
    return Response(
        content=data,
        media_type=content_type,
        headers={"ETag": etag, "Cache-Control": "public, max-age=86400"},
    )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=ProvidersResponse)
async def list_providers(request: Request) -> ProvidersResponse:
    """Return the registered provider names, in registration order."""
    return ProvidersResponse(providers=request.app.state.auth.registry.names())


@router.get("/auth/me", response_model=UserInfo)
async def me(current_user: User = Depends(require_user)) -> UserInfo:
    """Return the authenticated user. Refreshed cookies are attached when the token soft-expired."""
    return UserInfo.from_user(current_user)


@router.get("/auth/whoami", response_model=Optional[UserInfo])
async def whoami(current_user: Optional[User] = Depends(optional_user)) -> Optional[UserInfo]:
    if current_user is None:
        return None
    return UserInfo.from_user(current_user)


@router.get("/auth/admin", response_model=UserInfo)
async def admin(current_user: User = Depends(require_admin)) -> UserInfo:
    return UserInfo.from_user(current_user)
