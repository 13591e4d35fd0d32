"""
tests/conftest.py -- Shared test fixtures for authgate tests.

This module provides:
  - make_tokens(): TokenService with the test secret and any overrides
  - make_service(): AuthService wired for tests (isolated avatar DB, dev
    provider talking to an in-process DevOAuthServer)
  - make_app(): minimal FastAPI app exposing the handshake endpoint and one
    route per Authorizer mode, with the real app's HTTPException handler
  - fake_request(): bare Starlette Request for codec-level tests
  - api_client: TestClient over the real api.main app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the avatar store is written from the thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Provider traffic never leaves the process: OAuth2 clients and the avatar
proxy get an httpx.ASGITransport pointing at the DevOAuthServer app, or an
httpx.MockTransport in tests that need a misbehaving provider.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from http.cookies import Morsel, SimpleCookie
from typing import Any, Optional

# CRITICAL: Set env before any auth/core import so get_settings() picks it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import httpx
import pytest
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from starlette.responses import Response

from api.main import app, http_exception_handler
from auth.avatar import AvatarStore
from auth.dev import DevOAuthServer
from auth.models import Claims, User
from auth.service import AuthOptions, AuthService
from auth.tokens import TokenService, hash_id, static_secret

SECRET = "test-secret-0123456789abcdef0123456789"
ADMIN_PASSWD = "admin-password-123"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_tokens(**kwargs: Any) -> TokenService:
    return TokenService(static_secret(SECRET), **kwargs)


def avatar_store(db_suffix: str) -> AvatarStore:
    return AvatarStore(f"sqlite:///file:test_avatars_{db_suffix}?mode=memory&cache=shared&uri=true")


def make_service(
    dev: Optional[DevOAuthServer] = None,
    db_suffix: Optional[str] = None,
    **overrides: Any,
) -> AuthService:
    """AuthService for tests. With dev set, the "dev" provider is registered."""
    options: dict[str, Any] = {
        "secret_reader": static_secret(SECRET),
        "url": "http://testserver",
        "admin_passwd": ADMIN_PASSWD,
    }
    if db_suffix is not None:
        options["avatar_store"] = avatar_store(db_suffix)
    if dev is not None:
        options["avatar_client_kwargs"] = {"transport": httpx.ASGITransport(app=dev.app)}
    options.update(overrides)
    service = AuthService(AuthOptions(**options))
    if dev is not None:
        service.add_dev_provider(client_kwargs={"transport": httpx.ASGITransport(app=dev.app)})
    return service


def make_app(service: AuthService) -> FastAPI:
    """Handshake endpoint plus one route per Authorizer mode."""
    test_app = FastAPI()
    test_app.state.auth = service
    test_app.add_exception_handler(HTTPException, http_exception_handler)
    authenticator = service.authenticator

    @test_app.api_route("/auth", methods=["GET", "POST", "PUT", "DELETE"])
    async def auth_handler(request: Request) -> Response:
        return await service.handle(request)

    @test_app.get("/private")
    async def private(user: User = Depends(authenticator.auth)) -> dict:
        return user.to_dict()

    @test_app.post("/private")
    async def private_post(user: User = Depends(authenticator.auth)) -> dict:
        return user.to_dict()

    @test_app.get("/open")
    async def open_route(user: Optional[User] = Depends(authenticator.trace)) -> dict:
        return {"user": user.to_dict() if user else None}

    @test_app.get("/admin")
    async def admin_route(user: User = Depends(authenticator.admin_only)) -> dict:
        return user.to_dict()

    @test_app.get("/editors")
    async def editors(user: User = Depends(authenticator.rbac("Editor", "owner"))) -> dict:
        return user.to_dict()

    return test_app


def session_user(provider: str = "dev", name: str = "alice", **kwargs: Any) -> User:
    return User(id=f"{provider}_{hash_id(name)}", name=name, **kwargs)


def session_token(tokens: TokenService, user: Optional[User] = None, **claims: Any) -> str:
    """Mint a session token for user (default: a dev user)."""
    _, token = tokens.mint(Claims(user=user or session_user(), **claims))
    return token


def fake_request(
    method: str = "GET",
    cookies: Optional[dict[str, str]] = None,
    headers: Optional[dict[str, str]] = None,
    query: str = "",
) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        raw.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode()))
    scope = {
        "type": "http",
        "method": method,
        "path": "/",
        "query_string": query.encode(),
        "headers": raw,
    }
    return Request(scope)


def set_cookies(response: Response) -> dict[str, Morsel]:
    """Map cookie name -> parsed Set-Cookie morsel for a Starlette response."""
    result: dict[str, Morsel] = {}
    for header in response.headers.getlist("set-cookie"):
        cookie = SimpleCookie()
        cookie.load(header)
        for name in cookie:
            result[name] = cookie[name]
    return result


def set_cookie_headers(resp: httpx.Response) -> dict[str, str]:
    """Map cookie name -> raw Set-Cookie header of an httpx (TestClient) response."""
    return {h.split("=", 1)[0]: h for h in resp.headers.get_list("set-cookie")}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def dev_server() -> DevOAuthServer:
    return DevOAuthServer()


@pytest.fixture
def dev_client(dev_server: DevOAuthServer) -> Generator[TestClient, None, None]:
    """TestClient for the dev provider's own pages (the "browser" side of the handshake)."""
    with TestClient(dev_server.app, follow_redirects=False) as client:
        yield client


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-built test AuthService into app.state so TestClient routes
    never build providers from the environment or start the dev server.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth = service
        app.state.dev_server = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService, DevOAuthServer], None, None]:
    """Yield (client, service, dev_server) for integration tests of the real app.

    follow_redirects=False is essential: tests assert on redirect locations
    and drive the handshake one hop at a time.
    """
    dev = DevOAuthServer()
    service = make_service(dev=dev, db_suffix="api")
    service.freeze()

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, service, dev

    service.close()
