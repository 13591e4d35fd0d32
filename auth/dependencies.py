"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Authenticator runs one pipeline per request, in this order:
  1. Admin basic auth ("admin" / admin_passwd) when no custom checker is set.
  2. Custom basic-auth checker, when set.
  3. Token extraction (cookie, then header, then query) and verification.
  4. Handshake tokens are refused as session credentials.
  5. Claims must carry a user.
  6. Validator veto.
  7. The user's provider prefix must still be registered.
  8. Soft-expired tokens are refreshed through the RefreshCache and the new
     cookies are written to the response.
  9. request.state.user is set and the User is returned.

Modes:
  auth()        -- required; any failure is a 401 (AuthRejected).
  trace()       -- optional; failures are logged and the request continues
                   anonymously (returns None).
  admin_only()  -- required + User.is_admin.
  rbac(*roles)  -- required + User.role in roles (case-insensitive).

Steps 6-8 also clear the session cookies on failure: the credential is stale
or compromised, keeping it would just fail again on the next request.

The module-level functions (require_user, optional_user, require_admin,
require_role) look the Authenticator up on app.state.auth, so routers can use
them at import time before the app has started.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import dataclasses
import hmac
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from fastapi import HTTPException, Request, Response
from fastapi.security import HTTPBasic
from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AuthError,
    CredentialCheckFailed,
    HandshakeTokenRejected,
    NoUserInClaim,
    ProviderNotAllowed,
    RefreshFailed,
    ValidatorRejected,
)
from auth.models import Claims, User
from auth.providers import Validator
from auth.refresh import RefreshCache
from auth.registry import ProviderRegistry
from auth.tokens import TokenService

logger = logging.getLogger("authgate.auth.dependencies")

BasicResult = tuple[bool, Optional[User]]
BasicAuthChecker = Callable[[str, str], Union[BasicResult, Awaitable[BasicResult]]]

ADMIN_USER_NAME = "admin"

_basic = HTTPBasic(auto_error=False)


def admin_user() -> User:
    """Synthetic identity for requests authenticated with the admin password."""
    return User(id="admin", name="admin", attributes={"admin": True})


class AuthRejected(HTTPException):
    """401 raised by the required-mode dependencies.

    Carries the underlying AuthError for logging and tests. When
    reset_cookies is set, the app's HTTPException handler calls
    finalize() to clear the session cookies on the error response.
    """

    def __init__(self, error: AuthError, tokens: Optional[TokenService] = None, reset_cookies: bool = False) -> None:
        super().__init__(status_code=401, detail={"code": error.code, "message": "Unauthorized."})
        self.error = error
        self.tokens = tokens
        self.reset_cookies = reset_cookies

    def finalize(self, response: Response) -> None:
        if self.reset_cookies and self.tokens is not None:
            self.tokens.clear(response)


class _Fail(Exception):
    """Internal wrapper: an AuthError plus whether cookies must be cleared."""

    def __init__(self, error: AuthError, reset_cookies: bool = False) -> None:
        super().__init__(error.message)
        self.error = error
        self.reset_cookies = reset_cookies


class Authenticator:
    """Request-time authorization pipeline.

    Usage:
        authenticator = Authenticator(tokens, registry, refresh_cache=RefreshCache(TTLRefreshStore()))

        @app.get("/private")
        async def private(user: User = Depends(authenticator.auth)): ...
    """

    def __init__(
        self,
        tokens: TokenService,
        registry: ProviderRegistry,
        *,
        validator: Optional[Validator] = None,
        admin_passwd: str = "",
        basic_auth_checker: Optional[BasicAuthChecker] = None,
        refresh_cache: Optional[RefreshCache] = None,
    ) -> None:
        self.tokens = tokens
        self.registry = registry
        self.validator = validator
        self.admin_passwd = admin_passwd
        self.basic_auth_checker = basic_auth_checker
        self.refresh_cache = refresh_cache if refresh_cache is not None else RefreshCache(None)

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    async def auth(self, request: Request, response: Response) -> User:
        try:
            return await self._authenticate(request, response)
        except _Fail as fail:
            logger.warning("auth failed on %s %s: %s", request.method, request.url.path, fail.error.message)
            raise AuthRejected(fail.error, self.tokens, fail.reset_cookies) from fail.error

    async def trace(self, request: Request, response: Response) -> Optional[User]:
        try:
            return await self._authenticate(request, response)
        except _Fail as fail:
            logger.debug("anonymous request on %s: %s", request.url.path, fail.error.message)
            return None

    async def admin_only(self, request: Request, response: Response) -> User:
        user = await self.auth(request, response)
        if not user.is_admin:
            logger.warning("user %s is not admin", user.id)
            raise AuthRejected(CredentialCheckFailed("admin access required"))
        return user

    def rbac(self, *roles: str) -> Callable[[Request, Response], Awaitable[User]]:
        """Return a dependency accepting users whose role matches one of roles."""
        wanted = {r.lower() for r in roles}

        async def dependency(request: Request, response: Response) -> User:
            user = await self.auth(request, response)
            if user.role.lower() not in wanted:
                logger.warning("user %s role %r not in %s", user.id, user.role, sorted(wanted))
                raise AuthRejected(CredentialCheckFailed("role not allowed"))
            return user

        return dependency

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _authenticate(self, request: Request, response: Response) -> User:
        user = await self._basic_auth(request)
        if user is not None:
            request.state.user = user
            return user

        try:
            claims, token = self.tokens.extract(request)
        except AuthError as exc:
            raise _Fail(exc) from exc

        if claims.handshake is not None:
            raise _Fail(HandshakeTokenRejected("handshake token can't be used as a session credential"))
        if claims.user is None:
            raise _Fail(NoUserInClaim("no user info presented in the claim"))

        if self.validator is not None and not self.validator(token, claims):
            raise _Fail(ValidatorRejected(f"user {claims.user.name}/{claims.user.id} blocked"), reset_cookies=True)

        if not self.registry.is_allowed(claims.user.id):
            raise _Fail(ProviderNotAllowed(f"user {claims.user.id} from a provider that is not allowed"), reset_cookies=True)

        if self.tokens.is_expired(claims):
            claims = await self._refresh(token, claims, response)

        user = claims.user
        request.state.user = user
        return user

    async def _basic_auth(self, request: Request) -> Optional[User]:
        if self.basic_auth_checker is None and not self.admin_passwd:
            return None
        try:
            credentials = await _basic(request)
        except HTTPException:
            # unparseable Basic header, fall through to the token
            return None
        if credentials is None:
            return None

        if self.basic_auth_checker is not None:
            try:
                result = self.basic_auth_checker(credentials.username, credentials.password)
                if inspect.isawaitable(result):
                    result = await result
                ok, user = result
            except Exception as exc:
                logger.warning("basic auth check failed: %s", exc)
                raise _Fail(CredentialCheckFailed("basic auth check failed")) from exc
            if not ok or user is None:
                raise _Fail(CredentialCheckFailed(f"credentials for {credentials.username} rejected"))
            return user

        name_ok = hmac.compare_digest(credentials.username.encode(), ADMIN_USER_NAME.encode())
        passwd_ok = hmac.compare_digest(credentials.password.encode(), self.admin_passwd.encode())
        if name_ok and passwd_ok:
            return admin_user()
        return None

    async def _refresh(self, token: str, claims: Claims, response: Response) -> Claims:
        async def refresh() -> tuple[Claims, str]:
            # exp == 0 makes mint() stamp now + token_duration; claims_updater may block
            return await run_in_threadpool(self.tokens.mint, dataclasses.replace(claims, expires_at=0))

        try:
            fresh, fresh_token = await self.refresh_cache.get_or_refresh(token, refresh)
        except RefreshFailed as exc:
            raise _Fail(exc, reset_cookies=True) from exc
        self.tokens.write(response, fresh, fresh_token)
        logger.debug("token refreshed for %s", fresh.user.id if fresh.user else "?")
        return fresh


# ---------------------------------------------------------------------------
# App-bound dependencies
# ---------------------------------------------------------------------------


def _authenticator(request: Request) -> Authenticator:
    return request.app.state.auth.authenticator


async def require_user(request: Request, response: Response) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(require_user)): ...
    """
    return await _authenticator(request).auth(request, response)


async def optional_user(request: Request, response: Response) -> Optional[User]:
    """Soft variant of require_user: None for anonymous requests, never raises."""
    return await _authenticator(request).trace(request, response)


async def require_admin(request: Request, response: Response) -> User:
    return await _authenticator(request).admin_only(request, response)


def require_role(*roles: str) -> Callable[[Request, Response], Awaitable[User]]:
    """Dependency factory: require one of roles.

        @router.get("/reports", dependencies=[Depends(require_role("auditor", "admin"))])
    """

    async def dependency(request: Request, response: Response) -> User:
        return await _authenticator(request).rbac(*roles)(request, response)

    return dependency


def get_user_info(request: Request) -> Optional[User]:
    """Return the User attached by a previous dependency, or None."""
    return getattr(request.state, "user", None)
