"""
auth/direct.py -- Providers that authenticate without a remote redirect.

DirectProvider: checks user/password with a caller-supplied credential checker
    and issues a session token straight away.

        GET  <auth>?action=login&using=local&user=name&passwd=xyz&aud=site&sess=1
        POST <auth>?action=login&using=local  (form or JSON body: user, passwd, aud)

VerifyProvider: two-step proof of address ownership. The first call signs a
    confirmation token (a handshake token carrying "user::address") and hands
    it to a Sender (email, chat, sms...). The second call presents that token
    and gets a session.

        GET <auth>?action=login&using=email&user=name&address=a@b.c&site=x
        GET <auth>?action=login&using=email&token=<confirmation token>

Both converge on the same terminal step as the OAuth2 handshake: avatar,
TokenService.issue(), JSON user (or redirect to "from").

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, Protocol, Union

from jinja2 import Template, TemplateError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from auth.errors import AuthError, CredentialCheckFailed, Malformed, ValidatorRejected
from auth.models import Claims, Handshake, User
from auth.providers import Provider, ProviderParams, is_flag, safe_from, set_avatar
from auth.tokens import hash_id

logger = logging.getLogger("authgate.auth.direct")

CredChecker = Callable[[str, str], Union[bool, Awaitable[bool]]]
UserIDFunc = Callable[[str, Request], str]

_CONFIRMATION_TTL = 30 * 60

DEFAULT_MESSAGE_TEMPLATE = "Confirmation for {{ user }} {{ address }}, site {{ site }}\n\nToken: {{ token }}\n"


class Sender(Protocol):
    """Delivers a confirmation message to an address."""

    async def send(self, address: str, text: str) -> None: ...


async def _issue_session(params: ProviderParams, provider: str, claims: Claims, from_url: str = "") -> Response:
    """Mint, validate, and write a session token; shared tail of every non-OAuth login."""
    claims, raw = params.tokens.mint(claims)
    if params.validator is not None and not params.validator(raw, claims):
        raise ValidatorRejected(f"user {claims.user.name}/{claims.user.id} rejected", provider=provider)
    response: Response
    if from_url:
        response = RedirectResponse(from_url, status_code=302)
    else:
        response = JSONResponse(claims.user.to_dict())
    response.headers["Cache-Control"] = "no-store"
    params.tokens.write(response, claims, raw)
    logger.info("user %s logged in with %s", claims.user.id, provider)
    return response


# ---------------------------------------------------------------------------
# Direct (credential check)
# ---------------------------------------------------------------------------


class DirectProvider(Provider):
    """Username/password login against a caller-supplied checker.

    The checker may be sync or async. Sync checkers run in the threadpool
    because real ones (bcrypt, database lookups) block.
    """

    def __init__(
        self,
        name: str,
        params: ProviderParams,
        cred_checker: CredChecker,
        user_id_func: Optional[UserIDFunc] = None,
    ) -> None:
        self.name = name
        self.params = params
        self.cred_checker = cred_checker
        self.user_id_func = user_id_func

    async def login(self, request: Request) -> Response:
        user, passwd, aud = await self._credentials(request)

        try:
            if inspect.iscoroutinefunction(self.cred_checker):
                ok = await self.cred_checker(user, passwd)
            else:
                ok = await run_in_threadpool(self.cred_checker, user, passwd)
                if inspect.isawaitable(ok):
                    # callable object with an async __call__
                    ok = await ok
        except Exception as exc:
            logger.warning("credential check for %s failed: %s", self.name, exc)
            raise CredentialCheckFailed(
                "failed to check user credentials", provider=self.name, status_code=500
            ) from exc
        if not ok:
            raise CredentialCheckFailed("incorrect user or password", provider=self.name)

        id_source = self.user_id_func(user, request) if self.user_id_func else user
        u = User(id=f"{self.name}_{hash_id(id_source)}", name=user)
        u = await set_avatar(self.params.avatar_saver, u)
        claims = Claims(user=u, audience=aud, session_only=request.query_params.get("sess") == "1")
        return await _issue_session(self.params, self.name, claims)

    async def logout(self, request: Request) -> Response:
        response = JSONResponse({"message": "Logged out."})
        self.params.tokens.clear(response)
        return response

    async def _credentials(self, request: Request) -> tuple[str, str, str]:
        """Return (user, passwd, aud) from the query (GET) or the form/JSON body (POST)."""
        if request.method == "GET":
            q = request.query_params
            return q.get("user", ""), q.get("passwd", ""), q.get("aud", "")

        content_type = request.headers.get("content-type", "")
        try:
            if content_type.startswith("application/json"):
                body = await request.json()
                if not isinstance(body, dict):
                    raise ValueError("body is not an object")
            else:
                body = dict(await request.form())
        except (ValueError, json.JSONDecodeError, AssertionError) as exc:
            raise Malformed(f"failed to parse credentials: {exc}", provider=self.name) from exc
        return str(body.get("user", "")), str(body.get("passwd", "")), str(body.get("aud", ""))


# ---------------------------------------------------------------------------
# Verification link / code
# ---------------------------------------------------------------------------


def gravatar_url(email: str) -> str:
    digest = hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()  # noqa: S324 -- gravatar's scheme
    return f"https://www.gravatar.com/avatar/{digest}.jpg"


class VerifyProvider(Provider):
    """Confirms ownership of an address through a message sent by a Sender."""

    def __init__(
        self,
        name: str,
        params: ProviderParams,
        sender: Sender,
        template: str = DEFAULT_MESSAGE_TEMPLATE,
        use_gravatar: bool = False,
    ) -> None:
        self.name = name
        self.params = params
        self.sender = sender
        self.template = Template(template)
        self.use_gravatar = use_gravatar

    async def login(self, request: Request) -> Response:
        confirmation = request.query_params.get("token", "")
        if not confirmation:
            return await self._send_confirmation(request)

        tokens = self.params.tokens
        try:
            conf_claims = tokens.parse(confirmation)
        except AuthError as exc:
            raise CredentialCheckFailed(f"failed to verify confirmation token: {exc.message}", provider=self.name) from exc
        if tokens.is_expired(conf_claims):
            raise CredentialCheckFailed("confirmation token expired", provider=self.name)
        if conf_claims.handshake is None:
            raise Malformed("invalid confirmation token", provider=self.name)

        parts = conf_claims.handshake.id.split("::")
        if len(parts) != 2:
            raise Malformed("invalid handshake token", provider=self.name)
        user_name, address = parts

        u = User(id=f"{self.name}_{hash_id(address)}", name=user_name)
        if "@" in address:
            u.email = address
            if self.use_gravatar:
                u.picture = gravatar_url(address)
        u = await set_avatar(self.params.avatar_saver, u)

        claims = Claims(
            user=u,
            audience=conf_claims.audience,
            session_only=request.query_params.get("sess") == "1" or conf_claims.session_only,
        )
        return await _issue_session(self.params, self.name, claims, conf_claims.handshake.from_url)

    async def _send_confirmation(self, request: Request) -> Response:
        q = request.query_params
        user, address, site = q.get("user", ""), q.get("address", ""), q.get("site", "")
        if not user or not address:
            raise Malformed("can't get user and address", provider=self.name)

        tokens = self.params.tokens
        now = int(tokens.clock())
        claims = Claims(
            handshake=Handshake(id=f"{user}::{address}", from_url=safe_from(q.get("from"))),
            session_only=is_flag(q.get("session")),
            audience=site,
            issuer=self.params.issuer,
            expires_at=now + _CONFIRMATION_TTL,
            not_before=now - 60,
        )
        confirmation = tokens.token(claims)

        try:
            text = self.template.render(user=user, address=address, token=confirmation, site=site)
        except TemplateError as exc:
            logger.error("can't render confirmation message for %s: %s", self.name, exc)
            raise CredentialCheckFailed("can't render confirmation message", provider=self.name) from exc

        try:
            await self.sender.send(address, text)
        except Exception as exc:
            logger.warning("failed to send confirmation via %s: %s", self.name, exc)
            raise CredentialCheckFailed("failed to send confirmation", provider=self.name, status_code=500) from exc

        return JSONResponse({"user": user, "address": address})

    async def logout(self, request: Request) -> Response:
        response = JSONResponse({"message": "Logged out."})
        self.params.tokens.clear(response)
        return response
