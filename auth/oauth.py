"""
auth/oauth.py -- OAuth2 handshake engine and provider presets.

Handshake states:

  login     -> LoginInitiated: random state nonce signed into a short-lived
               handshake token (JWT cookie, session-only), 302 to the
               provider's authorize URL.
  callback  -> CallbackPending: the handshake token must be unexpired and its
               nonce equal to the returned state, checked BEFORE any
               network call. Then the
               code is exchanged, user info fetched and normalized, avatar
               proxied, Validator consulted.
            -> Authenticated: session token replaces the handshake token.
  logout    -> cookies cleared; remote revoke for providers with a revoke_url.
  any error -> Failed: AuthError with the provider name, never retried.

The OAuth2 protocol mechanics (authorize URL, code exchange, bearer requests,
revocation) are authlib's AsyncOAuth2Client. Every network call runs with a
bounded httpx timeout and inside the request task, so a cancelled request
cancels its in-flight provider calls.

Subclasses adjust the flow through authorize_params(), callback_params()
and _exchange(); see auth/apple.py.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable, Sequence
from typing import Any, Optional

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from auth.errors import AuthError, ExchangeFailed, NonceMismatch, ValidatorRejected
from auth.models import Claims, Handshake, User
from auth.providers import Provider, ProviderParams, error_response, is_flag, safe_from, set_avatar
from auth.tokens import hash_id, rand_token

logger = logging.getLogger("authgate.auth.oauth")

# Handshake tokens live just long enough for a human to finish the provider's login page.
_HANDSHAKE_TTL = 30 * 60

UserMapper = Callable[[dict[str, Any]], User]

# Errors raised by the provider round trips: transport, protocol, and bad JSON.
EXCHANGE_ERRORS = (httpx.HTTPError, AuthlibBaseError, ValueError, KeyError, TypeError)


class OAuth2Provider(Provider):
    """Authorization-code flow against one OAuth2 provider.

    client_kwargs are passed through to AsyncOAuth2Client (and from there to
    httpx.AsyncClient) -- e.g. a transport for the in-process dev server.
    """

    def __init__(
        self,
        name: str,
        params: ProviderParams,
        client_id: str,
        client_secret: str,
        *,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        map_user: UserMapper,
        scopes: Sequence[str] = (),
        revoke_url: str = "",
        client_kwargs: Optional[dict[str, Any]] = None,
    ) -> None:
        self.name = name
        self.params = params
        self.client_id = client_id
        self.client_secret = client_secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.map_user = map_user
        self.scopes = list(scopes)
        self.revoke_url = revoke_url
        self.client_kwargs = dict(client_kwargs or {})

    @property
    def redirect_uri(self) -> str:
        return f"{self.params.url.rstrip('/')}{self.params.auth_route}?action=callback&using={self.name}"

    def client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes) or None,
            redirect_uri=self.redirect_uri,
            timeout=self.params.http_timeout,
            **self.client_kwargs,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, request: Request) -> Response:
        """Start the handshake: sign the nonce into a handshake token and redirect.

        Query: from (relative redirect after login), site (audience),
        session=1 (session cookie), noava=1 (skip avatar proxy).
        """
        tokens = self.params.tokens
        query = request.query_params
        now = int(tokens.clock())
        state = rand_token()
        claims = Claims(
            handshake=Handshake(state=state, from_url=safe_from(query.get("from"))),
            audience=query.get("site", ""),
            expires_at=now + _HANDSHAKE_TTL,
            not_before=now - 60,
            session_only=is_flag(query.get("session")),
            no_ava=query.get("noava") == "1",
        )

        async with self.client() as client:
            login_url, _ = client.create_authorization_url(self.authorize_url, state=state, **self.authorize_params())

        response = RedirectResponse(login_url, status_code=302)
        tokens.issue(response, claims)
        logger.debug("login redirect for %s", self.name)
        return response

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    def authorize_params(self) -> dict[str, str]:
        """Extra query parameters for the authorize URL."""
        return {}

    async def callback_params(self, request: Request) -> dict[str, str]:
        """Parameters the provider sent back: code, state, error."""
        return dict(request.query_params)

    async def callback(self, request: Request) -> Response:
        tokens = self.params.tokens
        query = await self.callback_params(request)

        try:
            handshake_claims, _ = tokens.extract(request, check_xsrf=False)
        except AuthError as exc:
            raise NonceMismatch(f"failed to get handshake token: {exc.message}", provider=self.name) from exc

        handshake = handshake_claims.handshake
        if handshake is None or not handshake.state:
            raise NonceMismatch("invalid handshake token", provider=self.name)
        if tokens.is_expired(handshake_claims):
            raise NonceMismatch("handshake expired", provider=self.name)
        if not hmac.compare_digest(query.get("state", "").encode(), handshake.state.encode()):
            raise NonceMismatch("unexpected state", provider=self.name)

        if query.get("error"):
            raise ExchangeFailed(f"provider returned error {query.get('error')!r}", provider=self.name)

        oauth_token, data = await self._exchange(query)

        try:
            user = self.map_user(data)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("unexpected user info from %s: %s", self.name, exc)
            raise ExchangeFailed(f"can't map user info: {exc}", provider=self.name) from exc
        for src, dst in self.params.user_attributes.items():
            if src in data:
                user.attributes[dst] = data[src]
        if handshake_claims.no_ava:
            user.picture = ""
        else:
            user = await set_avatar(self.params.avatar_saver, user)

        claims = Claims(
            user=user,
            audience=handshake_claims.audience,
            session_only=handshake_claims.session_only,
            no_ava=handshake_claims.no_ava,
            provider_token=oauth_token.get("access_token", "") if self.revoke_url else "",
        )
        claims, raw = tokens.mint(claims)

        validator = self.params.validator
        if validator is not None and not validator(raw, claims):
            raise ValidatorRejected(f"user {user.name}/{user.id} rejected", provider=self.name)

        response: Response
        if handshake.from_url:
            response = RedirectResponse(handshake.from_url, status_code=302)
        else:
            response = JSONResponse(user.to_dict())
        response.headers["Cache-Control"] = "no-store"
        # overwrites the handshake token, which retires the nonce
        tokens.write(response, claims, raw)
        logger.info("user %s logged in with %s", user.id, self.name)
        return response

    async def _exchange(self, query: dict[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Trade the authorization code for a provider token, then fetch user info."""
        code = query.get("code", "")
        if not code:
            raise ExchangeFailed("no authorization code in callback", provider=self.name)
        async with self.client() as client:
            try:
                oauth_token = await client.fetch_token(self.token_url, code=code)
            except EXCHANGE_ERRORS as exc:
                logger.warning("token exchange with %s failed: %s", self.name, exc)
                raise ExchangeFailed(f"exchange failed: {exc}", provider=self.name) from exc
            try:
                resp = await client.get(self.userinfo_url)
                resp.raise_for_status()
                data = resp.json()
            except EXCHANGE_ERRORS as exc:
                logger.warning("user info request to %s failed: %s", self.name, exc)
                raise ExchangeFailed(f"failed to get user info: {exc}", provider=self.name) from exc
        if not isinstance(data, dict):
            raise ExchangeFailed("user info is not an object", provider=self.name)
        return dict(oauth_token), data

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self, request: Request) -> Response:
        tokens = self.params.tokens
        response: Response = JSONResponse({"message": "Logged out."})

        if self.revoke_url:
            try:
                claims, _ = tokens.extract(request)
            except AuthError:
                claims = None
            if claims is not None and claims.provider_token:
                try:
                    async with self.client() as client:
                        resp = await client.revoke_token(self.revoke_url, token=claims.provider_token)
                        resp.raise_for_status()
                except EXCHANGE_ERRORS as exc:
                    logger.warning("remote logout with %s failed: %s", self.name, exc)
                    response = error_response(
                        ExchangeFailed(f"failed to revoke remote session: {exc}", provider=self.name)
                    )

        tokens.clear(response)
        return response


# ---------------------------------------------------------------------------
# Presets -- endpoint URLs and user-info mapping per provider
# ---------------------------------------------------------------------------


def _value(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def _map_github(data: dict[str, Any]) -> User:
    user = User(
        id="github_" + hash_id(_value(data, "login")),
        name=_value(data, "name") or _value(data, "login"),
        picture=_value(data, "avatar_url"),
        email=_value(data, "email"),
    )
    return user


def _map_google(data: dict[str, Any]) -> User:
    user = User(
        id="google_" + hash_id(_value(data, "sub")),
        name=_value(data, "name"),
        picture=_value(data, "picture"),
        email=_value(data, "email"),
    )
    if not user.name:
        user.name = "noname_" + user.id[8:12]
    return user


def _map_facebook(data: dict[str, Any]) -> User:
    picture = ((data.get("picture") or {}).get("data") or {}).get("url", "")
    return User(
        id="facebook_" + hash_id(_value(data, "id")),
        name=_value(data, "name"),
        picture=picture,
        email=_value(data, "email"),
    )


def _map_microsoft(data: dict[str, Any]) -> User:
    return User(
        id="microsoft_" + hash_id(_value(data, "id")),
        name=_value(data, "displayName"),
        email=_value(data, "mail") or _value(data, "userPrincipalName"),
    )


def _map_yandex(data: dict[str, Any]) -> User:
    user = User(
        id="yandex_" + hash_id(_value(data, "id")),
        name=_value(data, "display_name") or _value(data, "real_name") or _value(data, "login"),
        email=_value(data, "default_email"),
    )
    if not data.get("is_avatar_empty") and data.get("default_avatar_id"):
        user.picture = f"https://avatars.yandex.net/get-yapic/{data['default_avatar_id']}/islands-200"
    return user


def _map_battlenet(data: dict[str, Any]) -> User:
    return User(id="battlenet_" + hash_id(_value(data, "id")), name=_value(data, "battletag"))


def _map_patreon(data: dict[str, Any]) -> User:
    inner = data.get("data") or {}
    attrs = inner.get("attributes") or {}
    return User(
        id="patreon_" + hash_id(_value(inner, "id")),
        name=_value(attrs, "full_name"),
        picture=_value(attrs, "image_url"),
        email=_value(attrs, "email"),
    )


_PRESETS: dict[str, dict[str, Any]] = {
    "github": {
        "authorize_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        "userinfo_url": "https://api.github.com/user",
        "scopes": [],
        "map_user": _map_github,
    },
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/auth",
        "token_url": "https://oauth2.googleapis.com/token",  # noqa: S106
        "userinfo_url": "https://www.googleapis.com/oauth2/v3/userinfo",
        "scopes": ["openid", "email", "profile"],
        "revoke_url": "https://oauth2.googleapis.com/revoke",
        "map_user": _map_google,
    },
    "facebook": {
        "authorize_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",  # noqa: S106
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email,picture",
        "scopes": ["public_profile"],
        "map_user": _map_facebook,
    },
    "microsoft": {
        "authorize_url": "https://login.microsoftonline.com/consumers/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/consumers/oauth2/v2.0/token",  # noqa: S106
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scopes": ["User.Read"],
        "map_user": _map_microsoft,
    },
    "yandex": {
        "authorize_url": "https://oauth.yandex.com/authorize",
        "token_url": "https://oauth.yandex.com/token",  # noqa: S106
        "userinfo_url": "https://login.yandex.ru/info?format=json",
        "scopes": [],
        "map_user": _map_yandex,
    },
    "battlenet": {
        "authorize_url": "https://oauth.battle.net/authorize",
        "token_url": "https://oauth.battle.net/token",  # noqa: S106
        "userinfo_url": "https://oauth.battle.net/userinfo",
        "scopes": [],
        "map_user": _map_battlenet,
    },
    "patreon": {
        "authorize_url": "https://www.patreon.com/oauth2/authorize",
        "token_url": "https://www.patreon.com/api/oauth2/token",  # noqa: S106
        "userinfo_url": "https://www.patreon.com/api/oauth2/v2/identity?fields%5Buser%5D=email,full_name,image_url",
        "scopes": ["identity", "identity[email]"],
        "map_user": _map_patreon,
    },
}


def preset_names() -> list[str]:
    return sorted(_PRESETS)


def make_preset(name: str, params: ProviderParams, client_id: str, client_secret: str, **kwargs: Any) -> OAuth2Provider:
    """Build a well-known provider by name. Raises KeyError for unknown names.

    kwargs override preset fields (e.g. a different userinfo_url or client_kwargs).
    """
    config = {**_PRESETS[name.lower()], **kwargs}
    return OAuth2Provider(name.lower(), params, client_id, client_secret, **config)
