"""
auth/apple.py -- Sign in with Apple.

Apple is an authorization-code provider that differs from the presets in
auth/oauth.py in three ways:

  client secret  -- not a static string but a short-lived ES256 JWT signed
                    with the team's private key (kid = key id, iss = team id,
                    sub = Services ID), minted for every client.
  identity       -- there is no user-info endpoint. The token endpoint
                    returns an id_token, verified against Apple's JWKS
                    (RS256, aud = Services ID, iss = appleid.apple.com).
  callback       -- with scopes requested Apple answers with
                    response_mode=form_post: a cross-site POST carrying
                    code, state and, on the first login only, a "user" JSON
                    field with the person's name.

A form_post callback only carries the handshake cookie when cookies are
issued with SameSite=None (and Secure); AuthService.add_apple_provider()
warns about any other setting.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from authlib.integrations.httpx_client import AsyncOAuth2Client
from jose import JOSEError, JWTError, jwt
from starlette.requests import Request

from auth.errors import ExchangeFailed
from auth.models import User
from auth.oauth import EXCHANGE_ERRORS, OAuth2Provider
from auth.providers import ProviderParams
from auth.tokens import hash_id

logger = logging.getLogger("authgate.auth.apple")

APPLE_ISSUER = "https://appleid.apple.com"
_AUTHORIZE_URL = APPLE_ISSUER + "/auth/authorize"
_TOKEN_URL = APPLE_ISSUER + "/auth/token"  # noqa: S105 -- URL, not a password
_KEYS_URL = APPLE_ISSUER + "/auth/keys"
_REVOKE_URL = APPLE_ISSUER + "/auth/revoke"

# Apple rejects client secrets valid for more than six months.
_MAX_SECRET_TTL = 180 * 24 * 3600

PrivateKeyLoader = Callable[[], str]


@dataclass
class AppleConfig:
    """Credentials from the Apple developer account.

    client_id is the Services ID (not the App ID); key_id names the
    "Sign in with Apple" private key registered for team_id.
    """

    client_id: str
    team_id: str
    key_id: str
    scopes: Sequence[str] = ("name", "email")
    response_mode: str = "form_post"
    secret_ttl: int = 10 * 60


def load_private_key_file(path: str) -> PrivateKeyLoader:
    """Loader for the .p8 file Apple hands out (PEM encoded PKCS#8 EC key)."""

    def load() -> str:
        return Path(path).read_text(encoding="utf-8")

    return load


class AppleProvider(OAuth2Provider):
    """OAuth2Provider with an ES256 client secret and id_token identity.

    The private key is loaded once; a missing or unusable key raises
    ValueError here rather than on the first login.
    """

    def __init__(
        self,
        params: ProviderParams,
        config: AppleConfig,
        key_loader: PrivateKeyLoader,
        name: str = "apple",
        client_kwargs: Optional[dict[str, Any]] = None,
    ) -> None:
        if not (config.client_id and config.team_id and config.key_id):
            raise ValueError("apple provider needs client_id, team_id and key_id")
        if not 0 < config.secret_ttl <= _MAX_SECRET_TTL:
            raise ValueError(f"apple secret_ttl must be in (0, {_MAX_SECRET_TTL}] seconds")
        super().__init__(
            name,
            params,
            config.client_id,
            "",
            authorize_url=_AUTHORIZE_URL,
            token_url=_TOKEN_URL,
            userinfo_url=_KEYS_URL,
            map_user=_map_apple,
            scopes=config.scopes,
            revoke_url=_REVOKE_URL,
            client_kwargs=client_kwargs,
        )
        self.config = config
        self._private_key = key_loader()
        if not self._private_key.strip():
            raise ValueError("apple private key is empty")
        try:
            self.client_secret_jwt()
        except JOSEError as exc:
            raise ValueError(f"can't sign with the apple private key: {exc}") from exc

    def client_secret_jwt(self) -> str:
        now = int(self.params.tokens.clock())
        claims = {
            "iss": self.config.team_id,
            "iat": now,
            "exp": now + self.config.secret_ttl,
            "aud": APPLE_ISSUER,
            "sub": self.config.client_id,
        }
        return jwt.encode(claims, self._private_key, algorithm="ES256", headers={"kid": self.config.key_id})

    def client(self) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret_jwt(),
            token_endpoint_auth_method="client_secret_post",
            revocation_endpoint_auth_method="client_secret_post",
            scope=" ".join(self.scopes) or None,
            redirect_uri=self.redirect_uri,
            timeout=self.params.http_timeout,
            **self.client_kwargs,
        )

    def authorize_params(self) -> dict[str, str]:
        return {"response_mode": self.config.response_mode}

    async def callback_params(self, request: Request) -> dict[str, str]:
        params = dict(request.query_params)
        if request.method == "POST":
            form = await request.form()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})
        return params

    async def _exchange(self, query: dict[str, str]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Trade the code for tokens and verify the id_token against Apple's keys."""
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
                resp = await client.get(self.userinfo_url, withhold_token=True)
                resp.raise_for_status()
                jwks = resp.json()
            except EXCHANGE_ERRORS as exc:
                logger.warning("key set request to %s failed: %s", self.name, exc)
                raise ExchangeFailed(f"failed to get apple keys: {exc}", provider=self.name) from exc

        id_token = oauth_token.get("id_token")
        if not id_token:
            raise ExchangeFailed("no id_token in token response", provider=self.name)
        try:
            data = jwt.decode(
                id_token,
                jwks,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=APPLE_ISSUER,
                access_token=oauth_token.get("access_token"),
            )
        except JWTError as exc:
            logger.warning("invalid id_token from %s: %s", self.name, exc)
            raise ExchangeFailed(f"invalid id_token: {exc}", provider=self.name) from exc

        data.update(_first_login_name(query.get("user", "")))
        return dict(oauth_token), data


def _first_login_name(raw: str) -> dict[str, str]:
    """{"name": "First Last"} from the form's "user" field, or {}."""
    if not raw:
        return {}
    try:
        info = json.loads(raw)
    except ValueError:
        logger.warning("apple user field is not JSON, ignored")
        return {}
    name = info.get("name") if isinstance(info, dict) else None
    if not isinstance(name, dict):
        return {}
    parts = [name.get("firstName"), name.get("lastName")]
    full = " ".join(p for p in parts if isinstance(p, str) and p)
    return {"name": full} if full else {}


def _map_apple(data: dict[str, Any]) -> User:
    # Apple sends the name once; later logins fall back to a stable placeholder.
    user = User(
        id="apple_" + hash_id(str(data["sub"])),
        name=str(data.get("name") or ""),
        email=str(data.get("email") or ""),
    )
    if not user.name:
        user.name = "noname_" + user.id[6:10]
    return user
