"""
auth/tokens.py -- JWT codec and cookie/header transport.

Security design decisions:
  JWT: python-jose with HS256. Claims carry an optional embedded User and an
       optional Handshake marker. parse() verifies the signature and the
       structure but deliberately NOT the expiry: an expired token is still
       trusted and is refreshed by the Authorizer (soft expiry). is_expired()
       is the single place where "exp" is compared against the clock.

  Secrets: a SecretReader callable maps an audience to a signing secret. With
       aud_secrets enabled the (unverified) "aud" claim selects the secret, so
       every site can have its own key; otherwise the reader is called with "".

  XSRF: issue() writes the token into an httpOnly JWT cookie plus a readable
       XSRF-TOKEN cookie holding the claim id. For state-changing requests that
       authenticate via the cookie, the client must echo the XSRF cookie in
       the X-XSRF-TOKEN header. Header/query tokens are not sent automatically
       by browsers, so they are exempt.

  Cookies: token TTL and cookie TTL are independent. The cookie outlives the
       token so the Authorizer can refresh a soft-expired token without a new
       login. Handshake and session_only tokens use session cookies.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import dataclasses
import hashlib
import hmac
import logging
import re
import secrets
import time
from collections.abc import Callable, Iterable

from jose import JWTError, jwt
from starlette.requests import HTTPConnection
from starlette.responses import Response

from auth.errors import Malformed, SignatureInvalid, XSRFMismatch
from auth.models import Claims

logger = logging.getLogger("authgate.auth.tokens")

_ALGORITHM = "HS256"

# Methods that never change server state; XSRF is only enforced on the rest.
_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

_RE_SHA1 = re.compile(r"^[a-fA-F0-9]{40}$")

SecretReader = Callable[[str], str]
AudienceReader = Callable[[], Iterable[str]]
ClaimsUpdater = Callable[[Claims], Claims]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def rand_token() -> str:
    """Return 40 random hex chars, used for nonces and token ids."""
    return hashlib.sha1(secrets.token_bytes(32)).hexdigest()  # noqa: S324 -- randomness, not integrity


def hash_id(value: str) -> str:
    """Return the sha1 hex of value, or value itself if it already is one.

    Provider user ids are hashed so the raw upstream id never appears in the
    token. Already-hashed values pass through so ids stay stable when a
    provider hands back a sha1 itself.
    """
    if _RE_SHA1.match(value):
        return value
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # noqa: S324 -- identifier, not a password


def static_secret(secret: str) -> SecretReader:
    """Return a SecretReader that ignores the audience and returns one global secret."""

    def reader(_aud: str) -> str:
        return secret

    return reader


def _missing_secret(_aud: str) -> str:
    raise LookupError("secrets reader not available")


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenService:
    """Signs, verifies, and transports Claims.

    Usage:
        tokens = TokenService(static_secret(settings.secret_key))
        claims = tokens.issue(response, Claims(user=user))
        claims, raw = tokens.extract(request)
        if tokens.is_expired(claims): ...
        tokens.clear(response)
    """

    def __init__(
        self,
        secret_reader: SecretReader | None,
        *,
        issuer: str = "authgate",
        token_duration: int = 15 * 60,
        cookie_duration: int = 31 * 24 * 3600,
        jwt_cookie_name: str = "JWT",
        jwt_cookie_domain: str = "",
        jwt_header_key: str = "X-JWT",
        jwt_query: str = "token",
        xsrf_cookie_name: str = "XSRF-TOKEN",
        xsrf_header_key: str = "X-XSRF-TOKEN",
        secure_cookies: bool = False,
        same_site: str = "lax",
        send_jwt_header: bool = False,
        disable_xsrf: bool = False,
        disable_iat: bool = False,
        audience_reader: AudienceReader | None = None,
        aud_secrets: bool = False,
        claims_updater: ClaimsUpdater | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if secret_reader is None:
            logger.warning("no secret reader defined, every token operation will fail")
            secret_reader = _missing_secret
        self.secret_reader = secret_reader
        self.issuer = issuer
        self.token_duration = token_duration
        self.cookie_duration = cookie_duration
        self.jwt_cookie_name = jwt_cookie_name
        self.jwt_cookie_domain = jwt_cookie_domain
        self.jwt_header_key = jwt_header_key
        self.jwt_query = jwt_query
        self.xsrf_cookie_name = xsrf_cookie_name
        self.xsrf_header_key = xsrf_header_key
        self.secure_cookies = secure_cookies
        self.same_site = same_site
        self.send_jwt_header = send_jwt_header
        self.disable_xsrf = disable_xsrf
        self.disable_iat = disable_iat
        self.audience_reader = audience_reader
        self.aud_secrets = aud_secrets
        self.claims_updater = claims_updater
        self.clock = clock

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def token(self, claims: Claims) -> str:
        """Sign claims exactly as given and return the compact JWT."""
        secret = self._secret(claims.audience if self.aud_secrets else "")
        return jwt.encode(claims.to_payload(), secret, algorithm=_ALGORITHM)

    def mint(self, claims: Claims) -> tuple[Claims, str]:
        """Stamp codec-managed fields on a copy of claims and sign it.

        exp == 0 means "now + token_duration"; that is how refresh asks for a
        new expiry. No transport side effects.
        """
        now = int(self.clock())
        claims = dataclasses.replace(claims)
        if claims.expires_at == 0:
            claims.expires_at = now + self.token_duration
        if not claims.issuer:
            claims.issuer = self.issuer
        if not self.disable_iat:
            claims.issued_at = now
        if not claims.id:
            claims.id = rand_token()
        if self.claims_updater is not None:
            claims = self.claims_updater(claims)
        return claims, self.token(claims)

    def issue(self, response: Response, claims: Claims) -> Claims:
        """Mint a token for claims and write it (and the XSRF pair) to response."""
        claims, token = self.mint(claims)
        self.write(response, claims, token)
        return claims

    def write(self, response: Response, claims: Claims, token: str) -> None:
        """Write an already minted token to the response transport."""
        if self.send_jwt_header:
            response.headers[self.jwt_header_key] = token
            return

        max_age: int | None = self.cookie_duration
        if claims.session_only or claims.handshake is not None:
            max_age = None  # session cookie

        response.set_cookie(
            self.jwt_cookie_name,
            value=token,
            max_age=max_age,
            path="/",
            domain=self.jwt_cookie_domain or None,
            secure=self.secure_cookies,
            httponly=True,
            samesite=self.same_site,
        )
        # Readable by JS so the client can echo it in the XSRF header.
        response.set_cookie(
            self.xsrf_cookie_name,
            value=claims.id,
            max_age=max_age,
            path="/",
            domain=self.jwt_cookie_domain or None,
            secure=self.secure_cookies,
            httponly=False,
            samesite=self.same_site,
        )

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def parse(self, token: str) -> Claims:
        """Verify signature and structure of token and return its Claims.

        Raises Malformed for undecodable or structurally invalid tokens and
        SignatureInvalid when the signature does not verify. Expired tokens
        parse successfully; see is_expired().
        """
        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise Malformed(f"can't decode token: {exc}") from exc

        aud = ""
        if self.aud_secrets:
            aud = unverified.get("aud") or ""
            if isinstance(aud, list):
                aud = aud[0] if aud else ""
        secret = self._secret(str(aud))

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                options={
                    "verify_aud": False,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
        except JWTError as exc:
            raise SignatureInvalid(f"can't verify token: {exc}") from exc

        claims = Claims.from_payload(payload)
        self._validate(claims)
        return claims

    def extract(self, request: HTTPConnection, check_xsrf: bool = True) -> tuple[Claims, str]:
        """Read the token from cookie, else header, else query parameter.

        Returns (claims, raw token string). Raises Malformed when no token is
        present, plus whatever parse() raises, plus XSRFMismatch.
        check_xsrf=False is for handshake callbacks, where the state nonce
        plays that role.
        """
        from_cookie = False
        token = request.cookies.get(self.jwt_cookie_name, "")
        if token:
            from_cookie = True
        else:
            token = request.headers.get(self.jwt_header_key, "")
        if not token:
            token = request.query_params.get(self.jwt_query, "")
        if not token:
            raise Malformed("token not found")

        claims = self.parse(token)

        if check_xsrf and from_cookie and not self.disable_xsrf and request.scope.get("method", "GET") not in _SAFE_METHODS:
            header_value = request.headers.get(self.xsrf_header_key, "")
            cookie_value = request.cookies.get(self.xsrf_cookie_name, "")
            if not header_value or not hmac.compare_digest(header_value.encode(), cookie_value.encode()):
                raise XSRFMismatch("xsrf header does not match xsrf cookie")

        return claims, token

    def is_expired(self, claims: Claims) -> bool:
        """Soft expiry: True once exp has passed. A token without exp never expires."""
        return claims.expires_at != 0 and claims.expires_at < self.clock()

    def clear(self, response: Response) -> None:
        """Delete both the JWT and the XSRF cookie."""
        for name, httponly in ((self.jwt_cookie_name, True), (self.xsrf_cookie_name, False)):
            response.delete_cookie(
                name,
                path="/",
                domain=self.jwt_cookie_domain or None,
                secure=self.secure_cookies,
                httponly=httponly,
                samesite=self.same_site,
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _secret(self, aud: str) -> str:
        try:
            secret = self.secret_reader(aud)
        except Exception as exc:
            raise SignatureInvalid(f"can't get secret: {exc}") from exc
        if not secret:
            raise SignatureInvalid(f"empty secret for aud {aud!r}")
        return secret

    def _validate(self, claims: Claims) -> None:
        if claims.not_before and self.clock() < claims.not_before:
            raise Malformed("token is not valid yet")
        if self.audience_reader is not None:
            allowed = set(self.audience_reader())
            if claims.audience not in allowed:
                raise Malformed(f"aud {claims.audience!r} rejected")
