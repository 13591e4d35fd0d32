"""
auth/service.py -- Service facade and the /auth action dispatcher.

AuthService wires the token service, provider registry, refresh cache, avatar
proxy and Authenticator together from one AuthOptions value, and answers the
handshake endpoint:

  GET|POST <auth_route>?action=<action>&using=<provider>

  login     (default)  provider.login()
  callback             provider.callback()
  logout               provider.logout(); "using" optional
  list                 {"providers": ["github", "dev", ...]}
  user                 {"claims": current User}, 401 without a session
  status               {"status": "Logged in", "user": name} or 401

Handshake failures are answered with the error envelope
{"error": {"code", "message", "provider"}} and the error's own status.

Pattern: Facade. Configuration precedence is code defaults < environment
(AuthOptions.from_settings) < explicit overrides passed by the caller.

Layer rule: core/ may be imported for Settings only; no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from auth.apple import AppleConfig, AppleProvider, PrivateKeyLoader, load_private_key_file
from auth.avatar import AvatarProxy, AvatarStore
from auth.dependencies import Authenticator, BasicAuthChecker
from auth.dev import dev_provider
from auth.direct import DEFAULT_MESSAGE_TEMPLATE, CredChecker, DirectProvider, Sender, UserIDFunc, VerifyProvider
from auth.errors import AuthError, Malformed, NoUserInClaim
from auth.oauth import OAuth2Provider, make_preset
from auth.passwords import BcryptCredChecker, parse_users
from auth.providers import Provider, ProviderParams, Validator, error_response
from auth.refresh import RefreshCache, RefreshStore, TTLRefreshStore
from auth.registry import ProviderRegistry
from auth.tokens import AudienceReader, ClaimsUpdater, SecretReader, TokenService, static_secret

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.auth.service")


@dataclass
class AuthOptions:
    """Every knob of the auth service, with its default.

    secret_reader   -- aud -> signing secret; required for anything to work
    url             -- public root URL; callbacks go to <url><auth_route>
    token_duration  -- seconds until a session token soft-expires (15 min)
    cookie_duration -- Max-Age of the session cookies (31 days)
    refresh_store   -- backing store of the refresh cache; None disables
                       caching and every concurrent caller refreshes
    avatar_store    -- None disables the avatar proxy (pictures are kept
                       as the provider sent them)
    avatar_resize_limit -- scale stored avatars to fit this many pixels;
                       0 keeps them as fetched
    allow_duplicate_providers -- keep the permissive registration mode
    """

    secret_reader: Optional[SecretReader] = None
    url: str = "http://localhost:8000"
    auth_route: str = "/auth"
    issuer: str = "authgate"
    token_duration: int = 15 * 60
    cookie_duration: int = 31 * 24 * 3600

    jwt_cookie_name: str = "JWT"
    jwt_cookie_domain: str = ""
    jwt_header_key: str = "X-JWT"
    jwt_query: str = "token"
    xsrf_cookie_name: str = "XSRF-TOKEN"
    xsrf_header_key: str = "X-XSRF-TOKEN"
    secure_cookies: bool = False
    same_site: str = "lax"
    send_jwt_header: bool = False
    disable_xsrf: bool = False
    disable_iat: bool = False

    audience_reader: Optional[AudienceReader] = None
    aud_secrets: bool = False
    claims_updater: Optional[ClaimsUpdater] = None
    validator: Optional[Validator] = None

    admin_passwd: str = ""
    basic_auth_checker: Optional[BasicAuthChecker] = None
    refresh_store: Optional[RefreshStore] = field(default_factory=TTLRefreshStore)

    avatar_store: Optional[AvatarStore] = None
    avatar_route: str = "/avatar"
    avatar_client_kwargs: dict[str, Any] = field(default_factory=dict)
    avatar_resize_limit: int = 0

    http_timeout: float = 5.0
    allow_duplicate_providers: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> AuthOptions:
        """Merge the environment (Settings) over the defaults, then apply overrides.

        Unknown override names raise TypeError, same as the constructor.
        """
        audiences = settings.audiences()
        values: dict[str, Any] = {
            "secret_reader": static_secret(settings.secret_key),
            "url": settings.base_url,
            "auth_route": settings.auth_route,
            "issuer": settings.auth_issuer,
            "token_duration": settings.token_duration_seconds,
            "cookie_duration": settings.cookie_duration_seconds,
            "jwt_cookie_name": settings.jwt_cookie_name,
            "jwt_cookie_domain": settings.jwt_cookie_domain,
            "jwt_header_key": settings.jwt_header_key,
            "jwt_query": settings.jwt_query,
            "xsrf_cookie_name": settings.xsrf_cookie_name,
            "xsrf_header_key": settings.xsrf_header_key,
            "secure_cookies": settings.secure_cookies,
            "same_site": settings.same_site,
            "send_jwt_header": settings.send_jwt_header,
            "disable_xsrf": settings.disable_xsrf,
            "disable_iat": settings.disable_iat,
            "audience_reader": (lambda: audiences) if audiences else None,
            "aud_secrets": settings.aud_secrets,
            "admin_passwd": settings.admin_passwd,
            "avatar_route": settings.avatar_route,
            "avatar_resize_limit": settings.avatar_resize_limit,
            "http_timeout": settings.http_timeout,
        }
        if "refresh_store" not in overrides:
            values["refresh_store"] = TTLRefreshStore(
                size=settings.refresh_cache_size, ttl=settings.refresh_cache_ttl_seconds
            )
        if "avatar_store" not in overrides:
            values["avatar_store"] = AvatarStore(settings.avatar_db_url)

        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"unknown auth options: {', '.join(sorted(unknown))}")
        values.update(overrides)
        return cls(**values)


class AuthService:
    """Facade over the auth core.

    Usage:
        service = AuthService(AuthOptions.from_settings(get_settings()))
        service.add_provider("github", cid, csecret)
        service.freeze()

        @app.api_route("/auth", methods=["GET", "POST"])
        async def auth_handler(request: Request): return await service.handle(request)

        @app.get("/private")
        async def private(user: User = Depends(service.authenticator.auth)): ...
    """

    def __init__(self, options: AuthOptions) -> None:
        self.options = options
        self.tokens = TokenService(
            options.secret_reader,
            issuer=options.issuer,
            token_duration=options.token_duration,
            cookie_duration=options.cookie_duration,
            jwt_cookie_name=options.jwt_cookie_name,
            jwt_cookie_domain=options.jwt_cookie_domain,
            jwt_header_key=options.jwt_header_key,
            jwt_query=options.jwt_query,
            xsrf_cookie_name=options.xsrf_cookie_name,
            xsrf_header_key=options.xsrf_header_key,
            secure_cookies=options.secure_cookies,
            same_site=options.same_site,
            send_jwt_header=options.send_jwt_header,
            disable_xsrf=options.disable_xsrf,
            disable_iat=options.disable_iat,
            audience_reader=options.audience_reader,
            aud_secrets=options.aud_secrets,
            claims_updater=options.claims_updater,
        )
        self.registry = ProviderRegistry(allow_duplicates=options.allow_duplicate_providers)
        self.refresh_cache = RefreshCache(options.refresh_store)

        self.avatar_proxy: Optional[AvatarProxy] = None
        if options.avatar_store is not None:
            self.avatar_proxy = AvatarProxy(
                options.avatar_store,
                options.url,
                route_path=options.avatar_route,
                http_timeout=options.http_timeout,
                client_kwargs=options.avatar_client_kwargs,
                resize_limit=options.avatar_resize_limit,
            )

        self.authenticator = Authenticator(
            self.tokens,
            self.registry,
            validator=options.validator,
            admin_passwd=options.admin_passwd,
            basic_auth_checker=options.basic_auth_checker,
            refresh_cache=self.refresh_cache,
        )

    # ------------------------------------------------------------------
    # Provider registration
    # ------------------------------------------------------------------

    def params(self, user_attributes: Optional[dict[str, str]] = None) -> ProviderParams:
        return ProviderParams(
            tokens=self.tokens,
            url=self.options.url,
            auth_route=self.options.auth_route,
            issuer=self.options.issuer,
            avatar_saver=self.avatar_proxy,
            validator=self.options.validator,
            http_timeout=self.options.http_timeout,
            user_attributes=dict(user_attributes or {}),
        )

    def add_provider(
        self,
        name: str,
        client_id: str,
        client_secret: str,
        user_attributes: Optional[dict[str, str]] = None,
        **overrides: Any,
    ) -> Optional[OAuth2Provider]:
        """Register a preset OAuth2 provider. Unknown names are logged and ignored."""
        try:
            provider = make_preset(name, self.params(user_attributes), client_id, client_secret, **overrides)
        except KeyError:
            logger.warning("unrecognized provider %s, ignored", name)
            return None
        self.registry.register(provider)
        return provider

    def add_dev_provider(
        self, host: str = "127.0.0.1", port: int = 8084, client_kwargs: Optional[dict[str, Any]] = None
    ) -> OAuth2Provider:
        provider = dev_provider(self.params(), host, port, client_kwargs=client_kwargs)
        self.registry.register(provider)
        return provider

    def add_apple_provider(
        self,
        config: AppleConfig,
        key_loader: PrivateKeyLoader,
        name: str = "apple",
        client_kwargs: Optional[dict[str, Any]] = None,
    ) -> AppleProvider:
        """Register Sign in with Apple. A bad config or private key raises ValueError."""
        provider = AppleProvider(self.params(), config, key_loader, name=name, client_kwargs=client_kwargs)
        if config.response_mode == "form_post" and self.options.same_site.lower() != "none":
            logger.warning(
                "%s uses form_post callbacks, which drop the handshake cookie unless same_site='none' (got %r)",
                name,
                self.options.same_site,
            )
        self.registry.register(provider)
        return provider

    def add_custom_provider(self, provider: Provider) -> Provider:
        """Register any Provider implementation (e.g. an OAuth2Provider with custom endpoints)."""
        self.registry.register(provider)
        return provider

    def add_direct_provider(
        self, name: str, cred_checker: CredChecker, user_id_func: Optional[UserIDFunc] = None
    ) -> DirectProvider:
        provider = DirectProvider(name, self.params(), cred_checker, user_id_func)
        self.registry.register(provider)
        return provider

    def add_verify_provider(
        self, name: str, sender: Sender, template: str = DEFAULT_MESSAGE_TEMPLATE, use_gravatar: bool = False
    ) -> VerifyProvider:
        provider = VerifyProvider(name, self.params(), sender, template, use_gravatar)
        self.registry.register(provider)
        return provider

    def freeze(self) -> None:
        self.registry.freeze()
        logger.info("auth service ready, providers: %s", ", ".join(self.registry.names()) or "none")

    def close(self) -> None:
        if self.options.avatar_store is not None:
            self.options.avatar_store.close()

    # ------------------------------------------------------------------
    # Handshake endpoint
    # ------------------------------------------------------------------

    async def handle(self, request: Request) -> Response:
        if request.method not in ("GET", "POST"):
            return JSONResponse(
                {"error": {"code": "method_not_allowed", "message": f"method {request.method} not allowed"}},
                status_code=405,
            )

        action = request.query_params.get("action") or "login"
        try:
            if action == "list":
                return JSONResponse({"providers": self.registry.names()})
            if action == "user":
                return self._user(request)
            if action == "status":
                return self._status(request)
            if action == "logout":
                return await self._logout(request)
            if action in ("login", "callback"):
                name = request.query_params.get("using", "")
                if not name:
                    raise Malformed("provider name is required, use using=<provider>")
                provider = self.registry.resolve(name)
                if action == "login":
                    return await provider.login(request)
                return await provider.callback(request)
        except AuthError as exc:
            logger.warning("%s via %s failed: %s", action, exc.provider or "-", exc.message)
            return error_response(exc)

        return JSONResponse(
            {"error": {"code": "not_found", "message": f"unknown action {action!r}"}},
            status_code=404,
        )

    def _user(self, request: Request) -> Response:
        try:
            claims, _ = self.tokens.extract(request)
        except AuthError as exc:
            raise NoUserInClaim(f"failed to get user info: {exc.message}") from exc
        if claims.user is None:
            raise NoUserInClaim("no user info in the token")
        return JSONResponse({"claims": claims.user.to_dict()})

    def _status(self, request: Request) -> Response:
        try:
            claims, _ = self.tokens.extract(request)
        except AuthError:
            claims = None
        if claims is None or claims.user is None:
            return JSONResponse({"status": "not logged in"}, status_code=401)
        return JSONResponse({"status": "Logged in", "user": claims.user.name})

    async def _logout(self, request: Request) -> Response:
        name = request.query_params.get("using", "")
        if not name:
            name = self._session_provider(request)
        if not name:
            raise Malformed("no providers registered")
        return await self.registry.resolve(name).logout(request)

    def _session_provider(self, request: Request) -> str:
        """Provider named by the current session's user id, else the first registered one."""
        names = self.registry.names()
        try:
            claims, _ = self.tokens.extract(request)
        except AuthError:
            claims = None
        if claims is not None and claims.user is not None and claims.user.provider in names:
            return claims.user.provider
        return names[0] if names else ""


def build_service(settings: Settings, **overrides: Any) -> AuthService:
    """Build a frozen AuthService from Settings: presets, apple, dev and local providers."""
    service = AuthService(AuthOptions.from_settings(settings, **overrides))
    for name, (cid, csecret) in settings.provider_credentials().items():
        service.add_provider(name, cid, csecret)
    if settings.apple_configured():
        config = AppleConfig(settings.apple_client_id, settings.apple_team_id, settings.apple_key_id)
        service.add_apple_provider(config, load_private_key_file(settings.apple_private_key_file))
    if settings.dev_provider_enabled:
        service.add_dev_provider(settings.dev_provider_host, settings.dev_provider_port)
    if settings.direct_provider_users:
        service.add_direct_provider("local", BcryptCredChecker(parse_users(settings.direct_provider_users)))
    service.freeze()
    return service
