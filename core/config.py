"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  Settings only describes *what the environment says*. The auth core consumes
  auth.service.AuthOptions, and AuthOptions.from_settings() is the single
  place where the environment is merged over code defaults.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Tokens signed with a random per-process key would
       be invalidated on every restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    app_host: str = "0.0.0.0"  # noqa: S104 -- bind address for the container
    app_port: int = 8000

    # Public root URL of the service; callback and avatar URLs are built on it.
    base_url: str = "http://localhost:8000"
    auth_route: str = "/auth"

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    auth_issuer: str = "authgate"
    token_duration_seconds: int = 15 * 60
    # The cookie outlives the token so an expired token can still be refreshed.
    cookie_duration_seconds: int = 31 * 24 * 3600

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

    # Comma separated list; empty means any audience is accepted.
    allowed_audiences: str = ""
    aud_secrets: bool = False

    # ------------------------------------------------------------------
    # Authorizer
    # ------------------------------------------------------------------

    # Empty disables admin basic auth.
    admin_passwd: str = ""
    refresh_cache_size: int = 1000
    refresh_cache_ttl_seconds: int = 60

    # ------------------------------------------------------------------
    # Providers (empty client id means the provider is disabled)
    # ------------------------------------------------------------------

    http_timeout: float = 5.0

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    facebook_client_id: str = ""
    facebook_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    yandex_client_id: str = ""
    yandex_client_secret: str = ""
    battlenet_client_id: str = ""
    battlenet_client_secret: str = ""
    patreon_client_id: str = ""
    patreon_client_secret: str = ""

    # Sign in with Apple: Services ID, team, key id and the .p8 key file.
    apple_client_id: str = ""
    apple_team_id: str = ""
    apple_key_id: str = ""
    apple_private_key_file: str = ""

    dev_provider_enabled: bool = False
    dev_provider_host: str = "127.0.0.1"
    dev_provider_port: int = 8084

    # "name:bcrypthash,name2:bcrypthash2" -- registers the "local" direct provider.
    direct_provider_users: str = ""

    # ------------------------------------------------------------------
    # Avatars
    # ------------------------------------------------------------------

    avatar_db_url: str = "sqlite:///authgate_avatars.db"
    avatar_route: str = "/avatar"
    # Scale stored avatars to fit this many pixels; 0 keeps them as fetched.
    avatar_resize_limit: int = 0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    def audiences(self) -> list[str]:
        """Return allowed_audiences as a list, dropping blanks."""
        return [a.strip() for a in self.allowed_audiences.split(",") if a.strip()]

    def provider_credentials(self) -> dict[str, tuple[str, str]]:
        """Return {provider: (client_id, client_secret)} for every configured OAuth provider."""
        result: dict[str, tuple[str, str]] = {}
        for name in ("github", "google", "facebook", "microsoft", "yandex", "battlenet", "patreon"):
            cid = getattr(self, f"{name}_client_id")
            csecret = getattr(self, f"{name}_client_secret")
            if cid and csecret:
                result[name] = (cid, csecret)
        return result

    def apple_configured(self) -> bool:
        return all((self.apple_client_id, self.apple_team_id, self.apple_key_id, self.apple_private_key_file))


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
