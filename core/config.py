"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. keycloak_url -> KEYCLOAK_URL).

  @model_validator(mode="after"): Cross-field validation once all fields are
      resolved. Development mode generates a session secret with a warning;
      production mode refuses to start without one.

Provider URLs:
  KEYCLOAK_URL is the browser-reachable base URL used in the authorization
  redirect. KEYCLOAK_INTERNAL_URL is the base URL the backend uses for
  server-to-server calls (token, userinfo, logout, admin API). When the
  internal URL is unset the public one is used for both.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("synthai.config")

DEFAULT_CLIENT_ID = "synthai-logic-client"
CALLBACK_PATH = "/api/auth/callback"


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: str = "production"
    service_name: str = "synthai-authorization-backend"
    version: str = "1.0.0"
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises.
    session_secret: str = ""
    session_ttl_seconds: int = 24 * 60 * 60
    session_cookie_name: str = "synthai.sid"
    cookie_domain: str = ""
    secure_cookies: bool = False
    session_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "synthai:"

    # ------------------------------------------------------------------
    # Last-login ledger
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///synthai_auth.db"

    # ------------------------------------------------------------------
    # Identity provider (Keycloak)
    # ------------------------------------------------------------------

    keycloak_url: str = "http://localhost:8080"
    keycloak_internal_url: str = ""
    keycloak_realm: str = "synthai"
    keycloak_client_id: str = ""
    keycloak_client_secret: str = ""
    keycloak_redirect_uri: str = ""
    http_timeout_seconds: float = 10.0
    id_token_algorithms: str = "RS256"

    # ------------------------------------------------------------------
    # Frontend / HTTP surface
    # ------------------------------------------------------------------

    public_base_url: str = ""
    frontend_url: str = "http://localhost:3000"
    allowed_origins: str = "http://localhost:3000,http://localhost:8080,http://localhost:80"
    trusted_hosts: str = "*"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    api_rate_limit: str = "100 per 15 minutes"
    auth_rate_limit: str = "5 per 15 minutes"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def provider_internal_url(self) -> str:
        return (self.keycloak_internal_url or self.keycloak_url).rstrip("/")

    @property
    def provider_public_url(self) -> str:
        return self.keycloak_url.rstrip("/")

    @property
    def allowed_origin_list(self) -> list[str]:
        return _split_csv(self.allowed_origins)

    @property
    def trusted_host_list(self) -> list[str]:
        return _split_csv(self.trusted_hosts) or ["*"]

    @property
    def id_token_algorithm_list(self) -> list[str]:
        return _split_csv(self.id_token_algorithms)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_session_secret(self) -> "Settings":
        """Enforce the SESSION_SECRET policy.

        Development (ENVIRONMENT != production): auto-generate a random secret
            with a warning. Sessions do not survive restart.

        Production: refuse to start if SESSION_SECRET is missing. A random key
            would invalidate every signed session cookie on restart.

        Both: reject secrets shorter than 32 characters.
        """
        if not self.session_secret:
            if not self.is_production:
                self.session_secret = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SESSION_SECRET. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SESSION_SECRET is required in production mode. "
                    "Set SESSION_SECRET in your environment or .env file. "
                    "To run in development mode, set ENVIRONMENT=development."
                )
        if len(self.session_secret) < 32:
            raise ValueError("SESSION_SECRET must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def apply_client_defaults(self) -> "Settings":
        """Fall back to the default client id, and guard request-derived redirect URIs.

        Production refuses a Host-derived redirect URI when every Host header is
        accepted (TRUSTED_HOSTS="*").
        """
        if not self.keycloak_client_id:
            self.keycloak_client_id = DEFAULT_CLIENT_ID
            logger.warning(
                "KEYCLOAK_CLIENT_ID is not set; using fallback %r. Make sure this client exists in the realm.",
                DEFAULT_CLIENT_ID,
            )
        if not self.keycloak_redirect_uri and not self.public_base_url:
            if self.is_production and self.trusted_host_list == ["*"]:
                raise ValueError(
                    "KEYCLOAK_REDIRECT_URI or PUBLIC_BASE_URL is required in production "
                    "unless TRUSTED_HOSTS restricts the Host header."
                )
            logger.warning(
                "KEYCLOAK_REDIRECT_URI is not set; redirect_uri will be derived from each request's host."
            )
        if self.session_backend not in ("memory", "redis"):
            raise ValueError("SESSION_BACKEND must be 'memory' or 'redis'.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
