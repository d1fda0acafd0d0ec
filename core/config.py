"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the OIDC login service happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      settings object is assembled once at startup and passed down; no code
      does string-keyed config lookups at request time.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. oidc_client_id -> OIDC_CLIENT_ID). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Cross-field validation after all fields
      are resolved. Enforces the SECRET_KEY policy and refuses a half-configured
      identity provider.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session JWT
       and the Starlette session cookie both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or loginflow/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger("oidclogin.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'oidclogin_auth.db'}"

# Comma-separated env values ("a.com,b.com") for the list fields below.
_CsvList = Annotated[list[str], NoDecode]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. An empty OIDC client id means the
    provider is not configured; the OIDC routes then refuse to start a flow.
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
    secret_key: str = ""
    auth_db_url: str = _DEFAULT_DB_URL
    allowed_hosts: _CsvList = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Local session
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"
    callback_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Identity provider
    # ------------------------------------------------------------------

    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_authorization_endpoint: str = ""
    oidc_token_endpoint: str = ""
    oidc_userinfo_endpoint: str = ""
    oidc_jwks_uri: str = ""
    oidc_issuer: str = ""
    oidc_redirect_uri: str = "http://localhost:8000/auth/oidc/"
    oidc_scope: str = "openid profile email"
    oidc_id_token_algorithms: _CsvList = ["RS256"]

    # Collaborator boundary: every IdP call gets this timeout and at most
    # http_retries retries on connection errors / 5xx.
    http_timeout_seconds: float = 10.0
    http_retries: int = 2

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    login_flow: Literal["authcode"] = "authcode"
    state_ttl_seconds: int = 600
    state_purge_interval_seconds: int = 3600
    allow_account_creation: bool = True
    post_login_url: str = "/"
    post_link_url: str = "/auth/oidc/ucp"

    # ------------------------------------------------------------------
    # Restrictions (empty = allow everyone)
    # ------------------------------------------------------------------

    user_restrictions: _CsvList = []  # regex patterns against the upn / subject
    user_restrictions_case_sensitive: bool = True
    allowed_email_domains: _CsvList = []
    allowed_tenant_ids: _CsvList = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "allowed_hosts",
        "oidc_id_token_algorithms",
        "user_restrictions",
        "allowed_email_domains",
        "allowed_tenant_ids",
        mode="before",
    )
    @classmethod
    def split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def oidc_configured(self) -> bool:
        return bool(self.oidc_client_id and self.oidc_client_secret)

    @model_validator(mode="after")
    def validate_provider(self) -> "Settings":
        """Reject a client id without the endpoints the authorization-code flow needs."""
        if self.oidc_client_id:
            missing = [
                name
                for name in ("oidc_authorization_endpoint", "oidc_token_endpoint", "oidc_jwks_uri")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"OIDC_CLIENT_ID is set but {', '.join(n.upper() for n in missing)} is not.")
        return self

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
