"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the dashboard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. oidc_issuer_url -> OIDC_ISSUER_URL). Type coercion and validation
      are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and refuses to start when
      OIDC_ENABLED is set without the four mandatory OIDC values.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It signs both the
  session JWT and the OIDC handshake cookie.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("linkdash.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'linkdash.db'}"


class Role(str, Enum):
    """The three privilege levels a dashboard user can hold.

    Declared in core/ (not auth/) because the settings layer validates
    OIDC_DEFAULT_ROLE against it.
    """

    admin = "admin"
    advanced_user = "advanced-user"
    managed_user = "managed-user"

    @property
    def rank(self) -> int:
        """Higher rank means more privilege: admin > advanced-user > managed-user."""
        return _ROLE_RANKS[self]


_ROLE_RANKS = {Role.admin: 3, Role.advanced_user: 2, Role.managed_user: 1}


@dataclass(frozen=True)
class OidcConfig:
    """Resolved OIDC settings. Only exists when OIDC is enabled and complete."""

    issuer_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: str = "openid profile email groups"
    admin_group: Optional[str] = None
    advanced_group: Optional[str] = None
    default_role: Role = Role.managed_user
    provider_name: str = "SSO"
    http_timeout: float = 10.0


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

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # HTTP hardening
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Local auth (handled by an external collaborator, see LOCAL_LOGIN_PATH)
    # ------------------------------------------------------------------

    local_auth_enabled: bool = True
    local_login_path: str = "/login/local"

    # ------------------------------------------------------------------
    # OIDC
    # ------------------------------------------------------------------

    oidc_enabled: bool = False
    oidc_issuer_url: str = ""
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_redirect_uri: str = ""
    oidc_scopes: str = "openid profile email groups"
    # Empty string means "no group configured" -- never matches.
    oidc_admin_group: str = ""
    oidc_advanced_group: str = ""
    oidc_default_role: Role = Role.managed_user
    oidc_provider_name: str = "SSO"
    oidc_http_timeout: float = 10.0
    oidc_state_max_age: int = 600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_oidc(self) -> "Settings":
        """Refuse to start with OIDC_ENABLED=true but an incomplete client config."""
        if not self.oidc_enabled:
            return self
        missing = [
            name.upper()
            for name in ("oidc_issuer_url", "oidc_client_id", "oidc_client_secret", "oidc_redirect_uri")
            if not getattr(self, name).strip()
        ]
        if missing:
            raise ValueError(
                "OIDC is enabled but missing required configuration. " f"Please set {', '.join(missing)}."
            )
        return self

    def oidc_config(self) -> Optional[OidcConfig]:
        """Return the resolved OIDC config, or None when OIDC is disabled."""
        if not self.oidc_enabled:
            return None
        return OidcConfig(
            issuer_url=self.oidc_issuer_url.strip(),
            client_id=self.oidc_client_id.strip(),
            client_secret=self.oidc_client_secret,
            redirect_uri=self.oidc_redirect_uri.strip(),
            scopes=self.oidc_scopes or "openid profile email groups",
            admin_group=self.oidc_admin_group.strip() or None,
            advanced_group=self.oidc_advanced_group.strip() or None,
            default_role=self.oidc_default_role,
            provider_name=self.oidc_provider_name or "SSO",
            http_timeout=self.oidc_http_timeout,
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
