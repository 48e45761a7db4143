"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatehouse happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() at the
process edge (api/main.py lifespan, main.py CLI) and pass the Settings object
down. The engine, codec, store, and cache receive their values at
construction and never reach back into ambient config mid-operation.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256
       token signing relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatehouse.config")

SERVICE_NAME = "gatehouse"
APP_VERSION = "1.0.0"

_DEFAULT_DENYLIST = "password,123456,123456789,qwerty,abc123,password123,admin,letmein,welcome,monkey"


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

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "gatehouse"
    jwt_audience: str = "gatehouse-clients"
    access_token_ttl_seconds: int = 900
    refresh_token_ttl_seconds: int = 7 * 24 * 3600
    reset_token_ttl_seconds: int = 900
    # 0 means "same as the refresh token TTL"
    session_ttl_seconds: int = 0

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    lockout_threshold: int = 5
    lockout_minutes: int = 15
    password_denylist: str = _DEFAULT_DENYLIST

    # ------------------------------------------------------------------
    # Backing stores
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'gatehouse_auth.db'}"
    redis_url: str = "redis://localhost:6379/0"
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Collaborators and maintenance
    # ------------------------------------------------------------------

    # Empty string means events are logged only, never delivered.
    event_webhook_url: str = ""
    cleanup_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def denylist(self) -> frozenset[str]:
        """Common passwords, lowercased, as a set for O(1) membership checks."""
        return frozenset(p.strip().lower() for p in self.password_denylist.split(",") if p.strip())

    @property
    def effective_session_ttl(self) -> int:
        return self.session_ttl_seconds or self.refresh_token_ttl_seconds

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Reject token and lockout settings that would break the lifecycle invariants."""
        if self.access_token_ttl_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be positive.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be longer than ACCESS_TOKEN_TTL_SECONDS.")
        if self.lockout_threshold < 1 or self.lockout_minutes < 1:
            raise ValueError("LOCKOUT_THRESHOLD and LOCKOUT_MINUTES must be at least 1.")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive.")
        # bcrypt's floor is 4; anything under 10 is only acceptable for local runs and tests.
        low = 4 if self.debug else 10
        if not low <= self.bcrypt_rounds <= 15:
            raise ValueError(f"BCRYPT_ROUNDS must be between {low} and 15.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the process edges call this. Everything below them takes the
    Settings object (or the individual values) as a constructor argument.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
