"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Latchkey happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() or
accept a Settings instance instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      application lifespan uses it; AuthService and its collaborators take a
      Settings object at construction so tests can pass their own.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Session JWT signing
  and the HMAC digests of stored tokens both rely on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("latchkey.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'latchkey_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true or an explicit
    secret_key).
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
    # Storage
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound for lock waits (SQLite busy timeout) and pool checkout.
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions and reset tokens
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 7 * 24 * 3600
    reset_token_ttl_seconds: int = 3600
    secure_cookies: bool = False
    # Background sweep of dead session / reset token rows. 0 disables it.
    purge_interval_seconds: int = 6 * 3600

    # ------------------------------------------------------------------
    # Password policy and hashing cost
    # ------------------------------------------------------------------

    min_password_length: int = 6
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 64 * 1024  # KiB
    argon2_parallelism: int = 4

    # ------------------------------------------------------------------
    # Email (Resend). Empty API key means delivery is disabled and links
    # are only logged at DEBUG level.
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    email_from: str = "Latchkey <onboarding@resend.dev>"
    email_timeout_seconds: float = 10.0
    reset_email_subject: str = "Reset your password"
    # Origins allowed as redirect_base_url in forgot-password requests.
    # Empty list accepts any http(s) origin.
    reset_redirect_allowed_origins: list[str] = []

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    sign_in_rate_limit: str = "10/minute"
    forgot_password_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("reset_redirect_allowed_origins")
    @classmethod
    def strip_origin_slashes(cls, values: list[str]) -> list[str]:
        """Compare origins without a trailing slash."""
        return [v.strip().rstrip("/") for v in values if v.strip()]

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued sessions will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

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
        if self.min_password_length < 6:
            raise ValueError("MIN_PASSWORD_LENGTH must be at least 6.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
