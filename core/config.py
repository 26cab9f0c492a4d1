"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for WebAuth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. smtp_host -> SMTP_HOST). List fields are read as JSON
      (e.g. SSE_EVENTS='["", "event1"]').

  @model_validator(mode="after"): Rejects invalid combinations once at
      startup rather than deep in a request.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, mail/, or sse/.
"""

import logging
from functools import lru_cache

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("webauth.config")


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
    log_level: str = "INFO"
    app_name: str = "WebAuth"
    # Absolute URL used to build links in outgoing email.
    base_url: str = "https://localhost:8443"
    database_url: str = "sqlite:///webauth.db"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1"]

    # ------------------------------------------------------------------
    # Tokens and passwords
    # ------------------------------------------------------------------

    session_expires_seconds: int = 24 * 60 * 60
    reset_expires_seconds: int = 5 * 60
    confirm_expires_seconds: int = 5 * 60
    token_purge_interval_seconds: int = 60 * 60
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # SMTP (empty host means outgoing mail is not configured)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: SecretStr = SecretStr("")
    smtp_timeout: float = 10.0
    # Defaults to smtp_user when empty.
    mail_from: str = ""

    # ------------------------------------------------------------------
    # Server-sent events
    # ------------------------------------------------------------------

    sse_events: list[str] = [""]
    sse_queue_size: int = 10
    sse_keepalive_seconds: float = 15.0
    sse_allow_origin: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject non-positive lifetimes and sizes, normalise base_url.

        bcrypt accepts a cost factor between 4 and 31; anything else fails
        at the first hash, which is too late to be useful.
        """
        durations = {
            "SESSION_EXPIRES_SECONDS": self.session_expires_seconds,
            "RESET_EXPIRES_SECONDS": self.reset_expires_seconds,
            "CONFIRM_EXPIRES_SECONDS": self.confirm_expires_seconds,
            "TOKEN_PURGE_INTERVAL_SECONDS": self.token_purge_interval_seconds,
            "SSE_KEEPALIVE_SECONDS": self.sse_keepalive_seconds,
            "SMTP_TIMEOUT": self.smtp_timeout,
        }
        for name, value in durations.items():
            if value <= 0:
                raise ValueError(f"{name} must be greater than zero.")
        if self.sse_queue_size <= 0:
            raise ValueError("SSE_QUEUE_SIZE must be greater than zero.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        self.base_url = self.base_url.rstrip("/")
        if not self.mail_from:
            self.mail_from = self.smtp_user
        if not self.smtp_host:
            logger.warning("SMTP_HOST is not set -- outgoing email will fail.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
