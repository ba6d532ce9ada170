"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for MotoManager happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_duration_seconds -> SESSION_DURATION_SECONDS).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Normalizes APP_ENV and rejects a non-positive session window.

Security notes:
  The Secure cookie flag is not a separate switch. It is derived from APP_ENV
  so a production deployment can never forget to set it.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("motomanager.config")

_PRODUCTION_ENVS = ("production", "prod")

# 14 days, the sliding window of a browser session.
DEFAULT_SESSION_DURATION_SECONDS = 60 * 60 * 24 * 14


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

    app_env: str = "development"
    debug: bool = False
    # Empty string means "use the SQLite file next to auth/store.py".
    database_url: str = ""
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_duration_seconds: int = DEFAULT_SESSION_DURATION_SECONDS

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    # Only consulted once at least one user exists. The very first account
    # can always be registered, otherwise nobody could ever sign in.
    enable_registration: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env in _PRODUCTION_ENVS

    @property
    def secure_cookies(self) -> bool:
        """Mark the session cookie Secure when running in production."""
        return self.is_production

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_session_settings(self) -> "Settings":
        """Normalize APP_ENV and reject a session window that can never be valid."""
        self.app_env = self.app_env.strip().lower()
        if self.session_duration_seconds <= 0:
            raise ValueError("SESSION_DURATION_SECONDS must be a positive number of seconds.")
        if not self.is_production:
            logger.info("APP_ENV=%s -- session cookies will not be marked Secure", self.app_env)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
