"""
core/config.py -- Passgate settings, read from the environment by pydantic-settings.

Every tunable of the service lives on Settings: signing key and issuer, token
lifetimes, database URL and busy timeout, OAuth client credentials, redirect
allowlist, refresh rate limit, trusted hosts and CORS origins. Field names are
the upper-cased env var names (secret_key <- SECRET_KEY); a .env file in the
working directory is read as well.

get_settings() is lru_cached, so the environment is read once per process.
Tests that need different values set env vars before the first call, or call
get_settings.cache_clear().

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Access tokens
       are HS256-signed with it -- a short key makes forgery practical.

  [M7] With DEBUG unset or false, a missing SECRET_KEY stops startup. A random
       per-process key would invalidate every access token on restart and
       differ between workers.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("passgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'passgate.db'}"


class Settings(BaseSettings):
    """Passgate configuration. Every field has a working local default except
    SECRET_KEY, which only DEBUG=true may leave unset.
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
    base_url: str = "http://localhost:8080"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # SQLite busy timeout. A writer waiting on the rotate transaction of a
    # concurrent request gives up after this many seconds.
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "passgate"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 30 * 60

    # ------------------------------------------------------------------
    # OAuth clients. A provider is registered only when both id and secret are set.
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    oauth_timeout_seconds: float = 10.0

    # Origins (scheme://host[:port]) the callback may redirect to in addition
    # to base_url. Anything else falls back to the debug landing page.
    allowed_redirect_origins: list[str] = []

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    refresh_rate_limit: str = "30/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
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
    def validate_lifetimes(self) -> "Settings":
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, building it on first call."""
    return Settings()
