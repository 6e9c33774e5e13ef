"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the pre-save service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. presave_state_secret -> PRESAVE_STATE_SECRET).

  @model_validator(mode="after"): Resolves the state secret after all fields
      are read. PRESAVE_STATE_SECRET wins; URL_ENCRYPTION_KEY is the fallback.
      Dev mode generates a key with a warning, production refuses to start.

Security notes:
  [S1] A state secret shorter than 32 chars is rejected outright. The state
       tag is HMAC-SHA256 and its strength is bounded by key entropy.

  [S2] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure. A random per-process key would silently reject
       every pre-save link issued before a restart or by another worker.

Layer rule: core/ is the kernel. This module may not import from api/ or
presave/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("presave.config")

_MIN_SECRET_LENGTH = 32


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    the secret policy at startup.
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
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"
    allowed_origins: str = "http://localhost,http://localhost:3000,http://127.0.0.1"

    # ------------------------------------------------------------------
    # State tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator
    # either falls back, generates a dev key, or raises.
    presave_state_secret: str = ""
    url_encryption_key: str = ""
    # Retired keys, comma-separated. Accepted on decode only.
    presave_state_previous_secrets: str = ""
    # 0 disables the freshness window.
    presave_state_ttl_seconds: int = 600
    presave_state_max_clock_skew_seconds: int = 30

    # ------------------------------------------------------------------
    # Streaming provider (authorize hop)
    # ------------------------------------------------------------------

    presave_authorize_url: str = "https://accounts.spotify.com/authorize"
    # Empty string means pre-save is disabled.
    presave_client_id: str = ""
    presave_redirect_uri: str = "http://localhost:8000/api/v1/presave/callback"
    presave_scope: str = "user-library-modify"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_state_secret(self) -> "Settings":
        """Resolve and check the state-token secret [S1] [S2].

        Resolution order: PRESAVE_STATE_SECRET, then URL_ENCRYPTION_KEY.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Links issued before a restart stop verifying -- acceptable locally.

        Production mode: refuse to start without a key.

        Both modes: reject keys shorter than 32 characters, including any
            retired key listed in PRESAVE_STATE_PREVIOUS_SECRETS.
        """
        if not self.presave_state_secret:
            self.presave_state_secret = self.url_encryption_key
        if not self.presave_state_secret:
            if self.debug:
                self.presave_state_secret = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated PRESAVE_STATE_SECRET. "
                    "Pre-save links will not survive restarts."
                )
            else:
                raise ValueError(
                    "PRESAVE_STATE_SECRET is required in production mode. "
                    "Set PRESAVE_STATE_SECRET (or URL_ENCRYPTION_KEY) in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.presave_state_secret) < _MIN_SECRET_LENGTH:
            raise ValueError("PRESAVE_STATE_SECRET must be at least 32 characters.")
        for retired in self.previous_state_secrets:
            if len(retired) < _MIN_SECRET_LENGTH:
                raise ValueError("Every PRESAVE_STATE_PREVIOUS_SECRETS entry must be at least 32 characters.")
        if self.presave_state_ttl_seconds < 0:
            raise ValueError("PRESAVE_STATE_TTL_SECONDS must not be negative.")
        return self

    @property
    def previous_state_secrets(self) -> list[str]:
        return _split_csv(self.presave_state_previous_secrets)

    @property
    def allowed_host_list(self) -> list[str]:
        return _split_csv(self.allowed_hosts)

    @property
    def allowed_origin_list(self) -> list[str]:
        return _split_csv(self.allowed_origins)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
