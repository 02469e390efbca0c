"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads happen here. No module should call
os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. cookie_hmac_secret -> COOKIE_HMAC_SECRET).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Used for the cookie secret policy and the argon2 bounds.

Security notes:
  A COOKIE_HMAC_SECRET shorter than 32 chars is rejected outright. HS256
  session signing relies on key entropy and a short key weakens it.

  An empty COOKIE_HMAC_SECRET disables the session cookie in production mode.
  In debug mode a random secret is generated so local logins work; sessions
  then do not survive a restart.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authmw.config")


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    List fields (memory_users, memory_profiles) are read from the environment
    as JSON arrays, e.g. MEMORY_PROFILES='["1:admin|user"]'.
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

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    # Empty string means "cookie envelope disabled" outside debug mode.
    cookie_hmac_secret: str = ""
    cookie_jwt_expiration: int = 5 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    argon_memory: int = 7168  # KiB
    argon_iterations: int = 5
    argon_parallelism: int = 1
    argon_salt_length: int = 23
    argon_key_length: int = 32
    bcrypt_cost: int = 12

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    # "basic", "github" or "discord". Empty picks the first configured
    # OAuth provider, then basic when a store is configured.
    auth_provider: str = ""
    required_profile: str = ""
    basic_realm: str = ""

    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_url: str = ""
    github_on_success_path: str = "/"

    discord_client_id: str = ""
    discord_client_secret: str = ""
    discord_redirect_url: str = ""
    discord_on_success_path: str = "/"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Empty selects the in-memory store fed by memory_users/memory_profiles.
    database_url: str = ""
    memory_users: list[str] = []
    memory_profiles: list[str] = []

    # ------------------------------------------------------------------
    # State cache
    # ------------------------------------------------------------------

    # redis://... -> RedisCache, sqlite:///... -> SQLiteCache, "" -> MemoryCache
    state_cache_url: str = ""
    state_ttl_seconds: int = 5 * 60
    update_check_ttl_seconds: int = 2 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_cookie_secret(self) -> "Settings":
        """Enforce the cookie secret policy.

        Debug mode: an empty secret is replaced by a random one with a warning.
        Production mode: an empty secret disables the session cookie.
        Both modes: a configured secret shorter than 32 characters is rejected.
        """
        if not self.cookie_hmac_secret:
            if self.debug:
                self.cookie_hmac_secret = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated COOKIE_HMAC_SECRET. " "Sessions will not persist across restarts."
                )
            return self
        if len(self.cookie_hmac_secret) < 32:
            raise ValueError("COOKIE_HMAC_SECRET must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_argon_params(self) -> "Settings":
        # Parallelism is parsed as an 8-bit value when verifying.
        if not 1 <= self.argon_parallelism <= 255:
            raise ValueError("ARGON_PARALLELISM must be between 1 and 255.")
        if self.argon_memory < 8 * self.argon_parallelism:
            raise ValueError("ARGON_MEMORY must be at least 8 KiB per lane.")
        if self.argon_iterations < 1 or self.argon_salt_length < 8 or self.argon_key_length < 4:
            raise ValueError("ARGON_ITERATIONS, ARGON_SALT_LENGTH or ARGON_KEY_LENGTH out of range.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
