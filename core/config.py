"""
core/config.py -- Portal auth settings, read once from the environment.

Every environment variable the service understands is a field on Settings;
the field name upper-cased is the variable name (code_ttl_minutes ->
CODE_TTL_MINUTES). A .env file in the working directory is read too. Nothing
else in the code base reads os.environ.

get_settings() is cached, so the process builds Settings exactly once.
Services take a Settings argument instead of calling get_settings()
themselves, which lets tests hand them a hand-built instance.

SECRET_KEY policy (enforced when Settings is built):
  - missing with DEBUG=true   -> a random key is generated and a warning logged;
                                 sessions and code digests do not survive restart
  - missing otherwise         -> startup fails
  - shorter than 32 chars     -> startup fails, in every mode

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("intranet.config")

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Every tunable of the auth service. All fields have working defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" until the validator below fills it in (DEBUG) or rejects it.
    secret_key: str = ""
    # Empty string means the SQLite file next to auth/store.py.
    database_url: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # 24 hours.
    token_expire_seconds: int = 86400

    # ------------------------------------------------------------------
    # Administrator identity (first-run bootstrap)
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_phone: str = ""
    admin_password: str = ""

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    code_ttl_minutes: int = 15
    # "memory" keeps codes in-process; anything else is a SQLite file path
    # shared by all workers on the host.
    code_store: str = "memory"

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    lock_minutes: int = 15
    password_expiry_days: int = 365
    min_password_length: int = 8
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Invite codes
    # ------------------------------------------------------------------

    invite_expiry_days: int = 30
    invite_max_uses: int = 1

    # ------------------------------------------------------------------
    # External identity provider (optional -- empty string disables)
    # ------------------------------------------------------------------

    external_service_key: str = ""
    external_token_prefix: str = ""
    external_jwt_secret: str = ""
    introspection_url: str = ""
    introspection_client_id: str = ""
    introspection_client_secret: str = ""

    # ------------------------------------------------------------------
    # Notification providers (optional -- unset means console delivery)
    # ------------------------------------------------------------------

    sendgrid_api_key: str = ""
    email_from: str = "no-reply@intranet.local"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: str = "localhost,127.0.0.1,*.localhost,testserver"
    cors_origins: str = "http://localhost,http://localhost:3000,http://127.0.0.1"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _check_secret_key(self) -> "Settings":
        if not self.secret_key:
            if not self.debug:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true.")
            self.secret_key = secrets.token_hex(_MIN_SECRET_LENGTH)
            logger.warning("DEBUG mode: generated a throwaway SECRET_KEY; tokens and codes die with this process.")
        if len(self.secret_key) < _MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_SECRET_LENGTH} characters long.")
        return self

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """The process-wide Settings. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
