"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead, or accept a
Settings instance as a constructor argument (the app factory and the tests do
the latter so a single process can run with several configurations).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. disable_signup -> DISABLE_SIGNUP). Type coercion is built in.

  Empty string is the "not configured" sentinel for every optional provider,
  URL and credential. Providers and optional features check truthiness.

  List-valued settings (ADMIN_EMAIL, GITLAB_REQUIRED_GROUPS) are stored as the
  raw comma-separated string and exposed through parsed properties, so the env
  format stays the same one operators already use.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It signs session
       JWTs, the OAuth state cookie, and the verification-token HMAC.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("builder.config")


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


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
    secret_key: str = ""
    database_url: str = ""  # empty -> SQLite file next to auth/store.py
    base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_max_age_seconds: int = 30 * 24 * 60 * 60
    onboarding_typebot_id: str = ""  # non-empty -> new users land on /onboarding

    # ------------------------------------------------------------------
    # Sign-up policy
    # ------------------------------------------------------------------

    disable_signup: bool = False
    admin_email: str = ""  # comma-separated
    reject_disposable_emails: bool = False
    disposable_email_blocklist_url: str = (
        "https://raw.githubusercontent.com/disposable-email-domains/"
        "disposable-email-domains/master/disposable_email_blocklist.conf"
    )
    default_workspace_plan: str = ""
    user_created_webhook_url: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (email sign-in route only)
    # ------------------------------------------------------------------

    rate_limit_storage_url: str = ""  # e.g. redis://localhost:6379/0 or memory://
    email_signin_rate_limit: str = "1/minute"

    # ------------------------------------------------------------------
    # End-to-end test mode
    # ------------------------------------------------------------------

    e2e_test_mode: bool = False

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    telemetry_url: str = ""

    # ------------------------------------------------------------------
    # Credentials exchange with the external host
    # ------------------------------------------------------------------

    typebot_code: str = ""

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""

    google_auth_client_id: str = ""
    google_auth_client_secret: str = ""

    facebook_client_id: str = ""
    facebook_client_secret: str = ""

    gitlab_client_id: str = ""
    gitlab_client_secret: str = ""
    gitlab_base_url: str = "https://gitlab.com"
    gitlab_name: str = "GitLab"
    gitlab_required_groups: str = ""  # comma-separated full paths

    azure_ad_client_id: str = ""
    azure_ad_client_secret: str = ""
    azure_ad_tenant_id: str = ""

    keycloak_client_id: str = ""
    keycloak_client_secret: str = ""
    keycloak_base_url: str = ""
    keycloak_realm: str = ""

    custom_oauth_name: str = "Custom OAuth"
    custom_oauth_client_id: str = ""
    custom_oauth_client_secret: str = ""
    custom_oauth_well_known_url: str = ""
    custom_oauth_scope: str = "openid profile email"
    custom_oauth_user_id_path: str = "id"
    custom_oauth_user_name_path: str = "name"
    custom_oauth_user_email_path: str = "email"
    custom_oauth_user_image_path: str = "image"

    # ------------------------------------------------------------------
    # Email magic-link provider
    # ------------------------------------------------------------------

    smtp_from: str = ""
    smtp_auth_disabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 25
    smtp_secure: bool = False
    smtp_ignore_tls: bool = False
    smtp_username: str = ""
    smtp_password: str = ""

    # ------------------------------------------------------------------
    # Parsed views
    # ------------------------------------------------------------------

    @property
    def admin_emails(self) -> list[str]:
        return _split_csv(self.admin_email)

    @property
    def gitlab_required_group_list(self) -> list[str]:
        return _split_csv(self.gitlab_required_groups)

    def is_admin_email(self, email: str | None) -> bool:
        return bool(email) and email in self.admin_emails

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

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


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: construct Settings(...) directly and pass it to create_app(), or
    call get_settings.cache_clear() after changing environment variables.
    """
    return Settings()
