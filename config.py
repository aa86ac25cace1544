"""
config.py - Environment-driven settings.

All configuration comes from environment variables (optionally loaded from a
local `.env` file). Nothing here talks to the network.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from errors import ConfigurationError
from logging_config import get_logger

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://demo-api.ramp.com"
PRODUCTION_BASE_URL = "https://api.ramp.com"

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

TRUTHY = {"1", "true", "yes", "y", "on"}


def load_env_file() -> None:
    """Load `.env` into the process environment without overriding real variables."""
    try:
        load_dotenv()
    except UnicodeDecodeError:
        # Fallback for legacy Windows-encoded .env files.
        load_dotenv(encoding="cp1252")


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config_invalid_number | name=%s | raw=%r | fallback=%s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_invalid_number | name=%s | raw=%r | fallback=%s", name, raw, default)
        return default


class Settings(BaseModel):
    """Runtime configuration for the API process and the CLI."""

    model_config = ConfigDict(extra="ignore")

    ramp_client_id: str = ""
    ramp_client_secret: str = ""
    ramp_environment: str = "production"
    ramp_base_url: Optional[str] = None

    google_client_id: str = ""
    google_client_secret: str = ""
    google_authorize_url: str = GOOGLE_AUTHORIZE_URL
    google_token_url: str = GOOGLE_TOKEN_URL
    google_userinfo_url: str = GOOGLE_USERINFO_URL

    session_secret: str = ""
    allowed_email_domains: list[str] = Field(default_factory=lambda: ["coder.com"])
    public_base_url: Optional[str] = None
    cron_secret: str = ""

    fetch_timeout_seconds: float = 15.0
    fetch_max_pages: int = 20
    fetch_page_limit: int = 100
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 0.5

    cache_file: str = "data/dashboard_cache.json"
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls, load_file: bool = True) -> "Settings":
        """Build settings from the process environment."""
        if load_file:
            load_env_file()

        domains_raw = _env("ALLOWED_EMAIL_DOMAIN", "coder.com")
        domains = [
            part.strip().lstrip("@").lower()
            for part in domains_raw.split(",")
            if part.strip().lstrip("@")
        ]

        return cls(
            ramp_client_id=_env("RAMP_CLIENT_ID"),
            ramp_client_secret=_env("RAMP_CLIENT_SECRET"),
            ramp_environment=_env("RAMP_ENVIRONMENT", "production").lower(),
            ramp_base_url=_env("RAMP_BASE_URL") or None,
            google_client_id=_env("GOOGLE_CLIENT_ID"),
            google_client_secret=_env("GOOGLE_CLIENT_SECRET"),
            session_secret=_env("SESSION_SECRET") or _env("NEXTAUTH_SECRET"),
            allowed_email_domains=domains or ["coder.com"],
            public_base_url=_env("PUBLIC_BASE_URL").rstrip("/") or None,
            cron_secret=_env("CRON_SECRET"),
            fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", 15.0),
            fetch_max_pages=_env_int("FETCH_MAX_PAGES", 20),
            fetch_page_limit=_env_int("FETCH_PAGE_LIMIT", 100),
            fetch_max_attempts=_env_int("FETCH_MAX_ATTEMPTS", 3),
            fetch_backoff_seconds=_env_float("FETCH_BACKOFF_SECONDS", 0.5),
            cache_file=_env("DASHBOARD_CACHE_FILE", "data/dashboard_cache.json"),
            log_level=_env("LOG_LEVEL", "INFO"),
            log_json=_env("LOG_JSON").lower() in TRUTHY,
        )

    @property
    def provider_base_url(self) -> str:
        if self.ramp_base_url:
            return self.ramp_base_url.rstrip("/")
        if self.ramp_environment == "sandbox":
            return SANDBOX_BASE_URL
        return PRODUCTION_BASE_URL

    @property
    def provider_configured(self) -> bool:
        return bool(self.ramp_client_id and self.ramp_client_secret)

    def require_provider_credentials(self) -> tuple[str, str]:
        missing = [
            name
            for name, value in (
                ("RAMP_CLIENT_ID", self.ramp_client_id),
                ("RAMP_CLIENT_SECRET", self.ramp_client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Provider API credentials not configured: set {', '.join(missing)}",
                missing=missing,
            )
        return self.ramp_client_id, self.ramp_client_secret

    def require_google_credentials(self) -> tuple[str, str]:
        missing = [
            name
            for name, value in (
                ("GOOGLE_CLIENT_ID", self.google_client_id),
                ("GOOGLE_CLIENT_SECRET", self.google_client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Google OAuth not configured: set {', '.join(missing)}",
                missing=missing,
            )
        return self.google_client_id, self.google_client_secret

    def require_session_secret(self) -> str:
        if not self.session_secret:
            raise ConfigurationError(
                "Session signing secret not configured: set SESSION_SECRET",
                missing=["SESSION_SECRET"],
            )
        return self.session_secret
