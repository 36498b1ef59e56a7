"""
api_config.py
-------------
MediFlow Clinical API Client - Runtime Configuration
-----------------------------------------------------
Environment-driven settings for the API communication layer. Values are
read from the process environment after ``load_dotenv()`` has merged a
local ``.env`` file, so development overrides never need to be exported
by hand.

Environment variables:
    MEDIFLOW_API_URL              Base URL of the REST API
                                  (default ``http://localhost:3001/api``).
    MEDIFLOW_HEALTH_URL           Health probe URL (default: API URL with the
                                  trailing ``/api`` removed, plus ``/health``).
    MEDIFLOW_API_TIMEOUT          HTTP timeout in seconds (default 30).
    MEDIFLOW_API_RETRIES          Default retry budget (default 3).
    MEDIFLOW_API_RETRY_DELAY_MS   Default base backoff delay (default 1000).
    MEDIFLOW_CACHE_TTL_MS         Default response cache TTL (default 300000).
    MEDIFLOW_CACHE_MAX_ENTRIES    Response cache entry bound (default 1000).
    MEDIFLOW_SHOW_USER_ERRORS     Report user-facing messages to monitoring
                                  (default ``true``).
    MEDIFLOW_AUTH_TOKEN_FILE      Where the bearer token is persisted. Unset
                                  keeps the token in memory only.
    MEDIFLOW_LOGIN_URL            Login entry point used after a 401
                                  (default ``/login``).
    MEDIFLOW_SLOW_REQUEST_MS      Timing spans above this are logged as slow
                                  (default 1000).

Usage::

    from api_config import ClientSettings

    settings = ClientSettings.from_env()
    print(settings.api_url, settings.retries)

Project: MediFlow Clinical API Client
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:3001/api"
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_CACHE_TTL_MS = 300_000
DEFAULT_CACHE_MAX_ENTRIES = 1000
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_LOGIN_URL = "/login"
DEFAULT_SLOW_REQUEST_MS = 1000.0

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def derive_health_url(api_url: str) -> str:
    """
    Return the server-root health endpoint for *api_url*.

    The REST API is mounted under ``/api`` while ``/health`` lives at the
    server root, so ``http://host:3001/api`` becomes
    ``http://host:3001/health``.
    """
    base = api_url.rstrip("/")
    if base.endswith("/api"):
        base = base[: -len("/api")]
    return f"{base}/health"


class ClientSettings(BaseModel):
    """Resolved configuration for one API client instance."""

    api_url: str = DEFAULT_API_URL
    health_url: Optional[str] = None
    timeout: float = Field(default=DEFAULT_TIMEOUT_S, gt=0)
    retries: int = Field(default=DEFAULT_RETRIES, ge=0)
    retry_delay_ms: int = Field(default=DEFAULT_RETRY_DELAY_MS, ge=0)
    cache_ttl_ms: int = Field(default=DEFAULT_CACHE_TTL_MS, ge=0)
    cache_max_entries: int = Field(default=DEFAULT_CACHE_MAX_ENTRIES, ge=1)
    show_user_friendly_errors: bool = True
    auth_token_file: Optional[str] = None
    login_url: str = DEFAULT_LOGIN_URL
    slow_request_ms: float = Field(default=DEFAULT_SLOW_REQUEST_MS, ge=0)

    def resolve_health_url(self, api_url: Optional[str] = None) -> str:
        """Explicit health URL, else the one derived from *api_url* (default ``api_url``)."""
        return self.health_url or derive_health_url(api_url or self.api_url)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "ClientSettings":
        """
        Build settings from the environment.

        ``load_dotenv`` never overrides variables that are already set, so
        an exported value always beats the ``.env`` file.
        """
        load_dotenv(dotenv_path, override=False)

        settings = cls(
            api_url=os.getenv("MEDIFLOW_API_URL", DEFAULT_API_URL).rstrip("/"),
            health_url=os.getenv("MEDIFLOW_HEALTH_URL") or None,
            timeout=float(os.getenv("MEDIFLOW_API_TIMEOUT", DEFAULT_TIMEOUT_S)),
            retries=int(os.getenv("MEDIFLOW_API_RETRIES", DEFAULT_RETRIES)),
            retry_delay_ms=int(
                os.getenv("MEDIFLOW_API_RETRY_DELAY_MS", DEFAULT_RETRY_DELAY_MS)
            ),
            cache_ttl_ms=int(os.getenv("MEDIFLOW_CACHE_TTL_MS", DEFAULT_CACHE_TTL_MS)),
            cache_max_entries=int(
                os.getenv("MEDIFLOW_CACHE_MAX_ENTRIES", DEFAULT_CACHE_MAX_ENTRIES)
            ),
            show_user_friendly_errors=_env_bool("MEDIFLOW_SHOW_USER_ERRORS", True),
            auth_token_file=os.getenv("MEDIFLOW_AUTH_TOKEN_FILE") or None,
            login_url=os.getenv("MEDIFLOW_LOGIN_URL", DEFAULT_LOGIN_URL),
            slow_request_ms=float(
                os.getenv("MEDIFLOW_SLOW_REQUEST_MS", DEFAULT_SLOW_REQUEST_MS)
            ),
        )
        logger.debug(
            "ClientSettings: api_url=%s retries=%d retry_delay_ms=%d cache_ttl_ms=%d",
            settings.api_url,
            settings.retries,
            settings.retry_delay_ms,
            settings.cache_ttl_ms,
        )
        return settings
