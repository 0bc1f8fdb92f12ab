from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from auth.errors import ConfigurationError

from .constants import (
    AUTH_LOGGER,
    DEFAULT_CREDENTIAL_PATH,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PENDING_AUTH_PATH,
    DEFAULT_PENDING_AUTH_TTL_SECONDS,
    DEFAULT_REDIRECT_URI,
    DEFAULT_REFRESH_FRACTION,
    DEFAULT_SCOPES,
    LOGGER,
    SERVER_LOGGER,
    SPOTIFY_ACCOUNTS_URL,
    SPOTIFY_API_BASE_URL,
)


@dataclass(frozen=True)
class AppConfig:
    client_id: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    accounts_url: str = SPOTIFY_ACCOUNTS_URL
    api_base_url: str = SPOTIFY_API_BASE_URL
    credential_path: Path = DEFAULT_CREDENTIAL_PATH
    pending_auth_path: Path = DEFAULT_PENDING_AUTH_PATH
    pending_auth_ttl_seconds: int = DEFAULT_PENDING_AUTH_TTL_SECONDS
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    refresh_fraction: float = DEFAULT_REFRESH_FRACTION

    @property
    def authorize_url(self) -> str:
        return f"{self.accounts_url.rstrip('/')}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.accounts_url.rstrip('/')}/api/token"


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer value.") from None


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number.") from None


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if not env_path.exists():
        return
    load_dotenv(env_path, override=True)


def validate_env() -> None:
    required = ("SPOTIFY_CLIENT_ID",)
    missing = [key for key in required if not os.getenv(key, "").strip()]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    redirect_uri = os.getenv("SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI).strip()
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            "SPOTIFY_REDIRECT_URI must be an absolute http(s) URL (for example: "
            "http://127.0.0.1:8000/callback)."
        )

    fraction = _get_env_float("MOODTUNES_REFRESH_FRACTION", DEFAULT_REFRESH_FRACTION)
    if not 0 < fraction < 1:
        raise ConfigurationError("MOODTUNES_REFRESH_FRACTION must be between 0 and 1.")


def load_config() -> AppConfig:
    validate_env()
    scopes = os.getenv("SPOTIFY_SCOPES", "").split() or list(DEFAULT_SCOPES)
    return AppConfig(
        client_id=os.getenv("SPOTIFY_CLIENT_ID", "").strip(),
        redirect_uri=os.getenv("SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI).strip(),
        scopes=scopes,
        accounts_url=os.getenv("SPOTIFY_ACCOUNTS_URL", SPOTIFY_ACCOUNTS_URL),
        api_base_url=os.getenv("SPOTIFY_API_BASE_URL", SPOTIFY_API_BASE_URL),
        credential_path=Path(os.getenv("MOODTUNES_CREDENTIAL_PATH", str(DEFAULT_CREDENTIAL_PATH))),
        pending_auth_path=Path(
            os.getenv("MOODTUNES_PENDING_AUTH_PATH", str(DEFAULT_PENDING_AUTH_PATH))
        ),
        pending_auth_ttl_seconds=_get_env_int(
            "MOODTUNES_PENDING_AUTH_TTL", DEFAULT_PENDING_AUTH_TTL_SECONDS
        ),
        http_timeout=_get_env_float("MOODTUNES_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        max_retries=_get_env_int("MOODTUNES_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        refresh_fraction=_get_env_float("MOODTUNES_REFRESH_FRACTION", DEFAULT_REFRESH_FRACTION),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("MOODTUNES_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        for logger in (LOGGER, AUTH_LOGGER, SERVER_LOGGER):
            logger.setLevel(logging.INFO)
    return debug_enabled
