from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("moodtunes.http")
AUTH_LOGGER = logging.getLogger("moodtunes.auth")
SERVER_LOGGER = logging.getLogger("moodtunes.server")

APP_VERSION = "0.1.0"

SPOTIFY_ACCOUNTS_URL = "https://accounts.spotify.com"
SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"

DEFAULT_SCOPES = [
    "user-read-private",
    "user-read-email",
    "playlist-read-private",
    "playlist-read-collaborative",
    "streaming",
    "user-read-playback-state",
    "user-modify-playback-state",
]
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8000/callback"

STATE_DIR = Path(".moodtunes")
DEFAULT_CREDENTIAL_PATH = STATE_DIR / "credential.json"
DEFAULT_PENDING_AUTH_PATH = STATE_DIR / "pending_auth.json"
DEFAULT_PENDING_AUTH_TTL_SECONDS = 600

DEFAULT_HTTP_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 2
# 50 minutes of a 60 minute token.
DEFAULT_REFRESH_FRACTION = 0.8333
