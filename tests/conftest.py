import pytest

ENV_KEYS = (
    "SPOTIFY_CLIENT_ID",
    "SPOTIFY_REDIRECT_URI",
    "SPOTIFY_SCOPES",
    "SPOTIFY_ACCOUNTS_URL",
    "SPOTIFY_API_BASE_URL",
    "MOODTUNES_CREDENTIAL_PATH",
    "MOODTUNES_PENDING_AUTH_PATH",
    "MOODTUNES_PENDING_AUTH_TTL",
    "MOODTUNES_HTTP_TIMEOUT",
    "MOODTUNES_MAX_RETRIES",
    "MOODTUNES_REFRESH_FRACTION",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
