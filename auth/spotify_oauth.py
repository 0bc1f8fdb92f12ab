from __future__ import annotations

import time
import urllib.parse
from dataclasses import dataclass

import httpx

from auth.errors import (
    AuthError,
    NetworkUnavailableError,
    ProfileFetchFailedError,
    TokenExchangeFailedError,
    TokenRefreshFailedError,
)
from auth.models import Credential, Profile
from moodtunes.constants import (
    DEFAULT_HTTP_TIMEOUT,
    SPOTIFY_ACCOUNTS_URL,
    SPOTIFY_API_BASE_URL,
)
from moodtunes.http import NO_RETRY_EXTENSION

SPOTIFY_AUTHORIZE_URL = f"{SPOTIFY_ACCOUNTS_URL}/authorize"
SPOTIFY_TOKEN_URL = f"{SPOTIFY_ACCOUNTS_URL}/api/token"
SPOTIFY_PROFILE_URL = f"{SPOTIFY_API_BASE_URL}/me"


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    expires_at: float
    token_type: str = "Bearer"
    scope: str = ""
    refresh_token: str | None = None

    def to_credential(self, *, fallback_refresh_token: str | None = None) -> Credential:
        # Spotify does not always rotate refresh tokens.
        return Credential(
            access_token=self.access_token,
            refresh_token=self.refresh_token or fallback_refresh_token,
            expires_at=self.expires_at,
            token_type=self.token_type,
        )

    @classmethod
    def from_payload(
        cls,
        payload: dict,
        *,
        issued_at: float | None = None,
        error_cls: type[AuthError] = TokenExchangeFailedError,
    ) -> "TokenResponse":
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        scope = payload.get("scope", "")
        token_type = payload.get("token_type") or "Bearer"

        if not isinstance(access_token, str) or not access_token:
            raise error_cls("Token response missing access_token.")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise error_cls("Token response refresh_token must be a string.")
        if not isinstance(expires_in, int) or isinstance(expires_in, bool):
            raise error_cls("Token response missing expires_in.")
        if not isinstance(scope, str):
            raise error_cls("Token response scope must be a string.")

        issued = time.time() if issued_at is None else issued_at
        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_in=expires_in,
            expires_at=issued + expires_in,
            token_type=str(token_type),
            scope=scope,
        )


def build_authorization_url(
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    code_challenge: str,
    *,
    authorize_url: str = SPOTIFY_AUTHORIZE_URL,
) -> str:
    query = {
        "response_type": "code",
        "client_id": client_id,
        "scope": " ".join(scopes),
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{authorize_url}?{urllib.parse.urlencode(query)}"


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        description = payload.get("error_description")
        return f"{error}: {description}" if description else str(error)
    return str(payload)[:200]


async def _token_request(
    payload: dict[str, str],
    *,
    token_url: str,
    error_cls: type[AuthError],
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)

    try:
        issued_at = time.time()
        response = await http_client.post(
            token_url, data=payload, extensions={NO_RETRY_EXTENSION: True}
        )
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as error:
        raise error_cls(
            f"Token request failed with status {error.response.status_code}: "
            f"{_error_detail(error.response)}"
        ) from error
    except httpx.TransportError as error:
        raise NetworkUnavailableError(
            f"Token request failed: {error.__class__.__name__}"
        ) from error
    except ValueError as error:
        raise error_cls("Token response is not valid JSON.") from error
    finally:
        if own_client:
            await http_client.aclose()

    if not isinstance(data, dict):
        raise error_cls("Token response must be a JSON object.")
    return TokenResponse.from_payload(data, issued_at=issued_at, error_cls=error_cls)


async def exchange_code(
    client_id: str,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    *,
    token_url: str = SPOTIFY_TOKEN_URL,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    return await _token_request(
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": code_verifier,
        },
        token_url=token_url,
        error_cls=TokenExchangeFailedError,
        client=client,
    )


async def refresh_token(
    client_id: str,
    refresh_token: str,
    *,
    token_url: str = SPOTIFY_TOKEN_URL,
    client: httpx.AsyncClient | None = None,
) -> TokenResponse:
    return await _token_request(
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        },
        token_url=token_url,
        error_cls=TokenRefreshFailedError,
        client=client,
    )


async def fetch_profile(
    access_token: str,
    *,
    profile_url: str = SPOTIFY_PROFILE_URL,
    client: httpx.AsyncClient | None = None,
) -> Profile:
    own_client = client is None
    http_client = client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)

    try:
        response = await http_client.get(
            profile_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code >= 400:
            raise ProfileFetchFailedError(
                f"Profile request failed with status {response.status_code}: "
                f"{_error_detail(response)}",
                upstream_status=response.status_code,
            )
        data = response.json()
    except httpx.TransportError as error:
        raise NetworkUnavailableError(
            f"Profile request failed: {error.__class__.__name__}"
        ) from error
    except ValueError as error:
        raise ProfileFetchFailedError("Profile response is not valid JSON.") from error
    finally:
        if own_client:
            await http_client.aclose()

    if not isinstance(data, dict):
        raise ProfileFetchFailedError("Profile response must be a JSON object.")
    return data
