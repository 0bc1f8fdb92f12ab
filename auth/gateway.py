from __future__ import annotations

from typing import Any

import httpx

from auth.errors import AuthenticationRequiredError, NetworkUnavailableError
from auth.models import Credential
from auth.session import SessionManager
from moodtunes.constants import LOGGER, SPOTIFY_API_BASE_URL
from moodtunes.http import raise_for_catalog_error


class AuthenticatedGateway:
    """Dispatches catalog requests with the session's bearer token.

    A 401 answer triggers one refresh and one retry.  A second 401 is final
    and surfaces as :class:`AuthenticationRequiredError`.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        base_url: str = SPOTIFY_API_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._client = client or session.http_client

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self._base_url}/{endpoint.lstrip('/')}"

    async def _send(
        self,
        method: str,
        url: str,
        credential: Credential,
        *,
        params: dict[str, Any] | None,
        json: Any,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        merged = {"Content-Type": "application/json", **(headers or {})}
        merged["Authorization"] = credential.authorization_header
        try:
            return await self._client.request(
                method,
                url,
                params=params,
                json=json,
                headers=merged,
            )
        except httpx.TransportError as error:
            raise NetworkUnavailableError(
                f"Spotify request failed: {error.__class__.__name__}"
            ) from error

    async def call(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(endpoint)
        credential = await self._session.get_valid_credential()
        response = await self._send(
            method, url, credential, params=params, json=json, headers=headers
        )
        if response.status_code != 401:
            return response

        await response.aclose()
        LOGGER.info("Spotify rejected the access token for %s %s; refreshing once", method, url)
        credential = await self._session.refresh(rejected_token=credential.access_token)
        response = await self._send(
            method, url, credential, params=params, json=json, headers=headers
        )
        if response.status_code == 401:
            await response.aclose()
            raise AuthenticationRequiredError()
        return response

    async def get_json(self, endpoint: str, *, params: dict[str, Any] | None = None) -> Any:
        response = await self.call(endpoint, params=params)
        await raise_for_catalog_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()
