from __future__ import annotations

import asyncio
import logging

import httpx

from auth.errors import CatalogAPIError

from .constants import DEFAULT_HTTP_TIMEOUT, DEFAULT_MAX_RETRIES, LOGGER


# Request extension that disables retries for a single request.
NO_RETRY_EXTENSION = "moodtunes_no_retry"


def _retry_after_seconds(header: str | None) -> int | None:
    if header is None:
        return None
    try:
        return max(0, int(header))
    except ValueError:
        return None


class RetryTransport(httpx.AsyncBaseTransport):
    """Re-sends idempotent catalog reads on 429 and 5xx responses.

    A 429 is retried at most once, after Retry-After (or one second). A 5xx is
    retried up to ``max_retries`` times with exponential backoff. Requests that
    carry the ``NO_RETRY_EXTENSION`` extension are always sent exactly once.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._sleep = sleep
        self._logger = logger or LOGGER

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float | None:
        if attempt >= self._max_retries:
            return None
        if response.status_code == 429:
            if attempt > 0:
                return None
            wait_seconds = _retry_after_seconds(response.headers.get("retry-after"))
            return 1 if wait_seconds is None else wait_seconds
        if response.status_code >= 500:
            return 2**attempt
        return None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.extensions.get(NO_RETRY_EXTENSION):
            return await self._transport.handle_async_request(request)

        body = request.content
        attempt = 0
        while True:
            response = await self._transport.handle_async_request(
                httpx.Request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=body,
                    extensions=request.extensions,
                )
            )
            delay = self._retry_delay(response, attempt)
            if delay is None:
                return response

            self._logger.warning(
                "Spotify returned %s for %s %s; attempt %s of %s in %ss",
                response.status_code,
                request.method,
                request.url.path,
                attempt + 2,
                self._max_retries + 1,
                delay,
            )
            await response.aclose()
            await self._sleep(delay)
            attempt += 1

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_http_client(
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    max_retries: int = DEFAULT_MAX_RETRIES,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    base_transport = transport or httpx.AsyncHTTPTransport()
    return httpx.AsyncClient(
        timeout=timeout,
        transport=RetryTransport(base_transport, max_retries=max_retries, logger=LOGGER),
    )


def friendly_error_message(status_code: int, wait_seconds: int | None = None) -> str:
    if status_code == 401:
        return "Authentication failed. Your Spotify session may have expired."
    if status_code == 403:
        return "You don't have permission to perform this action."
    if status_code == 404:
        return "The requested resource was not found on Spotify."
    if status_code == 429:
        wait = 0 if wait_seconds is None else wait_seconds
        return f"Rate limit exceeded. Please wait {wait} seconds."
    if status_code >= 500:
        return "Spotify is experiencing issues. Please try again later."
    return f"Spotify request failed with status {status_code}."


async def raise_for_catalog_error(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    wait_seconds = _retry_after_seconds(response.headers.get("retry-after"))
    try:
        detail = response.json()
    except Exception:
        body = await response.aread()
        detail = {"raw": body.decode("utf-8", errors="replace")}

    message = friendly_error_message(response.status_code, wait_seconds)
    LOGGER.warning(
        "Spotify API error status=%s endpoint=%s",
        response.status_code,
        response.request.url,
    )
    raise CatalogAPIError(response.status_code, message, detail)
