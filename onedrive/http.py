from __future__ import annotations

import asyncio
import logging
import time
from email.utils import parsedate_to_datetime

import httpx

from .constants import APP_VERSION, LOGGER

USER_AGENT = f"onedrive-auth/{APP_VERSION}"
MAX_RETRY_AFTER_SECONDS = 60


def _seconds_until_retry(retry_after: str | None, *, now: float | None = None) -> int | None:
    """Parse a ``Retry-After`` header given as delta-seconds or an HTTP date."""
    if retry_after is None:
        return None
    retry_after = retry_after.strip()
    if retry_after.isdigit():
        return min(int(retry_after), MAX_RETRY_AFTER_SECONDS)
    try:
        retry_at = parsedate_to_datetime(retry_after).timestamp()
    except (TypeError, ValueError):
        return None

    current = time.time() if now is None else now
    return min(max(0, int(retry_at - current)), MAX_RETRY_AFTER_SECONDS)


class RetryTransport(httpx.AsyncBaseTransport):
    """Retries 429 and 5xx responses; OAuth 4xx errors pass straight through."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 2,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        retries = 0

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            response = await self._transport.handle_async_request(next_request)

            if retries >= self._max_retries:
                return response

            if response.status_code == 429:
                wait_seconds = _seconds_until_retry(response.headers.get("retry-after"))
                if wait_seconds is None:
                    wait_seconds = 2**retries
            elif 500 <= response.status_code < 600:
                wait_seconds = 2**retries
            else:
                return response

            self._logger.warning(
                "Retrying %s after %ss (%s %s)",
                response.status_code,
                wait_seconds,
                request.method,
                request.url.copy_with(query=None),
            )
            await response.aclose()
            await self._sleep(wait_seconds)
            retries += 1

    async def aclose(self) -> None:
        await self._transport.aclose()


def build_provider_client(
    *,
    timeout: float = 30.0,
    max_retries: int = 2,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        transport=RetryTransport(
            transport or httpx.AsyncHTTPTransport(),
            max_retries=max_retries,
        ),
        headers={"User-Agent": USER_AGENT},
    )
