"""Vendor product-detail JSON client with status-aware retries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from price_tracker.config import settings
from price_tracker.errors import FetchError
from price_tracker.ingest.retry import backoff_delay

logger = logging.getLogger(__name__)

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.ReadError,
)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def default_headers() -> dict[str, str]:
    """Browser-like headers for the vendor's public API."""
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "pt-BR, pt; q=0.9, en; q=0.8",
    }


class VendorDetailClient:
    """Fetches JSON product-detail payloads."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        """
        Args:
            client: Pre-built httpx client (tests pass one with a mock transport)
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for retryable failures
            base_delay: Base backoff in seconds
        """
        self.timeout = timeout or settings.vendor_request_timeout_seconds
        self.max_attempts = max_attempts or settings.fetch_max_attempts
        self.base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=default_headers(),
                follow_redirects=True,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_json(self, url: str) -> Any:
        """
        GET url and decode its JSON body.

        Returns:
            Decoded JSON document

        Raises:
            FetchError: On non-2xx status, transport failure or malformed body.
                ``retryable`` is set when the failure was transient.
        """
        client = await self._get_client()
        last_error: Optional[FetchError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.get(url)
            except RETRYABLE_EXC as e:
                last_error = FetchError(
                    f"Transport error ({type(e).__name__}) for {url}", retryable=True
                )
            except httpx.HTTPError as e:
                raise FetchError(f"Request to {url} failed: {e}") from e
            else:
                sc = response.status_code
                if 200 <= sc < 300:
                    return self._decode(response, url)

                if sc not in RETRYABLE_STATUS:
                    raise FetchError(f"Vendor returned {sc} for {url}", status_code=sc)

                last_error = FetchError(
                    f"Vendor returned {sc} for {url}", status_code=sc, retryable=True
                )
                retry_after = _retry_after_seconds(response)
                if sc == 429 and retry_after is not None and attempt < self.max_attempts:
                    logger.warning(f"Rate limited by vendor, honouring Retry-After {retry_after}s")
                    await asyncio.sleep(retry_after)
                    continue

            if attempt < self.max_attempts:
                sleep_s = backoff_delay(attempt, self.base_delay)
                logger.warning(
                    f"{last_error}; retrying in {sleep_s:.1f}s "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                await asyncio.sleep(sleep_s)

        raise FetchError(
            f"Giving up on {url} after {self.max_attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            retryable=True,
        )

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Malformed JSON body from {url}: {e}") from e


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return min(float(value), 60.0)
    except (TypeError, ValueError):
        return None
