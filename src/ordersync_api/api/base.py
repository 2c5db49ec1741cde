"""Rate-limited async HTTP client shared by source and carrier integrations."""

import asyncio
from typing import Optional

import httpx

from ordersync_api.config.constants import (
    HTTP_TIMEOUT_SECONDS,
    MAX_RATE_LIMIT_RETRIES,
    MAX_RETRY_AFTER_SECONDS,
    RATE_LIMIT_BACKOFF_SECONDS,
)
from ordersync_api.core.errors import ConfigurationError, RateLimitedError, TransportError
from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


class BaseAPIClient:
    """
    Async HTTP client that goes through the rate limiter for every request.

    429 responses are retried in a bounded loop with exponential backoff
    (or the server's Retry-After); once retries are exhausted the request
    fails with RateLimitedError. Other HTTP failures become TransportError,
    and 401/403 become ConfigurationError.
    """

    def __init__(
        self,
        base_url: str,
        rate_limiter,
        rate_limit_key: str,
        min_delay: Optional[float] = None,
        max_retries: int = MAX_RATE_LIMIT_RETRIES,
        backoff_seconds: float = RATE_LIMIT_BACKOFF_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ConfigurationError(f"Missing base URL for {rate_limit_key}")
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self.min_delay = min_delay
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    def _headers(self) -> dict:
        """Authentication headers; overridden by each integration."""
        return {"Accept": "application/json"}

    async def close(self):
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    def _retry_after(self, response: httpx.Response) -> Optional[float]:
        raw = response.headers.get("retry-after")
        if raw is None:
            return None
        try:
            return min(float(raw), MAX_RETRY_AFTER_SECONDS)
        except ValueError:
            return None

    async def _request(
        self,
        method: str,
        path: str,
        allow_not_found: bool = False,
        **kwargs,
    ) -> Optional[httpx.Response]:
        """
        Issue one logical request.

        Args:
            method: HTTP method
            path: Path relative to base_url, or an absolute URL (pagination links)
            allow_not_found: Return None on 404 instead of raising
            **kwargs: Passed to httpx (params, json, ...)

        Returns:
            The successful response, or None for an allowed 404

        Raises:
            RateLimitedError: 429 persisted after max_retries retries
            ConfigurationError: credential rejected (401/403)
            TransportError: network failure or other HTTP error
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        attempt = 0

        while True:
            await self.rate_limiter.acquire(self.rate_limit_key, self.min_delay)

            try:
                response = await self.client.request(method, url, headers=self._headers(), **kwargs)
            except httpx.HTTPError as e:
                logger.error(f"{method} {url} failed: {e}")
                raise TransportError(f"{method} {url} failed: {e}") from e

            if response.status_code == 429:
                retry_after = self._retry_after(response)
                if attempt >= self.max_retries:
                    logger.error(f"Rate limited on {self.rate_limit_key} after {attempt + 1} attempt(s)")
                    raise RateLimitedError(
                        f"Rate limited on {self.rate_limit_key}", retry_after=retry_after
                    )
                wait = retry_after if retry_after is not None else self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"429 from {url}, retry {attempt}/{self.max_retries} in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                continue

            if response.status_code in (401, 403):
                raise ConfigurationError(
                    f"Credential rejected by {self.base_url} (HTTP {response.status_code})"
                )

            if response.status_code == 404 and allow_not_found:
                return None

            try:
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error {response.status_code} from {url}")
                raise TransportError(str(e), status_code=response.status_code) from e

            return response

    async def _get_json(self, path: str, allow_not_found: bool = False, **kwargs):
        """GET and decode JSON; None on an allowed 404."""
        response = await self._request("GET", path, allow_not_found=allow_not_found, **kwargs)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {path}: {e}") from e
