"""
Async HTTP client for external collaborators with timeout and bounded retry.
"""
import asyncio
import logging
import random
from typing import Any, Optional

import httpx

from checkout_core.config import Config
from checkout_core.exceptions import UpstreamError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {502, 503, 504}


class ApiClient:
    """httpx.AsyncClient wrapper with exponential backoff retry"""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        initial_backoff: float = 0.1,
        max_backoff: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.max_retries = max(1, max_retries or Config.HTTP_MAX_RETRIES)
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout or Config.HTTP_TIMEOUT_SECONDS,
            transport=transport
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request, retrying transport failures and gateway errors.

        Returns:
            The first response that is not a retryable gateway error

        Raises:
            UpstreamError: If every attempt failed
        """
        backoff = self.initial_backoff

        for attempt in range(self.max_retries):
            try:
                response = await self.client.request(method, url, **kwargs)
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return response
                failure = UpstreamError(
                    f"{method} {url} returned {response.status_code}",
                    status_code=response.status_code
                )
            except httpx.TransportError as e:
                # Covers connect errors and timeouts
                failure = UpstreamError(f"{method} {url} failed: {type(e).__name__}")
            except httpx.HTTPError as e:
                # Decoding and redirect failures, not worth repeating
                raise UpstreamError(f"{method} {url} failed: {type(e).__name__}: {e}")

            if attempt == self.max_retries - 1:
                raise failure

            logger.warning(f"{failure.message} (attempt {attempt + 1}/{self.max_retries})")
            jitter = random.uniform(0, backoff * 0.1)
            await asyncio.sleep(backoff + jitter)
            backoff = min(backoff * 2, self.max_backoff)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    @staticmethod
    def json(response: httpx.Response) -> Any:
        """Decode a JSON body or raise UpstreamError"""
        try:
            return response.json()
        except ValueError:
            raise UpstreamError(f"Malformed response body from {response.request.url}")

    async def close(self):
        await self.client.aclose()
