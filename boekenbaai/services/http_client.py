import asyncio
import logging
from typing import Optional

import httpx

from boekenbaai.config import settings

logger = logging.getLogger(__name__)


class PooledHTTPClient:
    """Shared async HTTP client with connection pooling and retry with backoff."""

    def __init__(self, timeout: Optional[float] = None):
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0
        )

        read_timeout = timeout if timeout is not None else settings.isbn_lookup_timeout
        timeout_config = httpx.Timeout(
            timeout=read_timeout,
            connect=min(5.0, read_timeout),
            read=read_timeout,
            write=5.0
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            headers={"User-Agent": f"{settings.app_name}/{settings.app_version}"},
        )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.get(url, **kwargs)

    async def get_with_retry(self, url: str, retries: int = 2, backoff: float = 0.5, **kwargs) -> httpx.Response:
        """GET with exponential backoff on transport errors.

        HTTP error statuses are returned to the caller; only transport failures
        are retried. The last transport error is re-raised.
        """
        for attempt in range(retries):
            try:
                return await self.get(url, **kwargs)
            except httpx.TransportError as exc:
                if attempt >= retries - 1:
                    raise
                wait_time = backoff * (2 ** attempt)
                logger.debug(f"GET {url} failed ({exc!r}), retrying in {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
        raise RuntimeError("retries must be at least 1")

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Process-wide client instance
_global_client: Optional[PooledHTTPClient] = None


async def get_http_client() -> PooledHTTPClient:
    """Return the shared HTTP client, creating it on first use."""
    global _global_client
    if _global_client is None or _global_client.is_closed:
        _global_client = PooledHTTPClient()
    return _global_client


async def cleanup_http_client():
    """Close the shared HTTP client."""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
