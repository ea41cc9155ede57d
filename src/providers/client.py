"""Parcel Tracker — Async Page Client.

Rate-limited async HTTP client used by the page-scraping providers.
Built on httpx.AsyncClient with browser-like headers. It makes exactly
one attempt per call: when the page is unavailable the provider chain
moves on to the next source, and the code is retried next cycle.
"""

from __future__ import annotations

from typing import Optional

import httpx

from src.tracking.errors import FetchError
from src.utils.logger import get_logger
from src.utils.rate_limiter import AsyncRateLimiter

logger = get_logger(__name__)

# ── Browser-like headers common to all requests ──────────
_COMMON_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "pt-BR,pt;q=0.9,en;q=0.8",
    "Connection": "keep-alive",
}


class PageClient:
    """Async HTTP client shared by the scraping providers.

    Attributes:
        name: Owner name, used in FetchError messages.
        total_requests: Count of successful requests this session.
    """

    def __init__(
        self,
        name: str,
        user_agent: str,
        timeout_seconds: float,
        min_interval_seconds: float = 0.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            name: Provider name for errors and logs.
            user_agent: User-Agent header value.
            timeout_seconds: Per-request timeout.
            min_interval_seconds: Minimum spacing between requests (0 = none).
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.name = name
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.total_requests = 0
        self._transport = transport
        self._rate_limiter = (
            AsyncRateLimiter(max_calls=1, period_seconds=min_interval_seconds)
            if min_interval_seconds > 0 else None
        )
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={**_COMMON_HEADERS, "User-Agent": self.user_agent},
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def get(
        self,
        url: str,
        code: str,
        params: Optional[dict[str, str]] = None,
        not_found_is_miss: bool = False,
    ) -> httpx.Response:
        """GET a URL once, mapping every failure to FetchError.

        Args:
            url: Request URL.
            code: Tracking code, for error context.
            params: Optional query parameters.
            not_found_is_miss: Treat a 404 as "this code is unknown upstream"
                rather than a provider failure.

        Raises:
            FetchError: On timeout, connection error or non-2xx status.
        """
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        client = self._get_client()
        try:
            resp = await client.get(url, params=params)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(self.name, code, f"timeout: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            reason = "not found upstream" if status == 404 else f"HTTP {status}"
            miss = not_found_is_miss and status == 404
            raise FetchError(self.name, code, reason, upstream_miss=miss) from e
        except httpx.HTTPError as e:
            raise FetchError(self.name, code, f"{type(e).__name__}: {e}") from e

        self.total_requests += 1
        logger.debug("%s: GET %s → %d", self.name, resp.request.url, resp.status_code)
        return resp

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("%s client closed (total requests: %d)", self.name, self.total_requests)

    async def __aenter__(self) -> "PageClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
