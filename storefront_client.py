"""
🌐 Storefront HTTP Client
=========================
One aiohttp session per simulated shopper. Every request is timed, checked
(2xx/3xx passes) and recorded into the metrics registry; network errors and
timeouts become a failed check with status 0 instead of an exception.
"""

import asyncio
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from load_config import LoadTestSettings
from load_metrics import MetricsRegistry

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "en-US,en;q=0.5",
}
CACHE_BYPASS_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}
CACHE_BUST_PARAM = "_cb"


@dataclass
class PageResponse:
    """Outcome of one storefront request."""
    url: str
    status: int
    body: str = ""
    latency_ms: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


class StorefrontClient:
    """Thin request helper shared by the session agent and the discovery step."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        settings: LoadTestSettings,
        metrics: Optional[MetricsRegistry] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.settings = settings
        self.metrics = metrics
        self.rng = rng or random.Random()
        self.headers = {**BROWSER_HEADERS, "User-Agent": settings.load_test.user_agent}

    def _bypass_cache(self) -> bool:
        bypass = self.settings.cache_bypass
        return bypass.enabled and self.rng.random() < bypass.percentage

    async def request(
        self,
        method: str,
        url: str,
        page_type: str,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        check_name: Optional[str] = None,
    ) -> PageResponse:
        """Make an HTTP request for a shopper action."""
        request_headers = {**self.headers, **(headers or {})}
        params = None
        if self._bypass_cache():
            request_headers.update(CACHE_BYPASS_HEADERS)
            params = {CACHE_BUST_PARAM: uuid.uuid4().hex[:12]}

        start = time.perf_counter()
        try:
            async with self.session.request(
                method,
                url,
                headers=request_headers,
                params=params,
                data=data,
                json=json_body,
            ) as response:
                body = await response.text(errors="replace")
                result = PageResponse(
                    url=str(response.url),
                    status=response.status,
                    body=body,
                    latency_ms=(time.perf_counter() - start) * 1000,
                )
        except asyncio.TimeoutError:
            result = PageResponse(url=url, status=0, latency_ms=(time.perf_counter() - start) * 1000, error="Timeout")
        except aiohttp.ClientError as e:
            result = PageResponse(url=url, status=0, latency_ms=(time.perf_counter() - start) * 1000, error=str(e)[:80])

        if result.error:
            logger.debug("%s %s failed: %s", method, url, result.error)
        elif not result.ok:
            logger.debug("%s %s returned %d", method, url, result.status)
        if self.metrics is not None:
            self.metrics.record_request(page_type, result.status, result.latency_ms, check_name)
        return result

    async def get(self, url: str, page_type: str, **kwargs) -> PageResponse:
        return await self.request("GET", url, page_type, **kwargs)

    async def post(self, url: str, page_type: str, **kwargs) -> PageResponse:
        return await self.request("POST", url, page_type, **kwargs)
