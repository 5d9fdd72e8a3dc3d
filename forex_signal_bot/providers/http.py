from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..errors import MalformedResponseError, RateLimitedError, SourceError

log = logging.getLogger("http")

# Both upstreams are polled a few times a minute; one small pool is plenty.
_POOL_SIZE = 4
_MAX_BACKOFF_S = 20.0


def _retry_after(resp: aiohttp.ClientResponse) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    return float(raw) if raw and raw.isdigit() else None


class HttpClient:
    """JSON GET client for one upstream.

    Timeouts and connection errors are retried with doubling waits. HTTP 429
    is raised as RateLimitedError on the first hit; the caller's backpressure
    policy decides how long to wait.
    """

    def __init__(
        self,
        source: str,
        base_url: str,
        *,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 3,
        rest_backoff_s: float = 0.8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.base_url = base_url.rstrip("/")
        self.rest_timeout_s = rest_timeout_s
        self.rest_max_retries = max(1, int(rest_max_retries))
        self.rest_backoff_s = rest_backoff_s
        self.sleep = sleep
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=self.rest_timeout_s,
                connect=min(10, self.rest_timeout_s),
                sock_read=max(10, int(self.rest_timeout_s * 0.75)),
            )
            connector = aiohttp.TCPConnector(limit=_POOL_SIZE, ttl_dns_cache=300)
            self._session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        return self._session

    async def _get_once(self, url: str, params: Dict[str, Any], symbol: Optional[str]) -> Any:
        sess = await self._get_session()
        async with sess.get(url, params=params) as resp:
            if resp.status == 429:
                raise RateLimitedError(
                    f"HTTP 429 from {self.source}",
                    retry_after_s=_retry_after(resp),
                    source=self.source,
                    symbol=symbol,
                )
            if resp.status != 200:
                body = await resp.text()
                raise SourceError(
                    f"{self.source} request failed: {resp.status} {body[:300]}",
                    source=self.source,
                    symbol=symbol,
                    details={"status": resp.status},
                )
            try:
                # content type is not checked; Frankfurter mirrors vary
                return await resp.json(content_type=None)
            except ValueError as e:
                raise MalformedResponseError(f"Invalid JSON: {e}", source=self.source, symbol=symbol) from e

    async def get_json(self, path: str, params: Dict[str, Any], *, symbol: Optional[str] = None) -> Any:
        url = self.base_url + path
        wait = float(self.rest_backoff_s)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._get_once(url, params, symbol)
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt >= self.rest_max_retries:
                    raise SourceError(
                        f"{self.source} unreachable after {attempt} attempts: {e!r}",
                        source=self.source,
                        symbol=symbol,
                    ) from e
                log.warning(
                    "http_retry source=%s path=%s attempt=%d/%d symbol=%s wait=%.1fs err=%s",
                    self.source, path, attempt, self.rest_max_retries, symbol, wait, e,
                )
                await self.sleep(wait)
                wait = min(wait * 2.0, _MAX_BACKOFF_S)
