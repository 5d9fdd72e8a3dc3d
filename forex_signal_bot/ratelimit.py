"""Fixed-delay backpressure between calls to a rate-limited upstream.

The candle source allows a fixed number of calls per minute, so callers
process symbols one at a time and block for `delay_s` between calls. A
rate-limit response earns a longer pause (`Retry-After` when the upstream
sends one) before the next call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .errors import RateLimitedError

log = logging.getLogger("ratelimit")

Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class RateLimitPolicy:
    delay_s: float = 8.0
    rate_limited_backoff_s: float = 60.0
    max_backoff_s: float = 300.0
    sleep: Sleeper = field(default=asyncio.sleep, repr=False)

    async def pause(self) -> None:
        if self.delay_s > 0:
            await self.sleep(self.delay_s)

    async def back_off(self, err: Optional[RateLimitedError] = None) -> float:
        wait = self.rate_limited_backoff_s
        if err is not None and err.retry_after_s is not None:
            wait = float(err.retry_after_s)
        wait = min(max(wait, self.delay_s), self.max_backoff_s)
        log.warning("rate_limited backoff=%.1fs symbol=%s", wait, getattr(err, "symbol", None))
        await self.sleep(wait)
        return wait
