from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from ..errors import MalformedResponseError, SourceError
from ..models import Quote
from ..timefilter import now_ms
from .http import HttpClient

log = logging.getLogger("frankfurter")

BASE_URL = "https://api.frankfurter.app"
CACHE_TTL_MS = 15 * 60_000


def split_pair(symbol: str) -> Tuple[str, str]:
    s = symbol.upper().replace("/", "")
    if len(s) != 6:
        raise ValueError(f"Not a currency pair: {symbol}")
    return s[:3], s[3:]


def parse_latest(payload: Any, symbol: str) -> Quote:
    """`/latest` body -> Quote with a simulated one-pip spread around the rate."""
    _, quote_ccy = split_pair(symbol)
    try:
        rate = float(payload["rates"][quote_ccy])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponseError(f"No rate for {symbol}", source="frankfurter", symbol=symbol) from e
    spread = rate * 0.0001
    return Quote(
        symbol=symbol,
        mid_rate=rate,
        bid=rate - spread / 2,
        ask=rate + spread / 2,
        as_of=str(payload.get("date") or ""),
    )


class FrankfurterQuoteProvider:
    """Display-price quotes; a failing pair is logged and left out of the result."""

    def __init__(
        self,
        *,
        base_url: str = BASE_URL,
        rest_timeout_s: int = 10,
        clock: Callable[[], int] = now_ms,
        http: Optional[HttpClient] = None,
    ):
        self.http = http or HttpClient("frankfurter", base_url, rest_timeout_s=rest_timeout_s)
        self.clock = clock
        self._cache: Dict[str, Tuple[int, Quote]] = {}

    async def close(self) -> None:
        await self.http.close()

    async def fetch_quote(self, symbol: str) -> Quote:
        now = self.clock()
        hit = self._cache.get(symbol)
        if hit is not None and now - hit[0] < CACHE_TTL_MS:
            return hit[1]
        base, quote_ccy = split_pair(symbol)
        payload = await self.http.get_json("/latest", {"from": base, "to": quote_ccy}, symbol=symbol)
        q = parse_latest(payload, symbol)
        self._cache[symbol] = (now, q)
        return q

    async def fetch_quotes(self, pairs: Sequence[str]) -> Dict[str, Quote]:
        out: Dict[str, Quote] = {}
        for symbol in pairs:
            try:
                out[symbol] = await self.fetch_quote(symbol)
            except (SourceError, ValueError) as e:
                log.warning("quote_failed symbol=%s err=%s", symbol, e)
        return out
