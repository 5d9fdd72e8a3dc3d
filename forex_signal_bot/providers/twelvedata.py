from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import MalformedResponseError, RateLimitedError, SourceError
from ..models import Candle
from ..timefilter import now_ms
from .http import HttpClient

log = logging.getLogger("twelvedata")

BASE_URL = "https://api.twelvedata.com"
MAX_OUTPUTSIZE = 5000

_MIN = 60_000


def cache_ttl_ms(interval: str) -> int:
    """Higher timeframes change less often, so they are cached longer."""
    iv = (interval or "").strip().lower()
    if iv in ("1week", "1w"):
        return 360 * _MIN
    if iv in ("1day", "1d"):
        return 240 * _MIN
    if iv == "4h":
        return 120 * _MIN
    if iv == "1h":
        return 30 * _MIN
    return 15 * _MIN


def _parse_datetime_ms(s: str) -> int:
    s = s.strip()
    fmt = "%Y-%m-%d %H:%M:%S" if " " in s else "%Y-%m-%d"
    dt = datetime.strptime(s, fmt).replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _is_limit_message(msg: str) -> bool:
    return "limit" in (msg or "").lower()


def parse_time_series(payload: Any, symbol: str = "") -> List[Candle]:
    """`/time_series` body -> oldest-first candles.

    Raises RateLimitedError for limit errors, SourceError for other API
    errors and MalformedResponseError when `values` is absent or unparsable.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError("Expected a JSON object", source="twelvedata", symbol=symbol)
    if payload.get("status") == "error":
        msg = str(payload.get("message") or "API error")
        if _is_limit_message(msg) or payload.get("code") == 429:
            raise RateLimitedError(msg, source="twelvedata", symbol=symbol)
        raise SourceError(msg, source="twelvedata", symbol=symbol, details={"code": payload.get("code")})

    values = payload.get("values")
    if not isinstance(values, list):
        raise MalformedResponseError("Missing 'values' in time_series response", source="twelvedata", symbol=symbol)

    out: List[Candle] = []
    try:
        for row in values:
            vol = row.get("volume")
            out.append(Candle(
                open_time_ms=_parse_datetime_ms(str(row["datetime"])),
                open=float(row["open"]),
                high=float(row["high"]),
                low=float(row["low"]),
                close=float(row["close"]),
                volume=float(vol) if vol not in (None, "") else 0.0,
            ))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponseError(f"Bad candle row: {e}", source="twelvedata", symbol=symbol) from e

    # upstream is newest first
    out.reverse()
    return out


class TwelveDataProvider:
    """`fetch_candles` over Twelve Data `/time_series` with an interval-aware cache."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = BASE_URL,
        rest_timeout_s: int = 20,
        rest_max_retries: int = 3,
        clock: Callable[[], int] = now_ms,
        http: Optional[HttpClient] = None,
    ):
        self.api_key = api_key
        self.http = http or HttpClient(
            "twelvedata",
            base_url,
            rest_timeout_s=rest_timeout_s,
            rest_max_retries=rest_max_retries,
        )
        self.clock = clock
        self._cache: Dict[Tuple[str, str, int], Tuple[int, List[Candle]]] = {}

        if not api_key:
            log.warning("api_key_missing provider=twelvedata")

    async def close(self) -> None:
        await self.http.close()

    async def fetch_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        count = max(1, min(int(count), MAX_OUTPUTSIZE))
        key = (symbol, interval, count)
        now = self.clock()
        cached = self._cache.get(key)
        if cached is not None and now - cached[0] < cache_ttl_ms(interval):
            log.debug("cache_hit symbol=%s interval=%s age_s=%d", symbol, interval, (now - cached[0]) // 1000)
            return list(cached[1])

        try:
            payload = await self.http.get_json(
                "/time_series",
                {"symbol": symbol, "interval": interval, "outputsize": count, "apikey": self.api_key},
                symbol=symbol,
            )
            candles = parse_time_series(payload, symbol)
        except RateLimitedError:
            if cached is not None:
                log.warning(
                    "rate_limited_stale_cache symbol=%s interval=%s age_s=%d",
                    symbol, interval, (now - cached[0]) // 1000,
                )
                return list(cached[1])
            raise

        self._cache[key] = (now, candles)
        log.info("candles_fetched symbol=%s interval=%s count=%d", symbol, interval, len(candles))
        return list(candles)
