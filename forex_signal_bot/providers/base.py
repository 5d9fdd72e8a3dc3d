from __future__ import annotations

from typing import Dict, List, Protocol, Sequence

from ..models import Candle, Quote


class CandleSource(Protocol):
    """Oldest-first candles; raises RateLimitedError / SourceError on failure."""

    async def fetch_candles(self, symbol: str, interval: str, count: int) -> List[Candle]:
        ...


class QuoteSource(Protocol):
    async def fetch_quotes(self, pairs: Sequence[str]) -> Dict[str, Quote]:
        ...
