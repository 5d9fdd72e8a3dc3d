from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .errors import RateLimitedError, SourceError
from .models import Candle, Quote, StrategyParameters, DEFAULT_PARAMETERS
from .params import ParameterSource, resolve_parameters
from .providers.base import CandleSource, QuoteSource
from .ratelimit import RateLimitPolicy
from .store import SignalStore
from .strategy import StrategyEngine
from .timefilter import interval_ms, now_ms

log = logging.getLogger("generator")


def aggregate_candles(candles: Sequence[Candle], factor: int) -> List[Candle]:
    """Fold consecutive groups of `factor` candles into one; a short tail is dropped."""
    if factor <= 1:
        return list(candles)
    out: List[Candle] = []
    for i in range(0, len(candles) - factor + 1, factor):
        g = candles[i:i + factor]
        out.append(Candle(
            open_time_ms=g[0].open_time_ms,
            open=g[0].open,
            high=max(c.high for c in g),
            low=min(c.low for c in g),
            close=g[-1].close,
            volume=sum(c.volume for c in g),
        ))
    return out


@dataclass
class GenerationReport:
    generated: int = 0
    tracked: int = 0
    skipped: int = 0
    failed: int = 0
    signal_ids: List[str] = field(default_factory=list)


class SignalGenerator:
    """Sequential per-symbol analysis with a fixed pause between upstream calls."""

    def __init__(
        self,
        engine: StrategyEngine,
        store: SignalStore,
        candles: CandleSource,
        *,
        symbols: Sequence[str],
        quotes: Optional[QuoteSource] = None,
        params: Optional[ParameterSource] = None,
        default_params: StrategyParameters = DEFAULT_PARAMETERS,
        interval: str = "15min",
        candle_count: int = 1000,
        higher_interval: Optional[str] = None,
        higher_factor: int = 4,
        higher_count: int = 300,
        rate_limit: Optional[RateLimitPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.engine = engine
        self.store = store
        self.candles = candles
        self.symbols = list(symbols)
        self.quotes = quotes
        self.params = params
        self.default_params = default_params
        self.interval = interval
        self.interval_ms = interval_ms(interval)
        self.candle_count = candle_count
        self.higher_interval = higher_interval
        self.higher_factor = higher_factor
        self.higher_count = higher_count
        self.rate_limit = rate_limit or RateLimitPolicy()
        self.clock = clock

    async def _fetch_quotes(self) -> Dict[str, Quote]:
        if self.quotes is None:
            return {}
        try:
            return await self.quotes.fetch_quotes(self.symbols)
        except SourceError as e:
            log.warning("quotes_failed err=%s", e)
            return {}

    async def run(self, now: Optional[int] = None) -> GenerationReport:
        now = now if now is not None else self.clock()
        report = GenerationReport()
        quotes = await self._fetch_quotes()
        log.info("generate_start symbols=%d quotes=%d", len(self.symbols), len(quotes))

        for i, symbol in enumerate(self.symbols):
            if i > 0:
                await self.rate_limit.pause()
            try:
                await self._one(symbol, quotes.get(symbol), now, report)
            except RateLimitedError as e:
                report.failed += 1
                log.warning("candles_rate_limited symbol=%s retry_after=%s", symbol, e.retry_after_s)
                await self.rate_limit.back_off(e)
            except SourceError as e:
                report.failed += 1
                log.warning("candles_failed symbol=%s err=%s", symbol, e)

        log.info(
            "generate_done generated=%d tracked=%d skipped=%d failed=%d",
            report.generated, report.tracked, report.skipped, report.failed,
        )
        return report

    def _closed(self, candles: List[Candle], now: int, step_ms: int) -> List[Candle]:
        return [c for c in candles if c.open_time_ms + step_ms <= now]

    async def _one(self, symbol: str, quote: Optional[Quote], now: int, report: GenerationReport) -> None:
        params = resolve_parameters(self.params, symbol, self.default_params)
        primary = await self.candles.fetch_candles(symbol, self.interval, self.candle_count)
        primary = self._closed(primary, now, self.interval_ms)

        if self.higher_interval:
            await self.rate_limit.pause()
            higher = await self.candles.fetch_candles(symbol, self.higher_interval, self.higher_count)
            higher = self._closed(higher, now, interval_ms(self.higher_interval))
        else:
            higher = aggregate_candles(primary, self.higher_factor)

        if len(primary) < self.engine.min_candles:
            report.skipped += 1
            log.warning("insufficient_candles symbol=%s have=%d need=%d", symbol, len(primary), self.engine.min_candles)
            return

        sig = self.engine.analyze(
            primary,
            higher,
            symbol,
            params,
            at_ms=now,
            current_price=quote.mid_rate if quote is not None else None,
        )
        if sig is None:
            report.skipped += 1
            log.debug("no_setup symbol=%s", symbol)
            return

        report.generated += 1
        if self.store.create_if_absent(sig):
            report.tracked += 1
            report.signal_ids.append(sig.signal_id)
            log.info(
                "signal_created id=%s symbol=%s side=%s confidence=%d tier=%s entry=%s stop=%s tp1=%s",
                sig.signal_id, symbol, sig.side, sig.confidence, sig.tier, sig.entry_price, sig.stop_price, sig.tp1,
            )
        else:
            log.info("signal_duplicate id=%s symbol=%s", sig.signal_id, symbol)
