from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .analyzer import AdaptiveWeightingAnalyzer
from .backtester import ParameterBacktester
from .config import Config
from .generator import SignalGenerator
from .params import CachedParameterSource, StoreParameterSource
from .providers.base import CandleSource, QuoteSource
from .providers.frankfurter import FrankfurterQuoteProvider
from .providers.twelvedata import TwelveDataProvider
from .ratelimit import RateLimitPolicy
from .resolver import OutcomeResolver
from .scheduler import Coordinator, SchedulerState, GENERATE, RESOLVE, ANALYZE, BACKTEST
from .store import InMemorySignalStore, SignalStore, SqliteSignalStore
from .strategy import StrategyEngine
from .timefilter import NewsWindow, now_ms

log = logging.getLogger("runner")


def build_store(cfg: Config) -> SignalStore:
    if cfg.store.type == "memory":
        return InMemorySignalStore()
    return SqliteSignalStore(cfg.store.path)


def build_engine(cfg: Config, weight_provider: Any = None) -> StrategyEngine:
    s = cfg.strategy
    nw = cfg.news_window
    return StrategyEngine(
        name=s.name,
        min_candles=s.min_candles,
        min_confidence=s.min_confidence,
        high_tier_confidence=s.high_tier_confidence,
        high_tier_risk_pct=s.high_tier_risk_pct,
        tp_atr_multiples=s.tp_atr_multiples,
        rsi_period=s.rsi_period,
        atr_period=s.atr_period,
        adx_period=s.adx_period,
        bb_period=s.bb_period,
        bb_std_mult=s.bb_std_mult,
        htf_separation_pct=s.htf_separation_pct,
        adx_strong=s.adx_strong,
        sr_wing=s.sr_wing,
        sr_keep=s.sr_keep,
        sr_proximity_pct=s.sr_proximity_pct,
        retest_lookback=s.retest_lookback,
        retest_tolerance_pct=s.retest_tolerance_pct,
        expiry_hours=s.expiry_hours,
        news_window=NewsWindow(
            enabled=nw.enabled,
            timezone=nw.timezone,
            start_hour=nw.start_hour,
            end_hour=nw.end_hour,
            days=nw.days,
        ),
        weight_provider=weight_provider,
    )


class SignalPipeline:
    """All four jobs over one store, registered on one coordinator."""

    def __init__(
        self,
        cfg: Config,
        *,
        store: Optional[SignalStore] = None,
        candles: Optional[CandleSource] = None,
        quotes: Optional[QuoteSource] = None,
        rate_limit: Optional[RateLimitPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.cfg = cfg
        self.clock = clock
        self.store = store if store is not None else build_store(cfg)

        p = cfg.provider
        self.candles = candles if candles is not None else TwelveDataProvider(
            p.api_key,
            base_url=p.base_url,
            rest_timeout_s=p.rest_timeout_s,
            rest_max_retries=p.rest_max_retries,
        )
        if quotes is None and p.use_quotes:
            quotes = FrankfurterQuoteProvider(base_url=p.quotes_base_url)
        self.quotes = quotes

        rl = cfg.rate_limit
        self.rate_limit = rate_limit or RateLimitPolicy(
            delay_s=rl.delay_s,
            rate_limited_backoff_s=rl.rate_limited_backoff_s,
            max_backoff_s=rl.max_backoff_s,
        )

        self.analyzer = AdaptiveWeightingAnalyzer(
            self.store,
            min_sample_size=cfg.analyzer.min_sample_size,
            clock=clock,
        )
        weights = self.analyzer if cfg.strategy.apply_adaptive_weights else None
        self.engine = build_engine(cfg, weight_provider=weights)

        self.params = CachedParameterSource(
            StoreParameterSource(self.store),
            ttl_s=cfg.strategy.params_cache_ttl_s,
            clock=clock,
        )
        default_params = cfg.strategy.default_parameters()

        self.generator = SignalGenerator(
            self.engine,
            self.store,
            self.candles,
            symbols=p.symbols,
            quotes=self.quotes,
            params=self.params,
            default_params=default_params,
            interval=p.interval,
            candle_count=p.candle_count,
            higher_interval=p.higher_interval,
            higher_factor=p.higher_factor,
            higher_count=p.higher_count,
            rate_limit=self.rate_limit,
            clock=clock,
        )
        self.resolver = OutcomeResolver(
            self.store,
            self.candles,
            interval=cfg.resolver.interval,
            rate_limit=self.rate_limit,
            clock=clock,
        )
        b = cfg.backtest
        self.backtester = ParameterBacktester(
            self.store,
            self.engine,
            params=self.params,
            default_params=default_params,
            min_completed=b.min_completed,
            min_matching=b.min_matching,
            min_improvement_pct=b.min_improvement_pct,
            ema_grid=b.ema_pairs(),
            atr_grid=b.atr_grid,
            in_sample_fraction=b.in_sample_fraction,
            min_profit_factor=b.min_profit_factor,
            min_sharpe=b.min_sharpe,
            monte_carlo_runs=b.monte_carlo_runs,
            max_monte_carlo_drift=b.max_monte_carlo_drift,
            min_out_of_sample_ratio_pct=b.min_out_of_sample_ratio_pct,
            min_out_of_sample_profit_factor=b.min_out_of_sample_profit_factor,
            min_out_of_sample_sharpe=b.min_out_of_sample_sharpe,
            clock=clock,
        )

        self.coordinator = Coordinator(SchedulerState(), clock=clock)
        intervals = cfg.schedule.intervals_ms()
        self.coordinator.register(GENERATE, self.generate, intervals[GENERATE])
        self.coordinator.register(RESOLVE, self.resolve, intervals[RESOLVE])
        self.coordinator.register(ANALYZE, self.analyze, intervals[ANALYZE])
        self.coordinator.register(BACKTEST, self.backtest, intervals[BACKTEST])

    async def generate(self):
        return await self.generator.run(self.clock())

    async def resolve(self):
        return await self.resolver.run(self.clock())

    async def analyze(self):
        return await self.analyzer.analyze_all()

    async def backtest(self):
        return await self.backtester.run()

    async def performance(self, symbol: Optional[str] = None):
        return self.analyzer.performance(symbol)

    async def serve(self) -> None:
        if not self.cfg.provider.symbols:
            raise ValueError("No symbols configured.")
        await self.coordinator.serve(self.cfg.schedule.tick_s)

    async def close(self) -> None:
        for src in (self.candles, self.quotes):
            close = getattr(src, "close", None)
            if close is not None:
                await close()
        self.store.close()
