"""Outcome resolution for pending signals.

A pending signal is checked against every closed candle that opened at or
after its creation time, oldest first. The first candle that touches TP1 or
the stop decides the outcome; a candle that touches both resolves as
STOP_HIT, since the intrabar order is unknown and the stop is assumed to
have been hit first. Signals past their expiry are marked EXPIRED without
looking at candles.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .errors import RateLimitedError, SignalNotFound, SourceError
from .models import Candle, Signal, LONG, TP1_HIT, STOP_HIT, EXPIRED, MANUALLY_CLOSED
from .providers.base import CandleSource
from .ratelimit import RateLimitPolicy
from .store import SignalStore
from .timefilter import interval_ms, now_ms

log = logging.getLogger("resolver")

MAX_FETCH_CANDLES = 5000


def quote_currency(symbol: str) -> str:
    s = symbol.upper()
    if "/" in s:
        return s.split("/", 1)[1]
    return s[-3:]


def pip_size(symbol: str) -> float:
    return 0.01 if quote_currency(symbol) == "JPY" else 0.0001


def profit_loss_pips(symbol: str, side: str, entry: float, exit_price: float) -> float:
    move = (exit_price - entry) if side == LONG else (entry - exit_price)
    return round(move / pip_size(symbol), 1)


@dataclass(frozen=True)
class Resolution:
    outcome: str
    price: float
    time_ms: int


def first_touch(side: str, stop: float, tp1: float, candles: Sequence[Candle]) -> Optional[Resolution]:
    """First TP1/stop touch in `candles` (chronological), or None."""
    for c in candles:
        if side == LONG:
            tp_hit = c.high >= tp1
            sl_hit = c.low <= stop
        else:
            tp_hit = c.low <= tp1
            sl_hit = c.high >= stop
        if sl_hit:
            # also covers the ambiguous tp_hit and sl_hit candle
            return Resolution(STOP_HIT, stop, c.open_time_ms)
        if tp_hit:
            return Resolution(TP1_HIT, tp1, c.open_time_ms)
    return None


def evaluate_signal(signal: Signal, candles: Sequence[Candle]) -> Optional[Resolution]:
    relevant = [c for c in candles if c.open_time_ms >= signal.created_at_ms]
    return first_touch(signal.side, signal.stop_price, signal.tp1, relevant)


@dataclass
class ResolverReport:
    checked: int = 0
    resolved: int = 0
    expired: int = 0
    skipped: int = 0
    outcomes: Dict[str, str] = field(default_factory=dict)


class OutcomeResolver:
    def __init__(
        self,
        store: SignalStore,
        candles: CandleSource,
        *,
        interval: str = "15min",
        rate_limit: Optional[RateLimitPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.candles = candles
        self.interval = interval
        self.interval_ms = interval_ms(interval)
        self.rate_limit = rate_limit or RateLimitPolicy(delay_s=0.0)
        self.clock = clock

    async def run(self, now: Optional[int] = None) -> ResolverReport:
        now = now if now is not None else self.clock()
        pending = self.store.get_pending()
        report = ResolverReport(checked=len(pending))
        if not pending:
            log.info("resolver_idle pending=0")
            return report

        by_symbol: Dict[str, List[Signal]] = {}
        for sig in pending:
            by_symbol.setdefault(sig.symbol, []).append(sig)

        first = True
        for symbol, signals in by_symbol.items():
            if not first:
                await self.rate_limit.pause()
            first = False

            closed: Optional[List[Candle]] = None
            try:
                closed = await self._closed_candles(symbol, signals, now)
            except RateLimitedError as e:
                log.warning("candles_rate_limited symbol=%s retry_after=%s", symbol, e.retry_after_s)
                await self.rate_limit.back_off(e)
            except SourceError as e:
                log.warning("candles_failed symbol=%s err=%s", symbol, e)

            for sig in signals:
                if now > sig.expires_at_ms:
                    self._expire(sig, closed or [], report)
                    continue
                if closed is None:
                    report.skipped += 1
                    continue
                res = evaluate_signal(sig, closed)
                if res is None:
                    continue
                pips = profit_loss_pips(sig.symbol, sig.side, sig.entry_price, res.price)
                if self.store.resolve(sig.signal_id, res.outcome, res.price, res.time_ms, pips):
                    report.resolved += 1
                    report.outcomes[sig.signal_id] = res.outcome
                    log.info(
                        "signal_resolved id=%s symbol=%s side=%s outcome=%s price=%s pips=%.1f",
                        sig.signal_id, sig.symbol, sig.side, res.outcome, res.price, pips,
                    )

        log.info(
            "resolver_done checked=%d resolved=%d expired=%d skipped=%d",
            report.checked, report.resolved, report.expired, report.skipped,
        )
        return report

    async def _closed_candles(self, symbol: str, signals: List[Signal], now: int) -> List[Candle]:
        oldest = min(s.created_at_ms for s in signals)
        count = int(math.ceil(max(0, now - oldest) / self.interval_ms)) + 2
        count = min(count, MAX_FETCH_CANDLES)
        candles = await self.candles.fetch_candles(symbol, self.interval, count)
        # the newest bar may still be forming
        return [c for c in candles if c.open_time_ms + self.interval_ms <= now]

    def _expire(self, sig: Signal, candles: List[Candle], report: ResolverReport) -> None:
        lifetime = [c for c in candles if sig.created_at_ms <= c.open_time_ms <= sig.expires_at_ms]
        if self.store.resolve(sig.signal_id, EXPIRED, None, sig.expires_at_ms, None, lifetime_candles=lifetime):
            report.expired += 1
            report.outcomes[sig.signal_id] = EXPIRED
            log.info("signal_expired id=%s symbol=%s lifetime_candles=%d", sig.signal_id, sig.symbol, len(lifetime))

    def close_manually(self, signal_id: str, price: float, now: Optional[int] = None) -> Optional[Signal]:
        """Terminal MANUALLY_CLOSED transition at a supplied price.

        Raises SignalNotFound for an unknown id; returns None when the signal
        was already resolved.
        """
        sig = self.store.get(signal_id)
        if sig is None:
            raise SignalNotFound(signal_id)
        if not sig.is_pending:
            log.info("close_ignored id=%s outcome=%s", signal_id, sig.outcome)
            return None
        ts = now if now is not None else self.clock()
        pips = profit_loss_pips(sig.symbol, sig.side, sig.entry_price, float(price))
        if not self.store.resolve(signal_id, MANUALLY_CLOSED, float(price), ts, pips):
            return None
        log.info("signal_closed id=%s price=%s pips=%.1f", signal_id, price, pips)
        return self.store.get(signal_id)
