from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .models import PerformanceSummary, Signal, SymbolInsights, EXPIRED, LONG, SHORT, STOP_HIT
from .store import SignalStore
from .timefilter import now_ms

log = logging.getLogger("analyzer")

MAX_WEIGHT = 25

# Advisory weight -> baseline when a bucket performs at the default level.
DEFAULT_WEIGHTS: Dict[str, float] = {
    "rsi_moderate": 15,
    "rsi_overbought": 0,
    "rsi_oversold": 0,
    "strong_trend": 15,
    "weak_trend_penalty": 0,
    "bb_upper": 10,
    "bb_lower": 10,
    "htf_trend": 20,
}

# Scoring rule -> advisory weight it may replace.
RULE_TO_WEIGHT = {
    "rsi_band": "rsi_moderate",
    "adx_strong": "strong_trend",
}


def win_rate_to_weight(win_rate: float, default: float) -> float:
    """Non-linear schedule from a bucket win rate (%) to a 0-25 weight."""
    if win_rate >= 80:
        return min(default + 10, MAX_WEIGHT)
    if win_rate >= 70:
        return min(default + 5, MAX_WEIGHT)
    if win_rate >= 60:
        return default
    if win_rate >= 50:
        return max(default - 3, 5)
    if win_rate >= 40:
        return max(default - 5, 0)
    return 0


BRACKET_ALL = "ALL"
BRACKETS = ("70-79", "80-89", "90-100", BRACKET_ALL)


def confidence_bracket(confidence: int) -> str:
    if confidence >= 90:
        return "90-100"
    if confidence >= 80:
        return "80-89"
    return "70-79"


def summarize_performance(symbol: str, signals: Sequence[Signal]) -> List[PerformanceSummary]:
    """Resolved-signal aggregates per strategy version and confidence bracket.

    Every version gets an ALL row; empty brackets are left out.
    """
    groups: Dict[Tuple[str, str], List[Signal]] = {}
    for s in signals:
        if s.is_pending:
            continue
        version = s.strategy_version or "unknown"
        groups.setdefault((version, confidence_bracket(s.confidence)), []).append(s)
        groups.setdefault((version, BRACKET_ALL), []).append(s)

    out: List[PerformanceSummary] = []
    for (version, bracket), group in sorted(groups.items(), key=lambda kv: (kv[0][0], BRACKETS.index(kv[0][1]))):
        pips = [float(s.profit_loss_pips) for s in group if s.profit_loss_pips is not None]
        wins = sum(1 for s in group if s.is_win)
        out.append(PerformanceSummary(
            symbol=symbol,
            strategy_version=version,
            bracket=bracket,
            total=len(group),
            wins=wins,
            losses=sum(1 for s in group if s.outcome == STOP_HIT),
            expired=sum(1 for s in group if s.outcome == EXPIRED),
            win_rate=round(wins / len(group) * 100.0, 2),
            total_pips=round(sum(pips), 1),
            avg_pips=round(sum(pips) / len(pips), 1) if pips else 0.0,
        ))
    return out


def indicator_value(indicators: Mapping[str, Any], key: str) -> Optional[float]:
    v = (indicators or {}).get(key)
    if v is None or v == "N/A":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _bucket_win_rate(signals: Sequence[Signal]) -> float:
    if not signals:
        return 50.0
    return sum(1 for s in signals if s.is_win) / len(signals) * 100.0


class AdaptiveWeightingAnalyzer:
    """Per-symbol win rates and advisory indicator weights.

    Results are cached and only recomputed by `analyze_symbol` /
    `analyze_all`. Also usable as the engine's weight provider: with enough
    data it swaps the RSI-band and strong-ADX points for the learned weights.
    """

    def __init__(
        self,
        store: SignalStore,
        *,
        min_sample_size: int = 30,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.min_sample_size = min_sample_size
        self.clock = clock
        self._cache: Dict[str, SymbolInsights] = {}

    def default_insights(self, symbol: str, completed: int = 0) -> SymbolInsights:
        return SymbolInsights(
            symbol=symbol,
            completed_signals=completed,
            win_rate=0.0,
            long_win_rate=30.0,
            short_win_rate=30.0,
            weights=dict(DEFAULT_WEIGHTS),
            bucket_counts={},
            has_enough_data=False,
            updated_at_ms=self.clock(),
            min_sample_size=self.min_sample_size,
        )

    def analyze_symbol(self, symbol: str) -> SymbolInsights:
        signals = self.store.list_completed(symbol)
        if len(signals) < self.min_sample_size:
            log.info("analyze_insufficient symbol=%s completed=%d need=%d", symbol, len(signals), self.min_sample_size)
            insights = self.default_insights(symbol, len(signals))
            self._cache[symbol] = insights
            return insights

        longs = [s for s in signals if s.side == LONG]
        shorts = [s for s in signals if s.side == SHORT]

        def bucket(key: str, pred: Callable[[float], bool]) -> List[Signal]:
            out = []
            for s in signals:
                v = indicator_value(s.indicators, key)
                if v is not None and pred(v):
                    out.append(s)
            return out

        buckets = {
            "rsi_moderate": bucket("rsi", lambda v: 40 <= v <= 70),
            "rsi_overbought": bucket("rsi", lambda v: v > 70),
            "rsi_oversold": bucket("rsi", lambda v: v < 30),
            "strong_trend": bucket("adx", lambda v: v > 25),
            "weak_trend": bucket("adx", lambda v: v < 20),
        }

        weights = dict(DEFAULT_WEIGHTS)
        for name in ("rsi_moderate", "rsi_overbought", "rsi_oversold", "strong_trend"):
            weights[name] = win_rate_to_weight(_bucket_win_rate(buckets[name]), DEFAULT_WEIGHTS[name])
        weak_wr = _bucket_win_rate(buckets["weak_trend"])
        weights["weak_trend_penalty"] = (50.0 - weak_wr) / 5.0 if weak_wr < 50 else 0.0

        insights = SymbolInsights(
            symbol=symbol,
            completed_signals=len(signals),
            win_rate=_win_rate(signals),
            long_win_rate=_bucket_win_rate(longs),
            short_win_rate=_bucket_win_rate(shorts),
            weights=weights,
            bucket_counts={k: len(v) for k, v in buckets.items()},
            has_enough_data=True,
            updated_at_ms=self.clock(),
            min_sample_size=self.min_sample_size,
        )
        self._cache[symbol] = insights
        log.info(
            "analyze_done symbol=%s completed=%d win_rate=%.1f long=%.1f short=%.1f",
            symbol, insights.completed_signals, insights.win_rate, insights.long_win_rate, insights.short_win_rate,
        )
        return insights

    async def analyze_all(self) -> List[SymbolInsights]:
        out = []
        for symbol in self.store.list_symbols():
            out.append(self.analyze_symbol(symbol))
        return out

    def performance(self, symbol: Optional[str] = None) -> List[PerformanceSummary]:
        symbols = [symbol] if symbol is not None else self.store.list_symbols()
        out: List[PerformanceSummary] = []
        for sym in symbols:
            out.extend(summarize_performance(sym, self.store.list_completed(sym)))
        return out

    def get_insights(self, symbol: str) -> SymbolInsights:
        cached = self._cache.get(symbol)
        return cached if cached is not None else self.default_insights(symbol)

    def all_insights(self) -> List[SymbolInsights]:
        return list(self._cache.values())

    def rule_weight(self, symbol: str, rule: str, side: str, default: int) -> int:
        insights = self._cache.get(symbol)
        key = RULE_TO_WEIGHT.get(rule)
        if insights is None or not insights.has_enough_data or key is None:
            return default
        return int(round(insights.weights.get(key, default)))


def _win_rate(signals: Sequence[Signal]) -> float:
    return sum(1 for s in signals if s.is_win) / len(signals) * 100.0 if signals else 0.0
