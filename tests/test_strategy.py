from forex_signal_bot.generator import aggregate_candles
from forex_signal_bot.models import Candle, StrategyParameters, LONG, SHORT, TIER_HIGH, TIER_MEDIUM, PENDING
from forex_signal_bot.strategy import (
    MAX_CONFIDENCE,
    RULE_POINTS,
    StrategyEngine,
    breakout_retest,
    near_level,
    signal_id_for,
    swing_levels,
)
from forex_signal_bot.timefilter import HOUR_MS, NewsWindow


def _c(idx: int, o: float, h: float, l: float, c: float, v: float = 1.0) -> Candle:
    return Candle(open_time_ms=idx * 900_000, open=o, high=h, low=l, close=c, volume=v)


def _analyze(eng, candles, at_ms, symbol="EUR/USD", params=None):
    return eng.analyze(candles, aggregate_candles(candles, 4), symbol, params, at_ms=at_ms)


def test_max_confidence_is_126():
    assert MAX_CONFIDENCE == 126
    assert sum(RULE_POINTS.values()) == 126


def test_uptrend_pullback_yields_high_tier_long(uptrend, after_last):
    sig = _analyze(StrategyEngine(), uptrend, after_last)

    assert sig is not None
    assert sig.side == LONG
    assert sig.indicators["trigger"] == "pullback"
    assert sig.indicators["htf_trend"] == "UP"
    assert 40 < sig.indicators["rsi"] < 70
    assert sig.indicators["adx"] > 25
    assert sig.confidence >= 85
    assert sig.tier == TIER_HIGH
    assert sig.trade_live is True
    assert sig.position_size_pct == 1.0
    assert sig.tp1 > sig.entry_price > sig.stop_price
    assert sig.entry_price < sig.tp1 < sig.tp2 < sig.tp3
    assert sig.outcome == PENDING
    assert sig.expires_at_ms == after_last + 48 * HOUR_MS
    assert len(sig.candles) == 200
    assert sig.candles[-1] == uptrend[-1]
    assert "Outside news window (+3)" in sig.rationale


def test_downtrend_pullback_yields_short(downtrend, after_last):
    sig = _analyze(StrategyEngine(), downtrend, after_last)

    assert sig is not None
    assert sig.side == SHORT
    assert sig.indicators["htf_trend"] == "DOWN"
    assert 30 < sig.indicators["rsi"] < 60
    assert sig.tp1 < sig.entry_price < sig.stop_price
    assert sig.confidence >= 85


def test_risk_ladder_uses_atr_multiples(uptrend, after_last):
    params = StrategyParameters(fast_period=20, slow_period=50, atr_stop_multiplier=2.5, version="t")
    sig = _analyze(StrategyEngine(), uptrend, after_last, params=params)
    a = sig.indicators["atr"]
    assert abs((sig.entry_price - sig.stop_price) - 2.5 * a) < 1e-4
    assert abs((sig.tp1 - sig.entry_price) - 3.0 * a) < 1e-4
    assert abs((sig.tp3 - sig.entry_price) - 8.0 * a) < 1e-4
    assert abs(sig.risk_reward - 3.0 / 2.5) < 0.01
    assert sig.strategy_version == "t"


def test_analysis_is_deterministic(uptrend, after_last):
    eng = StrategyEngine()
    a = _analyze(eng, uptrend, after_last)
    b = _analyze(eng, uptrend, after_last)
    assert a.confidence == b.confidence
    assert a.rationale == b.rationale
    assert a.signal_id == b.signal_id


def test_signal_id_depends_on_candle_side_and_version():
    base = signal_id_for("EUR/USD", LONG, 1000, "1.0.0")
    assert base.startswith("sig_")
    assert base == signal_id_for("EUR/USD", LONG, 1000, "1.0.0")
    assert base != signal_id_for("EUR/USD", SHORT, 1000, "1.0.0")
    assert base != signal_id_for("EUR/USD", LONG, 2000, "1.0.0")
    assert base != signal_id_for("EUR/USD", LONG, 1000, "bt-1")


def test_too_few_candles_returns_none(uptrend, after_last):
    assert _analyze(StrategyEngine(), uptrend[-199:], after_last) is None


def test_conflicting_timeframes_return_none(uptrend, downtrend, after_last):
    eng = StrategyEngine()
    assert eng.analyze(downtrend, aggregate_candles(uptrend, 4), "EUR/USD", at_ms=after_last) is None
    assert eng.analyze(uptrend, aggregate_candles(downtrend, 4), "EUR/USD", at_ms=after_last) is None


def test_missing_higher_timeframe_returns_none(uptrend, after_last):
    assert StrategyEngine().analyze(uptrend, uptrend[:10], "EUR/USD", at_ms=after_last) is None


def test_confidence_gate(uptrend, after_last):
    sig = _analyze(StrategyEngine(), uptrend, after_last)
    assert _analyze(StrategyEngine(min_confidence=sig.confidence + 1), uptrend, after_last) is None
    assert _analyze(StrategyEngine(min_confidence=sig.confidence), uptrend, after_last) is not None


def test_below_high_tier_is_paper_only(uptrend, after_last):
    sig = _analyze(StrategyEngine(high_tier_confidence=MAX_CONFIDENCE + 1), uptrend, after_last)
    assert sig.tier == TIER_MEDIUM
    assert sig.trade_live is False
    assert sig.position_size_pct == 0.0


def test_news_window_drops_bonus(uptrend, after_last):
    outside = _analyze(StrategyEngine(), uptrend, after_last)
    # analysis time is 22:30 UTC
    inside = _analyze(StrategyEngine(news_window=NewsWindow(start_hour=22, end_hour=23)), uptrend, after_last)
    assert outside.confidence - inside.confidence == RULE_POINTS["outside_news"]
    assert not any("news" in r for r in inside.rationale)


class _Weights:
    def __init__(self, value):
        self.value = value
        self.calls = []

    def rule_weight(self, symbol, rule, side, default):
        self.calls.append((symbol, rule, side))
        return default if self.value is None else self.value


def test_weight_provider_is_consulted(uptrend, after_last):
    passthrough = _Weights(None)
    base = _analyze(StrategyEngine(), uptrend, after_last)
    same = _analyze(StrategyEngine(weight_provider=passthrough), uptrend, after_last)
    assert same.confidence == base.confidence
    assert ("EUR/USD", "rsi_band", LONG) in passthrough.calls

    assert _analyze(StrategyEngine(weight_provider=_Weights(0)), uptrend, after_last) is None


def test_simulate_only_matches_recorded_side(uptrend):
    eng = StrategyEngine()
    params = StrategyParameters(fast_period=15, slow_period=45, atr_stop_multiplier=1.5)
    trade = eng.simulate(uptrend[-200:], params, LONG)
    assert trade is not None
    assert trade.stop < trade.entry < trade.tp1
    assert eng.simulate(uptrend[-200:], params, SHORT) is None
    assert eng.simulate(uptrend[-50:], params, LONG) is None


def test_swing_levels_and_proximity():
    highs = [1.0, 1.1, 1.2, 1.3, 1.4, 1.5, 1.4, 1.3, 1.2, 1.1, 1.0, 1.1]
    candles = [_c(i, h - 0.05, h, h - 0.1, h - 0.05) for i, h in enumerate(highs)]
    swing_hi, swing_lo = swing_levels(candles, wing=5)
    assert swing_hi == [1.5]
    assert swing_lo == []
    assert near_level(1.4985, swing_hi, 0.25) == 1.5
    assert near_level(1.45, swing_hi, 0.25) is None


def test_breakout_retest_long():
    base = [_c(i, 1.0, 1.01, 0.99, 1.0) for i in range(15)]
    breakout = [_c(15 + i, 1.0, 1.03, 1.0, 1.02) for i in range(4)]
    retest = [_c(19, 1.02, 1.02, 1.009, 1.011)]
    assert breakout_retest(base + breakout + retest, LONG)
    assert not breakout_retest(base + breakout + [_c(19, 1.02, 1.03, 1.02, 1.025)], LONG)
    assert not breakout_retest(base + [_c(15 + i, 1.0, 1.005, 0.995, 1.0) for i in range(5)], LONG)


def _reversal(n: int = 250, *, bullish: bool = True):
    """Steady 1-pip drift against `bullish`, then one 500-pip candle that flips the EMAs."""
    sign = 1.0 if bullish else -1.0
    out = []
    prev = 1.2
    for i in range(n):
        close = 1.2 - sign * 0.0001 * i
        if i == n - 1:
            close = prev + sign * 0.05
        out.append(_c(i, prev, max(prev, close) + 0.0005, min(prev, close) - 0.0005, close))
        prev = close
    return out


def test_crossover_trigger_on_last_candle(uptrend, downtrend):
    candles = _reversal()
    at = candles[-1].open_time_ms + 900_000
    eng = StrategyEngine(min_confidence=0)

    setup = eng.detect(candles, StrategyParameters(), trend=None)
    assert setup.trigger == "crossover"
    assert setup.prev_fast_ema < setup.prev_slow_ema
    assert setup.fast_ema > setup.slow_ema

    sig = eng.analyze(candles, aggregate_candles(uptrend, 4), "EUR/USD", at_ms=at)
    assert sig.side == LONG
    assert sig.indicators["trigger"] == "crossover"
    assert "Bullish EMA crossover (+20)" in sig.rationale

    # a bullish cross against a falling higher timeframe is not traded
    assert eng.analyze(candles, aggregate_candles(downtrend, 4), "EUR/USD", at_ms=at) is None


def test_bearish_crossover_needs_falling_higher_timeframe(uptrend, downtrend):
    candles = _reversal(bullish=False)
    at = candles[-1].open_time_ms + 900_000
    eng = StrategyEngine(min_confidence=0)

    sig = eng.analyze(candles, aggregate_candles(downtrend, 4), "EUR/USD", at_ms=at)
    assert sig.side == SHORT
    assert sig.indicators["trigger"] == "crossover"
    assert "Bearish EMA crossover (+20)" in sig.rationale
    assert eng.analyze(candles, aggregate_candles(uptrend, 4), "EUR/USD", at_ms=at) is None
