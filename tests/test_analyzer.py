import asyncio

import pytest

from forex_signal_bot.analyzer import (
    DEFAULT_WEIGHTS,
    MAX_WEIGHT,
    AdaptiveWeightingAnalyzer,
    confidence_bracket,
    win_rate_to_weight,
)
from forex_signal_bot.models import EXPIRED, LONG, SHORT, STOP_HIT, TP1_HIT, TP2_HIT
from forex_signal_bot.store import InMemorySignalStore


def _fill(store, make_signal, rows, symbol="EUR/USD"):
    """rows: (side, rsi, adx, win) tuples."""
    for i, (side, rsi, adx, win) in enumerate(rows):
        store.create_if_absent(make_signal(
            f"{symbol}-{i}",
            symbol=symbol,
            side=side,
            stop=1.105 if side == SHORT else 1.095,
            tp1=1.0925 if side == SHORT else 1.1075,
            created=i,
            indicators={"rsi": rsi, "adx": adx},
            outcome=TP1_HIT if win else STOP_HIT,
            profit_loss_pips=75.0 if win else -50.0,
        ))


@pytest.mark.parametrize(
    "wr,default,expected",
    [
        (85, 15, 25),
        (80, 20, 25),
        (75, 15, 20),
        (65, 15, 15),
        (55, 15, 12),
        (55, 6, 5),
        (45, 15, 10),
        (45, 3, 0),
        (39.9, 15, 0),
    ],
)
def test_win_rate_schedule(wr, default, expected):
    assert win_rate_to_weight(wr, default) == expected


def test_defaults_below_sample_size(make_signal):
    store = InMemorySignalStore()
    _fill(store, make_signal, [(LONG, 55.0, 30.0, True)] * 29)
    an = AdaptiveWeightingAnalyzer(store, clock=lambda: 7)

    ins = an.analyze_symbol("EUR/USD")

    assert ins.has_enough_data is False
    assert ins.completed_signals == 29
    assert ins.long_win_rate == 30.0
    assert ins.short_win_rate == 30.0
    assert ins.weights == DEFAULT_WEIGHTS
    assert ins.updated_at_ms == 7


def test_weights_from_buckets(make_signal):
    rows = []
    # 20 moderate-RSI strong-trend longs, 17 winners (85%)
    rows += [(LONG, 55.0, 30.0, i < 17) for i in range(20)]
    # 10 oversold weak-trend shorts, 2 winners (20%)
    rows += [(SHORT, 25.0, 15.0, i < 2) for i in range(10)]
    store = InMemorySignalStore()
    _fill(store, make_signal, rows)
    an = AdaptiveWeightingAnalyzer(store)

    ins = an.analyze_symbol("EUR/USD")

    assert ins.has_enough_data is True
    assert ins.completed_signals == 30
    assert ins.win_rate == pytest.approx(19 / 30 * 100)
    assert ins.long_win_rate == pytest.approx(85.0)
    assert ins.short_win_rate == pytest.approx(20.0)
    assert ins.weights["rsi_moderate"] == 25
    assert ins.weights["strong_trend"] == 25
    assert ins.weights["rsi_oversold"] == 0
    # no overbought samples: empty bucket counts as 50%
    assert ins.weights["rsi_overbought"] == 5
    assert ins.weights["weak_trend_penalty"] == pytest.approx(6.0)
    assert ins.weights["htf_trend"] == DEFAULT_WEIGHTS["htf_trend"]
    assert ins.bucket_counts["rsi_moderate"] == 20
    assert ins.bucket_counts["weak_trend"] == 10
    assert all(0 <= w <= MAX_WEIGHT for w in ins.weights.values())


def test_missing_indicators_are_skipped(make_signal):
    rows = [(LONG, "N/A", None, True)] * 30
    store = InMemorySignalStore()
    _fill(store, make_signal, rows)
    ins = AdaptiveWeightingAnalyzer(store).analyze_symbol("EUR/USD")
    assert ins.bucket_counts["rsi_moderate"] == 0
    assert ins.weights["rsi_moderate"] == win_rate_to_weight(50.0, 15)


def test_rule_weight_uses_cached_insights(make_signal):
    store = InMemorySignalStore()
    _fill(store, make_signal, [(LONG, 55.0, 30.0, True)] * 30)
    an = AdaptiveWeightingAnalyzer(store)

    # nothing analyzed yet
    assert an.rule_weight("EUR/USD", "rsi_band", LONG, 15) == 15
    assert an.get_insights("EUR/USD").has_enough_data is False

    asyncio.run(an.analyze_all())

    assert an.rule_weight("EUR/USD", "rsi_band", LONG, 15) == 25
    assert an.rule_weight("EUR/USD", "adx_strong", LONG, 15) == 25
    assert an.rule_weight("EUR/USD", "htf_alignment", LONG, 25) == 25
    assert an.rule_weight("GBP/USD", "rsi_band", LONG, 15) == 15
    assert [i.symbol for i in an.all_insights()] == ["EUR/USD"]


def test_analyze_all_covers_every_symbol(make_signal):
    store = InMemorySignalStore()
    _fill(store, make_signal, [(LONG, 55.0, 30.0, True)] * 3, symbol="EUR/USD")
    _fill(store, make_signal, [(LONG, 55.0, 30.0, True)] * 3, symbol="USD/JPY")
    out = asyncio.run(AdaptiveWeightingAnalyzer(store).analyze_all())
    assert [i.symbol for i in out] == ["EUR/USD", "USD/JPY"]
    assert all(not i.has_enough_data for i in out)


@pytest.mark.parametrize("confidence,bracket", [(70, "70-79"), (79, "70-79"), (80, "80-89"), (89, "80-89"),
                                                (90, "90-100"), (126, "90-100")])
def test_confidence_bracket(confidence, bracket):
    assert confidence_bracket(confidence) == bracket


def test_performance_by_version_and_bracket(make_signal):
    store = InMemorySignalStore()
    rows = [
        ("a", 92, TP1_HIT, 75.0, "1.0.0"),
        ("b", 85, STOP_HIT, -50.0, "1.0.0"),
        ("c", 72, EXPIRED, None, "1.0.0"),
        ("d", 88, TP1_HIT, 75.0, "1.0.0"),
        ("e", 126, TP2_HIT, 125.0, "bt-1"),
    ]
    for i, (sid, conf, outcome, pips, version) in enumerate(rows):
        sig = make_signal(sid, created=i, confidence=conf, outcome=outcome, profit_loss_pips=pips)
        sig.strategy_version = version
        store.create_if_absent(sig)
    store.create_if_absent(make_signal("open", created=9, confidence=95))
    store.create_if_absent(make_signal("jpy", symbol="USD/JPY", confidence=80, outcome=TP1_HIT, profit_loss_pips=30.0))

    an = AdaptiveWeightingAnalyzer(store, clock=lambda: 0)
    got = {(p.strategy_version, p.bracket): p for p in an.performance("EUR/USD")}

    assert list(got) == [
        ("1.0.0", "70-79"), ("1.0.0", "80-89"), ("1.0.0", "90-100"), ("1.0.0", "ALL"),
        ("bt-1", "90-100"), ("bt-1", "ALL"),
    ]
    every = got[("1.0.0", "ALL")]
    assert (every.total, every.wins, every.losses, every.expired) == (4, 2, 1, 1)
    assert every.win_rate == 50.0
    assert every.total_pips == 100.0
    assert every.avg_pips == 33.3
    mid = got[("1.0.0", "80-89")]
    assert (mid.total, mid.win_rate, mid.avg_pips) == (2, 50.0, 12.5)
    assert got[("1.0.0", "70-79")].avg_pips == 0.0
    assert got[("bt-1", "ALL")].total_pips == 125.0

    assert {p.symbol for p in an.performance()} == {"EUR/USD", "USD/JPY"}
