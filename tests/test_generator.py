import asyncio

from forex_signal_bot.errors import RateLimitedError, SourceError
from forex_signal_bot.generator import SignalGenerator, aggregate_candles
from forex_signal_bot.models import Candle, Quote, StrategyParameters, LONG
from forex_signal_bot.params import StaticParameterSource
from forex_signal_bot.ratelimit import RateLimitPolicy
from forex_signal_bot.store import InMemorySignalStore
from forex_signal_bot.strategy import StrategyEngine


def _c(i, o, h, l, c, v=1.0):
    return Candle(open_time_ms=i * 900_000, open=o, high=h, low=l, close=c, volume=v)


class FakeCandles:
    def __init__(self, by_symbol):
        self.by_symbol = by_symbol
        self.calls = []

    async def fetch_candles(self, symbol, interval, count):
        self.calls.append((symbol, interval, count))
        r = self.by_symbol[symbol]
        if isinstance(r, Exception):
            raise r
        return list(r)


class FakeQuotes:
    async def fetch_quotes(self, pairs):
        return {"EUR/USD": Quote("EUR/USD", mid_rate=1.15, bid=1.14994, ask=1.15006)}


class BrokenQuotes:
    async def fetch_quotes(self, pairs):
        raise SourceError("down", source="frankfurter")


class Sleeps:
    def __init__(self):
        self.waits = []

    async def __call__(self, s):
        self.waits.append(s)


def _policy(sleeps):
    return RateLimitPolicy(delay_s=8.0, rate_limited_backoff_s=60.0, sleep=sleeps)


def test_aggregate_candles():
    candles = [_c(i, 1.0 + i, 2.0 + i, 0.5 + i, 1.5 + i, 2.0) for i in range(9)]
    out = aggregate_candles(candles, 4)
    assert len(out) == 2
    assert out[0] == Candle(0, 1.0, 5.0, 0.5, 4.5, 8.0)
    assert out[1].open_time_ms == 4 * 900_000
    assert aggregate_candles(candles, 1) == candles


def test_generates_and_tracks_once(uptrend, after_last):
    store = InMemorySignalStore()
    sleeps = Sleeps()
    gen = SignalGenerator(
        StrategyEngine(),
        store,
        FakeCandles({"EUR/USD": uptrend}),
        symbols=["EUR/USD"],
        quotes=FakeQuotes(),
        rate_limit=_policy(sleeps),
    )

    report = asyncio.run(gen.run(now=after_last))

    assert (report.generated, report.tracked, report.skipped, report.failed) == (1, 1, 0, 0)
    sig = store.get(report.signal_ids[0])
    assert sig.side == LONG
    assert sig.current_price == 1.15
    assert sig.created_at_ms == after_last
    assert sleeps.waits == []

    again = asyncio.run(gen.run(now=after_last))
    assert (again.generated, again.tracked) == (1, 0)
    assert len(store.get_pending()) == 1


def test_forming_candle_is_dropped(uptrend, after_last):
    store = InMemorySignalStore()
    # an extra bar that opened at `after_last` is still forming
    forming = Candle(after_last, 1.2, 1.3, 1.0, 1.25)
    gen = SignalGenerator(
        StrategyEngine(), store, FakeCandles({"EUR/USD": uptrend + [forming]}),
        symbols=["EUR/USD"], rate_limit=_policy(Sleeps()),
    )
    report = asyncio.run(gen.run(now=after_last))
    assert report.tracked == 1
    assert store.get(report.signal_ids[0]).candles[-1] == uptrend[-1]


def test_report_counts_and_pauses(uptrend, after_last):
    sleeps = Sleeps()
    source = FakeCandles({
        "EUR/USD": uptrend,
        "GBP/USD": uptrend[:120],
        "USD/JPY": RateLimitedError(retry_after_s=45),
        "AUD/USD": SourceError("HTTP 500", source="twelvedata"),
    })
    gen = SignalGenerator(
        StrategyEngine(), InMemorySignalStore(), source,
        symbols=["EUR/USD", "GBP/USD", "USD/JPY", "AUD/USD"],
        quotes=BrokenQuotes(),
        rate_limit=_policy(sleeps),
    )

    report = asyncio.run(gen.run(now=after_last))

    assert (report.generated, report.tracked, report.skipped, report.failed) == (1, 1, 1, 2)
    # three pauses between four symbols plus the rate-limit back-off
    assert sleeps.waits == [8.0, 8.0, 45.0, 8.0]
    assert [c[0] for c in source.calls] == ["EUR/USD", "GBP/USD", "USD/JPY", "AUD/USD"]


def test_separate_higher_timeframe_fetch(uptrend, after_last):
    sleeps = Sleeps()
    source = FakeCandles({"EUR/USD": uptrend})
    gen = SignalGenerator(
        StrategyEngine(), InMemorySignalStore(), source,
        symbols=["EUR/USD"], higher_interval="1h", higher_count=300,
        rate_limit=_policy(sleeps),
    )
    asyncio.run(gen.run(now=after_last))
    assert source.calls == [("EUR/USD", "15min", 1000), ("EUR/USD", "1h", 300)]
    assert sleeps.waits == [8.0]


def test_approved_parameters_are_used(uptrend, after_last):
    store = InMemorySignalStore()
    params = StaticParameterSource({"EUR/USD": StrategyParameters(fast_period=15, slow_period=45, version="bt-7")})
    gen = SignalGenerator(
        StrategyEngine(), store, FakeCandles({"EUR/USD": uptrend}),
        symbols=["EUR/USD"], params=params, rate_limit=_policy(Sleeps()),
    )
    report = asyncio.run(gen.run(now=after_last))
    sig = store.get(report.signal_ids[0])
    assert sig.strategy_version == "bt-7"
    assert sig.indicators["fast_period"] == 15
