from typing import Optional

import pytest

from forex_signal_bot.models import Candle, Signal

# 2023-11-12 08:00 UTC; 250 x 15min candles end at 22:30 UTC two days later,
# outside the default 12-14 UTC news window.
T0 = 1_699_776_000_000
STEP = 900_000

# Close offsets (in 0.001) within each 10-candle cycle: eight steps up, two steps down.
_CYCLE = [1, 2, 3, 4, 5, 6, 7, 8, 5, 2]


def trend_series(n: int = 250, *, mirror: bool = False, base: float = 1.1, t0: int = T0):
    """Up-trending candles whose last close sits at a pullback trough.

    Highs and lows rise by a constant step, so only +DM is ever recorded; the
    closes oscillate inside that channel. `mirror` reflects every price
    around 2.3, which turns it into the matching down-trend.
    """
    out = []
    prev_close = base
    for i in range(n):
        trend = base + 0.0002 * (i + 1)
        close = base + 0.001 * (2 * (i // 10) + _CYCLE[i % 10])
        high = trend + 0.0075
        low = trend - 0.001
        o = prev_close
        if mirror:
            o, high, low, close = 2.3 - o, 2.3 - low, 2.3 - high, 2.3 - close
        out.append(Candle(open_time_ms=t0 + i * STEP, open=o, high=high, low=low, close=close, volume=1.0))
        prev_close = close if not mirror else 2.3 - close
    return out


@pytest.fixture
def uptrend():
    return trend_series(250)


@pytest.fixture
def downtrend():
    return trend_series(250, mirror=True)


@pytest.fixture
def after_last():
    """First instant after the 250th candle closed."""
    return T0 + 250 * STEP


@pytest.fixture
def make_trend():
    return trend_series


def signal_for(
    signal_id: str = "sig_a",
    *,
    symbol: str = "EUR/USD",
    side: str = "LONG",
    entry: float = 1.1000,
    stop: float = 1.0950,
    tp1: float = 1.1075,
    created: int = T0,
    expires: Optional[int] = None,
    **kw,
) -> Signal:
    sign = 1.0 if side == "LONG" else -1.0
    return Signal(
        signal_id=signal_id,
        symbol=symbol,
        side=side,
        entry_price=entry,
        current_price=entry,
        stop_price=stop,
        tp1=tp1,
        tp2=round(tp1 + sign * 0.005, 5),
        tp3=round(tp1 + sign * 0.010, 5),
        risk_reward=1.5,
        confidence=kw.pop("confidence", 90),
        tier=kw.pop("tier", "HIGH"),
        trade_live=kw.pop("trade_live", True),
        position_size_pct=1.0,
        indicators=kw.pop("indicators", {"rsi": 55.0, "adx": 30.0}),
        rationale=kw.pop("rationale", ["test"]),
        created_at_ms=created,
        expires_at_ms=expires if expires is not None else created + 48 * 3_600_000,
        strategy_name="test",
        strategy_version="1.0.0",
        **kw,
    )


@pytest.fixture
def make_signal():
    return signal_for
