from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence
import math

from .models import Candle


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float
    bandwidth: float


@dataclass(frozen=True)
class AdxResult:
    adx: float
    plus_di: float
    minus_di: float


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def rma_next(prev: Optional[float], x: float, length: int) -> float:
    """Wilder's smoothing: (prev*(length-1) + x) / length."""
    if length <= 1 or prev is None:
        return x
    return (prev * (length - 1) + x) / float(length)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def ema(values: Sequence[float], length: int) -> Optional[float]:
    """EMA seeded with the SMA of the first `length` values."""
    if length <= 0 or len(values) < length:
        return None
    out = sum(values[:length]) / float(length)
    for x in values[length:]:
        out = ema_next(out, x, length)
    return out


def rsi_wilder(closes: Sequence[float], length: int = 14) -> Optional[float]:
    if length <= 0 or len(closes) < length + 1:
        return None
    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, len(closes)):
        ch = closes[i] - closes[i - 1]
        gains.append(ch if ch > 0 else 0.0)
        losses.append(-ch if ch < 0 else 0.0)

    avg_gain = sum(gains[:length]) / length
    avg_loss = sum(losses[:length]) / length
    for g, l in zip(gains[length:], losses[length:]):
        avg_gain = rma_next(avg_gain, g, length)
        avg_loss = rma_next(avg_loss, l, length)

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def true_range(high: float, low: float, prev_close: float) -> float:
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], length: int = 14) -> Optional[float]:
    if length <= 0 or len(candles) < length + 1:
        return None
    trs = [
        true_range(candles[i].high, candles[i].low, candles[i - 1].close)
        for i in range(len(candles) - length, len(candles))
    ]
    return sum(trs) / length


def bollinger_bands(closes: Sequence[float], length: int = 20, std_mult: float = 2.0) -> Optional[BollingerBands]:
    middle = sma(closes, length)
    if middle is None:
        return None
    window = closes[-length:]
    variance = sum((x - middle) ** 2 for x in window) / length
    sd = math.sqrt(variance)
    width = sd * std_mult
    bandwidth = (2.0 * width / middle) if middle != 0 else 0.0
    return BollingerBands(upper=middle + width, middle=middle, lower=middle - width, bandwidth=bandwidth)


def adx(candles: Sequence[Candle], length: int = 14) -> Optional[AdxResult]:
    """Directional movement index.

    +DM/-DM and true range are averaged over a trailing `length` window for
    each bar, giving +DI/-DI and DX per bar. ADX is the Wilder-smoothed DX,
    seeded with the mean of the first `length` DX values. Needs at least
    2 * length candles.
    """
    if length <= 0 or len(candles) < 2 * length:
        return None

    plus_dm: List[float] = []
    minus_dm: List[float] = []
    trs: List[float] = []
    for i in range(1, len(candles)):
        cur = candles[i]
        prev = candles[i - 1]
        up = cur.high - prev.high
        down = prev.low - cur.low
        plus_dm.append(up if (up > down and up > 0) else 0.0)
        minus_dm.append(down if (down > up and down > 0) else 0.0)
        trs.append(true_range(cur.high, cur.low, prev.close))

    dxs: List[float] = []
    pdi = mdi = 0.0
    for end in range(length, len(trs) + 1):
        tr_sum = sum(trs[end - length:end])
        if tr_sum <= 0:
            pdi = mdi = 0.0
        else:
            pdi = 100.0 * sum(plus_dm[end - length:end]) / tr_sum
            mdi = 100.0 * sum(minus_dm[end - length:end]) / tr_sum
        di_sum = pdi + mdi
        dxs.append(0.0 if di_sum == 0 else abs(pdi - mdi) / di_sum * 100.0)

    if len(dxs) < length:
        return None
    adx_val = sum(dxs[:length]) / length
    for dx in dxs[length:]:
        adx_val = rma_next(adx_val, dx, length)
    return AdxResult(adx=adx_val, plus_di=pdi, minus_di=mdi)

