from __future__ import annotations

from dataclasses import dataclass
import hashlib
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    Candle,
    Signal,
    StrategyParameters,
    DEFAULT_PARAMETERS,
    LONG,
    SHORT,
    TIER_HIGH,
    TIER_MEDIUM,
    PENDING,
)
from .indicators import ema, rsi_wilder, atr, bollinger_bands, adx, BollingerBands
from .timefilter import NewsWindow, HOUR_MS, now_ms

TREND_UP = "UP"
TREND_DOWN = "DOWN"

TRIGGER_CROSSOVER = "crossover"
TRIGGER_PULLBACK = "pullback"

# Rule name -> default points. Sum is the maximum confidence (126).
RULE_POINTS: Dict[str, int] = {
    "htf_alignment": 25,
    "entry_trigger": 20,
    "htf_momentum": 10,
    "rsi_band": 15,
    "adx_strong": 15,
    "bollinger_region": 8,
    "candle_close": 5,
    "sr_proximity": 15,
    "breakout_retest": 10,
    "outside_news": 3,
}
MAX_CONFIDENCE = sum(RULE_POINTS.values())

SNAPSHOT_CANDLES = 200


class WeightProvider(Protocol):
    """Optional per-symbol override of a scoring rule's points."""

    def rule_weight(self, symbol: str, rule: str, side: str, default: int) -> int:
        ...


@dataclass(frozen=True)
class Setup:
    side: str
    trigger: str
    fast_ema: float
    slow_ema: float
    prev_fast_ema: float
    prev_slow_ema: float
    atr: float
    bb: BollingerBands
    close: float


@dataclass(frozen=True)
class SimulatedTrade:
    side: str
    trigger: str
    entry: float
    stop: float
    tp1: float


def swing_levels(candles: Sequence[Candle], wing: int = 5, keep: int = 10) -> Tuple[List[float], List[float]]:
    """Most recent swing highs and swing lows (oldest first).

    Index i is a swing high when its high is >= every high `wing` bars
    either side of it; swing lows mirror that on lows.
    """
    highs: List[float] = []
    lows: List[float] = []
    for i in range(wing, len(candles) - wing):
        hi = candles[i].high
        lo = candles[i].low
        window = candles[i - wing:i + wing + 1]
        if all(hi >= c.high for c in window):
            highs.append(hi)
        if all(lo <= c.low for c in window):
            lows.append(lo)
    return highs[-keep:], lows[-keep:]


def near_level(price: float, levels: Sequence[float], tolerance_pct: float) -> Optional[float]:
    best: Optional[float] = None
    for lvl in levels:
        if price == 0:
            break
        dist = abs(price - lvl) / price * 100.0
        if dist <= tolerance_pct and (best is None or abs(price - lvl) < abs(price - best)):
            best = lvl
    return best


def breakout_retest(candles: Sequence[Candle], side: str, lookback: int = 20, base: int = 15, tolerance_pct: float = 0.3) -> bool:
    """Break of the base-window extreme in the middle window, then a pullback to it.

    The trailing `lookback` candles are split into the first `base` (which
    define the extreme), a middle window and the latest candle.
    """
    if len(candles) < lookback or base >= lookback - 1:
        return False
    window = candles[-lookback:]
    base_w = window[:base]
    middle = window[base:-1]
    last = window[-1]
    if side == LONG:
        level = max(c.high for c in base_w)
        broke = any(c.close > level for c in middle)
    else:
        level = min(c.low for c in base_w)
        broke = any(c.close < level for c in middle)
    if not broke or level == 0:
        return False
    return abs(last.close - level) / level * 100.0 <= tolerance_pct


def signal_id_for(symbol: str, side: str, candle_open_ms: int, version: str) -> str:
    base = f"{symbol}:{side}:{candle_open_ms}:{version}"
    return "sig_" + hashlib.sha256(base.encode("utf-8")).hexdigest()[:24]


class StrategyEngine:
    """EMA crossover / pullback engine with multi-timeframe confirmation.

    Stateless across calls: every `analyze` recomputes indicators from the
    candle series it is given, so it is safe to share one engine between
    symbols and jobs.
    """

    def __init__(
        self,
        *,
        name: str = "MA Crossover Multi-Timeframe",
        min_candles: int = 200,
        min_confidence: int = 70,
        high_tier_confidence: int = 85,
        high_tier_risk_pct: float = 1.0,
        tp_atr_multiples: Sequence[float] = (3.0, 5.0, 8.0),
        rsi_period: int = 14,
        atr_period: int = 14,
        adx_period: int = 14,
        bb_period: int = 20,
        bb_std_mult: float = 2.0,
        htf_separation_pct: float = 0.1,
        adx_strong: float = 25.0,
        sr_wing: int = 5,
        sr_keep: int = 10,
        sr_proximity_pct: float = 0.25,
        retest_lookback: int = 20,
        retest_tolerance_pct: float = 0.3,
        expiry_hours: float = 48.0,
        price_decimals: int = 5,
        news_window: Optional[NewsWindow] = None,
        weight_provider: Optional[WeightProvider] = None,
    ):
        if len(tp_atr_multiples) != 3:
            raise ValueError("tp_atr_multiples needs exactly three values")
        self.name = name
        self.min_candles = min_candles
        self.min_confidence = min_confidence
        self.high_tier_confidence = high_tier_confidence
        self.high_tier_risk_pct = high_tier_risk_pct
        self.tp_atr_multiples = tuple(float(x) for x in tp_atr_multiples)
        self.rsi_period = rsi_period
        self.atr_period = atr_period
        self.adx_period = adx_period
        self.bb_period = bb_period
        self.bb_std_mult = bb_std_mult
        self.htf_separation_pct = htf_separation_pct
        self.adx_strong = adx_strong
        self.sr_wing = sr_wing
        self.sr_keep = sr_keep
        self.sr_proximity_pct = sr_proximity_pct
        self.retest_lookback = retest_lookback
        self.retest_tolerance_pct = retest_tolerance_pct
        self.expiry_hours = expiry_hours
        self.price_decimals = price_decimals
        self.news_window = news_window if news_window is not None else NewsWindow()
        self.weight_provider = weight_provider

    # ------------------------------------------------------------------
    # Detection (shared by live analysis and backtest replay)
    # ------------------------------------------------------------------

    def detect(self, candles: Sequence[Candle], params: StrategyParameters, trend: Optional[str]) -> Optional[Setup]:
        """Entry trigger on the latest closed candle.

        `trend` restricts the side (UP -> LONG only, DOWN -> SHORT only);
        None lets the primary EMA alignment decide, which is what replay uses.
        """
        closes = [c.close for c in candles]
        fast = ema(closes, params.fast_period)
        slow = ema(closes, params.slow_period)
        prev_fast = ema(closes[:-1], params.fast_period)
        prev_slow = ema(closes[:-1], params.slow_period)
        a = atr(candles, self.atr_period)
        bb = bollinger_bands(closes, self.bb_period, self.bb_std_mult)
        if fast is None or slow is None or prev_fast is None or prev_slow is None or a is None or bb is None:
            return None

        close = closes[-1]
        bull_cross = prev_fast <= prev_slow and fast > slow
        bear_cross = prev_fast >= prev_slow and fast < slow

        side: Optional[str] = None
        trigger: Optional[str] = None
        if bull_cross and trend in (None, TREND_UP):
            side, trigger = LONG, TRIGGER_CROSSOVER
        elif bear_cross and trend in (None, TREND_DOWN):
            side, trigger = SHORT, TRIGGER_CROSSOVER
        elif fast > slow and trend in (None, TREND_UP) and bb.lower <= close <= bb.middle:
            side, trigger = LONG, TRIGGER_PULLBACK
        elif fast < slow and trend in (None, TREND_DOWN) and bb.middle <= close <= bb.upper:
            side, trigger = SHORT, TRIGGER_PULLBACK

        if side is None or trigger is None:
            return None
        return Setup(
            side=side,
            trigger=trigger,
            fast_ema=fast,
            slow_ema=slow,
            prev_fast_ema=prev_fast,
            prev_slow_ema=prev_slow,
            atr=a,
            bb=bb,
            close=close,
        )

    def simulate(self, candles: Sequence[Candle], params: StrategyParameters, expected_side: str) -> Optional[SimulatedTrade]:
        """Replay a recorded candle snapshot under alternative parameters.

        Returns None unless the snapshot yields an entry on the same side as
        the recorded signal.
        """
        if len(candles) < max(params.fast_period, params.slow_period) + 10:
            return None
        setup = self.detect(candles, params, trend=None)
        if setup is None or setup.side != expected_side:
            return None
        stop, tps = self._ladder(setup.side, setup.close, setup.atr, params.atr_stop_multiplier)
        return SimulatedTrade(side=setup.side, trigger=setup.trigger, entry=setup.close, stop=stop, tp1=tps[0])

    # ------------------------------------------------------------------
    # Live analysis
    # ------------------------------------------------------------------

    def higher_trend(self, higher: Sequence[Candle], params: StrategyParameters) -> Optional[Tuple[str, float, float]]:
        closes = [c.close for c in higher]
        h_fast = ema(closes, params.fast_period)
        h_slow = ema(closes, params.slow_period)
        if h_fast is None or h_slow is None:
            return None
        return (TREND_UP if h_fast > h_slow else TREND_DOWN), h_fast, h_slow

    def analyze(
        self,
        primary: Sequence[Candle],
        higher: Sequence[Candle],
        symbol: str,
        params: Optional[StrategyParameters] = None,
        *,
        at_ms: Optional[int] = None,
        current_price: Optional[float] = None,
    ) -> Optional[Signal]:
        """Signal draft for the latest primary candle, or None."""
        params = params or DEFAULT_PARAMETERS
        if len(primary) < self.min_candles:
            return None

        htf = self.higher_trend(higher, params)
        if htf is None:
            return None
        trend, h_fast, h_slow = htf

        setup = self.detect(primary, params, trend=trend)
        if setup is None:
            return None

        closes = [c.close for c in primary]
        rsi = rsi_wilder(closes, self.rsi_period)
        adx_res = adx(primary, self.adx_period)
        swing_hi, swing_lo = swing_levels(primary, self.sr_wing, self.sr_keep)
        ts = at_ms if at_ms is not None else now_ms()

        score, rationale, support, resistance = self._score(
            symbol=symbol,
            setup=setup,
            h_fast=h_fast,
            h_slow=h_slow,
            rsi=rsi,
            adx_val=adx_res.adx if adx_res is not None else None,
            swing_hi=swing_hi,
            swing_lo=swing_lo,
            candles=primary,
            ts=ts,
        )
        if score < self.min_confidence:
            return None

        if score >= self.high_tier_confidence:
            tier, trade_live, size_pct = TIER_HIGH, True, float(self.high_tier_risk_pct)
        else:
            tier, trade_live, size_pct = TIER_MEDIUM, False, 0.0

        entry = setup.close
        stop, tps = self._ladder(setup.side, entry, setup.atr, params.atr_stop_multiplier)
        risk = abs(entry - stop)
        rr = abs(tps[0] - entry) / risk if risk > 0 else 0.0

        d = self.price_decimals
        indicators = {
            "fast_ema": round(setup.fast_ema, d),
            "slow_ema": round(setup.slow_ema, d),
            "prev_fast_ema": round(setup.prev_fast_ema, d),
            "prev_slow_ema": round(setup.prev_slow_ema, d),
            "rsi": round(rsi, 2) if rsi is not None else None,
            "atr": round(setup.atr, d),
            "adx": round(adx_res.adx, 2) if adx_res is not None else None,
            "plus_di": round(adx_res.plus_di, 2) if adx_res is not None else None,
            "minus_di": round(adx_res.minus_di, 2) if adx_res is not None else None,
            "bb_upper": round(setup.bb.upper, d),
            "bb_middle": round(setup.bb.middle, d),
            "bb_lower": round(setup.bb.lower, d),
            "bb_bandwidth": round(setup.bb.bandwidth, 6),
            "htf_fast_ema": round(h_fast, d),
            "htf_slow_ema": round(h_slow, d),
            "htf_trend": trend,
            "trigger": setup.trigger,
            "support": support,
            "resistance": resistance,
            "fast_period": params.fast_period,
            "slow_period": params.slow_period,
            "atr_stop_multiplier": params.atr_stop_multiplier,
            "confidence": score,
        }

        return Signal(
            signal_id=signal_id_for(symbol, setup.side, primary[-1].open_time_ms, params.version),
            symbol=symbol,
            side=setup.side,
            entry_price=round(entry, d),
            current_price=round(current_price if current_price is not None else entry, d),
            stop_price=round(stop, d),
            tp1=round(tps[0], d),
            tp2=round(tps[1], d),
            tp3=round(tps[2], d),
            risk_reward=round(rr, 2),
            confidence=score,
            tier=tier,
            trade_live=trade_live,
            position_size_pct=size_pct,
            indicators=indicators,
            rationale=rationale,
            created_at_ms=ts,
            expires_at_ms=ts + int(self.expiry_hours * HOUR_MS),
            strategy_name=self.name,
            strategy_version=params.version,
            candles=list(primary[-SNAPSHOT_CANDLES:]),
            outcome=PENDING,
        )

    # ------------------------------------------------------------------

    def _ladder(self, side: str, entry: float, atr_val: float, stop_mult: float) -> Tuple[float, List[float]]:
        sign = 1.0 if side == LONG else -1.0
        stop = entry - sign * atr_val * stop_mult
        tps = [entry + sign * atr_val * m for m in self.tp_atr_multiples]
        return stop, tps

    def _points(self, symbol: str, rule: str, side: str) -> int:
        default = RULE_POINTS[rule]
        if self.weight_provider is None:
            return default
        return int(self.weight_provider.rule_weight(symbol, rule, side, default))

    def _score(
        self,
        *,
        symbol: str,
        setup: Setup,
        h_fast: float,
        h_slow: float,
        rsi: Optional[float],
        adx_val: Optional[float],
        swing_hi: List[float],
        swing_lo: List[float],
        candles: Sequence[Candle],
        ts: int,
    ) -> Tuple[int, List[str], Optional[float], Optional[float]]:
        side = setup.side
        close = setup.close
        is_long = side == LONG
        score = 0
        b: List[str] = []

        def add(rule: str, label: str) -> None:
            nonlocal score
            pts = self._points(symbol, rule, side)
            score += pts
            b.append(f"{label} (+{pts})")

        if (is_long and close > h_fast) or (not is_long and close < h_fast):
            add("htf_alignment", "HTF trend " + ("bullish, price above HTF fast EMA" if is_long else "bearish, price below HTF fast EMA"))

        if setup.trigger == TRIGGER_CROSSOVER:
            add("entry_trigger", ("Bullish" if is_long else "Bearish") + " EMA crossover")
        else:
            add("entry_trigger", "Pullback to " + ("lower" if is_long else "upper") + " Bollinger half in trend")

        if h_slow != 0 and abs(h_fast - h_slow) / abs(h_slow) * 100.0 > self.htf_separation_pct:
            add("htf_momentum", f"HTF EMA separation >{self.htf_separation_pct:g}%")

        if rsi is not None:
            if is_long and 40 < rsi < 70:
                add("rsi_band", "RSI 40-70")
            elif not is_long and 30 < rsi < 60:
                add("rsi_band", "RSI 30-60")

        if adx_val is not None and adx_val > self.adx_strong:
            add("adx_strong", f"ADX >{self.adx_strong:g}")

        bb = setup.bb
        if is_long and bb.lower < close < bb.middle:
            add("bollinger_region", "Price in lower Bollinger half")
        elif not is_long and bb.middle < close < bb.upper:
            add("bollinger_region", "Price in upper Bollinger half")

        add("candle_close", "Closed candle confirmation")

        support = near_level(close, swing_lo, self.sr_proximity_pct)
        resistance = near_level(close, swing_hi, self.sr_proximity_pct)
        if is_long and support is not None:
            add("sr_proximity", f"Near swing support {support:g}")
        elif not is_long and resistance is not None:
            add("sr_proximity", f"Near swing resistance {resistance:g}")

        if breakout_retest(candles, side, lookback=self.retest_lookback, tolerance_pct=self.retest_tolerance_pct):
            add("breakout_retest", "Breakout and retest")

        if not self.news_window.within(ts):
            add("outside_news", "Outside news window")

        return score, b, support, resistance
