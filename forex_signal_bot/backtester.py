"""Parameter grid replay over recorded signal snapshots.

Every completed signal carries the candle window it was generated from.
Each grid combination re-runs entry detection over those windows; only
signals whose replayed side matches the recorded side count. Win rate is
the share of those whose recorded outcome was a TP hit.

Completed signals are split chronologically. The grid is searched on the
oldest `in_sample_fraction` of them; the winner must clear the match,
improvement, profit-factor and Sharpe gates there, survive a bootstrap
resample of its trade record, and then hold up on the newer signals it
was not chosen on. Only the out-of-sample win rate is reported.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .models import BacktestRecommendation, Signal, StrategyParameters, DEFAULT_PARAMETERS, REC_PENDING
from .params import ParameterSource, resolve_parameters
from .store import SignalStore
from .strategy import StrategyEngine
from .timefilter import now_ms

log = logging.getLogger("backtester")

EMA_GRID: Tuple[Tuple[int, int], ...] = ((15, 45), (20, 50), (25, 55))
ATR_GRID: Tuple[float, ...] = (1.5, 2.0, 2.5)

# consecutive losses counted as ruin in the resampled records
RUIN_STREAK = 5


@dataclass(frozen=True)
class CombinationResult:
    fast_period: int
    slow_period: int
    atr_stop_multiplier: float
    matching: int
    wins: int
    win_rate: float
    profit_factor: float
    sharpe_ratio: float
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    outcomes: Tuple[bool, ...] = ()  # win flags of the matching signals, oldest first

    def clears(self, min_profit_factor: float, min_sharpe: float) -> bool:
        """Profit-factor and Sharpe gates; a record with no losing pips passes both."""
        if self.gross_loss == 0:
            return self.gross_profit > 0
        return self.profit_factor >= min_profit_factor and self.sharpe_ratio >= min_sharpe


@dataclass(frozen=True)
class MonteCarloResult:
    runs: int
    median_win_rate: float
    worst_case_5: float
    best_case_95: float
    risk_of_ruin: float  # % of runs with RUIN_STREAK or more losses in a row


def win_rate(signals: Sequence[Signal]) -> float:
    if not signals:
        return 0.0
    return sum(1 for s in signals if s.is_win) / len(signals) * 100.0


def profit_factor(returns: Sequence[float]) -> float:
    gains = sum(r for r in returns if r > 0)
    losses = sum(-r for r in returns if r < 0)
    return gains / losses if losses > 0 else 0.0


def sharpe_ratio(returns: Sequence[float]) -> float:
    if not returns:
        return 0.0
    mean = sum(returns) / len(returns)
    var = sum((r - mean) ** 2 for r in returns) / len(returns)
    sd = math.sqrt(var)
    return mean / sd if sd > 0 else 0.0


def _longest_losing_streak(outcomes: Sequence[bool]) -> int:
    best = run = 0
    for won in outcomes:
        run = 0 if won else run + 1
        best = max(best, run)
    return best


def monte_carlo(outcomes: Sequence[bool], runs: int = 1000, rng: Optional[random.Random] = None) -> MonteCarloResult:
    """Bootstrap the win/loss record `runs` times.

    Each run draws len(outcomes) trades with replacement, so run win rates
    vary around the observed one.
    """
    trades = list(outcomes)
    if not trades or runs <= 0:
        return MonteCarloResult(runs=0, median_win_rate=0.0, worst_case_5=0.0, best_case_95=0.0, risk_of_ruin=0.0)
    rng = rng or random.Random()
    rates: List[float] = []
    ruined = 0
    for _ in range(runs):
        sample = rng.choices(trades, k=len(trades))
        rates.append(sum(1 for w in sample if w) / len(sample) * 100.0)
        if _longest_losing_streak(sample) >= RUIN_STREAK:
            ruined += 1
    rates.sort()
    return MonteCarloResult(
        runs=runs,
        median_win_rate=rates[len(rates) // 2],
        worst_case_5=rates[int(len(rates) * 0.05)],
        best_case_95=rates[min(int(len(rates) * 0.95), len(rates) - 1)],
        risk_of_ruin=ruined / runs * 100.0,
    )


class ParameterBacktester:
    def __init__(
        self,
        store: SignalStore,
        engine: StrategyEngine,
        *,
        params: Optional[ParameterSource] = None,
        default_params: StrategyParameters = DEFAULT_PARAMETERS,
        min_completed: int = 30,
        min_matching: int = 20,
        min_improvement_pct: float = 5.0,
        ema_grid: Sequence[Tuple[int, int]] = EMA_GRID,
        atr_grid: Sequence[float] = ATR_GRID,
        in_sample_fraction: float = 0.7,
        min_profit_factor: float = 1.25,
        min_sharpe: float = 0.5,
        monte_carlo_runs: int = 1000,
        max_monte_carlo_drift: float = 5.0,
        min_out_of_sample_ratio_pct: float = 80.0,
        min_out_of_sample_profit_factor: float = 1.0,
        min_out_of_sample_sharpe: float = 0.0,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.engine = engine
        self.params = params
        self.default_params = default_params
        self.min_completed = min_completed
        self.min_matching = min_matching
        self.min_improvement_pct = min_improvement_pct
        self.ema_grid = tuple(ema_grid)
        self.atr_grid = tuple(atr_grid)
        self.in_sample_fraction = in_sample_fraction
        self.min_profit_factor = min_profit_factor
        self.min_sharpe = min_sharpe
        self.monte_carlo_runs = monte_carlo_runs
        self.max_monte_carlo_drift = max_monte_carlo_drift
        self.min_out_of_sample_ratio_pct = min_out_of_sample_ratio_pct
        self.min_out_of_sample_profit_factor = min_out_of_sample_profit_factor
        self.min_out_of_sample_sharpe = min_out_of_sample_sharpe
        self.rng = rng or random.Random()
        self.clock = clock

    async def run(self) -> List[BacktestRecommendation]:
        out: List[BacktestRecommendation] = []
        symbols = self.store.symbols_with_completed(self.min_completed)
        log.info("backtest_start symbols=%d", len(symbols))
        for symbol in symbols:
            rec = self.backtest_symbol(symbol)
            if rec is not None:
                out.append(self.store.record(rec))
        log.info("backtest_done recommendations=%d", len(out))
        return out

    def evaluate_combination(
        self,
        signals: Sequence[Signal],
        fast: int,
        slow: int,
        atr_mult: float,
    ) -> CombinationResult:
        params = StrategyParameters(fast_period=fast, slow_period=slow, atr_stop_multiplier=atr_mult, version="backtest")
        returns: List[float] = []
        outcomes: List[bool] = []
        for sig in signals:
            if self.engine.simulate(sig.candles, params, sig.side) is None:
                continue
            returns.append(float(sig.profit_loss_pips or 0.0))
            outcomes.append(sig.is_win)
        matching = len(returns)
        wins = sum(1 for w in outcomes if w)
        return CombinationResult(
            fast_period=fast,
            slow_period=slow,
            atr_stop_multiplier=atr_mult,
            matching=matching,
            wins=wins,
            win_rate=(wins / matching * 100.0) if matching else 0.0,
            profit_factor=profit_factor(returns),
            sharpe_ratio=sharpe_ratio(returns),
            gross_profit=sum(r for r in returns if r > 0),
            gross_loss=sum(-r for r in returns if r < 0),
            outcomes=tuple(outcomes),
        )

    def split(self, signals: Sequence[Signal]) -> Tuple[List[Signal], List[Signal]]:
        """Oldest `in_sample_fraction` for the search, the rest for validation."""
        cut = int(math.floor(len(signals) * self.in_sample_fraction + 1e-9))
        return list(signals[:cut]), list(signals[cut:])

    def backtest_symbol(self, symbol: str) -> Optional[BacktestRecommendation]:
        signals = self.store.list_completed(symbol)
        if len(signals) < self.min_completed:
            log.info("backtest_skip symbol=%s completed=%d need=%d", symbol, len(signals), self.min_completed)
            return None

        in_sample, out_of_sample = self.split(signals)
        baseline = win_rate(signals)
        best = self._search(symbol, in_sample, baseline)
        if best is None:
            log.info("backtest_no_eligible symbol=%s in_sample=%d baseline=%.1f", symbol, len(in_sample), baseline)
            return None

        mc = monte_carlo(best.outcomes, self.monte_carlo_runs, self.rng)
        drift = abs(mc.median_win_rate - best.win_rate)
        if drift > self.max_monte_carlo_drift:
            log.info(
                "backtest_reject symbol=%s reason=monte_carlo median=%.1f in_sample=%.1f drift=%.1f",
                symbol, mc.median_win_rate, best.win_rate, drift,
            )
            return None

        oos = self.evaluate_combination(out_of_sample, best.fast_period, best.slow_period, best.atr_stop_multiplier)
        reason = self._out_of_sample_failure(best, oos)
        if reason is not None:
            log.info(
                "backtest_reject symbol=%s reason=%s oos_win_rate=%.1f in_sample=%.1f oos_matching=%d pf=%.2f sharpe=%.2f",
                symbol, reason, oos.win_rate, best.win_rate, oos.matching, oos.profit_factor, oos.sharpe_ratio,
            )
            return None

        improvement = oos.win_rate - baseline
        if improvement <= self.min_improvement_pct:
            log.info(
                "backtest_below_threshold symbol=%s oos_win_rate=%.1f baseline=%.1f improvement=%.1f",
                symbol, oos.win_rate, baseline, improvement,
            )
            return None

        current = resolve_parameters(self.params, symbol, self.default_params)
        rec = self._recommendation(symbol, best, oos, mc, current, baseline, improvement, len(signals))
        log.info(
            "backtest_recommend symbol=%s ema=%d/%d atr=%.1f improvement=%.1f matching=%d oos_matching=%d",
            symbol, best.fast_period, best.slow_period, best.atr_stop_multiplier, improvement,
            best.matching, oos.matching,
        )
        return rec

    def _search(self, symbol: str, in_sample: Sequence[Signal], baseline: float) -> Optional[CombinationResult]:
        best: Optional[CombinationResult] = None
        for fast, slow in self.ema_grid:
            for mult in self.atr_grid:
                res = self.evaluate_combination(in_sample, fast, slow, mult)
                log.debug(
                    "combo symbol=%s ema=%d/%d atr=%.1f matching=%d win_rate=%.1f pf=%.2f sharpe=%.2f",
                    symbol, fast, slow, mult, res.matching, res.win_rate, res.profit_factor, res.sharpe_ratio,
                )
                if res.matching < self.min_matching:
                    continue
                if res.win_rate - baseline <= self.min_improvement_pct:
                    continue
                if not res.clears(self.min_profit_factor, self.min_sharpe):
                    continue
                if best is None or res.win_rate > best.win_rate:
                    best = res
        return best

    def _out_of_sample_failure(self, best: CombinationResult, oos: CombinationResult) -> Optional[str]:
        ratio = oos.win_rate / best.win_rate * 100.0 if best.win_rate > 0 else 0.0
        if ratio < self.min_out_of_sample_ratio_pct:
            return "out_of_sample_ratio"
        if not oos.clears(self.min_out_of_sample_profit_factor, self.min_out_of_sample_sharpe):
            return "out_of_sample_risk"
        return None

    def _recommendation(
        self,
        symbol: str,
        best: CombinationResult,
        oos: CombinationResult,
        mc: MonteCarloResult,
        current: StrategyParameters,
        baseline: float,
        improvement: float,
        sample_size: int,
    ) -> BacktestRecommendation:
        changes = {
            "fast_period": {"from": current.fast_period, "to": best.fast_period},
            "slow_period": {"from": current.slow_period, "to": best.slow_period},
            "atr_stop_multiplier": {"from": current.atr_stop_multiplier, "to": best.atr_stop_multiplier},
        }
        reasoning = (
            f"Replaying {sample_size} completed signals with {best.fast_period}/{best.slow_period} EMA and "
            f"{best.atr_stop_multiplier:g}x ATR stop: {best.matching} in-sample matches won "
            f"{best.win_rate:.1f}% (bootstrap median {mc.median_win_rate:.1f}%), and {oos.matching} later "
            f"signals won {oos.win_rate:.1f}% against a realized {baseline:.1f}% "
            f"(profit factor {oos.profit_factor:.2f}, Sharpe {oos.sharpe_ratio:.2f})."
        )
        return BacktestRecommendation(
            symbol=symbol,
            proposed_changes=changes,
            sample_size=sample_size,
            matching_signals=best.matching,
            expected_improvement=round(improvement, 2),
            win_rate=round(oos.win_rate, 2),
            baseline_win_rate=round(baseline, 2),
            profit_factor=round(oos.profit_factor, 4),
            sharpe_ratio=round(oos.sharpe_ratio, 4),
            in_sample_win_rate=round(best.win_rate, 2),
            out_of_sample_matching=oos.matching,
            monte_carlo_median=round(mc.median_win_rate, 2),
            title=f"Optimize {symbol} strategy parameters",
            reasoning=reasoning,
            status=REC_PENDING,
            created_at_ms=self.clock(),
        )
