from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

LONG = "LONG"
SHORT = "SHORT"

TIER_HIGH = "HIGH"
TIER_MEDIUM = "MEDIUM"

PENDING = "PENDING"
TP1_HIT = "TP1_HIT"
TP2_HIT = "TP2_HIT"
TP3_HIT = "TP3_HIT"
STOP_HIT = "STOP_HIT"
EXPIRED = "EXPIRED"
MANUALLY_CLOSED = "MANUALLY_CLOSED"

WIN_OUTCOMES = frozenset({TP1_HIT, TP2_HIT, TP3_HIT})
TERMINAL_OUTCOMES = frozenset({TP1_HIT, TP2_HIT, TP3_HIT, STOP_HIT, EXPIRED, MANUALLY_CLOSED})

REC_PENDING = "pending"
REC_APPROVED = "approved"
REC_REJECTED = "rejected"
REC_ROLLED_BACK = "rolled_back"
RECOMMENDATION_STATUSES = frozenset({REC_PENDING, REC_APPROVED, REC_REJECTED, REC_ROLLED_BACK})


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class StrategyParameters:
    fast_period: int = 20
    slow_period: int = 50
    atr_stop_multiplier: float = 2.0
    version: str = "1.0.0"


DEFAULT_PARAMETERS = StrategyParameters()


@dataclass(frozen=True)
class Quote:
    symbol: str
    mid_rate: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    as_of: Optional[str] = None


@dataclass
class Signal:
    signal_id: str
    symbol: str
    side: str  # LONG or SHORT
    entry_price: float
    current_price: float
    stop_price: float
    tp1: float
    tp2: float
    tp3: float
    risk_reward: float
    confidence: int
    tier: str  # HIGH or MEDIUM
    trade_live: bool
    position_size_pct: float
    indicators: Dict[str, Any]
    rationale: List[str]
    created_at_ms: int
    expires_at_ms: int
    strategy_name: str = ""
    strategy_version: str = ""
    candles: List[Candle] = field(default_factory=list)
    outcome: str = PENDING
    outcome_price: Optional[float] = None
    outcome_time_ms: Optional[int] = None
    profit_loss_pips: Optional[float] = None
    lifetime_candles: List[Candle] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.outcome == PENDING

    @property
    def is_win(self) -> bool:
        return self.outcome in WIN_OUTCOMES


@dataclass
class BacktestRecommendation:
    symbol: str
    proposed_changes: Dict[str, Dict[str, Any]]
    sample_size: int  # completed signals the run was based on
    matching_signals: int  # replayed signals that matched the recorded side
    expected_improvement: float  # percentage points over baseline_win_rate
    win_rate: float  # out-of-sample win rate of the proposed parameters
    baseline_win_rate: float
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    in_sample_win_rate: float = 0.0
    out_of_sample_matching: int = 0
    monte_carlo_median: float = 0.0
    title: str = ""
    reasoning: str = ""
    status: str = REC_PENDING
    created_at_ms: int = 0
    approved_at_ms: Optional[int] = None
    recommendation_id: Optional[int] = None

    def parameters(self, version: Optional[str] = None) -> StrategyParameters:
        """Parameters this recommendation proposes (the "to" side of each change)."""
        ch = self.proposed_changes or {}
        return StrategyParameters(
            fast_period=int(ch.get("fast_period", {}).get("to", DEFAULT_PARAMETERS.fast_period)),
            slow_period=int(ch.get("slow_period", {}).get("to", DEFAULT_PARAMETERS.slow_period)),
            atr_stop_multiplier=float(
                ch.get("atr_stop_multiplier", {}).get("to", DEFAULT_PARAMETERS.atr_stop_multiplier)
            ),
            version=version or f"bt-{self.recommendation_id or 0}",
        )


@dataclass
class SymbolInsights:
    symbol: str
    completed_signals: int
    win_rate: float
    long_win_rate: float
    short_win_rate: float
    weights: Dict[str, float]
    bucket_counts: Dict[str, int]
    has_enough_data: bool
    updated_at_ms: int
    min_sample_size: int = 30


@dataclass
class PerformanceSummary:
    symbol: str
    strategy_version: str
    bracket: str  # 70-79, 80-89, 90-100 or ALL
    total: int
    wins: int
    losses: int  # STOP_HIT only
    expired: int
    win_rate: float
    total_pips: float
    avg_pips: float  # over signals that carry a pip result
