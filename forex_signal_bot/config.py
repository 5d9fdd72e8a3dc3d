from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple
import os
import yaml

from .errors import ConfigError
from .models import StrategyParameters


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class NewsWindowConfig:
    enabled: bool = True
    timezone: str = "UTC"
    start_hour: int = 12
    end_hour: int = 14
    days: Optional[List[int]] = None  # 0=Mon .. 6=Sun


@dataclass
class StrategyConfig:
    name: str = "MA Crossover Multi-Timeframe"

    # Built-in parameters (used when no approved override exists)
    fast_period: int = 20
    slow_period: int = 50
    atr_stop_multiplier: float = 2.0
    version: str = "1.0.0"

    # Gates / tiers
    min_candles: int = 200
    min_confidence: int = 70
    high_tier_confidence: int = 85
    high_tier_risk_pct: float = 1.0

    # Risk ladder
    tp_atr_multiples: List[float] = field(default_factory=lambda: [3.0, 5.0, 8.0])
    expiry_hours: float = 48.0

    # Indicators
    rsi_period: int = 14
    atr_period: int = 14
    adx_period: int = 14
    bb_period: int = 20
    bb_std_mult: float = 2.0
    adx_strong: float = 25.0
    htf_separation_pct: float = 0.1

    # Structure
    sr_wing: int = 5
    sr_keep: int = 10
    sr_proximity_pct: float = 0.25
    retest_lookback: int = 20
    retest_tolerance_pct: float = 0.3

    # Advisory weights from the analyzer are off unless enabled
    apply_adaptive_weights: bool = False
    params_cache_ttl_s: float = 300.0

    def default_parameters(self) -> StrategyParameters:
        return StrategyParameters(
            fast_period=self.fast_period,
            slow_period=self.slow_period,
            atr_stop_multiplier=self.atr_stop_multiplier,
            version=self.version,
        )


@dataclass
class ProviderConfig:
    type: str = "twelvedata"
    api_key: str = ""
    base_url: str = "https://api.twelvedata.com"
    quotes_base_url: str = "https://api.frankfurter.app"
    use_quotes: bool = True
    symbols: List[str] = None
    interval: str = "15min"
    candle_count: int = 1000
    higher_interval: Optional[str] = None  # None -> aggregate primary candles
    higher_factor: int = 4
    higher_count: int = 300
    rest_timeout_s: int = 20
    rest_max_retries: int = 3


@dataclass
class RateLimitConfig:
    delay_s: float = 8.0  # 8 calls/minute upstream
    rate_limited_backoff_s: float = 60.0
    max_backoff_s: float = 300.0


@dataclass
class ResolverConfig:
    interval: str = "15min"


@dataclass
class BacktestConfig:
    min_completed: int = 30
    min_matching: int = 20
    min_improvement_pct: float = 5.0
    ema_grid: List[List[int]] = field(default_factory=lambda: [[15, 45], [20, 50], [25, 55]])
    atr_grid: List[float] = field(default_factory=lambda: [1.5, 2.0, 2.5])
    in_sample_fraction: float = 0.7
    min_profit_factor: float = 1.25
    min_sharpe: float = 0.5
    monte_carlo_runs: int = 1000
    max_monte_carlo_drift: float = 5.0
    min_out_of_sample_ratio_pct: float = 80.0
    min_out_of_sample_profit_factor: float = 1.0
    min_out_of_sample_sharpe: float = 0.0

    def ema_pairs(self) -> List[Tuple[int, int]]:
        return [(int(p[0]), int(p[1])) for p in self.ema_grid]


@dataclass
class AnalyzerConfig:
    min_sample_size: int = 30


@dataclass
class ScheduleConfig:
    tick_s: float = 30.0
    generate_min: float = 15.0
    resolve_min: float = 5.0
    analyze_hours: float = 6.0
    backtest_days: float = 7.0

    def intervals_ms(self) -> Dict[str, int]:
        return {
            "generate": int(self.generate_min * 60_000),
            "resolve": int(self.resolve_min * 60_000),
            "analyze": int(self.analyze_hours * 3_600_000),
            "backtest": int(self.backtest_days * 86_400_000),
        }


@dataclass
class StoreConfig:
    type: str = "sqlite"  # sqlite | memory
    path: str = "data/signals.db"


@dataclass
class AppConfig:
    name: str = "Forex Signal Bot"
    log_level: str = "INFO"


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    strategy: StrategyConfig
    news_window: NewsWindowConfig
    rate_limit: RateLimitConfig
    resolver: ResolverConfig
    backtest: BacktestConfig
    analyzer: AnalyzerConfig
    schedule: ScheduleConfig
    store: StoreConfig


def _section(cls, raw: Dict[str, Any], name: str):
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return cls(**data)


def parse_config(raw: Optional[Dict[str, Any]]) -> Config:
    raw = raw or {}
    cfg = Config(
        app=_section(AppConfig, raw, "app"),
        provider=_section(ProviderConfig, raw, "provider"),
        strategy=_section(StrategyConfig, raw, "strategy"),
        news_window=_section(NewsWindowConfig, raw, "news_window"),
        rate_limit=_section(RateLimitConfig, raw, "rate_limit"),
        resolver=_section(ResolverConfig, raw, "resolver"),
        backtest=_section(BacktestConfig, raw, "backtest"),
        analyzer=_section(AnalyzerConfig, raw, "analyzer"),
        schedule=_section(ScheduleConfig, raw, "schedule"),
        store=_section(StoreConfig, raw, "store"),
    )

    # env overrides (useful on servers)
    cfg.provider.api_key = _env_override(cfg.provider.api_key, "TWELVE_DATA_KEY")
    cfg.store.path = _env_override(cfg.store.path, "SIGNAL_DB_PATH")
    if cfg.provider.symbols is None:
        cfg.provider.symbols = []

    # Allow FX_SYMBOLS="EUR/USD,GBP/USD"
    sym_env = os.getenv("FX_SYMBOLS")
    if sym_env:
        cfg.provider.symbols = [x.strip() for x in sym_env.split(",") if x.strip()]

    if len(cfg.strategy.tp_atr_multiples) != 3:
        raise ConfigError("strategy.tp_atr_multiples needs exactly three values")
    if not 0.0 < cfg.backtest.in_sample_fraction < 1.0:
        raise ConfigError("backtest.in_sample_fraction must be between 0 and 1")
    if cfg.store.type not in ("sqlite", "memory"):
        raise ConfigError(f"Unsupported store type: {cfg.store.type}")
    return cfg


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return parse_config(raw)
