"""Signal and recommendation persistence.

Both stores enforce the same two invariants:
- a signal id is inserted at most once (duplicates are a silent no-op);
- an outcome is written only while the signal is still PENDING.
"""
from __future__ import annotations

import json
from copy import deepcopy
import logging
import sqlite3
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import SignalNotFound
from .models import (
    BacktestRecommendation,
    Candle,
    Signal,
    PENDING,
    TERMINAL_OUTCOMES,
    REC_APPROVED,
    RECOMMENDATION_STATUSES,
)
from .timefilter import now_ms

log = logging.getLogger("store")


def candles_to_rows(candles: List[Candle]) -> List[List[float]]:
    return [[c.open_time_ms, c.open, c.high, c.low, c.close, c.volume] for c in candles]


def candles_from_rows(rows: Optional[List[List[float]]]) -> List[Candle]:
    out: List[Candle] = []
    for r in rows or []:
        out.append(Candle(
            open_time_ms=int(r[0]),
            open=float(r[1]),
            high=float(r[2]),
            low=float(r[3]),
            close=float(r[4]),
            volume=float(r[5]) if len(r) > 5 else 0.0,
        ))
    return out


def _check_outcome(outcome: str) -> None:
    if outcome not in TERMINAL_OUTCOMES:
        raise ValueError(f"Not a terminal outcome: {outcome}")


def _check_status(status: str) -> None:
    if status not in RECOMMENDATION_STATUSES:
        raise ValueError(f"Unknown recommendation status: {status}")


class SignalStore(Protocol):
    """Interface shared by the resolver, backtester, analyzer and generator."""

    def create_if_absent(self, signal: Signal) -> bool:
        ...

    def get(self, signal_id: str) -> Optional[Signal]:
        ...

    def get_pending(self) -> List[Signal]:
        ...

    def resolve(
        self,
        signal_id: str,
        outcome: str,
        price: Optional[float],
        time_ms: int,
        pips: Optional[float],
        *,
        lifetime_candles: Optional[List[Candle]] = None,
    ) -> bool:
        ...

    def list_completed(self, symbol: str) -> List[Signal]:
        ...

    def list_symbols(self) -> List[str]:
        ...

    def symbols_with_completed(self, min_count: int) -> List[str]:
        ...

    # recommendation sink
    def record(self, rec: BacktestRecommendation) -> BacktestRecommendation:
        ...

    def list_recommendations(self, symbol: Optional[str] = None) -> List[BacktestRecommendation]:
        ...

    def set_recommendation_status(self, recommendation_id: int, status: str, *, at_ms: Optional[int] = None) -> None:
        ...

    def latest_approved(self, symbol: str) -> Optional[BacktestRecommendation]:
        ...

    def close(self) -> None:
        pass


class InMemorySignalStore(SignalStore):
    def __init__(self) -> None:
        self._signals: Dict[str, Signal] = {}
        self._recs: List[BacktestRecommendation] = []

    def create_if_absent(self, signal: Signal) -> bool:
        if signal.signal_id in self._signals:
            return False
        self._signals[signal.signal_id] = deepcopy(signal)
        return True

    def get(self, signal_id: str) -> Optional[Signal]:
        sig = self._signals.get(signal_id)
        return deepcopy(sig) if sig is not None else None

    def get_pending(self) -> List[Signal]:
        out = [deepcopy(s) for s in self._signals.values() if s.outcome == PENDING]
        return sorted(out, key=lambda s: s.created_at_ms)

    def resolve(self, signal_id, outcome, price, time_ms, pips, *, lifetime_candles=None) -> bool:
        _check_outcome(outcome)
        sig = self._signals.get(signal_id)
        if sig is None:
            raise SignalNotFound(signal_id)
        if sig.outcome != PENDING:
            return False
        self._signals[signal_id] = replace(
            sig,
            outcome=outcome,
            outcome_price=price,
            outcome_time_ms=int(time_ms),
            profit_loss_pips=pips,
            lifetime_candles=list(lifetime_candles or sig.lifetime_candles),
        )
        return True

    def list_completed(self, symbol: str) -> List[Signal]:
        out = [deepcopy(s) for s in self._signals.values() if s.symbol == symbol and s.outcome != PENDING]
        return sorted(out, key=lambda s: s.created_at_ms)

    def list_symbols(self) -> List[str]:
        return sorted({s.symbol for s in self._signals.values()})

    def symbols_with_completed(self, min_count: int) -> List[str]:
        counts: Dict[str, int] = {}
        for s in self._signals.values():
            if s.outcome != PENDING:
                counts[s.symbol] = counts.get(s.symbol, 0) + 1
        return sorted(sym for sym, n in counts.items() if n >= min_count)

    def record(self, rec: BacktestRecommendation) -> BacktestRecommendation:
        stored = replace(deepcopy(rec), recommendation_id=len(self._recs) + 1)
        self._recs.append(stored)
        return deepcopy(stored)

    def list_recommendations(self, symbol: Optional[str] = None) -> List[BacktestRecommendation]:
        return [deepcopy(r) for r in self._recs if symbol is None or r.symbol == symbol]

    def set_recommendation_status(self, recommendation_id: int, status: str, *, at_ms: Optional[int] = None) -> None:
        _check_status(status)
        for i, r in enumerate(self._recs):
            if r.recommendation_id == recommendation_id:
                approved_at = (at_ms if at_ms is not None else now_ms()) if status == REC_APPROVED else r.approved_at_ms
                self._recs[i] = replace(r, status=status, approved_at_ms=approved_at)
                return
        raise KeyError(recommendation_id)

    def latest_approved(self, symbol: str) -> Optional[BacktestRecommendation]:
        approved = [r for r in self._recs if r.symbol == symbol and r.status == REC_APPROVED]
        if not approved:
            return None
        return deepcopy(max(approved, key=lambda r: (r.approved_at_ms or 0, r.recommendation_id or 0)))


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str, allow_nan=False)


_SIGNAL_COLUMNS = (
    "signal_id, symbol, side, entry_price, current_price, stop_price, tp1, tp2, tp3, risk_reward, "
    "confidence, tier, trade_live, position_size_pct, indicators_json, rationale_json, created_at_ms, "
    "expires_at_ms, strategy_name, strategy_version, candles_json, outcome, outcome_price, "
    "outcome_time_ms, profit_loss_pips, lifetime_candles_json"
)


class SqliteSignalStore(SignalStore):
    def __init__(self, path: str | Path):
        self.path = Path(path) if str(path) != ":memory:" else path
        if isinstance(self.path, Path):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS signals (
              signal_id TEXT PRIMARY KEY,
              symbol TEXT NOT NULL,
              side TEXT NOT NULL,
              entry_price REAL NOT NULL,
              current_price REAL NOT NULL,
              stop_price REAL NOT NULL,
              tp1 REAL NOT NULL,
              tp2 REAL NOT NULL,
              tp3 REAL NOT NULL,
              risk_reward REAL NOT NULL,
              confidence INTEGER NOT NULL,
              tier TEXT NOT NULL,
              trade_live INTEGER NOT NULL,
              position_size_pct REAL NOT NULL,
              indicators_json TEXT NOT NULL,
              rationale_json TEXT NOT NULL,
              created_at_ms INTEGER NOT NULL,
              expires_at_ms INTEGER NOT NULL,
              strategy_name TEXT NOT NULL,
              strategy_version TEXT NOT NULL,
              candles_json TEXT NOT NULL,
              outcome TEXT NOT NULL DEFAULT 'PENDING',
              outcome_price REAL,
              outcome_time_ms INTEGER,
              profit_loss_pips REAL,
              lifetime_candles_json TEXT NOT NULL DEFAULT '[]'
            );
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_signals_outcome ON signals(outcome);")
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_signals_symbol ON signals(symbol);")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS recommendations (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              proposed_changes_json TEXT NOT NULL,
              sample_size INTEGER NOT NULL,
              matching_signals INTEGER NOT NULL,
              expected_improvement REAL NOT NULL,
              win_rate REAL NOT NULL,
              baseline_win_rate REAL NOT NULL,
              profit_factor REAL NOT NULL,
              sharpe_ratio REAL NOT NULL,
              in_sample_win_rate REAL NOT NULL DEFAULT 0,
              out_of_sample_matching INTEGER NOT NULL DEFAULT 0,
              monte_carlo_median REAL NOT NULL DEFAULT 0,
              title TEXT NOT NULL,
              reasoning TEXT NOT NULL,
              status TEXT NOT NULL,
              created_at_ms INTEGER NOT NULL,
              approved_at_ms INTEGER
            );
            """
        )

    def _row_to_signal(self, row: tuple) -> Signal:
        (
            signal_id, symbol, side, entry, current, stop, tp1, tp2, tp3, rr,
            confidence, tier, trade_live, size_pct, indicators_json, rationale_json, created, expires,
            strategy_name, strategy_version, candles_json, outcome, outcome_price,
            outcome_time, pips, lifetime_json,
        ) = row
        return Signal(
            signal_id=signal_id,
            symbol=symbol,
            side=side,
            entry_price=entry,
            current_price=current,
            stop_price=stop,
            tp1=tp1,
            tp2=tp2,
            tp3=tp3,
            risk_reward=rr,
            confidence=int(confidence),
            tier=tier,
            trade_live=bool(trade_live),
            position_size_pct=size_pct,
            indicators=json.loads(indicators_json),
            rationale=json.loads(rationale_json),
            created_at_ms=int(created),
            expires_at_ms=int(expires),
            strategy_name=strategy_name,
            strategy_version=strategy_version,
            candles=candles_from_rows(json.loads(candles_json)),
            outcome=outcome,
            outcome_price=outcome_price,
            outcome_time_ms=int(outcome_time) if outcome_time is not None else None,
            profit_loss_pips=pips,
            lifetime_candles=candles_from_rows(json.loads(lifetime_json)),
        )

    def create_if_absent(self, signal: Signal) -> bool:
        cur = self._conn.execute(
            f"""
            INSERT INTO signals ({_SIGNAL_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(signal_id) DO NOTHING;
            """,
            (
                signal.signal_id,
                signal.symbol,
                signal.side,
                float(signal.entry_price),
                float(signal.current_price),
                float(signal.stop_price),
                float(signal.tp1),
                float(signal.tp2),
                float(signal.tp3),
                float(signal.risk_reward),
                int(signal.confidence),
                signal.tier,
                1 if signal.trade_live else 0,
                float(signal.position_size_pct),
                _json_dumps(signal.indicators),
                _json_dumps(list(signal.rationale)),
                int(signal.created_at_ms),
                int(signal.expires_at_ms),
                signal.strategy_name,
                signal.strategy_version,
                _json_dumps(candles_to_rows(signal.candles)),
                signal.outcome,
                signal.outcome_price,
                signal.outcome_time_ms,
                signal.profit_loss_pips,
                _json_dumps(candles_to_rows(signal.lifetime_candles)),
            ),
        )
        return cur.rowcount == 1

    def get(self, signal_id: str) -> Optional[Signal]:
        row = self._conn.execute(
            f"SELECT {_SIGNAL_COLUMNS} FROM signals WHERE signal_id = ? LIMIT 1;", (signal_id,)
        ).fetchone()
        return self._row_to_signal(row) if row is not None else None

    def get_pending(self) -> List[Signal]:
        rows = self._conn.execute(
            f"SELECT {_SIGNAL_COLUMNS} FROM signals WHERE outcome = ? ORDER BY created_at_ms ASC;", (PENDING,)
        ).fetchall()
        return [self._row_to_signal(r) for r in rows]

    def resolve(self, signal_id, outcome, price, time_ms, pips, *, lifetime_candles=None) -> bool:
        _check_outcome(outcome)
        params: tuple
        if lifetime_candles is not None:
            sql = (
                "UPDATE signals SET outcome = ?, outcome_price = ?, outcome_time_ms = ?, profit_loss_pips = ?, "
                "lifetime_candles_json = ? WHERE signal_id = ? AND outcome = ?;"
            )
            params = (outcome, price, int(time_ms), pips, _json_dumps(candles_to_rows(lifetime_candles)), signal_id, PENDING)
        else:
            sql = (
                "UPDATE signals SET outcome = ?, outcome_price = ?, outcome_time_ms = ?, profit_loss_pips = ? "
                "WHERE signal_id = ? AND outcome = ?;"
            )
            params = (outcome, price, int(time_ms), pips, signal_id, PENDING)
        cur = self._conn.execute(sql, params)
        if cur.rowcount == 1:
            return True
        exists = self._conn.execute("SELECT 1 FROM signals WHERE signal_id = ? LIMIT 1;", (signal_id,)).fetchone()
        if exists is None:
            raise SignalNotFound(signal_id)
        return False

    def list_completed(self, symbol: str) -> List[Signal]:
        rows = self._conn.execute(
            f"SELECT {_SIGNAL_COLUMNS} FROM signals WHERE symbol = ? AND outcome != ? ORDER BY created_at_ms ASC;",
            (symbol, PENDING),
        ).fetchall()
        return [self._row_to_signal(r) for r in rows]

    def list_symbols(self) -> List[str]:
        rows = self._conn.execute("SELECT DISTINCT symbol FROM signals ORDER BY symbol;").fetchall()
        return [str(r[0]) for r in rows]

    def symbols_with_completed(self, min_count: int) -> List[str]:
        rows = self._conn.execute(
            "SELECT symbol FROM signals WHERE outcome != ? GROUP BY symbol HAVING COUNT(*) >= ? ORDER BY symbol;",
            (PENDING, int(min_count)),
        ).fetchall()
        return [str(r[0]) for r in rows]

    def _row_to_rec(self, row: tuple) -> BacktestRecommendation:
        (
            rec_id, symbol, changes_json, sample_size, matching, improvement, win_rate, baseline,
            pf, sharpe, is_win_rate, oos_matching, mc_median, title, reasoning, status, created, approved,
        ) = row
        return BacktestRecommendation(
            symbol=symbol,
            proposed_changes=json.loads(changes_json),
            sample_size=int(sample_size),
            matching_signals=int(matching),
            expected_improvement=improvement,
            win_rate=win_rate,
            baseline_win_rate=baseline,
            profit_factor=pf,
            sharpe_ratio=sharpe,
            in_sample_win_rate=is_win_rate,
            out_of_sample_matching=int(oos_matching),
            monte_carlo_median=mc_median,
            title=title,
            reasoning=reasoning,
            status=status,
            created_at_ms=int(created),
            approved_at_ms=int(approved) if approved is not None else None,
            recommendation_id=int(rec_id),
        )

    _REC_SELECT = (
        "SELECT id, symbol, proposed_changes_json, sample_size, matching_signals, expected_improvement, "
        "win_rate, baseline_win_rate, profit_factor, sharpe_ratio, in_sample_win_rate, out_of_sample_matching, "
        "monte_carlo_median, title, reasoning, status, created_at_ms, "
        "approved_at_ms FROM recommendations"
    )

    def record(self, rec: BacktestRecommendation) -> BacktestRecommendation:
        _check_status(rec.status)
        d = asdict(rec)
        cur = self._conn.execute(
            """
            INSERT INTO recommendations (
              symbol, proposed_changes_json, sample_size, matching_signals, expected_improvement, win_rate,
              baseline_win_rate, profit_factor, sharpe_ratio, in_sample_win_rate, out_of_sample_matching,
              monte_carlo_median, title, reasoning, status, created_at_ms, approved_at_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                d["symbol"],
                _json_dumps(d["proposed_changes"]),
                int(d["sample_size"]),
                int(d["matching_signals"]),
                float(d["expected_improvement"]),
                float(d["win_rate"]),
                float(d["baseline_win_rate"]),
                float(d["profit_factor"]),
                float(d["sharpe_ratio"]),
                float(d["in_sample_win_rate"]),
                int(d["out_of_sample_matching"]),
                float(d["monte_carlo_median"]),
                d["title"],
                d["reasoning"],
                d["status"],
                int(d["created_at_ms"]),
                d["approved_at_ms"],
            ),
        )
        return replace(rec, recommendation_id=int(cur.lastrowid))

    def list_recommendations(self, symbol: Optional[str] = None) -> List[BacktestRecommendation]:
        if symbol is None:
            rows = self._conn.execute(self._REC_SELECT + " ORDER BY id ASC;").fetchall()
        else:
            rows = self._conn.execute(self._REC_SELECT + " WHERE symbol = ? ORDER BY id ASC;", (symbol,)).fetchall()
        return [self._row_to_rec(r) for r in rows]

    def set_recommendation_status(self, recommendation_id: int, status: str, *, at_ms: Optional[int] = None) -> None:
        _check_status(status)
        if status == REC_APPROVED:
            cur = self._conn.execute(
                "UPDATE recommendations SET status = ?, approved_at_ms = ? WHERE id = ?;",
                (status, at_ms if at_ms is not None else now_ms(), int(recommendation_id)),
            )
        else:
            cur = self._conn.execute(
                "UPDATE recommendations SET status = ? WHERE id = ?;", (status, int(recommendation_id))
            )
        if cur.rowcount != 1:
            raise KeyError(recommendation_id)

    def latest_approved(self, symbol: str) -> Optional[BacktestRecommendation]:
        row = self._conn.execute(
            self._REC_SELECT + " WHERE symbol = ? AND status = ? ORDER BY approved_at_ms DESC, id DESC LIMIT 1;",
            (symbol, REC_APPROVED),
        ).fetchone()
        return self._row_to_rec(row) if row is not None else None
