from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Protocol, Tuple

from .models import StrategyParameters, DEFAULT_PARAMETERS
from .store import SignalStore
from .timefilter import now_ms

log = logging.getLogger("params")


class ParameterSource(Protocol):
    """Approved per-symbol parameter override, or None for built-in defaults."""

    def get_approved_parameters(self, symbol: str) -> Optional[StrategyParameters]:
        ...


class StaticParameterSource(ParameterSource):
    def __init__(self, overrides: Optional[Dict[str, StrategyParameters]] = None):
        self.overrides = dict(overrides or {})

    def get_approved_parameters(self, symbol: str) -> Optional[StrategyParameters]:
        return self.overrides.get(symbol)


class StoreParameterSource(ParameterSource):
    """Most recently approved backtest recommendation for the symbol."""

    def __init__(self, store: SignalStore):
        self.store = store

    def get_approved_parameters(self, symbol: str) -> Optional[StrategyParameters]:
        rec = self.store.latest_approved(symbol)
        if rec is None:
            return None
        return rec.parameters()


class CachedParameterSource(ParameterSource):
    def __init__(
        self,
        inner: ParameterSource,
        *,
        ttl_s: float = 300.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.inner = inner
        self.ttl_ms = int(ttl_s * 1000)
        self.clock = clock
        self._cache: Dict[str, Tuple[int, Optional[StrategyParameters]]] = {}

    def get_approved_parameters(self, symbol: str) -> Optional[StrategyParameters]:
        now = self.clock()
        hit = self._cache.get(symbol)
        if hit is not None and now - hit[0] < self.ttl_ms:
            return hit[1]
        try:
            params = self.inner.get_approved_parameters(symbol)
        except Exception as e:
            # defaults win over a failing source; don't cache the failure
            log.warning("params_source_failed symbol=%s err=%s", symbol, e)
            return None
        self._cache[symbol] = (now, params)
        return params

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._cache.clear()
        else:
            self._cache.pop(symbol, None)


def resolve_parameters(
    source: Optional[ParameterSource],
    symbol: str,
    default: StrategyParameters = DEFAULT_PARAMETERS,
) -> StrategyParameters:
    if source is None:
        return default
    try:
        params = source.get_approved_parameters(symbol)
    except Exception as e:
        log.warning("params_source_failed symbol=%s err=%s", symbol, e)
        return default
    return params if params is not None else default
