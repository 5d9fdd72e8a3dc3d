from __future__ import annotations

from typing import Any, Dict, Optional


class SourceError(Exception):
    """External candle/quote source failure (network, HTTP, API error)."""

    rate_limited = False

    def __init__(self, message: str, *, source: str = "", symbol: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.source = source
        self.symbol = symbol
        self.details = details or {}


class RateLimitedError(SourceError):
    rate_limited = True

    def __init__(self, message: str = "Upstream rate limited", *, retry_after_s: Optional[float] = None, **kw: Any):
        super().__init__(message, **kw)
        self.retry_after_s = retry_after_s
        if retry_after_s is not None:
            self.details.setdefault("retry_after_s", retry_after_s)


class MalformedResponseError(SourceError):
    pass


class SignalNotFound(KeyError):
    def __init__(self, signal_id: str):
        super().__init__(signal_id)
        self.signal_id = signal_id


class ConfigError(ValueError):
    pass


def to_error_payload(exc: BaseException) -> Dict[str, Any]:
    """Structured error body with a distinguishable rate-limit flag."""
    details: Dict[str, Any] = {}
    if isinstance(exc, SourceError):
        details = dict(exc.details)
        if exc.source:
            details["source"] = exc.source
        if exc.symbol:
            details["symbol"] = exc.symbol
        message = exc.message
    elif isinstance(exc, SignalNotFound):
        details = {"signal_id": exc.signal_id}
        message = f"Unknown signal: {exc.signal_id}"
    else:
        message = str(exc)
    return {
        "type": exc.__class__.__name__,
        "message": message,
        "rate_limited": bool(getattr(exc, "rate_limited", False)),
        "details": details,
    }
