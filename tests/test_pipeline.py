import asyncio
import json

import pytest

from forex_signal_bot.config import parse_config
from forex_signal_bot.main import main
from forex_signal_bot.models import Candle, TP1_HIT
from forex_signal_bot.ratelimit import RateLimitPolicy
from forex_signal_bot.runner import SignalPipeline
from forex_signal_bot.scheduler import RAN, SKIPPED_INTERVAL


class FakeCandles:
    def __init__(self, candles):
        self.candles = list(candles)
        self.closed = False

    async def fetch_candles(self, symbol, interval, count):
        return list(self.candles)

    async def close(self):
        self.closed = True


async def _no_sleep(_s):
    return None


def _cfg(**provider):
    return parse_config({
        "provider": {"symbols": ["EUR/USD"], "use_quotes": False, **provider},
        "store": {"type": "memory"},
    })


def test_generate_then_resolve(uptrend, after_last):
    clock = [after_last]
    source = FakeCandles(uptrend)
    pipe = SignalPipeline(
        _cfg(),
        candles=source,
        rate_limit=RateLimitPolicy(delay_s=0, sleep=_no_sleep),
        clock=lambda: clock[0],
    )

    gen = asyncio.run(pipe.coordinator.trigger("generate"))
    assert gen.status == RAN
    assert gen.result.tracked == 1
    sig = pipe.store.get(gen.result.signal_ids[0])

    # generate is rate limited to once per 15 minutes
    clock[0] = after_last + 10 * 60_000
    assert asyncio.run(pipe.coordinator.trigger("generate")).status == SKIPPED_INTERVAL

    # next bar runs straight through TP1
    source.candles.append(Candle(after_last, sig.entry_price, sig.tp1 + 0.001, sig.entry_price - 0.0001, sig.tp1))
    clock[0] = after_last + 20 * 60_000
    res = asyncio.run(pipe.coordinator.trigger("resolve"))
    assert res.status == RAN
    assert res.result.outcomes == {sig.signal_id: TP1_HIT}
    assert pipe.store.get(sig.signal_id).profit_loss_pips > 0

    asyncio.run(pipe.close())
    assert source.closed


def test_serve_needs_symbols():
    pipe = SignalPipeline(
        parse_config({"provider": {"use_quotes": False}, "store": {"type": "memory"}}),
        candles=FakeCandles([]),
    )
    with pytest.raises(ValueError):
        asyncio.run(pipe.serve())


def _write_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "provider:\n  symbols: []\n  use_quotes: false\nstore:\n  type: memory\n",
        encoding="utf-8",
    )
    return str(path)


def test_cli_analyze_prints_json(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("FX_SYMBOLS", raising=False)
    rc = main(["--config", _write_config(tmp_path), "analyze"])
    assert rc == 0
    assert json.loads(capsys.readouterr().out) == []


def test_cli_close_unknown_signal_fails(tmp_path, monkeypatch):
    monkeypatch.delenv("FX_SYMBOLS", raising=False)
    rc = main(["--config", _write_config(tmp_path), "close", "sig_missing", "1.1"])
    assert rc == 1


def test_cli_performance_prints_json(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("FX_SYMBOLS", raising=False)
    rc = main(["--config", _write_config(tmp_path), "performance", "--symbol", "EUR/USD"])
    assert rc == 0
    assert json.loads(capsys.readouterr().out) == []
