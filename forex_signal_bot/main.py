from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict

from .config import load_config
from .errors import to_error_payload, SignalNotFound
from .runner import SignalPipeline
from .scheduler import GENERATE, RESOLVE, ANALYZE, BACKTEST


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Forex Signal Bot - signal generation and outcome tracking")
    p.add_argument("--config", required=True, help="Path to YAML config")
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser(GENERATE, help="Analyze configured symbols once and store new signals")
    sub.add_parser(RESOLVE, help="Resolve or expire pending signals once")
    sub.add_parser(ANALYZE, help="Recompute per-symbol insights")
    sub.add_parser(BACKTEST, help="Run the parameter backtest and record recommendations")
    sub.add_parser("serve", help="Run all jobs on their schedule")
    perf = sub.add_parser("performance", help="Win rate and pips per strategy version and confidence bracket")
    perf.add_argument("--symbol", default=None)
    close = sub.add_parser("close", help="Manually close a pending signal")
    close.add_argument("signal_id")
    close.add_argument("price", type=float)
    return p


async def _dispatch(pipeline: SignalPipeline, args: argparse.Namespace) -> object:
    if args.command == "serve":
        await pipeline.serve()
        return None
    if args.command == "performance":
        return await pipeline.performance(args.symbol)
    if args.command == "close":
        return pipeline.resolver.close_manually(args.signal_id, args.price)
    return await getattr(pipeline, args.command)()


def _summary(result: object) -> str:
    if result is None:
        return "null"
    if isinstance(result, list):
        return json.dumps([asdict(r) for r in result], default=str)
    return json.dumps(asdict(result), default=str)


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    cfg = load_config(args.config)
    _setup_logging(cfg.app.log_level)
    log = logging.getLogger("main")

    pipeline = SignalPipeline(cfg)

    async def _run() -> object:
        try:
            return await _dispatch(pipeline, args)
        finally:
            # Close shared REST sessions and the store cleanly.
            try:
                await pipeline.close()
            except Exception as e:
                log.warning("close_failed err=%s", e)

    try:
        result = asyncio.run(_run())
    except KeyboardInterrupt:
        return 0
    except SignalNotFound as e:
        log.error("command_failed %s", json.dumps(to_error_payload(e)))
        return 1
    except Exception as e:
        log.exception("fatal err=%s", e)
        return 1

    if args.command == "close":
        if result is None:
            print(json.dumps({"closed": False, "signal_id": args.signal_id}))
        else:
            print(json.dumps({
                "closed": True,
                "signal_id": result.signal_id,
                "outcome": result.outcome,
                "outcome_price": result.outcome_price,
                "profit_loss_pips": result.profit_loss_pips,
            }))
    elif args.command != "serve":
        print(_summary(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
