"""
Operator command line for the signal engine.

Every command prints JSON on stdout; logs go to stderr and the log files.

Exit codes:
    0  success
    1  operation failed (market data, oracle, configuration)
    2  usage error
    3  not found (unknown signal, symbol without a record, delisted symbol)
    4  invariant violation (rejected write)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from dataclasses import asdict
from typing import Any, Callable, Optional, Sequence

from src.ai.confidence import check_threshold, confidence_percent
from src.core.config import BotConfig, load_config_with_overrides
from src.core.database import utc_now
from src.core.engine import SignalEngine, run_engine
from src.core.exceptions import (
    ConfigurationError,
    EngineError,
    InvariantViolationError,
    RecordNotFoundError,
)
from src.core.logger import get_logger, setup_logging
from src.core.scheduler import PeriodicTask
from src.exchange.exceptions import MarketDataError, SymbolNotFoundError
from src.memory.analysis_memory import MuteReason
from src.signals.models import Direction, SignalStatus

logger = get_logger("cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_NOT_FOUND = 3
EXIT_INVARIANT = 4

EngineFactory = Callable[[BotConfig], SignalEngine]


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signal-scout", description="Crypto signal decision engine.")
    parser.add_argument("--config", default="config/config.yaml", help="Path to config YAML.")
    parser.add_argument("--db", default=None, help="Override the SQLite database path.")
    parser.add_argument("--log-level", default=None, help="Override the log level.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("scan", help="Run the scanner funnel.")
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("smart-scan", help="Scanner plus smart filter; saves the scan report.")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--notify", action="store_true", help="Send the report to notification channels.")

    sub.add_parser("run-cycle", help="One full pipeline cycle (needs an oracle URL).")

    p = sub.add_parser("history", help="Analysis history summary.")
    p.add_argument("--limit", type=int, default=10)

    p = sub.add_parser("check", help="Smart-filter decision for one symbol.")
    p.add_argument("symbol")
    p.add_argument("--price", type=float, default=None)

    p = sub.add_parser("record-analysis", help="Record a completed analysis.")
    p.add_argument("symbol")
    p.add_argument("--price", type=float, required=True)
    p.add_argument("--rvol", type=float, default=None)
    p.add_argument("--signal", dest="result_kind", default=None, help="Result kind, e.g. SIGNAL or WAIT.")
    p.add_argument("--confidence", type=int, default=None)
    p.add_argument("--score", type=float, default=None)

    sub.add_parser("observations", help="Observation list.")
    sub.add_parser("muted", help="Muted symbols with remaining minutes.")

    p = sub.add_parser("mute", help="Mute a symbol by hand.")
    p.add_argument("symbol")
    p.add_argument("--hours", type=float, default=None)
    p.add_argument("--reason", default="Manual mute")

    p = sub.add_parser("unmute", help="Clear a symbol's mute.")
    p.add_argument("symbol")

    p = sub.add_parser("check-confidence", help="Confidence percent and threshold verdict.")
    p.add_argument("points", type=float)
    p.add_argument("max_points", type=float, nargs="?", default=None)

    sub.add_parser("signals", help="Signal summary.")
    sub.add_parser("active-signals", help="List Active signals.")

    p = sub.add_parser("signal", help="Inspect one signal.")
    p.add_argument("signal_id")

    p = sub.add_parser("order", help="Order parameters a signal implies (nothing is sent).")
    p.add_argument("signal_id")
    sub.add_parser("positions", help="Open positions (scaffold).")

    p = sub.add_parser("record-signal", help="Record a signal by hand.")
    p.add_argument("--symbol", required=True)
    p.add_argument("--direction", required=True)
    p.add_argument("--entry", type=float, required=True)
    p.add_argument("--sl", type=float, required=True)
    p.add_argument("--tp1", type=float, required=True)
    p.add_argument("--tp2", type=float, default=None)
    p.add_argument("--tp3", type=float, default=None)
    p.add_argument("--score", type=float, default=None)
    p.add_argument("--confidence", default="NORMAL", help="Confidence label.")
    p.add_argument("--reason", default="Manual")

    p = sub.add_parser("close-signal", help="Manual terminal transition.")
    p.add_argument("signal_id")
    p.add_argument("status", help="Invalidated, Closed_Manual or Expired_Daily.")
    p.add_argument("--price", type=float, default=None)

    p = sub.add_parser("gatekeeper", help="Gatekeeper check for a symbol.")
    p.add_argument("symbol")
    p.add_argument("direction", nargs="?", default=None)
    p.add_argument("--price", type=float, default=None)

    p = sub.add_parser("monitor", help="Signal lifecycle monitor.")
    p.add_argument("mode", choices=["once", "start"])
    p.add_argument("--interval", type=int, default=None)

    p = sub.add_parser("rvol", help="Relative volume for a symbol.")
    p.add_argument("symbol")
    p = sub.add_parser("ticker", help="24h ticker for a symbol.")
    p.add_argument("symbol")
    p = sub.add_parser("book", help="Order book for a symbol.")
    p.add_argument("symbol")
    p.add_argument("--limit", type=int, default=10)

    p = sub.add_parser("run", help="Run the scan and monitor loops.")
    p.add_argument("--api", action="store_true", help="Also serve the HTTP API.")
    return parser


async def _current_price(engine: SignalEngine, symbol: str, price: Optional[float]) -> float:
    if price is not None:
        return price
    return (await engine.gateway.get_ticker(symbol.upper())).last_price


async def _monitor_forever(engine: SignalEngine, interval: int) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, stop.set)
        except NotImplementedError:
            signal.signal(s, lambda *_: stop.set())
    task = PeriodicTask("signal_monitor", interval, engine.run_monitor_once)
    await task.start()
    try:
        await stop.wait()
    finally:
        await task.stop()


async def _dispatch(args: argparse.Namespace, engine: SignalEngine) -> int:
    cmd = args.command
    try:
        await engine.initialize()
        if cmd == "scan":
            _emit((await engine.scanner.run(limit=args.limit)).to_dict())
        elif cmd == "smart-scan":
            _emit((await engine.run_smart_scan(limit=args.limit, notify=args.notify)).to_dict())
        elif cmd == "run-cycle":
            if not getattr(engine.oracle, "enabled", True):
                print("No oracle URL configured (set ORACLE_URL)", file=sys.stderr)
                return EXIT_FAILED
            _emit((await engine.run_scan_cycle()).to_dict())
        elif cmd == "history":
            _emit(await engine.memory.history_summary(limit=args.limit))
        elif cmd == "check":
            price = await _current_price(engine, args.symbol, args.price)
            decision = await engine.smart_filter.check(args.symbol, price)
            record = await engine.memory.get(args.symbol)
            _emit({
                **decision.to_dict(),
                "price": price,
                "record": record.to_dict() if record else None,
            })
        elif cmd == "record-analysis":
            record = await engine.memory.record_analysis(
                args.symbol,
                args.price,
                args.rvol,
                result_kind=args.result_kind.upper() if args.result_kind else None,
                confidence=args.confidence,
                confluence_score=args.score,
            )
            _emit(record.to_dict())
        elif cmd == "observations":
            entries = await engine.memory.observations()
            _emit({"count": len(entries), "assets": [e.to_dict() for e in entries]})
        elif cmd == "muted":
            muted = await engine.memory.get_muted()
            _emit({"count": len(muted), "muted": [m.to_dict() for m in muted]})
        elif cmd == "mute":
            record = await engine.memory.mute(
                args.symbol, MuteReason.MANUAL, duration_hours=args.hours, note=args.reason
            )
            _emit(record.to_dict())
        elif cmd == "unmute":
            was_muted = await engine.memory.unmute(args.symbol)
            _emit({"symbol": args.symbol.upper(), "was_muted": was_muted})
        elif cmd == "signals":
            _emit(await engine.store.summary())
        elif cmd == "active-signals":
            active = await engine.store.active_signals()
            _emit({"count": len(active), "signals": [s.to_dict() for s in active]})
        elif cmd == "signal":
            _emit((await engine.store.get(args.signal_id)).to_dict())
        elif cmd == "order":
            _emit(await engine.order_params(args.signal_id))
        elif cmd == "positions":
            _emit(engine.risk_manager.get_positions())
        elif cmd == "record-signal":
            sizing = engine.risk_manager.size_signal(args.entry, args.sl, args.tp1)
            sig = await engine.store.record_signal(
                args.symbol,
                Direction.parse(args.direction),
                args.entry,
                args.sl,
                args.tp1,
                args.tp2,
                args.tp3,
                confluence_score=args.score,
                confidence_label=args.confidence,
                leverage=round(sizing.leverage, 2) if sizing.allowed else None,
                position_size=round(sizing.position_size, 2) if sizing.allowed else None,
                trigger_reason=args.reason,
            )
            _emit(sig.to_dict())
        elif cmd == "close-signal":
            sig = await engine.store.close_manual(args.signal_id, SignalStatus.parse(args.status), args.price)
            _emit(sig.to_dict())
        elif cmd == "gatekeeper":
            price = await _current_price(engine, args.symbol, args.price)
            direction = Direction.parse(args.direction) if args.direction else None
            _emit((await engine.gatekeeper.evaluate(args.symbol, price, direction)).to_dict())
        elif cmd == "monitor":
            if args.mode == "once":
                _emit((await engine.run_monitor_once()).to_dict())
            else:
                await _monitor_forever(engine, args.interval or engine.config.monitor.interval_seconds)
        elif cmd == "rvol":
            data = await engine.scanner.rvol(args.symbol.upper())
            if data is None:
                print(f"RVOL undefined for {args.symbol.upper()}", file=sys.stderr)
                return EXIT_FAILED
            _emit({"symbol": args.symbol.upper(), **data})
        elif cmd == "ticker":
            _emit(asdict(await engine.gateway.get_ticker(args.symbol.upper())))
        elif cmd == "book":
            _emit(asdict(await engine.gateway.get_order_book(args.symbol.upper(), args.limit)))
        else:
            print(f"Unknown command: {cmd}", file=sys.stderr)
            return EXIT_USAGE
    finally:
        await engine.stop()
    return EXIT_OK


def _exit_code(error: BaseException) -> int:
    if isinstance(error, (RecordNotFoundError, SymbolNotFoundError)):
        return EXIT_NOT_FOUND
    if isinstance(error, InvariantViolationError):
        return EXIT_INVARIANT
    if isinstance(error, ValueError):
        return EXIT_USAGE
    return EXIT_FAILED


def main(argv: Optional[Sequence[str]] = None, engine_factory: Optional[EngineFactory] = None) -> int:
    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as e:
        return int(e.code or 0)

    # Pure computation; no config, database or network needed.
    if args.command == "check-confidence":
        try:
            conf = load_config_with_overrides(args.config).confidence
            max_points = args.max_points if args.max_points is not None else conf.max_points
            pct = confidence_percent(args.points, max_points)
        except EngineError as e:
            print(str(e), file=sys.stderr)
            return _exit_code(e)
        _emit({"points": args.points, "max_points": max_points, **check_threshold(pct, conf.threshold).to_dict()})
        return EXIT_OK

    overrides = {"app": {}}
    if args.db:
        overrides["app"]["db_path"] = args.db
    if args.log_level:
        overrides["app"]["log_level"] = args.log_level
    try:
        config = load_config_with_overrides(args.config, overrides)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED

    setup_logging(config.app.log_level, config.app.log_dir, config.app.json_logs)

    if args.command == "run":
        try:
            asyncio.run(run_engine(config, with_api=args.api))
        except KeyboardInterrupt:
            logger.info("Shutdown requested via keyboard interrupt")
        return EXIT_OK

    engine = (engine_factory or SignalEngine)(config)
    started = utc_now()
    try:
        code = asyncio.run(_dispatch(args, engine))
    except (EngineError, MarketDataError, ValueError) as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        logger.info("Command failed", command=args.command, error=repr(e))
        return _exit_code(e)
    except KeyboardInterrupt:
        return EXIT_OK
    logger.debug(
        "Command finished",
        command=args.command,
        code=code,
        elapsed_s=round((utc_now() - started).total_seconds(), 3),
    )
    return code


if __name__ == "__main__":
    sys.exit(main())
