"""
Signal Engine - Main orchestrator for the signal pipeline.

Coordinates all subsystems: market data, scanner and smart filter,
gatekeeper, analysis oracle, confidence gate, lifecycle monitor and
notifications. Owns the two periodic tasks (scan cycle and monitor) and
the lifecycle of every shared resource.

Lifecycle:
1. Initialize database, market data, oracle and notification channels
2. Start the scan-cycle and monitor tasks
3. Handle shutdown gracefully
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.ai.confidence import ConfidenceGate, Decision
from src.ai.oracle import AnalysisOracle, HttpAnalysisOracle
from src.core.config import BotConfig, get_config
from src.core.database import DatabaseManager, to_iso, utc_now
from src.core.error_handler import GracefulErrorHandler
from src.core.logger import get_logger, log_performance
from src.core.scheduler import PeriodicTask, TaskState
from src.exchange.binance_rest import BinanceMarketData
from src.execution.risk_manager import RiskManager
from src.memory.analysis_memory import AnalysisMemory
from src.scanner.market_scanner import MarketScanner
from src.scanner.smart_filter import FilteredCandidate, SmartFilter, SmartScanner, SmartScanReport
from src.signals.gatekeeper import GatekeeperResult, SignalGatekeeper
from src.signals.models import Signal
from src.signals.monitor import MonitorReport, SignalLifecycleMonitor, Transition
from src.signals.store import SignalStore
from src.utils.notifier import NotificationHub, WebhookNotifier
from src.utils.telegram import TelegramNotifier

logger = get_logger("engine")


@dataclass
class CycleReport:
    started_at: datetime
    scan: Optional[SmartScanReport] = None
    decisions: List[Decision] = field(default_factory=list)
    gatekeeper_blocked: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    analysis_skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "scan": self.scan.to_dict() if self.scan else None,
            "decisions": [d.to_dict() for d in self.decisions],
            "gatekeeper_blocked": self.gatekeeper_blocked,
            "errors": self.errors,
            "analysis_skipped": self.analysis_skipped,
        }


def build_oracle_context(item: FilteredCandidate, gate: GatekeeperResult) -> Dict[str, Any]:
    """Market context handed to the oracle for one candidate."""
    c = item.candidate
    return {
        "price": c.price,
        "change_24h": c.change_24h,
        "volume_24h": c.volume_24h,
        "change_4h": c.change_4h,
        "rvol": c.rvol,
        "filter_reason": item.decision.reason.value,
        "allowed_directions": [d.value for d in gate.allowed_directions],
    }


class SignalEngine:
    """
    Main orchestrator for the signal pipeline.

    Collaborators may be injected (tests, alternative gateways); anything
    left as None is built from configuration in ``initialize()``.
    """

    def __init__(
        self,
        config: Optional[BotConfig] = None,
        *,
        db: Optional[DatabaseManager] = None,
        gateway: Any = None,
        oracle: Optional[AnalysisOracle] = None,
        notifier: Optional[NotificationHub] = None,
    ):
        self.config = config or get_config()
        self.db = db
        self.gateway = gateway
        self.oracle = oracle
        self.notifier = notifier
        self.error_handler = GracefulErrorHandler()

        self.memory: Optional[AnalysisMemory] = None
        self.store: Optional[SignalStore] = None
        self.scanner: Optional[MarketScanner] = None
        self.smart_filter: Optional[SmartFilter] = None
        self.smart_scanner: Optional[SmartScanner] = None
        self.gatekeeper: Optional[SignalGatekeeper] = None
        self.risk_manager: Optional[RiskManager] = None
        self.confidence_gate: Optional[ConfidenceGate] = None
        self.monitor: Optional[SignalLifecycleMonitor] = None

        # Scheduled loops and manual triggers share these tasks' locks.
        self._scan_task = PeriodicTask(
            "scan_cycle", self.config.scanner.scan_interval_seconds, self._run_scan_cycle
        )
        self._monitor_task = PeriodicTask(
            "signal_monitor", self.config.monitor.interval_seconds, self._run_monitor_once
        )
        self._initialized = False
        self._running = False
        self._cycle_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        cfg = self.config
        logger.info("Initializing signal engine", name=cfg.app.name, version=cfg.app.version)

        if self.db is None:
            self.db = DatabaseManager(cfg.app.db_path)
        await self.db.initialize()

        if self.gateway is None:
            md = cfg.market_data
            self.gateway = BinanceMarketData(
                base_url=md.base_url,
                quote_asset=md.quote_asset,
                timeout_seconds=md.timeout,
                max_retries=md.max_retries,
                retry_base_delay=md.retry_base_delay,
            )
        if hasattr(self.gateway, "initialize"):
            await self.gateway.initialize()

        if self.oracle is None:
            self.oracle = HttpAnalysisOracle(cfg.oracle.url, cfg.oracle.timeout)

        if self.notifier is None:
            n = cfg.notifications
            telegram = TelegramNotifier(
                token=n.telegram_token,
                chat_ids=n.telegram_chat_ids,
                rate_limit_seconds=n.telegram_rate_limit_seconds,
                send_scan_reports=n.send_scan_reports,
            )
            self.notifier = NotificationHub([
                telegram,
                WebhookNotifier(n.webhook_url, n.webhook_timeout),
            ])
            if telegram.enabled:
                self.error_handler.set_notify_fn(telegram.send_alert)
        await self.notifier.start()

        self.memory = AnalysisMemory(self.db, cfg.filter, cfg.confidence)
        self.store = SignalStore(self.db)
        self.scanner = MarketScanner(self.gateway, cfg.scanner)
        self.smart_filter = SmartFilter(self.memory, cfg.filter)
        self.smart_scanner = SmartScanner(self.scanner, self.smart_filter, self.db, cfg.scanner)
        self.gatekeeper = SignalGatekeeper(self.store)
        self.risk_manager = RiskManager(cfg.risk)
        self.confidence_gate = ConfidenceGate(self.memory, self.store, self.risk_manager, cfg.confidence)
        self.monitor = SignalLifecycleMonitor(self.store, self.gateway, on_transition=self._on_transition)

        self._initialized = True
        logger.info(
            "Signal engine initialized",
            db_path=cfg.app.db_path,
            oracle=bool(getattr(self.oracle, "enabled", True)),
            channels=[c.name for c in self.notifier.active_channels],
        )

    async def start(self) -> None:
        """Start both periodic tasks. Idempotent."""
        if self._running:
            return
        await self.initialize()
        self._running = True
        await self._scan_task.start()
        await self._monitor_task.start()
        logger.info("Signal engine STARTED")

    async def stop(self) -> None:
        """Gracefully stop tasks, then release resources. Idempotent."""
        logger.info("Stopping signal engine...")
        self._running = False
        await self._scan_task.stop()
        await self._monitor_task.stop()

        if self.notifier is not None:
            await self.notifier.stop()
        if self.oracle is not None:
            await self.oracle.close()
        if self.gateway is not None and hasattr(self.gateway, "close"):
            await self.gateway.close()
        if self.db is not None:
            await self.db.close()
        self._initialized = False
        logger.info("Signal engine stopped")

    @property
    def state(self) -> TaskState:
        return TaskState.RUNNING if self._running else TaskState.STOPPED

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "cycles": self._cycle_count,
            "scan_task": self._scan_task.state.value,
            "monitor_task": self._monitor_task.state.value,
        }

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run_smart_scan(self, limit: Optional[int] = None, notify: bool = False) -> SmartScanReport:
        """Scan and filter only. Waits for an in-flight scan cycle to finish."""
        return await self._scan_task.run_exclusive(self._run_smart_scan, limit, notify)

    async def _run_smart_scan(self, limit: Optional[int] = None, notify: bool = False) -> SmartScanReport:
        await self.initialize()
        report = await self.smart_scanner.run(limit=limit)
        if notify:
            await self.notifier.notify_scan_report(report)
        return report

    async def run_scan_cycle(self) -> CycleReport:
        return await self._scan_task.run_now()

    async def _run_scan_cycle(self) -> CycleReport:
        """
        One full pipeline cycle.

        Scan + filter, then per candidate: gatekeeper, oracle, confidence
        gate, notification. Failures are classified per candidate and never
        abort the rest of the batch.
        """
        await self.initialize()
        self._cycle_count += 1
        cycle = CycleReport(started_at=utc_now())

        with log_performance(logger, "Scan cycle", cycle=self._cycle_count):
            cycle.scan = await self._run_smart_scan(notify=self.config.notifications.send_scan_reports)

            if not getattr(self.oracle, "enabled", True):
                logger.warning(
                    "No analysis oracle configured; candidates not analyzed",
                    candidates=len(cycle.scan.to_analyze),
                )
                cycle.analysis_skipped = True
                return cycle

            for item in cycle.scan.to_analyze:
                symbol = item.candidate.symbol
                try:
                    decision = await self._analyze_candidate(item, cycle)
                    if decision is not None:
                        cycle.decisions.append(decision)
                except Exception as e:
                    cycle.errors[symbol] = repr(e)
                    await self.error_handler.handle(e, component="scan_cycle", context=symbol)

        logger.info(
            "Scan cycle complete",
            cycle=self._cycle_count,
            analyzed=len(cycle.decisions),
            signals=sum(1 for d in cycle.decisions if d.signal is not None),
            blocked=len(cycle.gatekeeper_blocked),
            errors=len(cycle.errors),
        )
        return cycle

    async def _analyze_candidate(self, item: FilteredCandidate, cycle: CycleReport) -> Optional[Decision]:
        cand = item.candidate
        gate = await self.gatekeeper.evaluate(cand.symbol, cand.price)
        if not gate.any_allowed:
            cycle.gatekeeper_blocked.append(cand.symbol)
            return None

        result = await self.oracle.analyze(cand.symbol, build_oracle_context(item, gate))
        decision = await self.confidence_gate.process(
            cand.symbol,
            result,
            price=cand.price,
            rvol=cand.rvol,
            gate=gate,
            trigger_reason=f"Smart Scan ({item.decision.reason.value})",
        )
        if decision.notify and decision.signal is not None:
            await self.notifier.notify_signal(decision.signal)
        return decision

    async def run_monitor_once(self) -> MonitorReport:
        return await self._monitor_task.run_now()

    async def _run_monitor_once(self) -> MonitorReport:
        await self.initialize()
        return await self.monitor.run_once()

    async def order_params(self, signal_id: str) -> Dict[str, Any]:
        """Order scaffold for a stored signal, sized with the current risk budget."""
        await self.initialize()
        sig = await self.store.get(signal_id)
        sizing = self.risk_manager.size_signal(sig.entry_price, sig.stop_loss, sig.take_profit1)
        return {
            "signal_id": sig.id,
            "sizing": sizing.to_dict(),
            **self.risk_manager.build_order_params(sig, sizing),
        }

    async def _on_transition(self, sig: Signal, transition: Transition) -> None:
        await self.notifier.notify_transition(sig, transition)


async def run_engine(config: Optional[BotConfig] = None, with_api: bool = False) -> None:
    """Run both loops (and optionally the API server) until SIGINT/SIGTERM."""
    engine = SignalEngine(config)
    await engine.initialize()
    shutdown_event = asyncio.Event()

    def _request_shutdown() -> None:
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for s in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(s, _request_shutdown)
        except NotImplementedError:
            signal.signal(s, lambda *_: _request_shutdown())

    server = None
    server_task: Optional[asyncio.Task] = None
    if with_api:
        import uvicorn
        from src.api.server import create_app

        uvi_config = uvicorn.Config(
            app=create_app(engine),
            host=engine.config.api.host,
            port=engine.config.api.port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(uvi_config)
        server.install_signal_handlers = lambda: None
        server_task = asyncio.create_task(server.serve(), name="api_server")

    await engine.start()
    try:
        await shutdown_event.wait()
    finally:
        if server is not None:
            server.should_exit = True
            try:
                await asyncio.wait_for(server_task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("API server did not stop within 10s")
        await engine.stop()
