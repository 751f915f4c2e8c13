"""
Signal Lifecycle Monitor - re-prices Active signals and advances their status.

Priority per signal against one fetched price: stop loss, then TP3, TP2,
TP1. A signal that leaves Active is no longer monitored, so a TP1 hit ends
TP2/TP3 tracking for it.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.core.database import to_iso, utc_now
from src.core.exceptions import InvariantViolationError
from src.core.logger import get_logger, log_performance
from src.exchange.exceptions import MarketDataError
from src.signals.models import Signal, SignalStatus, stop_hit, target_hit
from src.signals.store import SignalStore

logger = get_logger("monitor")


def evaluate_levels(signal: Signal, price: float) -> Optional[SignalStatus]:
    """First level crossed at ``price``, or None while the trade is still open."""
    if stop_hit(signal.direction, price, signal.stop_loss):
        return SignalStatus.HIT_SL
    if target_hit(signal.direction, price, signal.take_profit3):
        return SignalStatus.HIT_TP3
    if target_hit(signal.direction, price, signal.take_profit2):
        return SignalStatus.HIT_TP2
    if target_hit(signal.direction, price, signal.take_profit1):
        return SignalStatus.HIT_TP1
    return None


@dataclass
class Transition:
    signal_id: str
    symbol: str
    old_status: SignalStatus
    new_status: SignalStatus
    price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "symbol": self.symbol,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "price": self.price,
        }


@dataclass
class MonitorReport:
    started_at: datetime
    checked: int = 0
    transitions: List[Transition] = field(default_factory=list)
    skipped_symbols: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "checked": self.checked,
            "transitions": [t.to_dict() for t in self.transitions],
            "skipped_symbols": self.skipped_symbols,
            "errors": self.errors,
        }


class SignalLifecycleMonitor:
    """One pass over all Active signals; scheduling is owned by the caller."""

    def __init__(
        self,
        store: SignalStore,
        gateway: Any,
        on_transition: Optional[Callable[[Signal, Transition], Awaitable[None]]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.on_transition = on_transition

    async def run_once(self, now: Optional[datetime] = None) -> MonitorReport:
        now = now or utc_now()
        report = MonitorReport(started_at=now)
        active = await self.store.active_signals()
        if not active:
            logger.debug("No active signals to monitor")
            return report

        symbols = sorted({s.symbol for s in active})
        with log_performance(logger, "Signal monitor run", signals=len(active), symbols=len(symbols)):
            try:
                prices = await self.gateway.get_prices(symbols)
            except MarketDataError as e:
                logger.warning("Price fetch failed; monitor run skipped", error=repr(e))
                report.skipped_symbols = symbols
                return report

            for signal in active:
                price = prices.get(signal.symbol)
                if price is None:
                    if signal.symbol not in report.skipped_symbols:
                        report.skipped_symbols.append(signal.symbol)
                    continue
                try:
                    await self._check_signal(signal, float(price), now, report)
                except Exception as e:
                    report.errors[signal.id] = repr(e)
                    logger.error(
                        "Signal check failed",
                        signal_id=signal.id,
                        symbol=signal.symbol,
                        error=repr(e),
                        traceback=traceback.format_exc(),
                    )

        if report.skipped_symbols:
            logger.info("Symbols without a price this run", symbols=report.skipped_symbols)
        return report

    async def _check_signal(self, signal: Signal, price: float, now: datetime, report: MonitorReport) -> None:
        report.checked += 1
        new_status = evaluate_levels(signal, price)
        if new_status is None:
            await self.store.mark_checked(signal.id, now)
            logger.debug(
                "Signal still active",
                signal_id=signal.id,
                symbol=signal.symbol,
                price=price,
                unrealized_pct=round(signal.unrealized_pnl_pct(price), 2),
            )
            return

        old_status = signal.status
        try:
            updated = await self.store.update_status(signal.id, new_status, price, now=now)
        except InvariantViolationError as e:
            # Closed by the gatekeeper or an operator since we loaded it.
            logger.info("Signal left Active before transition", signal_id=signal.id, error=str(e))
            return
        transition = Transition(
            signal_id=signal.id,
            symbol=signal.symbol,
            old_status=old_status,
            new_status=new_status,
            price=price,
        )
        report.transitions.append(transition)
        logger.info(
            "Signal level hit",
            signal_id=signal.id,
            symbol=signal.symbol,
            status=new_status.value,
            price=price,
            pnl_pct=round(signal.unrealized_pnl_pct(price), 2),
        )
        if self.on_transition is None:
            return
        try:
            await self.on_transition(updated, transition)
        except Exception as e:
            # The transition is already committed; only delivery failed.
            logger.warning(
                "Transition callback failed",
                signal_id=signal.id,
                status=new_status.value,
                error=repr(e),
            )
