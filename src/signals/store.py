"""
Signal Store - append-mostly log of emitted signals.

Signals are never deleted. After creation only status, last-checked time
and history change, and status only ever leaves ``Active``. Aggregate
statistics are derived from the rows on every read.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.core.database import DatabaseManager, to_iso, utc_now
from src.core.exceptions import InvariantViolationError, RecordNotFoundError
from src.core.logger import get_logger
from src.signals.models import (
    MANUAL_CLOSE_STATUSES,
    SIGNAL_CREATED,
    Direction,
    Signal,
    SignalEvent,
    SignalStats,
    SignalStatus,
    status_change_event,
)

logger = get_logger("signal_store")


def utc_day(now: datetime) -> str:
    """Calendar day (YYYY-MM-DD) of ``now`` in UTC."""
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def validate_levels(
    direction: Direction,
    entry: float,
    stop_loss: float,
    take_profit1: float,
    take_profit2: Optional[float] = None,
    take_profit3: Optional[float] = None,
) -> None:
    """Reject price levels that cannot describe a trade in ``direction``."""
    levels = [entry, stop_loss, take_profit1] + [tp for tp in (take_profit2, take_profit3) if tp is not None]
    if any(p is None or p <= 0 for p in levels):
        raise InvariantViolationError("Entry, stop loss and targets must be positive prices")
    if direction is Direction.LONG:
        if not stop_loss < entry < take_profit1:
            raise InvariantViolationError(
                f"LONG levels must satisfy stop_loss < entry < tp1 (got {stop_loss} / {entry} / {take_profit1})"
            )
    else:
        if not take_profit1 < entry < stop_loss:
            raise InvariantViolationError(
                f"SHORT levels must satisfy tp1 < entry < stop_loss (got {take_profit1} / {entry} / {stop_loss})"
            )


class SignalStore:
    """Signal persistence, lifecycle transitions and derived statistics."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    @staticmethod
    def new_signal_id(symbol: str, direction: Direction, now: datetime) -> str:
        return f"SIG_{int(now.timestamp() * 1000)}_{symbol}_{direction.value}"

    async def _hydrate(self, rows: List[Dict[str, Any]]) -> List[Signal]:
        events = await self.db.get_signal_events(r["id"] for r in rows)
        return [Signal.from_row(r, events.get(r["id"], [])) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def record_signal(
        self,
        symbol: str,
        direction: Direction,
        entry_price: float,
        stop_loss: float,
        take_profit1: float,
        take_profit2: Optional[float] = None,
        take_profit3: Optional[float] = None,
        *,
        confluence_score: Optional[float] = None,
        confidence_label: str = "NORMAL",
        confidence_percent: Optional[int] = None,
        leverage: Optional[float] = None,
        position_size: Optional[float] = None,
        trigger_reason: str = "Smart Scan",
        timeframe: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Signal:
        """Create an Active signal; a second same-day signal for symbol+direction is refused."""
        now = now or utc_now()
        symbol = symbol.upper()
        direction = Direction.parse(direction)
        validate_levels(direction, entry_price, stop_loss, take_profit1, take_profit2, take_profit3)

        signal = Signal(
            id=self.new_signal_id(symbol, direction, now),
            symbol=symbol,
            direction=direction,
            created_at=now,
            entry_price=float(entry_price),
            stop_loss=float(stop_loss),
            take_profit1=float(take_profit1),
            take_profit2=float(take_profit2) if take_profit2 is not None else None,
            take_profit3=float(take_profit3) if take_profit3 is not None else None,
            confluence_score=confluence_score,
            confidence_label=confidence_label or "NORMAL",
            confidence_percent=confidence_percent,
            leverage=leverage,
            position_size=position_size,
            trigger_reason=trigger_reason or "Smart Scan",
            timeframe=timeframe,
            last_checked_at=now,
        )
        created = SignalEvent(timestamp=now, event=SIGNAL_CREATED, price=signal.entry_price)
        inserted = await self.db.insert_signal(
            signal.to_row(),
            {"timestamp": to_iso(now), "event": created.event, "price": created.price},
            utc_day(now),
        )
        if not inserted:
            raise InvariantViolationError(
                f"{symbol} already has a {direction.value} signal on {utc_day(now)}"
            )
        signal.history.append(created)
        logger.info(
            "Signal recorded",
            signal_id=signal.id,
            symbol=symbol,
            direction=direction.value,
            entry=signal.entry_price,
            stop_loss=signal.stop_loss,
            tp1=signal.take_profit1,
        )
        return signal

    async def update_status(
        self,
        signal_id: str,
        new_status: SignalStatus,
        price: Optional[float],
        now: Optional[datetime] = None,
    ) -> Signal:
        """Move an Active signal to a terminal status and append the history event."""
        now = now or utc_now()
        new_status = SignalStatus(new_status)
        signal = await self.get(signal_id)
        if new_status is SignalStatus.ACTIVE:
            raise InvariantViolationError("A signal cannot transition back to Active")
        if signal.status is not SignalStatus.ACTIVE:
            raise InvariantViolationError(
                f"Signal {signal_id} is already {signal.status.value}; status only leaves Active"
            )
        event = SignalEvent(timestamp=now, event=status_change_event(signal.status, new_status), price=price)
        ok = await self.db.transition_signal(
            signal_id,
            SignalStatus.ACTIVE.value,
            new_status.value,
            {"timestamp": to_iso(now), "event": event.event, "price": price},
            to_iso(now),
        )
        if not ok:
            raise InvariantViolationError(f"Signal {signal_id} changed status concurrently")
        signal.status = new_status
        signal.last_checked_at = now
        signal.history.append(event)
        logger.info(
            "Signal status changed",
            signal_id=signal_id,
            symbol=signal.symbol,
            status=new_status.value,
            price=price,
        )
        return signal

    async def close_manual(
        self,
        signal_id: str,
        status: SignalStatus,
        price: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Signal:
        status = SignalStatus(status)
        if status not in MANUAL_CLOSE_STATUSES:
            raise InvariantViolationError(
                f"Manual close accepts {sorted(s.value for s in MANUAL_CLOSE_STATUSES)}, not {status.value}"
            )
        return await self.update_status(signal_id, status, price, now=now)

    async def mark_checked(self, signal_id: str, now: Optional[datetime] = None) -> None:
        await self.db.touch_signal(signal_id, to_iso(now or utc_now()))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, signal_id: str) -> Signal:
        row = await self.db.get_signal(signal_id)
        if row is None:
            raise RecordNotFoundError(f"Signal not found: {signal_id}")
        return (await self._hydrate([row]))[0]

    async def list(
        self,
        status: Optional[SignalStatus] = None,
        symbol: Optional[str] = None,
        direction: Optional[Direction] = None,
        limit: Optional[int] = None,
    ) -> List[Signal]:
        rows = await self.db.list_signals(
            status=SignalStatus(status).value if status else None,
            symbol=symbol.upper() if symbol else None,
            direction=Direction.parse(direction).value if direction else None,
            limit=limit,
        )
        return await self._hydrate(rows)

    async def active_signals(self) -> List[Signal]:
        return await self.list(status=SignalStatus.ACTIVE)

    async def latest_active(self, symbol: str, direction: Direction) -> Optional[Signal]:
        found = await self.list(status=SignalStatus.ACTIVE, symbol=symbol, direction=direction, limit=1)
        return found[0] if found else None

    async def has_signal_today(self, symbol: str, direction: Direction, now: Optional[datetime] = None) -> bool:
        return await self.db.has_signal_on_day(
            symbol.upper(), Direction.parse(direction).value, utc_day(now or utc_now())
        )

    async def stats(self, now: Optional[datetime] = None) -> SignalStats:
        counts = await self.db.get_signal_stats(utc_day(now or utc_now()))
        return SignalStats(**counts)

    async def summary(self, now: Optional[datetime] = None, recent: int = 5) -> Dict[str, Any]:
        stats = await self.stats(now)
        latest = await self.list(limit=recent)
        return {
            "stats": stats.to_dict(),
            "win_rate": stats.win_rate,
            "today_count": stats.today,
            "recent_signals": [
                {
                    "id": s.id,
                    "symbol": s.symbol,
                    "direction": s.direction.value,
                    "status": s.status.value,
                    "entry_price": s.entry_price,
                    "created_at": to_iso(s.created_at),
                }
                for s in latest
            ],
        }
