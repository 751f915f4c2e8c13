"""Signal data model: direction, lifecycle status, history and aggregate stats."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.core.database import parse_iso, to_iso


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def parse(cls, value: Any) -> Direction:
        if isinstance(value, cls):
            return value
        v = str(value or "").strip().upper()
        if v in ("BUY", "BULLISH"):
            v = "LONG"
        elif v in ("SELL", "BEARISH"):
            v = "SHORT"
        return cls(v)


class SignalStatus(str, Enum):
    ACTIVE = "Active"
    HIT_SL = "Hit_SL"
    HIT_TP1 = "Hit_TP1"
    HIT_TP2 = "Hit_TP2"
    HIT_TP3 = "Hit_TP3"
    EXPIRED_DAILY = "Expired_Daily"
    INVALIDATED = "Invalidated"
    CLOSED_MANUAL = "Closed_Manual"

    @property
    def is_win(self) -> bool:
        return self.value.startswith("Hit_TP")

    @classmethod
    def parse(cls, value: Any) -> SignalStatus:
        if isinstance(value, cls):
            return value
        v = str(value or "").strip()
        for member in cls:
            if v.lower() in (member.value.lower(), member.name.lower(), member.value.replace("_", "").lower()):
                return member
        raise ValueError(f"Unknown signal status: {value!r}")


# Statuses an operator may set by hand.
MANUAL_CLOSE_STATUSES = frozenset({
    SignalStatus.INVALIDATED,
    SignalStatus.CLOSED_MANUAL,
    SignalStatus.EXPIRED_DAILY,
})

SIGNAL_CREATED = "SIGNAL_CREATED"


def status_change_event(old: SignalStatus, new: SignalStatus) -> str:
    return f"STATUS_CHANGE: {old.value} -> {new.value}"


def stop_hit(direction: Direction, price: float, stop_loss: float) -> bool:
    if direction is Direction.LONG:
        return price <= stop_loss
    return price >= stop_loss


def target_hit(direction: Direction, price: float, target: Optional[float]) -> bool:
    if target is None:
        return False
    if direction is Direction.LONG:
        return price >= target
    return price <= target


@dataclass
class SignalEvent:
    timestamp: datetime
    event: str
    price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "event": self.event, "price": self.price}


@dataclass
class Signal:
    id: str
    symbol: str
    direction: Direction
    created_at: datetime
    entry_price: float
    stop_loss: float
    take_profit1: float
    take_profit2: Optional[float] = None
    take_profit3: Optional[float] = None
    status: SignalStatus = SignalStatus.ACTIVE
    confluence_score: Optional[float] = None
    confidence_label: str = "NORMAL"
    confidence_percent: Optional[int] = None
    leverage: Optional[float] = None
    position_size: Optional[float] = None
    trigger_reason: str = "Smart Scan"
    timeframe: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    history: List[SignalEvent] = field(default_factory=list)

    def unrealized_pnl_pct(self, price: float) -> float:
        """Signed percent move in the signal's favour."""
        move = (price - self.entry_price) / self.entry_price * 100.0
        return move if self.direction is Direction.LONG else -move

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "created_at": to_iso(self.created_at),
            "status": self.status.value,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit1": self.take_profit1,
            "take_profit2": self.take_profit2,
            "take_profit3": self.take_profit3,
            "confluence_score": self.confluence_score,
            "confidence_label": self.confidence_label,
            "confidence_percent": self.confidence_percent,
            "leverage": self.leverage,
            "position_size": self.position_size,
            "trigger_reason": self.trigger_reason,
            "timeframe": self.timeframe,
            "last_checked_at": to_iso(self.last_checked_at) if self.last_checked_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any], events: Optional[List[Dict[str, Any]]] = None) -> Signal:
        return cls(
            id=row["id"],
            symbol=row["symbol"],
            direction=Direction(row["direction"]),
            created_at=parse_iso(row["created_at"]),
            entry_price=float(row["entry_price"]),
            stop_loss=float(row["stop_loss"]),
            take_profit1=float(row["take_profit1"]),
            take_profit2=row.get("take_profit2"),
            take_profit3=row.get("take_profit3"),
            status=SignalStatus(row["status"]),
            confluence_score=row.get("confluence_score"),
            confidence_label=row.get("confidence_label") or "NORMAL",
            confidence_percent=row.get("confidence_percent"),
            leverage=row.get("leverage"),
            position_size=row.get("position_size"),
            trigger_reason=row.get("trigger_reason") or "Smart Scan",
            timeframe=row.get("timeframe"),
            last_checked_at=parse_iso(row.get("last_checked_at")),
            history=[
                SignalEvent(timestamp=parse_iso(e["timestamp"]), event=e["event"], price=e.get("price"))
                for e in (events or [])
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_row()
        d["history"] = [e.to_dict() for e in self.history]
        return d


@dataclass
class SignalStats:
    total: int = 0
    wins: int = 0
    losses: int = 0
    active: int = 0
    today: int = 0

    @property
    def win_rate(self) -> float:
        closed = self.wins + self.losses
        return self.wins / closed if closed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "wins": self.wins,
            "losses": self.losses,
            "active": self.active,
            "today": self.today,
            "win_rate": round(self.win_rate, 4),
        }
