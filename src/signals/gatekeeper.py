"""
Signal Gatekeeper - decides whether new analysis may proceed for a symbol.

Per direction, in order:
1. DAILY_LIMIT: a signal for symbol+direction was already created today (UTC)
2. ACTIVE_TRADE: the most recent Active signal for symbol+direction is still
   open at the current price

Closing side effect: if that Active signal's stop loss or first target has
been crossed, it is moved to Hit_SL / Hit_TP1 and the direction is allowed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.core.database import utc_now
from src.core.exceptions import InvariantViolationError
from src.core.logger import get_logger
from src.signals.models import Direction, SignalStatus, stop_hit, target_hit
from src.signals.store import SignalStore

logger = get_logger("gatekeeper")


class BlockingKind(str, enum.Enum):
    DAILY_LIMIT = "DAILY_LIMIT"
    ACTIVE_TRADE = "ACTIVE_TRADE"


@dataclass
class DirectionCheck:
    direction: Direction
    allowed: bool
    reason: str
    blocking_kind: Optional[BlockingKind] = None
    closed_signal_id: Optional[str] = None
    closed_status: Optional[SignalStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "allowed": self.allowed,
            "reason": self.reason,
            "blocking_kind": self.blocking_kind.value if self.blocking_kind else None,
            "closed_signal_id": self.closed_signal_id,
            "closed_status": self.closed_status.value if self.closed_status else None,
        }


@dataclass
class GatekeeperResult:
    symbol: str
    price: float
    results: Dict[Direction, DirectionCheck] = field(default_factory=dict)

    @property
    def allowed_directions(self) -> List[Direction]:
        return [d for d, r in self.results.items() if r.allowed]

    @property
    def any_allowed(self) -> bool:
        return bool(self.allowed_directions)

    def is_allowed(self, direction: Direction) -> bool:
        check = self.results.get(direction)
        return bool(check and check.allowed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "results": {d.value: r.to_dict() for d, r in self.results.items()},
            "any_allowed": self.any_allowed,
            "allowed_directions": [d.value for d in self.allowed_directions],
        }


class SignalGatekeeper:
    """Duplicate and conflict guard in front of the analysis oracle."""

    def __init__(self, store: SignalStore):
        self.store = store

    async def check_daily_limit(self, symbol: str, direction: Direction, now: datetime) -> Optional[DirectionCheck]:
        if await self.store.has_signal_today(symbol, direction, now):
            return DirectionCheck(
                direction=direction,
                allowed=False,
                reason=f"{direction.value} signal already sent today for {symbol}",
                blocking_kind=BlockingKind.DAILY_LIMIT,
            )
        return None

    async def check_active_trade(
        self, symbol: str, direction: Direction, price: float, now: datetime
    ) -> DirectionCheck:
        active = await self.store.latest_active(symbol, direction)
        if active is None:
            return DirectionCheck(direction=direction, allowed=True, reason="No active trade")

        if stop_hit(direction, price, active.stop_loss):
            new_status = SignalStatus.HIT_SL
        elif target_hit(direction, price, active.take_profit1):
            new_status = SignalStatus.HIT_TP1
        else:
            return DirectionCheck(
                direction=direction,
                allowed=False,
                reason=f"Active {direction.value} trade {active.id} still open",
                blocking_kind=BlockingKind.ACTIVE_TRADE,
            )

        try:
            await self.store.update_status(active.id, new_status, price, now=now)
        except InvariantViolationError:
            # The monitor closed it between our read and write; the trade is closed either way.
            logger.info("Active trade already closed elsewhere", signal_id=active.id)
            new_status = (await self.store.get(active.id)).status
        return DirectionCheck(
            direction=direction,
            allowed=True,
            reason=f"Previous trade closed ({new_status.value})",
            closed_signal_id=active.id,
            closed_status=new_status,
        )

    async def check_direction(
        self, symbol: str, direction: Direction, price: float, now: datetime
    ) -> DirectionCheck:
        blocked = await self.check_daily_limit(symbol, direction, now)
        if blocked is not None:
            return blocked
        return await self.check_active_trade(symbol, direction, price, now)

    async def evaluate(
        self,
        symbol: str,
        price: float,
        direction: Optional[Direction] = None,
        now: Optional[datetime] = None,
    ) -> GatekeeperResult:
        now = now or utc_now()
        symbol = symbol.upper()
        directions = [Direction.parse(direction)] if direction else [Direction.LONG, Direction.SHORT]
        result = GatekeeperResult(symbol=symbol, price=price)
        for d in directions:
            result.results[d] = await self.check_direction(symbol, d, price, now)
        logger.info(
            "Gatekeeper evaluated",
            symbol=symbol,
            price=price,
            allowed=[d.value for d in result.allowed_directions],
            blocked={d.value: r.blocking_kind.value for d, r in result.results.items() if r.blocking_kind},
        )
        return result
