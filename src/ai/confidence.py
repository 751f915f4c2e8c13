"""
Confidence Gate - turns an oracle verdict into SIGNAL or MUTED.

confidence_percent = round(points / max_points * 100), half rounded up.
A WAIT verdict or a percent below the threshold mutes the symbol; anything
else becomes an Active signal. Either way the symbol's analysis record is
updated exactly once.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from src.ai.oracle import OracleResult, SignalResult
from src.core.config import ConfidenceConfig
from src.core.database import to_iso, utc_now
from src.core.exceptions import InvalidOracleResultError, InvariantViolationError
from src.core.logger import get_logger
from src.execution.risk_manager import PositionSizeResult, RiskManager
from src.memory.analysis_memory import AnalysisMemory, MuteReason
from src.signals.gatekeeper import GatekeeperResult
from src.signals.models import Signal
from src.signals.store import SignalStore

logger = get_logger("confidence")


def confidence_percent(points: float, max_points: float = 15) -> int:
    if max_points is None or max_points <= 0:
        raise InvalidOracleResultError(f"max_points must be positive, got {max_points}")
    return int(math.floor(float(points) / float(max_points) * 100.0 + 0.5))


@dataclass
class ThresholdCheck:
    meets_threshold: bool
    threshold: int
    confidence_percent: int

    @property
    def difference(self) -> int:
        return self.confidence_percent - self.threshold

    @property
    def message(self) -> str:
        if self.meets_threshold:
            return f"Confidence {self.confidence_percent}% meets threshold ({self.threshold}%)"
        return f"Confidence {self.confidence_percent}% below threshold ({self.threshold}%)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "meets_threshold": self.meets_threshold,
            "threshold": self.threshold,
            "confidence_percent": self.confidence_percent,
            "difference": self.difference,
            "message": self.message,
        }


def check_threshold(percent: int, threshold: int = 75) -> ThresholdCheck:
    return ThresholdCheck(meets_threshold=percent >= threshold, threshold=threshold, confidence_percent=percent)


class DecisionAction(str, enum.Enum):
    SIGNAL = "SIGNAL"
    MUTED = "MUTED"
    BLOCKED = "BLOCKED"    # direction not allowed by the gatekeeper
    REJECTED = "REJECTED"  # degenerate levels or store invariant


@dataclass
class Decision:
    symbol: str
    action: DecisionAction
    notify: bool
    confidence_percent: int
    threshold: int
    result_kind: str
    reason: str = ""
    direction: Optional[str] = None
    mute_until: Optional[datetime] = None
    signal: Optional[Signal] = None
    sizing: Optional[PositionSizeResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "notify": self.notify,
            "confidence_percent": self.confidence_percent,
            "threshold": self.threshold,
            "result_kind": self.result_kind,
            "reason": self.reason,
            "direction": self.direction,
            "mute_until": to_iso(self.mute_until) if self.mute_until else None,
            "signal": self.signal.to_dict() if self.signal else None,
            "sizing": self.sizing.to_dict() if self.sizing else None,
        }


class ConfidenceGate:
    """Confidence threshold, mute decision and signal emission."""

    def __init__(
        self,
        memory: AnalysisMemory,
        store: SignalStore,
        risk_manager: Optional[RiskManager] = None,
        config: Optional[ConfidenceConfig] = None,
    ):
        self.memory = memory
        self.store = store
        self.risk_manager = risk_manager or RiskManager()
        self.config = config or ConfidenceConfig()

    async def process(
        self,
        symbol: str,
        result: OracleResult,
        price: float,
        rvol: Optional[float] = None,
        gate: Optional[GatekeeperResult] = None,
        trigger_reason: str = "Smart Scan",
        now: Optional[datetime] = None,
    ) -> Decision:
        now = now or utc_now()
        symbol = symbol.upper()
        percent = confidence_percent(result.confluence_points, result.max_points)
        check = check_threshold(percent, self.config.threshold)
        direction = result.direction.value if result.direction else None
        decision = Decision(
            symbol=symbol,
            action=DecisionAction.MUTED,
            notify=False,
            confidence_percent=percent,
            threshold=self.config.threshold,
            result_kind=result.result_kind,
            direction=direction,
        )

        try:
            if not isinstance(result, SignalResult) or not check.meets_threshold:
                await self._mute(decision, result, check, now)
            elif gate is not None and not gate.is_allowed(result.direction):
                decision.action = DecisionAction.BLOCKED
                decision.reason = f"{direction} not allowed by gatekeeper"
            else:
                await self._emit(decision, result, trigger_reason, now)
        finally:
            await self.memory.record_analysis(
                symbol,
                price,
                rvol,
                result_kind=result.result_kind,
                confidence=percent,
                confluence_score=result.confluence_points,
                now=now,
            )

        logger.info(
            "Confidence decision",
            symbol=symbol,
            action=decision.action.value,
            confidence=percent,
            threshold=self.config.threshold,
            reason=decision.reason,
        )
        return decision

    async def _mute(self, decision: Decision, result: OracleResult, check: ThresholdCheck, now: datetime) -> None:
        if isinstance(result, SignalResult):
            reason = MuteReason.LOW_CONFIDENCE
            note = f"Confidence {check.confidence_percent}% below {check.threshold}% threshold"
        else:
            reason = MuteReason.WAIT_RESULT
            note = "Analysis resulted in WAIT"
        record = await self.memory.mute(
            decision.symbol,
            reason,
            duration_hours=self.config.mute_duration_hours,
            note=note,
            confidence_score=check.confidence_percent,
            now=now,
        )
        decision.action = DecisionAction.MUTED
        decision.notify = False
        decision.reason = note
        decision.mute_until = record.mute_until

    async def _emit(self, decision: Decision, result: SignalResult, trigger_reason: str, now: datetime) -> None:
        sizing = self.risk_manager.size_signal(result.entry, result.stop_loss, result.tp1)
        decision.sizing = sizing
        if not sizing.allowed:
            decision.action = DecisionAction.REJECTED
            decision.reason = sizing.reason
            return
        try:
            signal = await self.store.record_signal(
                decision.symbol,
                result.direction,
                result.entry,
                result.stop_loss,
                result.tp1,
                result.tp2,
                result.tp3,
                confluence_score=result.confluence_points,
                confidence_label=result.confidence_label,
                confidence_percent=decision.confidence_percent,
                leverage=round(sizing.leverage, 2),
                position_size=round(sizing.position_size, 2),
                trigger_reason=trigger_reason,
                timeframe=result.timeframe,
                now=now,
            )
        except InvariantViolationError as e:
            decision.action = DecisionAction.REJECTED
            decision.reason = str(e)
            return
        decision.action = DecisionAction.SIGNAL
        decision.notify = True
        decision.signal = signal
        decision.reason = sizing.reason
