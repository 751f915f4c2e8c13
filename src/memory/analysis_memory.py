"""
Analysis Memory - durable per-symbol analysis record and mute state.

Read by the smart filter, written by the confidence gate after each
completed analysis and by operator mute/unmute commands. Also owns the
bounded observation list of symbols the filter decided to skip.
"""

from __future__ import annotations

import enum
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.core.config import ConfidenceConfig, FilterConfig
from src.core.database import DatabaseManager, parse_iso, to_iso, utc_now
from src.core.exceptions import InvariantViolationError, RecordNotFoundError
from src.core.logger import get_logger

logger = get_logger("analysis_memory")


class MuteReason(str, enum.Enum):
    WAIT_RESULT = "WAIT_RESULT"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    MANUAL = "MANUAL"


@dataclass
class AnalysisRecord:
    symbol: str
    last_analysis_time: Optional[datetime] = None
    last_price: Optional[float] = None
    last_rvol: Optional[float] = None
    analysis_count: int = 0
    last_result: Optional[Dict[str, Any]] = None
    mute_until: Optional[datetime] = None
    mute_reason: Optional[MuteReason] = None
    mute_note: Optional[str] = None
    muted_at: Optional[datetime] = None
    last_confidence_score: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> AnalysisRecord:
        reason = row.get("mute_reason")
        return cls(
            symbol=row["symbol"],
            last_analysis_time=parse_iso(row.get("last_analysis_time")),
            last_price=row.get("last_price"),
            last_rvol=row.get("last_rvol"),
            analysis_count=int(row.get("analysis_count") or 0),
            last_result=row.get("last_result"),
            mute_until=parse_iso(row.get("mute_until")),
            mute_reason=MuteReason(reason) if reason else None,
            mute_note=row.get("mute_note"),
            muted_at=parse_iso(row.get("muted_at")),
            last_confidence_score=row.get("last_confidence_score"),
        )

    def is_muted(self, now: datetime) -> bool:
        return self.mute_until is not None and self.mute_until > now

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("last_analysis_time", "mute_until", "muted_at"):
            d[key] = to_iso(d[key]) if d[key] else None
        d["mute_reason"] = self.mute_reason.value if self.mute_reason else None
        return d


@dataclass
class ObservationEntry:
    symbol: str
    added_time: datetime
    reason: str
    check_count: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "added_time": to_iso(self.added_time),
            "reason": self.reason,
            "check_count": self.check_count,
        }


@dataclass
class MuteStatus:
    symbol: str
    muted: bool
    mute_until: Optional[datetime] = None
    reason: Optional[MuteReason] = None
    note: Optional[str] = None
    confidence_score: Optional[float] = None
    remaining_minutes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "muted": self.muted,
            "mute_until": to_iso(self.mute_until) if self.mute_until else None,
            "reason": self.reason.value if self.reason else None,
            "note": self.note,
            "confidence_score": self.confidence_score,
            "remaining_minutes": self.remaining_minutes,
        }


def _remaining_minutes(until: datetime, now: datetime) -> int:
    return max(0, math.ceil((until - now).total_seconds() / 60.0))


class AnalysisMemory:
    """Per-symbol analysis history, mute state and observation list."""

    OBSERVATION_REASON = "Scout criteria met, no significant delta"

    def __init__(
        self,
        db: DatabaseManager,
        filter_config: Optional[FilterConfig] = None,
        confidence_config: Optional[ConfidenceConfig] = None,
    ):
        self.db = db
        self.filter_config = filter_config or FilterConfig()
        self.confidence_config = confidence_config or ConfidenceConfig()

    async def get(self, symbol: str) -> Optional[AnalysisRecord]:
        row = await self.db.get_analysis_record(symbol.upper())
        return AnalysisRecord.from_row(row) if row else None

    async def require(self, symbol: str) -> AnalysisRecord:
        record = await self.get(symbol)
        if record is None:
            raise RecordNotFoundError(f"No analysis record for {symbol.upper()}")
        return record

    # ------------------------------------------------------------------
    # Mute state
    # ------------------------------------------------------------------

    async def check_mute_status(self, symbol: str, now: Optional[datetime] = None) -> MuteStatus:
        now = now or utc_now()
        symbol = symbol.upper()
        record = await self.get(symbol)
        if record is None or not record.is_muted(now):
            return MuteStatus(symbol=symbol, muted=False)
        return MuteStatus(
            symbol=symbol,
            muted=True,
            mute_until=record.mute_until,
            reason=record.mute_reason,
            note=record.mute_note,
            confidence_score=record.last_confidence_score,
            remaining_minutes=_remaining_minutes(record.mute_until, now),
        )

    async def mute(
        self,
        symbol: str,
        reason: MuteReason,
        *,
        until: Optional[datetime] = None,
        duration_hours: Optional[float] = None,
        note: str = "",
        confidence_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AnalysisRecord:
        """
        Suppress re-analysis of ``symbol`` until ``until`` (or now + duration,
        default the configured mute duration). A target at or before now is
        rejected. An existing later mute is never shortened.
        """
        now = now or utc_now()
        symbol = symbol.upper()
        if until is None:
            hours = self.confidence_config.mute_duration_hours if duration_hours is None else duration_hours
            until = now + timedelta(hours=float(hours))
        if until <= now:
            raise InvariantViolationError(
                f"Mute for {symbol} must end in the future (got {to_iso(until)})"
            )
        row = await self.db.apply_mute(
            symbol,
            to_iso(until),
            MuteReason(reason).value,
            note,
            to_iso(now),
            confidence_score,
        )
        record = AnalysisRecord.from_row(row)
        logger.info(
            "Symbol muted",
            symbol=symbol,
            reason=record.mute_reason.value if record.mute_reason else None,
            mute_until=to_iso(record.mute_until) if record.mute_until else None,
            confidence=confidence_score,
        )
        return record

    async def unmute(self, symbol: str) -> bool:
        """Clear the mute. Returns whether the symbol was muted; unknown symbols raise."""
        symbol = symbol.upper()
        status = await self.check_mute_status(symbol)
        if not await self.db.clear_mute(symbol):
            raise RecordNotFoundError(f"No analysis record for {symbol}")
        logger.info("Symbol unmuted", symbol=symbol, was_muted=status.muted)
        return status.muted

    async def get_muted(self, now: Optional[datetime] = None) -> List[MuteStatus]:
        """Currently muted symbols, soonest expiry first."""
        now = now or utc_now()
        out: List[MuteStatus] = []
        for row in await self.db.list_muted(to_iso(now)):
            record = AnalysisRecord.from_row(row)
            if not record.is_muted(now):
                continue
            out.append(
                MuteStatus(
                    symbol=record.symbol,
                    muted=True,
                    mute_until=record.mute_until,
                    reason=record.mute_reason,
                    note=record.mute_note,
                    confidence_score=record.last_confidence_score,
                    remaining_minutes=_remaining_minutes(record.mute_until, now),
                )
            )
        out.sort(key=lambda m: m.remaining_minutes)
        return out

    # ------------------------------------------------------------------
    # Post-analysis update
    # ------------------------------------------------------------------

    async def record_analysis(
        self,
        symbol: str,
        price: float,
        rvol: Optional[float],
        result_kind: Optional[str] = None,
        confidence: Optional[int] = None,
        confluence_score: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> AnalysisRecord:
        now = now or utc_now()
        last_result = None
        if result_kind is not None:
            last_result = {
                "signal": result_kind,
                "confidence": confidence,
                "confluence_score": confluence_score,
            }
        row = await self.db.record_analysis(symbol.upper(), to_iso(now), float(price), rvol, last_result)
        record = AnalysisRecord.from_row(row)
        logger.debug(
            "Analysis recorded",
            symbol=record.symbol,
            price=price,
            rvol=rvol,
            count=record.analysis_count,
        )
        return record

    # ------------------------------------------------------------------
    # Observation list
    # ------------------------------------------------------------------

    async def add_observation(self, symbol: str, reason: str = OBSERVATION_REASON, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        await self.db.upsert_observation(
            symbol.upper(), reason, to_iso(now), self.filter_config.observation_limit
        )

    async def observations(self) -> List[ObservationEntry]:
        return [
            ObservationEntry(
                symbol=row["symbol"],
                added_time=parse_iso(row["added_time"]),
                reason=row.get("reason") or "",
                check_count=int(row.get("check_count") or 0),
            )
            for row in await self.db.list_observations()
        ]

    async def history_summary(self, limit: int = 10) -> Dict[str, Any]:
        records = [AnalysisRecord.from_row(r) for r in await self.db.list_analysis_records()]
        analyzed = [r for r in records if r.last_analysis_time is not None]
        analyzed.sort(key=lambda r: r.last_analysis_time, reverse=True)
        return {
            "total_assets": len(records),
            "last_updated": to_iso(analyzed[0].last_analysis_time) if analyzed else None,
            "recent_analyses": [
                {
                    "symbol": r.symbol,
                    "price": r.last_price,
                    "analyzed_at": to_iso(r.last_analysis_time),
                    "result": (r.last_result or {}).get("signal") or "N/A",
                    "analysis_count": r.analysis_count,
                }
                for r in analyzed[:limit]
            ],
        }
