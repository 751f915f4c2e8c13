"""
Smart Filter - memory-aware delta filtering of scanner candidates.

Rules, first match wins:
0. MUTED                 mute_until is in the future          -> SKIP
1. NEW_ASSET             no analysis record yet               -> ANALYZE
2. TIME_EXPIRED          last analysis older than the window  -> ANALYZE
3. PRICE_DELTA           price moved more than the threshold  -> ANALYZE
4. NO_SIGNIFICANT_CHANGE otherwise (symbol is observed)       -> SKIP

The filter never writes analysis records; only the confidence gate does.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.core.config import FilterConfig, ScannerConfig
from src.core.database import DatabaseManager, to_iso, utc_now
from src.core.logger import get_logger
from src.memory.analysis_memory import AnalysisMemory, AnalysisRecord
from src.scanner.market_scanner import MarketScanner, ScanCandidate

logger = get_logger("smart_filter")

SCAN_REPORT_KEY = "last_scan_report"


class FilterAction(str, enum.Enum):
    ANALYZE = "ANALYZE"
    SKIP = "SKIP"


class FilterReason(str, enum.Enum):
    MUTED = "MUTED"
    NEW_ASSET = "NEW_ASSET"
    TIME_EXPIRED = "TIME_EXPIRED"
    PRICE_DELTA = "PRICE_DELTA"
    NO_SIGNIFICANT_CHANGE = "NO_SIGNIFICANT_CHANGE"


@dataclass
class FilterDecision:
    symbol: str
    decision: FilterAction
    reason: FilterReason
    message: str = ""

    @property
    def should_analyze(self) -> bool:
        return self.decision is FilterAction.ANALYZE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "decision": self.decision.value,
            "reason": self.reason.value,
            "message": self.message,
        }


@dataclass
class FilteredCandidate:
    candidate: ScanCandidate
    decision: FilterDecision

    def to_dict(self) -> Dict[str, Any]:
        d = self.candidate.to_dict()
        d["filter_reason"] = self.decision.reason.value
        return d


@dataclass
class SmartScanReport:
    timestamp: datetime
    total_pairs: int = 0
    scout_matches: int = 0
    to_analyze: List[FilteredCandidate] = field(default_factory=list)
    skipped: List[FilteredCandidate] = field(default_factory=list)
    observations: List[str] = field(default_factory=list)
    passed_smart_filter: int = 0
    criteria: Dict[str, Any] = field(default_factory=dict)
    filter_config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "type": "SMART_SCAN",
            "criteria": self.criteria,
            "smart_filter_config": self.filter_config,
            "total_pairs_scanned": self.total_pairs,
            "passed_scout_filter": self.scout_matches,
            "passed_smart_filter": self.passed_smart_filter,
            "skipped_by_smart_filter": len(self.skipped),
            "to_analyze": [c.to_dict() for c in self.to_analyze],
            "skipped": [c.to_dict() for c in self.skipped],
            "observations": list(self.observations),
        }


class SmartFilter:
    """Decides ANALYZE vs SKIP per candidate from its analysis record."""

    def __init__(self, memory: AnalysisMemory, config: Optional[FilterConfig] = None):
        self.memory = memory
        self.config = config or FilterConfig()

    def evaluate(
        self,
        symbol: str,
        price: float,
        record: Optional[AnalysisRecord],
        now: datetime,
    ) -> FilterDecision:
        """Pure rule evaluation; no side effects."""
        if record is not None and record.is_muted(now):
            return FilterDecision(
                symbol, FilterAction.SKIP, FilterReason.MUTED,
                f"{symbol} muted until {to_iso(record.mute_until)}",
            )

        if record is None or record.last_analysis_time is None:
            return FilterDecision(symbol, FilterAction.ANALYZE, FilterReason.NEW_ASSET, f"{symbol} is new")

        age = now - record.last_analysis_time
        if age > timedelta(hours=self.config.analysis_expire_hours):
            return FilterDecision(
                symbol, FilterAction.ANALYZE, FilterReason.TIME_EXPIRED,
                f"{symbol} last analyzed {age.total_seconds() / 3600:.1f}h ago",
            )

        last_price = record.last_price or 0.0
        if last_price <= 0:
            return FilterDecision(
                symbol, FilterAction.ANALYZE, FilterReason.PRICE_DELTA,
                f"{symbol} has no usable reference price",
            )
        delta = abs(price - last_price) / last_price
        if delta > self.config.price_change_threshold:
            return FilterDecision(
                symbol, FilterAction.ANALYZE, FilterReason.PRICE_DELTA,
                f"{symbol} moved {delta * 100:.2f}% since last analysis",
            )

        return FilterDecision(
            symbol, FilterAction.SKIP, FilterReason.NO_SIGNIFICANT_CHANGE,
            f"{symbol} moved {delta * 100:.2f}% within {age.total_seconds() / 3600:.1f}h",
        )

    async def check(self, symbol: str, price: float, now: Optional[datetime] = None) -> FilterDecision:
        """Evaluate one symbol and apply the observation side effect on a plain SKIP."""
        now = now or utc_now()
        symbol = symbol.upper()
        record = await self.memory.get(symbol)
        decision = self.evaluate(symbol, price, record, now)
        if decision.reason is FilterReason.NO_SIGNIFICANT_CHANGE:
            await self.memory.add_observation(symbol, now=now)
        return decision


class SmartScanner:
    """Scanner funnel followed by the smart filter; persists the scan report."""

    def __init__(
        self,
        scanner: MarketScanner,
        smart_filter: SmartFilter,
        db: DatabaseManager,
        scanner_config: Optional[ScannerConfig] = None,
    ):
        self.scanner = scanner
        self.smart_filter = smart_filter
        self.db = db
        self.scanner_config = scanner_config or scanner.config

    async def run(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> SmartScanReport:
        now = now or utc_now()
        cfg = self.scanner_config
        limit = int(limit or cfg.limit)
        # The scanner's own truncation would hide skipped symbols; filter the full set.
        scan = await self.scanner.run(limit=cfg.max_candidates)

        report = SmartScanReport(
            timestamp=now,
            total_pairs=scan.total_pairs,
            scout_matches=len(scan.candidates),
            criteria={
                "min_volume_24h": cfg.min_volume_24h,
                "min_change_24h": cfg.min_change_24h,
                "min_change_4h": cfg.min_change_4h,
                "min_rvol": cfg.min_rvol,
            },
            filter_config={
                "analysis_expire_hours": self.smart_filter.config.analysis_expire_hours,
                "price_change_threshold": self.smart_filter.config.price_change_threshold,
            },
        )

        to_analyze: List[FilteredCandidate] = []
        for cand in scan.candidates:
            decision = await self.smart_filter.check(cand.symbol, cand.price, now=now)
            item = FilteredCandidate(cand, decision)
            if decision.should_analyze:
                to_analyze.append(item)
            else:
                report.skipped.append(item)
                if decision.reason is FilterReason.NO_SIGNIFICANT_CHANGE:
                    report.observations.append(cand.symbol)
            logger.debug("Smart filter decision", **decision.to_dict())

        to_analyze.sort(key=lambda c: c.candidate.rvol or 0.0, reverse=True)
        report.passed_smart_filter = len(to_analyze)
        report.to_analyze = to_analyze[:limit]

        await self.db.set_state(SCAN_REPORT_KEY, report.to_dict())
        logger.info(
            "Smart scan complete",
            scout_matches=report.scout_matches,
            to_analyze=len(report.to_analyze),
            skipped=len(report.skipped),
            observed=len(report.observations),
        )
        return report
