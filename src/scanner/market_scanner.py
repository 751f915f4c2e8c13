"""
Market Scanner - liquidity / momentum / activity funnel.

Stages (each strictly narrows the previous one):
1. 24h snapshot for every quote-asset pair, minus the blacklist
2. 24h quote volume and absolute 24h change floors
3. absolute 4h change from the last two 4h candles (first N survivors only)
4. relative volume of the current hour against the preceding 24 hours
5. sort by RVOL descending and truncate

A fetch failure for one symbol drops that symbol only.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from src.core.config import ScannerConfig
from src.core.logger import get_logger
from src.exchange.binance_rest import Ticker
from src.exchange.exceptions import MarketDataError, RateLimitError

logger = get_logger("scanner")

RVOL_INTERVAL = "1h"
RVOL_CANDLES = 25  # 24 completed hours + the current hour
CHANGE_INTERVAL = "4h"


def calculate_rvol(history: Sequence[float], current: float) -> Optional[float]:
    """current / mean(history); None when history is empty or averages to zero."""
    if not history:
        return None
    avg = float(np.mean(np.asarray(history, dtype=float)))
    if avg == 0 or not np.isfinite(avg):
        return None
    return float(current) / avg


def calculate_change_pct(previous: float, current: float) -> Optional[float]:
    """Percent change from previous to current; None for a zero base."""
    if not previous:
        return None
    return (float(current) - float(previous)) / float(previous) * 100.0


@dataclass
class ScanCandidate:
    symbol: str
    price: float
    change_24h: float
    volume_24h: float
    change_4h: Optional[float] = None
    rvol: Optional[float] = None
    current_hour_volume: Optional[float] = None
    avg_hourly_volume: Optional[float] = None

    @classmethod
    def from_ticker(cls, t: Ticker) -> ScanCandidate:
        return cls(
            symbol=t.symbol,
            price=t.last_price,
            change_24h=t.price_change_pct_24h,
            volume_24h=t.quote_volume_24h,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScanResult:
    candidates: List[ScanCandidate] = field(default_factory=list)
    total_pairs: int = 0
    passed_volume: int = 0
    passed_change_4h: int = 0
    passed_rvol: int = 0
    failed_symbols: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["candidates"] = [c.to_dict() for c in self.candidates]
        return d


class MarketScanner:
    """Runs the discovery funnel against a market-data gateway."""

    def __init__(self, gateway: Any, config: Optional[ScannerConfig] = None):
        self.gateway = gateway
        self.config = config or ScannerConfig()
        self._blacklist = {s.upper() for s in self.config.blacklist}

    def _is_blacklisted(self, symbol: str, quote_asset: str) -> bool:
        base = symbol[: -len(quote_asset)] if quote_asset and symbol.endswith(quote_asset) else symbol
        return base.upper() in self._blacklist

    async def _pace(self) -> None:
        if self.config.pacing_delay_seconds > 0:
            await asyncio.sleep(self.config.pacing_delay_seconds)

    async def change_4h(self, symbol: str) -> Optional[float]:
        candles = await self.gateway.get_candles(symbol, CHANGE_INTERVAL, 2)
        if len(candles) < 2:
            return None
        return calculate_change_pct(candles[-2].close, candles[-1].close)

    async def rvol(self, symbol: str) -> Optional[Dict[str, float]]:
        """RVOL plus its inputs, or None when it is undefined for this symbol.

        Listings younger than a full window have no 24h baseline and are
        treated as undefined.
        """
        candles = await self.gateway.get_candles(symbol, RVOL_INTERVAL, RVOL_CANDLES)
        if len(candles) < RVOL_CANDLES:
            return None
        current = candles[-1].quote_volume
        history = [c.quote_volume for c in candles[:-1]]
        value = calculate_rvol(history, current)
        if value is None:
            return None
        return {
            "rvol": value,
            "current_hour_volume": current,
            "avg_hourly_volume": float(np.mean(history)),
        }

    async def run(self, limit: Optional[int] = None) -> ScanResult:
        """Execute the full funnel. Raises only if the initial snapshot cannot be fetched."""
        cfg = self.config
        limit = int(limit or cfg.limit)
        result = ScanResult()

        tickers = await self.gateway.get_tickers()
        quote = getattr(self.gateway, "quote_asset", "")
        tickers = [t for t in tickers if not self._is_blacklisted(t.symbol, quote)]
        result.total_pairs = len(tickers)

        stage2 = [
            ScanCandidate.from_ticker(t)
            for t in tickers
            if t.quote_volume_24h >= cfg.min_volume_24h
            and abs(t.price_change_pct_24h) >= cfg.min_change_24h
        ]
        result.passed_volume = len(stage2)
        logger.info("Volume/change filter applied", total=result.total_pairs, passed=len(stage2))

        stage3: List[ScanCandidate] = []
        for cand in stage2[: cfg.max_candidates]:
            try:
                change = await self.change_4h(cand.symbol)
            except (MarketDataError, asyncio.TimeoutError) as e:
                self._note_failure(result, cand.symbol, "change_4h", e)
                change = None
            if change is not None and abs(change) >= cfg.min_change_4h:
                cand.change_4h = change
                stage3.append(cand)
            await self._pace()
        result.passed_change_4h = len(stage3)
        logger.info("4h change filter applied", passed=len(stage3))

        stage4: List[ScanCandidate] = []
        for cand in stage3:
            try:
                data = await self.rvol(cand.symbol)
            except (MarketDataError, asyncio.TimeoutError) as e:
                self._note_failure(result, cand.symbol, "rvol", e)
                data = None
            if data is not None and data["rvol"] >= cfg.min_rvol:
                cand.rvol = data["rvol"]
                cand.current_hour_volume = data["current_hour_volume"]
                cand.avg_hourly_volume = data["avg_hourly_volume"]
                stage4.append(cand)
            await self._pace()
        result.passed_rvol = len(stage4)

        stage4.sort(key=lambda c: c.rvol or 0.0, reverse=True)
        result.candidates = stage4[:limit]
        logger.info(
            "Scan complete",
            total=result.total_pairs,
            passed_volume=result.passed_volume,
            passed_change_4h=result.passed_change_4h,
            passed_rvol=result.passed_rvol,
            returned=len(result.candidates),
            failed=len(result.failed_symbols),
        )
        return result

    @staticmethod
    def _note_failure(result: ScanResult, symbol: str, stage: str, error: BaseException) -> None:
        result.failed_symbols.append(symbol)
        level = "warning" if isinstance(error, RateLimitError) else "info"
        getattr(logger, level)(
            "Symbol dropped from scan",
            symbol=symbol,
            stage=stage,
            error=repr(error),
        )
