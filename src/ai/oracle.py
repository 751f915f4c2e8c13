"""
Analysis Oracle - interface to the external deep-analysis service.

The oracle is opaque: it returns a confluence score and proposed levels and
this engine never re-derives them. Its output is modelled as a tagged union
discriminated on ``result_kind``: SignalResult | WaitResult.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Union

import httpx

from src.core.exceptions import InvalidOracleResultError, OracleUnavailableError
from src.core.logger import get_logger
from src.signals.models import Direction

logger = get_logger("oracle")

DEFAULT_MAX_POINTS = 15


@dataclass(frozen=True)
class SignalResult:
    direction: Direction
    confluence_points: float
    max_points: float
    entry: float
    stop_loss: float
    tp1: float
    tp2: Optional[float] = None
    tp3: Optional[float] = None
    confidence_label: str = "NORMAL"
    timeframe: Optional[str] = None
    notes: str = ""
    result_kind: str = field(default="SIGNAL", init=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value
        return d


@dataclass(frozen=True)
class WaitResult:
    confluence_points: float
    max_points: float
    direction: Optional[Direction] = None
    notes: str = ""
    result_kind: str = field(default="WAIT", init=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["direction"] = self.direction.value if self.direction else None
        return d


OracleResult = Union[SignalResult, WaitResult]


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _number(payload: Dict[str, Any], *keys: str, required: bool = True) -> Optional[float]:
    raw = _first(payload, *keys)
    if raw is None:
        if required:
            raise InvalidOracleResultError(f"Oracle payload missing {keys[0]}")
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise InvalidOracleResultError(f"Oracle field {keys[0]} is not numeric: {raw!r}") from e
    if not math.isfinite(value):
        raise InvalidOracleResultError(f"Oracle field {keys[0]} is not finite")
    return value


def parse_oracle_payload(payload: Dict[str, Any]) -> OracleResult:
    """Validate a raw oracle response into SignalResult or WaitResult."""
    if not isinstance(payload, dict):
        raise InvalidOracleResultError("Oracle payload must be an object")

    kind = str(_first(payload, "result_kind", "resultKind", "signal") or "").strip().upper()
    points = _number(payload, "confluence_points", "confluencePoints", "confluence_score", "confluenceScore")
    max_points = _number(payload, "max_points", "maxPoints", required=False)
    if max_points is None:
        max_points = DEFAULT_MAX_POINTS
    if max_points <= 0:
        raise InvalidOracleResultError(f"max_points must be positive, got {max_points}")
    if points < 0:
        raise InvalidOracleResultError(f"confluence_points must not be negative, got {points}")

    raw_direction = _first(payload, "direction")
    direction: Optional[Direction] = None
    if raw_direction:
        try:
            direction = Direction.parse(raw_direction)
        except ValueError as e:
            raise InvalidOracleResultError(f"Unknown direction {raw_direction!r}") from e
    notes = str(_first(payload, "notes", "reason") or "")

    if kind == "WAIT":
        return WaitResult(confluence_points=points, max_points=max_points, direction=direction, notes=notes)
    if kind != "SIGNAL":
        raise InvalidOracleResultError(f"Unknown result_kind {kind!r}")
    if direction is None:
        raise InvalidOracleResultError("SIGNAL result requires a direction")

    return SignalResult(
        direction=direction,
        confluence_points=points,
        max_points=max_points,
        entry=_number(payload, "entry", "entry_price", "entryPrice"),
        stop_loss=_number(payload, "stop_loss", "stopLoss", "sl"),
        tp1=_number(payload, "tp1", "take_profit1", "takeProfit1"),
        tp2=_number(payload, "tp2", "take_profit2", "takeProfit2", required=False),
        tp3=_number(payload, "tp3", "take_profit3", "takeProfit3", required=False),
        confidence_label=str(_first(payload, "confidence_label", "confidence") or "NORMAL"),
        timeframe=_first(payload, "timeframe"),
        notes=notes,
    )


class AnalysisOracle(ABC):
    """Produces a confluence verdict for one symbol."""

    @abstractmethod
    async def analyze(self, symbol: str, context: Dict[str, Any]) -> OracleResult:
        ...

    async def close(self) -> None:
        return None


class HttpAnalysisOracle(AnalysisOracle):
    """Posts the analysis context to an HTTP endpoint and parses the verdict."""

    def __init__(self, url: str, timeout_seconds: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = (url or "").strip()
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def analyze(self, symbol: str, context: Dict[str, Any]) -> OracleResult:
        if not self.enabled:
            raise OracleUnavailableError("No oracle URL configured")
        if self._client is None:
            await self.initialize()
        try:
            resp = await self._client.post(self.url, json={"symbol": symbol, "context": context})
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise OracleUnavailableError(f"Oracle returned {e.response.status_code} for {symbol}") from e
        except httpx.HTTPError as e:
            raise OracleUnavailableError(f"Oracle request failed for {symbol}: {e!r}") from e
        try:
            payload = resp.json()
        except ValueError as e:
            raise InvalidOracleResultError(f"Oracle returned non-JSON body for {symbol}") from e
        result = parse_oracle_payload(payload)
        logger.info(
            "Oracle verdict",
            symbol=symbol,
            result_kind=result.result_kind,
            points=result.confluence_points,
            max_points=result.max_points,
        )
        return result
