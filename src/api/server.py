"""
FastAPI Operator Server - REST API over the signal engine.

Endpoints:
- GET    /health                        - Liveness and engine state
- POST   /api/v1/scan                   - Run scanner + smart filter
- GET    /api/v1/analysis/{symbol}      - Analysis record and mute state
- GET    /api/v1/muted                  - Muted symbols
- POST   /api/v1/muted/{symbol}         - Manual mute
- DELETE /api/v1/muted/{symbol}         - Clear mute
- GET    /api/v1/observations           - Observation list
- GET    /api/v1/signals                - Signal log (filterable)
- GET    /api/v1/signals/summary        - Stats, win rate, recent signals
- GET    /api/v1/signals/{id}           - One signal with history
- POST   /api/v1/signals                - Record a signal by hand
- POST   /api/v1/signals/{id}/close     - Manual terminal transition
- POST   /api/v1/gatekeeper/{symbol}    - Gatekeeper check
- POST   /api/v1/monitor/run            - One lifecycle monitor pass

Engine errors map to HTTP status: not found 404, invariant violation 409,
validation 422, market data failure 502, anything else 500.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from src.core.exceptions import (
    EngineError,
    InvalidOracleResultError,
    InvariantViolationError,
    OracleUnavailableError,
    RecordNotFoundError,
)
from src.core.logger import get_logger
from src.exchange.exceptions import MarketDataError, SymbolNotFoundError
from src.memory.analysis_memory import MuteReason
from src.signals.models import MANUAL_CLOSE_STATUSES, Direction, SignalStatus

logger = get_logger("api_server")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ScanRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1)
    notify: bool = False


class MuteRequest(BaseModel):
    hours: Optional[float] = Field(default=None, gt=0)
    reason: MuteReason = MuteReason.MANUAL
    note: str = "Manual mute"


class SignalCreateRequest(BaseModel):
    symbol: str = Field(min_length=1)
    direction: Direction
    entry: float = Field(gt=0)
    stop_loss: float = Field(gt=0)
    tp1: float = Field(gt=0)
    tp2: Optional[float] = Field(default=None, gt=0)
    tp3: Optional[float] = Field(default=None, gt=0)
    confluence_score: Optional[float] = Field(default=None, ge=0)
    confidence_label: str = "NORMAL"
    trigger_reason: str = "Manual"
    timeframe: Optional[str] = None

    @field_validator("direction", mode="before")
    @classmethod
    def parse_direction(cls, v):
        return Direction.parse(v)

    @field_validator("symbol")
    @classmethod
    def upper_symbol(cls, v):
        return v.strip().upper()


class CloseRequest(BaseModel):
    status: SignalStatus = SignalStatus.CLOSED_MANUAL
    price: Optional[float] = Field(default=None, gt=0)

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v):
        status = SignalStatus.parse(v)
        if status not in MANUAL_CLOSE_STATUSES:
            raise ValueError(f"status must be one of {sorted(s.value for s in MANUAL_CLOSE_STATUSES)}")
        return status


class GatekeeperRequest(BaseModel):
    price: Optional[float] = Field(default=None, gt=0)
    direction: Optional[Direction] = None

    @field_validator("direction", mode="before")
    @classmethod
    def parse_direction(cls, v):
        return Direction.parse(v) if v else None


def _error_status(error: Exception) -> int:
    if isinstance(error, (RecordNotFoundError, SymbolNotFoundError)):
        return 404
    if isinstance(error, InvariantViolationError):
        return 409
    if isinstance(error, (MarketDataError, OracleUnavailableError, InvalidOracleResultError)):
        return 502
    return 500


class SignalApiServer:
    """FastAPI app bound to one SignalEngine."""

    def __init__(self, engine: Any, close_engine_on_shutdown: bool = False):
        self.engine = engine
        self._close_engine_on_shutdown = close_engine_on_shutdown

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.engine.initialize()
            yield
            if self._close_engine_on_shutdown:
                await self.engine.stop()

        self.app = FastAPI(
            title="SignalScout Operator API",
            version=engine.config.app.version,
            docs_url="/api/docs",
            lifespan=lifespan,
        )
        self._setup_middleware()
        self._setup_error_handlers()
        self._setup_routes()

    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["http://localhost:8080", "http://127.0.0.1:8080"],
            allow_credentials=False,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def _no_store_mw(request: Request, call_next):
            resp = await call_next(request)
            if request.url.path.startswith("/api/"):
                resp.headers.setdefault("Cache-Control", "no-store")
            return resp

    def _setup_error_handlers(self) -> None:
        async def _engine_error(request: Request, exc: Exception):
            status = _error_status(exc)
            if status >= 500:
                logger.error("Request failed", path=request.url.path, error=repr(exc), status=status)
            else:
                logger.info("Request rejected", path=request.url.path, error=str(exc), status=status)
            return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

        async def _value_error(request: Request, exc: ValueError):
            return JSONResponse(status_code=422, content={"detail": str(exc), "error": "ValueError"})

        self.app.add_exception_handler(EngineError, _engine_error)
        self.app.add_exception_handler(MarketDataError, _engine_error)
        self.app.add_exception_handler(ValueError, _value_error)

    def _setup_routes(self) -> None:
        """Register all API routes."""
        engine = self.engine

        @self.app.get("/health")
        async def health():
            return {"status": "ok", "version": engine.config.app.version, "engine": engine.status()}

        # ---- Scanner ----

        @self.app.post("/api/v1/scan")
        async def run_scan(body: Optional[ScanRequest] = Body(default=None)):
            body = body or ScanRequest()
            report = await engine.run_smart_scan(limit=body.limit, notify=body.notify)
            return report.to_dict()

        # ---- Analysis memory ----

        @self.app.get("/api/v1/analysis/{symbol}")
        async def get_analysis(symbol: str):
            record = await engine.memory.require(symbol)
            status = await engine.memory.check_mute_status(symbol)
            return {"record": record.to_dict(), "mute": status.to_dict()}

        @self.app.get("/api/v1/muted")
        async def get_muted():
            muted = await engine.memory.get_muted()
            return {"count": len(muted), "muted": [m.to_dict() for m in muted]}

        @self.app.post("/api/v1/muted/{symbol}")
        async def mute_symbol(symbol: str, body: Optional[MuteRequest] = Body(default=None)):
            body = body or MuteRequest()
            record = await engine.memory.mute(symbol, body.reason, duration_hours=body.hours, note=body.note)
            return record.to_dict()

        @self.app.delete("/api/v1/muted/{symbol}")
        async def unmute_symbol(symbol: str):
            was_muted = await engine.memory.unmute(symbol)
            return {"symbol": symbol.upper(), "was_muted": was_muted}

        @self.app.get("/api/v1/observations")
        async def get_observations():
            entries = await engine.memory.observations()
            return {"count": len(entries), "assets": [e.to_dict() for e in entries]}

        # ---- Signals ----

        @self.app.get("/api/v1/signals")
        async def list_signals(
            status: Optional[str] = Query(default=None),
            symbol: Optional[str] = Query(default=None),
            direction: Optional[str] = Query(default=None),
            limit: int = Query(default=50, ge=1, le=1000),
        ):
            signals = await engine.store.list(
                status=SignalStatus.parse(status) if status else None,
                symbol=symbol,
                direction=Direction.parse(direction) if direction else None,
                limit=limit,
            )
            return {"count": len(signals), "signals": [s.to_dict() for s in signals]}

        @self.app.get("/api/v1/signals/summary")
        async def signals_summary():
            return await engine.store.summary()

        @self.app.get("/api/v1/signals/{signal_id}")
        async def get_signal(signal_id: str):
            return (await engine.store.get(signal_id)).to_dict()

        @self.app.get("/api/v1/signals/{signal_id}/order")
        async def signal_order(signal_id: str):
            return await engine.order_params(signal_id)

        @self.app.get("/api/v1/positions")
        async def positions():
            return engine.risk_manager.get_positions()

        @self.app.post("/api/v1/signals", status_code=201)
        async def create_signal(body: SignalCreateRequest):
            sizing = engine.risk_manager.size_signal(body.entry, body.stop_loss, body.tp1)
            signal = await engine.store.record_signal(
                body.symbol,
                body.direction,
                body.entry,
                body.stop_loss,
                body.tp1,
                body.tp2,
                body.tp3,
                confluence_score=body.confluence_score,
                confidence_label=body.confidence_label,
                leverage=round(sizing.leverage, 2) if sizing.allowed else None,
                position_size=round(sizing.position_size, 2) if sizing.allowed else None,
                trigger_reason=body.trigger_reason,
                timeframe=body.timeframe,
            )
            return signal.to_dict()

        @self.app.post("/api/v1/signals/{signal_id}/close")
        async def close_signal(signal_id: str, body: Optional[CloseRequest] = Body(default=None)):
            body = body or CloseRequest()
            signal = await engine.store.close_manual(signal_id, body.status, body.price)
            return signal.to_dict()

        # ---- Gatekeeper / monitor ----

        @self.app.post("/api/v1/gatekeeper/{symbol}")
        async def gatekeeper_check(symbol: str, body: Optional[GatekeeperRequest] = Body(default=None)):
            body = body or GatekeeperRequest()
            price = body.price
            if price is None:
                price = (await engine.gateway.get_ticker(symbol.upper())).last_price
            result = await engine.gatekeeper.evaluate(symbol, price, body.direction)
            return result.to_dict()

        @self.app.post("/api/v1/monitor/run")
        async def run_monitor():
            report = await engine.run_monitor_once()
            return report.to_dict()


def create_app(engine: Any, close_engine_on_shutdown: bool = False) -> FastAPI:
    return SignalApiServer(engine, close_engine_on_shutdown).app
