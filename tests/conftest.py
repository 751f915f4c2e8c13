"""Shared test fixtures and stubs for SignalScout tests.

Provides a stub market-data gateway, a scripted analysis oracle, a
recording notification channel and factories for config, database and a
fully wired engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest
import pytest_asyncio

from src.ai.oracle import AnalysisOracle, OracleResult
from src.core.config import BotConfig, ConfigManager
from src.core.database import DatabaseManager
from src.core.engine import SignalEngine
from src.exchange.binance_rest import Candle, OrderBook, Ticker
from src.exchange.exceptions import SymbolNotFoundError
from src.utils.notifier import NotificationChannel, NotificationHub

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Stub classes
# ---------------------------------------------------------------------------


class StubGateway:
    """In-memory market-data gateway.

    Configurable via attributes:
        tickers: list of Ticker returned by get_tickers()
        candles: (symbol, interval) -> list of Candle, oldest first
        prices: symbol -> latest price for get_prices()/get_ticker()
        errors: symbol -> exception raised by any per-symbol call
        price_error: exception raised by get_prices()
    """

    quote_asset = "USDT"

    def __init__(
        self,
        tickers: Optional[List[Ticker]] = None,
        candles: Optional[Dict[Tuple[str, str], List[Candle]]] = None,
        prices: Optional[Dict[str, float]] = None,
    ) -> None:
        self.tickers: List[Ticker] = tickers or []
        self.candles: Dict[Tuple[str, str], List[Candle]] = candles or {}
        self.prices: Dict[str, float] = prices or {}
        self.errors: Dict[str, Exception] = {}
        self.price_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    def _raise_for(self, symbol: str) -> None:
        if symbol in self.errors:
            raise self.errors[symbol]

    async def get_tickers(self) -> List[Ticker]:
        self.calls.append(("tickers",))
        return list(self.tickers)

    async def get_ticker(self, symbol: str) -> Ticker:
        self.calls.append(("ticker", symbol))
        self._raise_for(symbol)
        for t in self.tickers:
            if t.symbol == symbol:
                return t
        if symbol in self.prices:
            return Ticker(symbol=symbol, last_price=self.prices[symbol], price_change_pct_24h=0.0, quote_volume_24h=0.0)
        raise SymbolNotFoundError(symbol)

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 24) -> List[Candle]:
        self.calls.append(("candles", symbol, interval, limit))
        self._raise_for(symbol)
        return list(self.candles.get((symbol, interval), []))[-limit:]

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        wanted = list(symbols)
        self.calls.append(("prices", tuple(wanted)))
        if self.price_error is not None:
            raise self.price_error
        return {s: self.prices[s] for s in wanted if s in self.prices}

    async def get_order_book(self, symbol: str, limit: int = 10) -> OrderBook:
        self._raise_for(symbol)
        price = self.prices.get(symbol, 100.0)
        return OrderBook(
            symbol=symbol,
            bids=[{"price": price * 0.999, "qty": 1.0}][:limit],
            asks=[{"price": price * 1.001, "qty": 1.0}][:limit],
        )


class StubOracle(AnalysisOracle):
    """Returns scripted verdicts per symbol; an Exception value is raised."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, enabled: bool = True) -> None:
        self.results: Dict[str, Any] = results or {}
        self.enabled = enabled
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def analyze(self, symbol: str, context: Dict[str, Any]) -> OracleResult:
        self.calls.append((symbol, context))
        result = self.results[symbol]
        if isinstance(result, Exception):
            raise result
        return result


class RecordingChannel(NotificationChannel):
    """Notification channel that records everything it is asked to send."""

    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.signals: List[Any] = []
        self.transitions: List[Any] = []
        self.reports: List[Any] = []

    @property
    def enabled(self) -> bool:
        return True

    def _maybe_fail(self) -> None:
        if self.fail:
            raise RuntimeError("channel down")

    async def send_signal(self, signal) -> None:
        self._maybe_fail()
        self.signals.append(signal)

    async def send_transition(self, signal, transition) -> None:
        self._maybe_fail()
        self.transitions.append((signal, transition))

    async def send_scan_report(self, report) -> None:
        self._maybe_fail()
        self.reports.append(report)


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def make_ticker(symbol: str, price: float = 100.0, change: float = 5.0, volume: float = 50_000_000.0) -> Ticker:
    return Ticker(symbol=symbol, last_price=price, price_change_pct_24h=change, quote_volume_24h=volume)


def make_candles(closes: Optional[List[float]] = None, quote_volumes: Optional[List[float]] = None) -> List[Candle]:
    """Candles with the given closes and/or quote volumes (lists must match when both given)."""
    n = len(closes) if closes is not None else len(quote_volumes or [])
    closes = closes or [100.0] * n
    quote_volumes = quote_volumes or [1000.0] * n
    return [
        Candle(
            open_time=i * 3_600_000,
            open=c,
            high=c,
            low=c,
            close=c,
            volume=1.0,
            close_time=(i + 1) * 3_600_000 - 1,
            quote_volume=qv,
        )
        for i, (c, qv) in enumerate(zip(closes, quote_volumes))
    ]


def add_mover(
    gateway: StubGateway,
    symbol: str,
    price: float = 100.0,
    change_4h_pct: float = 3.0,
    rvol: float = 2.0,
    change_24h: float = 5.0,
    volume: float = 50_000_000.0,
) -> None:
    """Register a symbol that passes (or fails) the scanner with the given metrics."""
    gateway.tickers.append(make_ticker(symbol, price, change_24h, volume))
    gateway.prices[symbol] = price
    gateway.candles[(symbol, "4h")] = make_candles([price / (1 + change_4h_pct / 100.0), price])
    gateway.candles[(symbol, "1h")] = make_candles(quote_volumes=[1000.0] * 24 + [1000.0 * rvol])


def make_config(tmp_path, **sections: Dict[str, Any]) -> BotConfig:
    raw: Dict[str, Any] = {
        "app": {"db_path": str(tmp_path / "signals.db"), "log_dir": str(tmp_path / "logs")},
        "scanner": {"pacing_delay_seconds": 0},
    }
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return BotConfig(**raw)


def make_engine(
    config: BotConfig,
    gateway: Optional[StubGateway] = None,
    oracle: Optional[AnalysisOracle] = None,
    channel: Optional[RecordingChannel] = None,
) -> SignalEngine:
    return SignalEngine(
        config,
        gateway=gateway or StubGateway(),
        oracle=oracle or StubOracle(),
        notifier=NotificationHub([channel] if channel is not None else []),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "signals.db"))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Prevent ConfigManager singleton state from leaking between tests."""
    saved_instance = ConfigManager._instance
    saved_config = ConfigManager._config
    yield
    ConfigManager._instance = saved_instance
    ConfigManager._config = saved_config
