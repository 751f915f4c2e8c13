from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx

from src.core.logger import get_logger
from src.exchange.exceptions import (
    IpBannedError,
    MarketDataError,
    RateLimitError,
    SymbolNotFoundError,
    TransientMarketDataError,
)

logger = get_logger("market_data")

# Binance error code for an unknown symbol on public endpoints.
_INVALID_SYMBOL_CODE = -1121


@dataclass
class Ticker:
    symbol: str
    last_price: float
    price_change_pct_24h: float
    quote_volume_24h: float
    high_24h: float = 0.0
    low_24h: float = 0.0
    trade_count: int = 0


@dataclass
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int = 0
    quote_volume: float = 0.0
    trade_count: int = 0


@dataclass
class OrderBook:
    symbol: str
    bids: List[Dict[str, float]] = field(default_factory=list)
    asks: List[Dict[str, float]] = field(default_factory=list)


# Shapes a well-formed HTTP 200 can still break parsing with.
_ROW_ERRORS = (TypeError, ValueError, IndexError, KeyError, AttributeError)


def _as_list(payload: Any) -> List[Any]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise MarketDataError(f"Expected a JSON array, got {type(payload).__name__}")
    return payload


def _ticker_from_row(row: Dict[str, Any], default_symbol: str = "") -> Ticker:
    return Ticker(
        symbol=str(row.get("symbol", default_symbol)),
        last_price=float(row.get("lastPrice", 0) or 0),
        price_change_pct_24h=float(row.get("priceChangePercent", 0) or 0),
        quote_volume_24h=float(row.get("quoteVolume", 0) or 0),
        high_24h=float(row.get("highPrice", 0) or 0),
        low_24h=float(row.get("lowPrice", 0) or 0),
        trade_count=int(row.get("count", 0) or 0),
    )


def _candle_from_row(k: List[Any]) -> Candle:
    return Candle(
        open_time=int(k[0]),
        open=float(k[1]),
        high=float(k[2]),
        low=float(k[3]),
        close=float(k[4]),
        volume=float(k[5]),
        close_time=int(k[6]) if len(k) > 6 else 0,
        quote_volume=float(k[7]) if len(k) > 7 else 0.0,
        trade_count=int(k[8]) if len(k) > 8 else 0,
    )


class BinanceMarketData:
    """Read-only async Binance spot market-data client (tickers, klines, prices, depth)."""

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        quote_asset: str = "USDT",
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "https://api.binance.com").rstrip("/")
        self.quote_asset = (quote_asset or "USDT").upper()
        self.timeout_seconds = float(timeout_seconds)
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = float(retry_base_delay)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, symbol: str = "") -> Any:
        """GET with bounded exponential backoff on transient failures."""
        if self._client is None:
            await self.initialize()

        attempt = 0
        while True:
            try:
                resp = await self._client.get(path, params=params)
                return self._decode(resp, symbol)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                err: TransientMarketDataError = TransientMarketDataError(
                    f"{path} transport failure: {e!r}"
                )
            except TransientMarketDataError as e:
                err = e

            attempt += 1
            if attempt > self.max_retries:
                raise err
            delay = self.retry_base_delay * (2 ** (attempt - 1))
            if isinstance(err, RateLimitError) and err.retry_after > delay:
                delay = err.retry_after
            logger.warning(
                "Market data request failed, backing off",
                path=path,
                symbol=symbol or None,
                attempt=attempt,
                retry_in=delay,
                error=str(err),
            )
            await asyncio.sleep(delay)

    @staticmethod
    def _decode(resp: httpx.Response, symbol: str) -> Any:
        status = resp.status_code
        if status in (429, 418):
            try:
                retry_after = float(resp.headers.get("Retry-After", "0") or 0)
            except ValueError:
                retry_after = 0.0
            if status == 418:
                raise IpBannedError(retry_after=retry_after)
            raise RateLimitError(retry_after=retry_after, status_code=status)
        if status >= 500:
            raise TransientMarketDataError(f"Upstream error {status}", status_code=status)
        if status == 404:
            raise SymbolNotFoundError(symbol)
        if status >= 400:
            code = None
            msg = resp.text
            try:
                body = resp.json()
                code = body.get("code")
                msg = body.get("msg", msg)
            except (ValueError, AttributeError):
                pass
            if code == _INVALID_SYMBOL_CODE:
                raise SymbolNotFoundError(symbol, msg)
            raise MarketDataError(f"Request rejected ({status}): {msg}", status_code=status)
        try:
            return resp.json()
        except ValueError as e:
            # Proxies and maintenance pages answer 200 with HTML.
            raise TransientMarketDataError(
                f"Non-JSON body from {resp.request.url.path}", status_code=status
            ) from e

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def get_tickers(self) -> List[Ticker]:
        """24h snapshot for every pair quoted in the configured asset."""
        rows = await self._get("/api/v3/ticker/24hr")
        tickers: List[Ticker] = []
        for row in _as_list(rows):
            if not isinstance(row, dict):
                continue
            sym = str(row.get("symbol", ""))
            if not sym.endswith(self.quote_asset):
                continue
            try:
                tickers.append(_ticker_from_row(row))
            except _ROW_ERRORS as e:
                logger.debug("Skipping malformed ticker row", symbol=sym, error=repr(e))
        logger.debug("Tickers fetched", quote_asset=self.quote_asset, count=len(tickers))
        return tickers

    async def get_ticker(self, symbol: str) -> Ticker:
        row = await self._get("/api/v3/ticker/24hr", {"symbol": symbol.upper()}, symbol=symbol)
        try:
            return _ticker_from_row(row, default_symbol=symbol.upper())
        except _ROW_ERRORS as e:
            raise MarketDataError(f"Malformed ticker for {symbol.upper()}: {e!r}") from e

    async def get_candles(self, symbol: str, interval: str = "1h", limit: int = 24) -> List[Candle]:
        """Klines in ascending open-time order."""
        rows = await self._get(
            "/api/v3/klines",
            {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)},
            symbol=symbol,
        )
        try:
            return [_candle_from_row(k) for k in _as_list(rows)]
        except _ROW_ERRORS as e:
            raise MarketDataError(f"Malformed klines for {symbol.upper()} {interval}: {e!r}") from e

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Latest price for each requested symbol in one call. Unknown symbols are absent."""
        wanted = {s.upper() for s in symbols}
        if not wanted:
            return {}
        rows = await self._get("/api/v3/ticker/price")
        prices: Dict[str, float] = {}
        for row in _as_list(rows):
            if not isinstance(row, dict):
                continue
            sym = str(row.get("symbol", ""))
            if sym in wanted:
                try:
                    prices[sym] = float(row["price"])
                except (KeyError, TypeError, ValueError):
                    continue
        return prices

    async def get_order_book(self, symbol: str, limit: int = 10) -> OrderBook:
        book = await self._get(
            "/api/v3/depth",
            {"symbol": symbol.upper(), "limit": int(limit)},
            symbol=symbol,
        )
        try:
            return OrderBook(
                symbol=symbol.upper(),
                bids=[{"price": float(p), "qty": float(q)} for p, q in book.get("bids", [])],
                asks=[{"price": float(p), "qty": float(q)} for p, q in book.get("asks", [])],
            )
        except _ROW_ERRORS as e:
            raise MarketDataError(f"Malformed order book for {symbol.upper()}: {e!r}") from e
