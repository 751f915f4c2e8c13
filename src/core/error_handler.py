"""
Error Classifier - maps failures onto the engine's error taxonomy.

Rules:
- Transient external failures (network, timeout, rate limit) skip the item
  for this cycle only; the next cycle retries naturally.
- Data inconsistencies (delisted symbol, missing candles, bad oracle payload)
  drop the symbol from the current stage.
- Invariant violations are rejected at the boundary and reported.
- Configuration errors are fatal and only expected at startup.
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Optional

import httpx

from src.core.exceptions import (
    ConfigurationError,
    InvalidOracleResultError,
    InvariantViolationError,
    OracleUnavailableError,
    RecordNotFoundError,
)
from src.core.logger import get_logger
from src.exchange.exceptions import (
    MarketDataError,
    SymbolNotFoundError,
    TransientMarketDataError,
)

logger = get_logger("error_handler")


class ErrorCategory(enum.Enum):
    """Which branch of the taxonomy an error belongs to."""

    TRANSIENT = "transient"          # skip the item, retry next cycle
    DATA = "data"                    # drop the symbol from this stage
    INVARIANT = "invariant"          # reject with a descriptive error
    CONFIGURATION = "configuration"  # fatal
    UNEXPECTED = "unexpected"        # bug; logged with traceback, item skipped


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler(notify_fn=telegram.send_message)
        category = await handler.handle(err, component="scanner", context="BTCUSDT")
    """

    def __init__(self, notify_fn: Optional[Any] = None):
        self._notify_fn = notify_fn

    def set_notify_fn(self, fn: Any) -> None:
        self._notify_fn = fn

    def classify_error(self, error: BaseException) -> ErrorCategory:
        if isinstance(error, ConfigurationError):
            return ErrorCategory.CONFIGURATION
        if isinstance(error, InvariantViolationError):
            return ErrorCategory.INVARIANT
        if isinstance(error, (SymbolNotFoundError, InvalidOracleResultError, RecordNotFoundError)):
            return ErrorCategory.DATA
        if isinstance(error, (TransientMarketDataError, OracleUnavailableError)):
            return ErrorCategory.TRANSIENT
        if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError, TimeoutError)):
            return ErrorCategory.TRANSIENT
        if isinstance(error, MarketDataError):
            return ErrorCategory.DATA
        return ErrorCategory.UNEXPECTED

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
    ) -> ErrorCategory:
        """
        Classify and log an error; notify the operator for unexpected ones.

        Returns the category so callers can decide what to do.
        """
        category = self.classify_error(error)
        msg = (
            f"[{category.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        if category in (ErrorCategory.CONFIGURATION, ErrorCategory.UNEXPECTED):
            tb = traceback.format_exception(type(error), error, error.__traceback__)
            logger.error(msg, traceback="".join(tb[-3:]))
        elif category == ErrorCategory.INVARIANT:
            logger.warning(msg)
        else:
            logger.info(msg)

        if category == ErrorCategory.UNEXPECTED and self._notify_fn:
            try:
                await self._notify_fn(msg)
            except Exception as e:
                logger.warning("Error notification failed", error=repr(e))

        return category
