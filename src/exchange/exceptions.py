"""Typed exception hierarchy for market-data operations.

Enables callers to distinguish transient failures and rate limits from
unknown symbols and apply the appropriate skip/retry strategy.
"""


class MarketDataError(Exception):
    """Base class for all market-data errors."""

    def __init__(self, message: str = "", status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class TransientMarketDataError(MarketDataError):
    """Temporary failure that may succeed on retry (network, 5xx, timeout)."""


class RateLimitError(TransientMarketDataError):
    """Upstream rate limit hit (429/418). Caller should back off and retry."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 0.0, status_code: int = 429):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class SymbolNotFoundError(MarketDataError):
    """Symbol is unknown or delisted upstream."""

    def __init__(self, symbol: str, message: str = ""):
        super().__init__(message or f"Symbol not found: {symbol}", status_code=404)
        self.symbol = symbol


class IpBannedError(MarketDataError):
    """HTTP 418: the IP is banned for ignoring 429s. Retrying extends the ban."""

    def __init__(self, message: str = "IP banned by upstream", retry_after: float = 0.0):
        super().__init__(message, status_code=418)
        self.retry_after = retry_after
