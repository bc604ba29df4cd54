"""Exception hierarchy shared by the engine and its collaborators."""

from typing import Optional


class TradingError(Exception):
    """Base exception for engine errors."""
    pass


class ConfigError(TradingError):
    """Invalid runtime configuration."""
    pass


class MarketDataError(TradingError):
    """Market or account snapshot could not be fetched. Aborts the cycle."""
    pass


class OrderError(TradingError):
    """Base exception for order errors."""
    pass


class OrderRejectedError(OrderError):
    """Exchange refused the order with an error code."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.code}] {base}" if self.code else base
