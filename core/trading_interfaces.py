"""Collaborator interfaces for paper/live implementations."""

from dataclasses import dataclass, field
from typing import Optional, Protocol

from core.models import AccountSnapshot, AlgoOrder, Candle, PositionSide


@dataclass
class OrderResult:
    """Result of an order request."""
    success: bool
    order_id: Optional[str] = None
    contracts: float = 0.0
    fill_price: Optional[float] = None
    message: str = ""
    attempts: int = 1
    extra: dict = field(default_factory=dict)


class IMarketData(Protocol):
    """Market data and account snapshots."""

    async def get_candles(self, instrument: str, timeframe: str, count: int) -> list[Candle]:
        ...

    async def get_ticker(self, instrument: str) -> float:
        ...

    async def get_account(self) -> AccountSnapshot:
        ...

    async def get_pending_algo_orders(self, instrument: str) -> list[AlgoOrder]:
        ...


class IOrderExecutor(Protocol):
    """Order placement. Raises OrderRejectedError when the exchange refuses.

    ``side`` is always the position side being opened, reduced or protected.
    """

    async def set_leverage(self, instrument: str, leverage: float) -> None:
        ...

    async def place_order(
        self,
        instrument: str,
        side: PositionSide,
        contracts: float,
        reduce_only: bool,
        stop_price: Optional[float] = None,
    ) -> OrderResult:
        ...

    async def update_stop(
        self,
        instrument: str,
        side: PositionSide,
        size: float,
        stop_price: float,
    ) -> OrderResult:
        ...

    async def cancel_orders(self, instrument: str, order_ids: list[str]) -> OrderResult:
        ...

    async def place_algo_order(
        self,
        instrument: str,
        side: PositionSide,
        size: float,
        trigger_price: float,
        order_type: str = "conditional",
        callback_ratio: Optional[float] = None,
    ) -> OrderResult:
        ...


class INarrator(Protocol):
    """Free-text commentary. Never feeds back into decisions."""

    async def summarize(self, context: dict) -> Optional[str]:
        ...
