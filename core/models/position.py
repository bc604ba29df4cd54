"""Exchange-owned position and account snapshots."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def opposite(self) -> "PositionSide":
        return PositionSide.SHORT if self is PositionSide.LONG else PositionSide.LONG


@dataclass(frozen=True)
class Position:
    """Mirror of an exchange position, refetched every cycle."""
    instrument: str
    side: PositionSide
    contracts: float
    avg_entry_price: float
    leverage: float
    margin: float
    opened_at: datetime
    unrealized_pnl: float = 0.0
    unrealized_pnl_ratio: float = 0.0
    current_stop_price: Optional[float] = None
    current_take_profit_price: Optional[float] = None

    @property
    def is_long(self) -> bool:
        return self.side is PositionSide.LONG

    @property
    def is_open(self) -> bool:
        return self.contracts > 0

    def pnl_at(self, price: float, contract_value: float) -> float:
        """PnL in quote currency if marked at ``price``."""
        qty = self.contracts * contract_value
        if self.is_long:
            return (price - self.avg_entry_price) * qty
        return (self.avg_entry_price - price) * qty


@dataclass(frozen=True)
class AccountSnapshot:
    """Balances and open positions, refetched every cycle."""
    total_equity: float
    available_equity: float
    positions: list[Position] = field(default_factory=list)

    def position_for(self, instrument: str) -> Optional[Position]:
        for position in self.positions:
            if position.instrument == instrument and position.is_open:
                return position
        return None

    @property
    def active_instruments(self) -> set[str]:
        return {p.instrument for p in self.positions if p.is_open}

    @property
    def has_open_position(self) -> bool:
        return any(p.is_open for p in self.positions)


@dataclass(frozen=True)
class AlgoOrder:
    """Pending exchange-side conditional order."""
    id: str
    instrument: str
    type: str
    reduce_only: bool
    trigger_price: Optional[float] = None
    side: Optional[PositionSide] = None
    size: float = 0.0
