"""Trend and entry signal types."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from core.models.position import PositionSide


class TrendDirection(Enum):
    UP = "UP"
    DOWN = "DOWN"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class TrendState:
    """Dominant-timeframe trend label, recomputed every cycle."""
    direction: TrendDirection
    as_of: Optional[datetime] = None
    description: str = ""

    def opposes(self, side: PositionSide) -> bool:
        """True when the trend has flipped against a position on ``side``."""
        if self.direction is TrendDirection.UP:
            return side is PositionSide.SHORT
        if self.direction is TrendDirection.DOWN:
            return side is PositionSide.LONG
        return False

    @classmethod
    def neutral(cls, description: str) -> "TrendState":
        return cls(TrendDirection.NEUTRAL, None, description)


class EntryMode(Enum):
    CROSS = "cross"
    MOMENTUM_LEAD = "momentum_lead"


@dataclass(frozen=True)
class EntrySignal:
    """Fast-timeframe entry result."""
    triggered: bool
    side: Optional[PositionSide] = None
    stop_price: float = 0.0
    structure_label: str = "unknown"
    reason: str = ""
    mode: Optional[EntryMode] = None

    @classmethod
    def none(cls, reason: str, structure_label: str = "unknown") -> "EntrySignal":
        return cls(triggered=False, reason=reason, structure_label=structure_label)
