"""Typed data models for the trading engine."""

from core.models.candle import Candle, attach_emas, ema_series, latest_closed_index
from core.models.decision import Action, Decision, SizeKind, SizeRequest
from core.models.market import MarketSnapshot
from core.models.position import AccountSnapshot, AlgoOrder, Position, PositionSide
from core.models.signal import EntryMode, EntrySignal, TrendDirection, TrendState

__all__ = [
    "AccountSnapshot",
    "Action",
    "AlgoOrder",
    "Candle",
    "Decision",
    "EntryMode",
    "EntrySignal",
    "MarketSnapshot",
    "Position",
    "PositionSide",
    "SizeKind",
    "SizeRequest",
    "TrendDirection",
    "TrendState",
    "attach_emas",
    "ema_series",
    "latest_closed_index",
]
