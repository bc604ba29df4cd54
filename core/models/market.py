"""Per-instrument market snapshot."""

from dataclasses import dataclass, field

from core.models.candle import Candle


@dataclass(frozen=True)
class MarketSnapshot:
    """Ticker plus both EMA-enriched candle series for one instrument."""
    instrument: str
    price: float
    slow_candles: list[Candle] = field(default_factory=list)
    fast_candles: list[Candle] = field(default_factory=list)
