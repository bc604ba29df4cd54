"""Candle primitives and EMA enrichment."""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Sequence


@dataclass(frozen=True)
class Candle:
    """OHLCV candle with the dual EMA attached once per fetched series."""
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    closed: bool = True

    @property
    def has_emas(self) -> bool:
        return self.ema_fast is not None and self.ema_slow is not None

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    @property
    def ema_gap(self) -> float:
        """Absolute distance between the averages (0 when not ready)."""
        if not self.has_emas:
            return 0.0
        return abs(self.ema_fast - self.ema_slow)

    @property
    def is_golden(self) -> bool:
        return self.has_emas and self.ema_fast > self.ema_slow

    @property
    def is_death(self) -> bool:
        return self.has_emas and self.ema_fast < self.ema_slow


def ema_series(closes: Sequence[float], period: int) -> list[float]:
    """EMA seeded with the first close."""
    if not closes:
        return []
    multiplier = 2 / (period + 1)
    ema = closes[0]
    result = [ema]
    for price in closes[1:]:
        ema = (price - ema) * multiplier + ema
        result.append(ema)
    return result


def attach_emas(candles: Sequence[Candle], fast: int = 15, slow: int = 60) -> list[Candle]:
    """Return copies of ``candles`` carrying ema_fast/ema_slow.

    Both averages stay None until the series covers the slow seed window.
    """
    closes = [c.close for c in candles]
    fast_values = ema_series(closes, fast)
    slow_values = ema_series(closes, slow)
    seed = max(fast, slow) - 1
    enriched = []
    for i, candle in enumerate(candles):
        if i < seed:
            enriched.append(replace(candle, ema_fast=None, ema_slow=None))
        else:
            enriched.append(replace(candle, ema_fast=fast_values[i], ema_slow=slow_values[i]))
    return enriched


def latest_closed_index(candles: Sequence[Candle]) -> int:
    """Index of the newest closed candle, -1 when there is none."""
    for i in range(len(candles) - 1, -1, -1):
        if candles[i].closed:
            return i
    return -1
