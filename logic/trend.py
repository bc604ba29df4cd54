"""Dominant-timeframe trend classification.

Memoryless: the latest closed candle alone decides the label,
so a one-candle flip at the crossing point is expected.
"""

from typing import Sequence

from core.config import settings
from core.logging_utils import get_logger
from core.models import Candle, TrendDirection, TrendState, latest_closed_index

logger = get_logger(__name__)


def classify_trend(candles: Sequence[Candle], min_candles: int = None) -> TrendState:
    """Label the trend from the newest closed candle's close and EMAs."""
    min_candles = settings.min_candles if min_candles is None else min_candles
    if len(candles) < min_candles:
        return TrendState.neutral(f"insufficient data ({len(candles)}/{min_candles} candles)")

    idx = latest_closed_index(candles)
    if idx < 0:
        return TrendState.neutral("no closed candle")
    latest = candles[idx]
    if not latest.has_emas:
        return TrendState.neutral("indicators warming up")

    close, fast, slow = latest.close, latest.ema_fast, latest.ema_slow

    if close > slow and fast > slow:
        strength = "strong" if latest.is_green else "pulling back"
        return TrendState(
            TrendDirection.UP,
            latest.open_time,
            f"uptrend ({strength}, EMA{settings.ema_fast_period} > EMA{settings.ema_slow_period})",
        )

    if close < slow and fast < slow:
        strength = "strong" if latest.is_red else "bouncing"
        return TrendState(
            TrendDirection.DOWN,
            latest.open_time,
            f"downtrend ({strength}, EMA{settings.ema_fast_period} < EMA{settings.ema_slow_period})",
        )

    return TrendState(TrendDirection.NEUTRAL, latest.open_time, "averages tangled / ranging")
