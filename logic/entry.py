"""
Fast-timeframe entry detection.

Two mutually exclusive modes, picked by the current fast regime:

- Confirmed cross: the fast regime already agrees with the trend. Look back
  a few candles for the golden (UP) / death (DOWN) cross and put the stop at
  the mean low/high of the opposite-regime run the cross just left.
- Momentum lead: the fast regime still opposes the trend, but price has
  already broken through both averages on rising volume while the gap
  narrows. Fires before the lagging cross, stop at the signal candle's
  own extreme.

Every stop is clamped by the leverage-derived risk cap.
"""

from typing import Optional, Sequence

import numpy as np

from core.config import settings
from core.logging_utils import get_logger
from core.models import (
    Candle,
    EntryMode,
    EntrySignal,
    PositionSide,
    TrendDirection,
    TrendState,
    latest_closed_index,
)

logger = get_logger(__name__)

GOLDEN_ZONE = "golden-cross zone"
DEATH_ZONE = "death-cross zone"


def risk_capped_stop(
    side: PositionSide,
    structural_stop: float,
    price: float,
    leverage: float,
    max_margin_loss: float,
) -> tuple[float, bool]:
    """Clamp a structural stop to the per-trade risk limit.

    Returns (stop, capped). The max distance is ``max_margin_loss`` of margin
    expressed as a price move at ``leverage``.
    """
    distance = price * max_margin_loss / max(leverage, 1.0)
    if side is PositionSide.LONG:
        limit = price - distance
        if limit <= structural_stop < price:
            return structural_stop, False
        return limit, True
    limit = price + distance
    if price < structural_stop <= limit:
        return structural_stop, False
    return limit, True


class EntryDetector:
    """Scans the fast timeframe for an entry aligned with the dominant trend."""

    def __init__(
        self,
        tolerance: int = None,
        volume_mult: float = None,
        volume_lookback: int = None,
        max_margin_loss: float = None,
        min_candles: int = None,
    ):
        self.tolerance = settings.cross_tolerance if tolerance is None else tolerance
        self.volume_mult = settings.momentum_volume_mult if volume_mult is None else volume_mult
        self.volume_lookback = (
            settings.momentum_volume_lookback if volume_lookback is None else volume_lookback
        )
        self.max_margin_loss = settings.max_margin_loss if max_margin_loss is None else max_margin_loss
        self.min_candles = settings.min_candles if min_candles is None else min_candles

    def detect(
        self,
        candles: Sequence[Candle],
        trend: TrendState,
        current_price: float,
        leverage: float,
    ) -> EntrySignal:
        if len(candles) < self.min_candles:
            return EntrySignal.none(f"insufficient data ({len(candles)}/{self.min_candles} candles)")

        i = latest_closed_index(candles)
        if i < 1 or not candles[i].has_emas:
            return EntrySignal.none("indicators not ready")

        latest = candles[i]
        if latest.is_golden:
            structure = GOLDEN_ZONE
        elif latest.is_death:
            structure = DEATH_ZONE
        else:
            return EntrySignal.none("averages converged, no regime", "converged")

        if trend.direction is TrendDirection.NEUTRAL:
            return EntrySignal.none("dominant trend unclear, no entry", structure)

        side = PositionSide.LONG if trend.direction is TrendDirection.UP else PositionSide.SHORT
        price = current_price if current_price > 0 else latest.close
        aligned = latest.is_golden if side is PositionSide.LONG else latest.is_death

        if aligned:
            signal = self._confirmed_cross(candles, i, side, price, leverage, structure)
        else:
            signal = self._momentum_lead(candles, i, side, price, leverage, structure)

        if signal.triggered:
            logger.info("[ENTRY] %s %s stop=%.4f (%s)", signal.mode.value, side.value,
                        signal.stop_price, signal.reason)
        return signal

    # Confirmed cross

    def _confirmed_cross(
        self,
        candles: Sequence[Candle],
        i: int,
        side: PositionSide,
        price: float,
        leverage: float,
        structure: str,
    ) -> EntrySignal:
        for k in range(self.tolerance):
            idx = i - k
            if idx < 1:
                break
            cur, prev = candles[idx], candles[idx - 1]
            if not (cur.has_emas and prev.has_emas):
                break
            if not _crossed(cur, prev, side):
                continue

            run = _opposite_run(candles, idx, side)
            if not run:
                continue

            if side is PositionSide.LONG:
                structural = float(np.mean([c.low for c in run]))
            else:
                structural = float(np.mean([c.high for c in run]))
            stop, capped = risk_capped_stop(side, structural, price, leverage, self.max_margin_loss)

            cross_name = "golden" if side is PositionSide.LONG else "death"
            reason = (
                f"trend {'UP' if side is PositionSide.LONG else 'DOWN'} + {cross_name} cross "
                f"{k} candle(s) ago after a {len(run)}-candle opposite run"
            )
            if capped:
                reason += f", stop capped at {self.max_margin_loss:.0%} margin risk"
            return EntrySignal(
                triggered=True,
                side=side,
                stop_price=stop,
                structure_label=structure,
                reason=reason,
                mode=EntryMode.CROSS,
            )

        waiting = "pullback" if side is PositionSide.LONG else "bounce"
        return EntrySignal.none(f"trend aligned, no fresh cross within {self.tolerance} candles "
                                f"(waiting for {waiting})", structure)

    # Momentum lead

    def _momentum_lead(
        self,
        candles: Sequence[Candle],
        i: int,
        side: PositionSide,
        price: float,
        leverage: float,
        structure: str,
    ) -> EntrySignal:
        cur, prev = candles[i], candles[i - 1]
        opposing = "still in " + structure
        if not prev.has_emas:
            return EntrySignal.none(f"{opposing}, previous averages missing", structure)

        is_long = side is PositionSide.LONG
        if is_long:
            pushed = cur.close > cur.ema_fast and cur.close > cur.ema_slow
            slope_turned = cur.ema_fast > prev.ema_fast
        else:
            pushed = cur.close < cur.ema_fast and cur.close < cur.ema_slow
            slope_turned = cur.ema_fast < prev.ema_fast
        narrowing = cur.ema_gap < prev.ema_gap

        start = i - self.volume_lookback
        if start < 0:
            return EntrySignal.none(f"{opposing}, not enough volume history", structure)
        avg_volume = float(np.mean([c.volume for c in candles[start:i]]))
        volume_ok = avg_volume > 0 and cur.volume > avg_volume * self.volume_mult

        if not (pushed and narrowing and slope_turned and volume_ok):
            missing = [
                name for name, ok in (
                    ("breakout", pushed),
                    ("gap narrowing", narrowing),
                    ("slope", slope_turned),
                    ("volume", volume_ok),
                ) if not ok
            ]
            return EntrySignal.none(f"{opposing}, momentum lead missing: {', '.join(missing)}", structure)

        structural = cur.low if is_long else cur.high
        stop, capped = risk_capped_stop(side, structural, price, leverage, self.max_margin_loss)
        reason = (
            f"momentum lead {'long' if is_long else 'short'}: price through both averages, "
            f"volume {cur.volume / avg_volume:.1f}x"
        )
        if capped:
            reason += f", stop capped at {self.max_margin_loss:.0%} margin risk"
        return EntrySignal(
            triggered=True,
            side=side,
            stop_price=stop,
            structure_label=structure,
            reason=reason,
            mode=EntryMode.MOMENTUM_LEAD,
        )


def _crossed(cur: Candle, prev: Candle, side: PositionSide) -> bool:
    if side is PositionSide.LONG:
        return cur.ema_fast > cur.ema_slow and prev.ema_fast <= prev.ema_slow
    return cur.ema_fast < cur.ema_slow and prev.ema_fast >= prev.ema_slow


def _opposite_run(candles: Sequence[Candle], cross_idx: int, side: PositionSide) -> list[Candle]:
    """Opposite-regime candles right before the cross, newest first.

    Candles with equal averages at the boundary are skipped; the first
    same-regime candle ends the search.
    """
    run: list[Candle] = []
    for x in range(cross_idx - 1, -1, -1):
        candle = candles[x]
        if not candle.has_emas:
            break
        opposite = candle.is_death if side is PositionSide.LONG else candle.is_golden
        same = candle.is_golden if side is PositionSide.LONG else candle.is_death
        if opposite:
            run.append(candle)
        elif run or same:
            break
    return run


def detect_entry(
    candles: Sequence[Candle],
    trend: TrendState,
    current_price: float,
    leverage: float,
    detector: Optional[EntryDetector] = None,
) -> EntrySignal:
    """Convenience wrapper using default settings."""
    return (detector or EntryDetector()).detect(candles, trend, current_price, leverage)
