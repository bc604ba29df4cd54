"""
Open-position lifecycle: trend invalidation, staged profit taking, trailing.

Stages fire on net ROI (PnL minus estimated round-trip taker fees, over
margin), in order, at most one per evaluation:

    1  >= 5%   reduce 30% of the original size
    2  >= 8%   reduce 30% and move the stop to break-even + fee buffer
    3  >= 12%  reduce 20%
    4  runner  trail the stop a fixed ROI behind price, close below the floor

Stops only ratchet toward profit. With the exchange-side exit ladder on,
stages 1-3 fill on the exchange and only the break-even stop, trend
invalidation and the runner are managed here.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from core.config import settings
from core.instruments import InstrumentSpec
from core.logging_utils import get_logger
from core.models import Action, Decision, Position, PositionSide, SizeRequest, TrendState
from core.stage_ledger import StageRecord

logger = get_logger(__name__)

FINAL_STAGE = 3
TRAILING_STAGE = 4

# current/original size left after each stage is 0.7, 0.4, 0.2; midpoints
_RATIO_BANDS = ((0.30, 3), (0.55, 2), (0.85, 1))


@dataclass(frozen=True)
class StageProgress:
    """Which stage has already fired and what the original size was."""
    stage: int
    original_contracts: float
    source: str


def ratchet_stop(side: PositionSide, proposed: float, current: Optional[float]) -> Optional[float]:
    """Return ``proposed`` if it locks in more profit than ``current``, else None."""
    if proposed is None or proposed <= 0:
        return None
    if current is None or current <= 0:
        return proposed
    if side is PositionSide.LONG:
        return proposed if proposed > current else None
    return proposed if proposed < current else None


def net_profit_and_roi(
    position: Position,
    price: float,
    spec: InstrumentSpec,
    leverage: float,
    fee_rate: float,
) -> tuple[float, float]:
    """Net PnL after an estimated round-trip taker fee, and net ROI on margin."""
    qty = position.contracts * spec.contract_value
    entry_notional = qty * position.avg_entry_price
    current_notional = qty * price
    fees = (entry_notional + current_notional) * fee_rate
    net = position.pnl_at(price, spec.contract_value) - fees
    margin = position.margin if position.margin > 0 else entry_notional / max(leverage, 1.0)
    if margin <= 0:
        return net, 0.0
    return net, net / margin


class PositionStateMachine:
    """Decides HOLD / REDUCE / CLOSE / UPDATE_STOP for an open position."""

    def __init__(
        self,
        thresholds: tuple[float, float, float] = None,
        fractions: tuple[float, float, float] = None,
        taker_fee_rate: float = None,
        break_even_buffer: float = None,
        trail_offset_roi: float = None,
        trail_floor_roi: float = None,
        exchange_exits: bool = None,
    ):
        """``exchange_exits``: take-profits rest on the exchange (exit ladder),
        so stages 1-3 are never reduced from here."""
        self.thresholds = thresholds or settings.stage_thresholds
        self.fractions = fractions or settings.stage_fractions
        self.taker_fee_rate = settings.taker_fee_rate if taker_fee_rate is None else taker_fee_rate
        self.break_even_buffer = (
            settings.break_even_buffer if break_even_buffer is None else break_even_buffer
        )
        self.trail_offset_roi = settings.trail_offset_roi if trail_offset_roi is None else trail_offset_roi
        self.trail_floor_roi = settings.trail_floor_roi if trail_floor_roi is None else trail_floor_roi
        self.exchange_exits = settings.exit_ladder_enabled if exchange_exits is None else exchange_exits

    # Stage progress

    @staticmethod
    def estimate_original(
        position: Position,
        equity: float,
        allocation_pct: float,
        leverage: float,
        spec: InstrumentSpec,
    ) -> float:
        """Re-derive the entry size from live equity, leverage and allocation."""
        denom = spec.contract_value * position.avg_entry_price
        if denom <= 0:
            return position.contracts
        estimate = equity * allocation_pct * leverage / denom
        return max(estimate, position.contracts)

    @staticmethod
    def stage_from_history(history: Iterable[Decision], position: Position) -> int:
        stage = 0
        for decision in history:
            if decision.instrument != position.instrument or not decision.dispatched:
                continue
            if decision.action is not Action.REDUCE or decision.stage is None:
                continue
            if decision.created_at <= position.opened_at:
                continue
            stage = max(stage, decision.stage)
        return stage

    @staticmethod
    def stage_from_ratio(contracts: float, original: float) -> int:
        if original <= 0:
            return 0
        ratio = contracts / original
        for ceiling, stage in _RATIO_BANDS:
            if ratio <= ceiling:
                return stage
        return 0

    def progress(
        self,
        position: Position,
        history: Iterable[Decision],
        equity: float,
        allocation_pct: float,
        leverage: float,
        spec: InstrumentSpec,
        record: Optional[StageRecord] = None,
    ) -> StageProgress:
        if record is not None:
            return StageProgress(record.stage, record.original_contracts, "ledger")

        original = self.estimate_original(position, equity, allocation_pct, leverage, spec)
        from_history = self.stage_from_history(history, position)
        from_ratio = self.stage_from_ratio(position.contracts, original)
        if from_history != from_ratio:
            logger.warning("[STAGE] %s: history says stage %d, size ratio says %d; using %d",
                           position.instrument, from_history, from_ratio, max(from_history, from_ratio))
        stage = max(from_history, from_ratio)
        source = "history" if from_history >= from_ratio else "size_ratio"
        return StageProgress(stage, original, source)

    # Decision

    def evaluate(
        self,
        position: Position,
        current_price: float,
        trend: TrendState,
        leverage: float,
        history: Iterable[Decision],
        equity: float,
        spec: InstrumentSpec,
        allocation_pct: float = None,
        record: Optional[StageRecord] = None,
    ) -> Decision:
        inst = position.instrument
        side = position.side
        lev = position.leverage if position.leverage > 0 else leverage
        allocation_pct = settings.allocation_pct if allocation_pct is None else allocation_pct

        if trend.opposes(side):
            logger.info("[STAGE] %s: trend %s invalidates %s, closing", inst, trend.direction.value, side.value)
            return Decision(
                instrument=inst,
                action=Action.CLOSE,
                size_request=SizeRequest.contracts(position.contracts),
                side=side,
                rationale=f"trend flipped {trend.direction.value} against {side.value} position",
            )

        net, roi = net_profit_and_roi(position, current_price, spec, lev, self.taker_fee_rate)
        progress = self.progress(position, history, equity, allocation_pct, lev, spec, record)
        summary = f"net ROI {roi:.2%} (net {net:.2f}), stage {progress.stage} ({progress.source})"

        if progress.stage < FINAL_STAGE and self.exchange_exits:
            return self._resting_exits(position, progress, spec, summary)

        if progress.stage < FINAL_STAGE:
            next_stage = progress.stage + 1
            threshold = self.thresholds[next_stage - 1]
            if roi < threshold:
                return Decision.hold(inst, f"{summary}, next stage at {threshold:.0%}", side)

            size = progress.original_contracts * self.fractions[next_stage - 1]
            stop = None
            rationale = f"stage {next_stage}: {summary} >= {threshold:.0%}, reduce {size:.4f}"
            if next_stage == 2:
                stop = ratchet_stop(side, spec.round_price(self._break_even(position)),
                                    position.current_stop_price)
                if stop is not None:
                    rationale += f", stop to break-even {stop}"
            logger.info("[STAGE] %s: %s", inst, rationale)
            return Decision(
                instrument=inst,
                action=Action.REDUCE,
                size_request=SizeRequest.contracts(size),
                stop_price=stop,
                side=side,
                stage=next_stage,
                rationale=rationale,
            )

        if roi < self.trail_floor_roi:
            return Decision(
                instrument=inst,
                action=Action.CLOSE,
                size_request=SizeRequest.contracts(position.contracts),
                side=side,
                stage=TRAILING_STAGE,
                rationale=f"runner: {summary} retraced below {self.trail_floor_roi:.0%} floor",
            )

        offset = self.trail_offset_roi / max(lev, 1.0)
        if side is PositionSide.LONG:
            proposed = current_price * (1 - offset)
        else:
            proposed = current_price * (1 + offset)
        stop = ratchet_stop(side, spec.round_price(proposed), position.current_stop_price)
        if stop is None:
            return Decision.hold(inst, f"runner: {summary}, trailing stop unchanged", side)
        return Decision(
            instrument=inst,
            action=Action.UPDATE_STOP,
            size_request=SizeRequest.contracts(position.contracts),
            stop_price=stop,
            side=side,
            stage=TRAILING_STAGE,
            rationale=f"runner: {summary}, trail stop to {stop}",
        )

    def _resting_exits(
        self,
        position: Position,
        progress: StageProgress,
        spec: InstrumentSpec,
        summary: str,
    ) -> Decision:
        # Stage 2 still owns the break-even stop, the ladder only takes profit
        inst, side = position.instrument, position.side
        if progress.stage >= 2:
            stop = ratchet_stop(side, spec.round_price(self._break_even(position)),
                                position.current_stop_price)
            if stop is not None:
                return Decision(
                    instrument=inst,
                    action=Action.UPDATE_STOP,
                    size_request=SizeRequest.contracts(position.contracts),
                    stop_price=stop,
                    side=side,
                    rationale=f"take-profit {progress.stage} filled on exchange, {summary}, "
                              f"stop to break-even {stop}",
                )
        return Decision.hold(inst, f"{summary}, take-profits resting on exchange", side)

    def _break_even(self, position: Position) -> float:
        if position.side is PositionSide.LONG:
            return position.avg_entry_price * (1 + self.break_even_buffer)
        return position.avg_entry_price * (1 - self.break_even_buffer)
