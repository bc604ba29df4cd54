"""
Order dispatch: the boundary between sized decisions and the executor.

Maps each action onto executor calls, retries opening orders rejected for
margin with a shrinking size, records every order in the audit log and
keeps the stage ledger in step with what actually reached the exchange.
"""

from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional

from core.config import settings
from core.errors import OrderError, OrderRejectedError
from core.instruments import InstrumentSpec
from core.logger import log_order, utc_iso_str
from core.logging_utils import get_logger
from core.models import Action, Decision, Position, PositionSide
from core.stage_ledger import StageLedger
from core.trading_interfaces import IOrderExecutor, OrderResult
from execution.allocator import floor_to_step, plan_exit_ladder

logger = get_logger(__name__)


@dataclass
class ShrinkingRetryPolicy:
    """Retry an order rejected for margin with a smaller size.

    Only the dispatch is retried; the decision that produced the size is not
    re-run. Sizes are re-quantized and never go below ``floor_size``.
    """
    max_retries: int = 2
    shrink_factor: float = 0.8
    floor_size: float = 0.01
    reject_code: str = "51008"

    def shrink(self, contracts: float) -> Optional[float]:
        smaller = floor_to_step(contracts * self.shrink_factor, self.floor_size)
        if smaller < self.floor_size or smaller >= contracts:
            return None
        return smaller

    async def run(self, place: Callable[[float], Awaitable[OrderResult]], contracts: float) -> OrderResult:
        size = contracts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await place(size)
            except OrderRejectedError as e:
                if e.code != self.reject_code or attempt > self.max_retries:
                    raise
                smaller = self.shrink(size)
                if smaller is None:
                    raise
                logger.warning("[RETRY] Margin rejection (%s), attempt %d/%d: %g -> %g contracts",
                               e, attempt, self.max_retries + 1, size, smaller)
                size = smaller
                continue
            result.attempts = attempt
            if not result.contracts:
                result.contracts = size
            return result


def trailing_callback_ratio(leverage: float, roi: float) -> float:
    """Price callback for a trailing order that gives back ``roi`` of margin."""
    raw = roi / max(leverage, 1.0)
    return max(0.001, int(raw * 1000) / 1000)


class OrderDispatcher:
    """Executes sized decisions and updates the stage ledger on success."""

    def __init__(
        self,
        executor: IOrderExecutor,
        ledger: StageLedger,
        exit_ladder_enabled: bool = None,
        max_retries: int = None,
        shrink_factor: float = None,
    ):
        self.executor = executor
        self.ledger = ledger
        self.exit_ladder_enabled = (
            settings.exit_ladder_enabled if exit_ladder_enabled is None else exit_ladder_enabled
        )
        self.max_retries = settings.retry_max if max_retries is None else max_retries
        self.shrink_factor = settings.retry_shrink_factor if shrink_factor is None else shrink_factor

    def _policy(self, spec: InstrumentSpec) -> ShrinkingRetryPolicy:
        return ShrinkingRetryPolicy(
            max_retries=self.max_retries,
            shrink_factor=self.shrink_factor,
            floor_size=spec.min_size,
            reject_code=settings.margin_reject_code,
        )

    async def dispatch(
        self,
        decision: Decision,
        spec: InstrumentSpec,
        position: Optional[Position] = None,
        leverage: float = None,
        price: float = 0.0,
    ) -> Decision:
        """Send one decision. Returns it marked dispatched, or annotated with the failure."""
        if not decision.is_actionable:
            return decision
        leverage = settings.leverage if leverage is None else leverage

        try:
            if decision.action.is_open:
                result = await self._open(decision, spec, leverage, price)
            elif decision.action is Action.UPDATE_STOP:
                result = await self._update_stop(decision, position)
            else:
                result = await self._reduce_or_close(decision, position)
        except OrderError as e:
            logger.error("[ORDER] %s %s rejected: %s", decision.instrument, decision.action.value, e)
            self._record(decision, success=False, message=str(e),
                         code=getattr(e, "code", None))
            return decision.with_note(f"order failed: {e}")

        if not result.success:
            logger.error("[ORDER] %s %s failed: %s", decision.instrument, decision.action.value, result.message)
            self._record(decision, success=False, message=result.message)
            return decision.with_note(f"order failed: {result.message}")

        sent = replace(decision, dispatched=True, contracts=result.contracts or decision.contracts)
        if result.attempts > 1:
            sent = sent.with_note(f"filled {sent.contracts:g} after {result.attempts} attempts")
        self._record(sent, success=True, order_id=result.order_id, fill_price=result.fill_price,
                     attempts=result.attempts)
        logger.info("[ORDER] %s %s %g contracts%s", sent.instrument, sent.action.value, sent.contracts,
                    f" stop={sent.stop_price}" if sent.stop_price else "")
        return sent

    # Actions

    async def _open(self, decision: Decision, spec: InstrumentSpec, leverage: float, price: float) -> OrderResult:
        side = PositionSide.LONG if decision.action is Action.OPEN_LONG else PositionSide.SHORT
        await self.executor.set_leverage(decision.instrument, leverage)

        async def place(size: float) -> OrderResult:
            return await self.executor.place_order(
                decision.instrument, side, size, reduce_only=False, stop_price=decision.stop_price
            )

        result = await self._policy(spec).run(place, decision.contracts)
        if not result.success:
            return result

        self.ledger.open_pending(decision.instrument, side, result.contracts)
        if self.exit_ladder_enabled:
            entry = result.fill_price or price
            await self.place_exit_ladder(decision.instrument, side, entry, result.contracts, spec, leverage)
        return result

    async def _reduce_or_close(self, decision: Decision, position: Optional[Position]) -> OrderResult:
        if position is None:
            raise OrderError(f"no open position for {decision.instrument}")

        # Stop first: if the reduce then fails, the stage re-fires next cycle
        if decision.stop_price is not None and decision.action is Action.REDUCE:
            remaining = max(position.contracts - decision.contracts, 0.0)
            stop_result = await self.executor.update_stop(
                decision.instrument, position.side, remaining, decision.stop_price
            )
            if not stop_result.success:
                return stop_result

        result = await self.executor.place_order(
            decision.instrument, position.side, decision.contracts, reduce_only=True
        )
        if not result.success:
            return result

        if decision.action is Action.CLOSE:
            self.ledger.discard(decision.instrument)
        elif decision.stage is not None:
            self.ledger.advance(decision.instrument, decision.stage)
        return result

    async def _update_stop(self, decision: Decision, position: Optional[Position]) -> OrderResult:
        if position is None:
            raise OrderError(f"no open position for {decision.instrument}")
        return await self.executor.update_stop(
            decision.instrument, position.side, position.contracts, decision.stop_price
        )

    # Exchange-side exit ladder

    async def place_exit_ladder(
        self,
        instrument: str,
        side: PositionSide,
        entry_price: float,
        contracts: float,
        spec: InstrumentSpec,
        leverage: float,
    ) -> int:
        """Reduce-only take-profits at each stage ROI plus a trailing remainder.

        Best effort: a failed tranche is logged and the rest still go out.
        Returns the number of orders placed.
        """
        sizes = plan_exit_ladder(contracts, spec, settings.stage_fractions)
        rois = settings.stage_thresholds

        def trigger(roi: float) -> float:
            move = roi / max(leverage, 1.0)
            price = entry_price * (1 + move) if side is PositionSide.LONG else entry_price * (1 - move)
            return spec.round_price(price)

        orders = [
            (size, trigger(roi), "conditional", None)
            for size, roi in zip(sizes[:-1], rois)
        ]
        orders.append((sizes[-1], trigger(rois[-1]), "move_order_stop",
                       trailing_callback_ratio(leverage, settings.trail_offset_roi)))

        placed = 0
        for size, trigger_price, order_type, callback in orders:
            if size < spec.min_size:
                continue
            try:
                result = await self.executor.place_algo_order(
                    instrument, side, size, trigger_price, order_type=order_type, callback_ratio=callback
                )
            except OrderError as e:
                logger.warning("[LADDER] %s %s @ %s failed: %s", instrument, order_type, trigger_price, e)
                continue
            if result.success:
                placed += 1
        logger.info("[LADDER] %s: %d exit orders placed for %g contracts", instrument, placed, contracts)
        return placed

    def _record(self, decision: Decision, success: bool, **extra):
        record = {
            "ts": utc_iso_str(),
            "instrument": decision.instrument,
            "action": decision.action.value,
            "side": decision.side.value if decision.side else None,
            "contracts": decision.contracts,
            "stop_price": decision.stop_price,
            "stage": decision.stage,
            "success": success,
        }
        record.update({k: v for k, v in extra.items() if v is not None})
        try:
            log_order(record)
        except OSError as e:
            logger.warning("[ORDER] Failed to write order log: %s", e)
