"""
Capital allocation: turn a Decision's size request into a tradable contract count.

All quantization and dust handling lives here. Opening sizes are floored
to the instrument step and capped by available margin; closing sizes never
overshoot the held position, and a remainder smaller than one step is
closed together with the rest.
"""

from dataclasses import replace
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from core.config import settings
from core.instruments import InstrumentSpec
from core.logging_utils import get_logger
from core.models import AccountSnapshot, Action, Decision, Position, SizeKind, SizeRequest

logger = get_logger(__name__)

EXIT_LADDER_FRACTIONS = (0.30, 0.30, 0.20)


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def decimals_from_step(step: float) -> int:
    exp = _dec(step).as_tuple().exponent
    return max(0, -int(exp))


def floor_to_step(value: float, step: float) -> float:
    """Floor ``value`` to a whole multiple of ``step`` without float noise."""
    if step is None or step <= 0:
        return float(value)
    if value <= 0:
        return 0.0
    sd = _dec(step)
    # 0.29 * 100 must floor to 29, not 28.99
    n = (_dec(round(value, 12)) / sd).to_integral_value(rounding=ROUND_FLOOR)
    out = n * sd
    decs = decimals_from_step(step)
    return float(out.quantize(Decimal(1).scaleb(-decs)))


def plan_exit_ladder(contracts: float, spec: InstrumentSpec, fractions=EXIT_LADDER_FRACTIONS) -> list[float]:
    """Split a fill into take-profit tranches plus a trailing remainder.

    Each tranche is its fraction of the total, raised to at least one step
    and capped by what is left. The last entry is whatever remains.
    """
    step = spec.min_size
    decs = decimals_from_step(step)
    remaining = _dec(contracts)
    sizes: list[float] = []
    for fraction in fractions:
        if remaining <= 0:
            sizes.append(0.0)
            continue
        size = max(_dec(floor_to_step(contracts * fraction, step)), _dec(step))
        size = min(size, remaining)
        remaining -= size
        sizes.append(round(float(size), decs))
    sizes.append(round(float(max(remaining, Decimal(0))), decs))
    return sizes


def ladder_stages_filled(
    original: float,
    current: float,
    spec: InstrumentSpec,
    fractions=EXIT_LADDER_FRACTIONS,
) -> int:
    """Number of take-profit tranches from ``plan_exit_ladder`` that explain
    the drop from ``original`` to ``current`` contracts."""
    reduced = _dec(original) - _dec(current)
    cumulative = Decimal(0)
    filled = 0
    for size in plan_exit_ladder(original, spec, fractions)[:-1]:
        cumulative += _dec(size)
        if size <= 0 or cumulative > reduced:
            break
        filled += 1
    return filled


class CapitalAllocator:
    """Sizes decisions against the account snapshot."""

    def __init__(self, available_margin_ratio: float = None):
        self.available_margin_ratio = (
            settings.available_margin_ratio if available_margin_ratio is None else available_margin_ratio
        )

    def allocate(
        self,
        decision: Decision,
        spec: InstrumentSpec,
        price: float,
        leverage: float,
        account: AccountSnapshot,
        position: Optional[Position] = None,
    ) -> Decision:
        if decision.action is Action.HOLD:
            return decision
        if decision.action.is_open:
            return self._size_open(decision, spec, price, leverage, account)

        if position is None or not position.is_open:
            return Decision.hold(decision.instrument, f"{decision.action.value} skipped: no open position")

        if decision.action is Action.CLOSE:
            return replace(decision, contracts=position.contracts,
                           size_request=SizeRequest.contracts(position.contracts))
        if decision.action is Action.UPDATE_STOP:
            return replace(decision, contracts=position.contracts)
        return self._size_reduce(decision, spec, position)

    def margin_for(self, contracts: float, spec: InstrumentSpec, price: float, leverage: float) -> float:
        return contracts * spec.contract_value * price / max(leverage, 1.0)

    # Opening

    def _size_open(
        self,
        decision: Decision,
        spec: InstrumentSpec,
        price: float,
        leverage: float,
        account: AccountSnapshot,
    ) -> Decision:
        inst = decision.instrument
        step = spec.min_size
        unit_margin = self.margin_for(1.0, spec, price, leverage)
        if unit_margin <= 0:
            return Decision.hold(inst, f"{decision.rationale} [no valid price]")

        request = decision.size_request or SizeRequest.pct(settings.allocation_pct)
        if request.kind is SizeKind.PERCENT_EQUITY:
            budget = account.total_equity * request.value
            raw = budget / unit_margin
        else:
            raw = request.value

        contracts = floor_to_step(raw, step)
        if contracts <= 0:
            return Decision.hold(
                inst,
                f"{decision.rationale} [below minimum order size: {raw:.6f} < {step:g} contracts]",
            )

        cap = account.available_equity * self.available_margin_ratio
        affordable = floor_to_step(cap / unit_margin, step)
        note = None
        if contracts > affordable:
            if affordable <= 0:
                return Decision.hold(
                    inst,
                    f"{decision.rationale} [insufficient funds: available {account.available_equity:.2f}, "
                    f"one step needs {self.margin_for(step, spec, price, leverage):.2f}]",
                )
            note = f"scaled {contracts:g} -> {affordable:g} contracts to fit available margin"
            logger.info("[ALLOC] %s: %s", inst, note)
            contracts = affordable

        sized = replace(decision, contracts=contracts)
        return sized.with_note(note) if note else sized

    # Closing

    def _size_reduce(self, decision: Decision, spec: InstrumentSpec, position: Position) -> Decision:
        step = spec.min_size
        held = position.contracts
        requested = decision.size_request.value if decision.size_request else 0.0

        if held < step:
            return self._dust_close(decision, position, f"position {held:g} below one step")

        amount = floor_to_step(min(requested, held), step)
        if amount <= 0 and requested > 0:
            amount = step

        remainder = _dec(held) - _dec(amount)
        if remainder < _dec(step):
            return self._dust_close(decision, position, f"remainder {float(remainder):g} below one step")
        return replace(decision, contracts=amount)

    def _dust_close(self, decision: Decision, position: Position, why: str) -> Decision:
        logger.info("[ALLOC] %s: %s, closing full %g", decision.instrument, why, position.contracts)
        closed = replace(
            decision,
            action=Action.CLOSE,
            contracts=position.contracts,
            size_request=SizeRequest.contracts(position.contracts),
        )
        return closed.with_note(f"dust close: {why}")
