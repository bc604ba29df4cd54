"""Per-instrument engine decisions."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from core.models.position import PositionSide


class Action(Enum):
    HOLD = "HOLD"
    OPEN_LONG = "OPEN_LONG"
    OPEN_SHORT = "OPEN_SHORT"
    REDUCE = "REDUCE"
    CLOSE = "CLOSE"
    UPDATE_STOP = "UPDATE_STOP"

    @property
    def is_open(self) -> bool:
        return self in (Action.OPEN_LONG, Action.OPEN_SHORT)

    @property
    def is_closing(self) -> bool:
        return self in (Action.REDUCE, Action.CLOSE)


class SizeKind(Enum):
    PERCENT_EQUITY = "pct_equity"
    CONTRACTS = "contracts"


@dataclass(frozen=True)
class SizeRequest:
    kind: SizeKind
    value: float

    @classmethod
    def pct(cls, fraction: float) -> "SizeRequest":
        return cls(SizeKind.PERCENT_EQUITY, fraction)

    @classmethod
    def contracts(cls, amount: float) -> "SizeRequest":
        return cls(SizeKind.CONTRACTS, amount)

    def describe(self) -> str:
        if self.kind is SizeKind.PERCENT_EQUITY:
            return f"{self.value * 100:.1f}% equity"
        return f"{self.value:g} contracts"


@dataclass(frozen=True)
class Decision:
    """What the engine wants done for one instrument this cycle."""
    instrument: str
    action: Action
    size_request: Optional[SizeRequest] = None
    stop_price: Optional[float] = None
    rationale: str = ""
    side: Optional[PositionSide] = None
    stage: Optional[int] = None
    contracts: float = 0.0                # set by the allocator
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dispatched: bool = False
    narrative: str = ""

    @classmethod
    def hold(cls, instrument: str, rationale: str, side: Optional[PositionSide] = None) -> "Decision":
        return cls(instrument=instrument, action=Action.HOLD, rationale=rationale, side=side)

    @property
    def is_actionable(self) -> bool:
        return self.action is not Action.HOLD

    def with_note(self, note: str) -> "Decision":
        rationale = f"{self.rationale} [{note}]" if self.rationale else f"[{note}]"
        return replace(self, rationale=rationale)

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "action": self.action.value,
            "side": self.side.value if self.side else None,
            "size_request": self.size_request.describe() if self.size_request else None,
            "contracts": self.contracts,
            "stop_price": self.stop_price,
            "stage": self.stage,
            "rationale": self.rationale,
            "narrative": self.narrative,
            "dispatched": self.dispatched,
            "created_at": self.created_at.isoformat(),
        }
