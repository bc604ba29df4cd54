"""Engine context: the state shared by the orchestrator, web API and dashboard.

Created once at startup and passed explicitly; nothing here is a global.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Optional

from pydantic import ValidationError

from core.config import RuntimeConfig, settings
from core.errors import ConfigError
from core.models import AccountSnapshot, Decision, EntrySignal, TrendState

MASK = "***"
HISTORY_WINDOW = timedelta(hours=1)
HISTORY_TAIL = 50


class EventLevel(Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    TRADE = "TRADE"


@dataclass(frozen=True)
class SystemEvent:
    ts: datetime
    level: EventLevel
    message: str

    def to_dict(self) -> dict:
        return {"ts": self.ts.isoformat(), "level": self.level.value, "message": self.message}


def _mask(value: str) -> str:
    return MASK if value else ""


@dataclass
class EngineContext:
    """Per-process engine state.

    Sections:
        - Control: enabled flag, busy guard, runtime config
        - Market view: latest trend, entry signal and price per instrument
        - Decisions: latest per instrument plus a bounded rolling history
        - Events: bounded log for the dashboard
    """

    mode: str = "paper"
    startup_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    # Control
    enabled: bool = False
    busy: bool = False
    runtime: RuntimeConfig = field(default_factory=lambda: RuntimeConfig.from_settings(settings))

    # Market view
    account: Optional[AccountSnapshot] = None
    prices: dict[str, float] = field(default_factory=dict)
    trends: dict[str, TrendState] = field(default_factory=dict)
    entries: dict[str, EntrySignal] = field(default_factory=dict)

    # Decisions
    latest_decisions: dict[str, Decision] = field(default_factory=dict)
    history: Deque[Decision] = field(default_factory=lambda: deque(maxlen=settings.history_limit))
    last_analysis_at: Optional[datetime] = None
    last_cycle_at: Optional[datetime] = None
    cycles: int = 0

    events: Deque[SystemEvent] = field(default_factory=lambda: deque(maxlen=settings.event_limit))

    def log(self, msg: str, level: EventLevel = EventLevel.INFO):
        """Append to the event log, newest first."""
        self.events.appendleft(SystemEvent(datetime.now(timezone.utc), level, msg))

    def record_decision(self, decision: Decision) -> None:
        self.latest_decisions[decision.instrument] = decision
        self.history.append(decision)

    def history_for(self, instrument: str) -> list[Decision]:
        return [d for d in self.history if d.instrument == instrument]

    def recent_history(self, now: datetime = None) -> list[Decision]:
        """Decisions from the last hour plus the last 50 actionable ones, oldest first."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - HISTORY_WINDOW
        actionable = [d for d in self.history if d.is_actionable][-HISTORY_TAIL:]
        picked = {id(d) for d in actionable}
        picked.update(id(d) for d in self.history if d.created_at >= cutoff)
        return [d for d in self.history if id(d) in picked]

    # Commands

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        if enabled:
            self.log("Engine started", EventLevel.SUCCESS)
        else:
            self.log("Engine stopped", EventLevel.WARNING)

    def update_config(self, **changes) -> RuntimeConfig:
        """Validate and apply runtime changes. Raises ConfigError."""
        data = self.runtime.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        try:
            self.runtime = RuntimeConfig(**data)
        except ValidationError as e:
            raise ConfigError(str(e)) from e
        self.log(
            f"Config updated: {self.runtime.allocation_pct:.1%} allocation, "
            f"{self.runtime.leverage:g}x, {len(self.runtime.enabled_instruments)} instruments"
        )
        return self.runtime

    # Read model

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.startup_time).total_seconds()

    def config_view(self) -> dict:
        view = self.runtime.model_dump()
        view.update({
            "okx_api_key": _mask(settings.okx_api_key),
            "okx_secret_key": _mask(settings.okx_secret_key),
            "okx_passphrase": _mask(settings.okx_passphrase),
            "deepseek_api_key": _mask(settings.deepseek_api_key),
            "trading_mode": self.mode,
        })
        return view

    def snapshot(self) -> dict:
        account = self.account
        instruments = {}
        for inst in sorted(set(self.trends) | set(self.latest_decisions)):
            trend = self.trends.get(inst)
            entry = self.entries.get(inst)
            decision = self.latest_decisions.get(inst)
            position = account.position_for(inst) if account else None
            instruments[inst] = {
                "price": self.prices.get(inst),
                "trend": trend.direction.value if trend else None,
                "trend_description": trend.description if trend else "",
                "entry": entry.reason if entry else "",
                "structure": entry.structure_label if entry else "",
                "decision": decision.to_dict() if decision else None,
                "position": {
                    "side": position.side.value,
                    "contracts": position.contracts,
                    "avg_entry_price": position.avg_entry_price,
                    "unrealized_pnl": position.unrealized_pnl,
                    "stop_price": position.current_stop_price,
                } if position else None,
            }
        return {
            "enabled": self.enabled,
            "busy": self.busy,
            "mode": self.mode,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_analysis_at": self.last_analysis_at.isoformat() if self.last_analysis_at else None,
            "account": {
                "total_equity": account.total_equity,
                "available_equity": account.available_equity,
                "open_positions": len(account.active_instruments),
            } if account else None,
            "instruments": instruments,
            "config": self.config_view(),
            "events": [e.to_dict() for e in self.events],
        }
