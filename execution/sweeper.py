"""Orphaned algo order cleanup.

A reduce-only conditional order can only belong to a position. Once the
instrument is flat, any reduce-only order still pending is a leftover from
a position closed by its own stop or target and gets cancelled.
"""

import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from core.config import settings
from core.errors import OrderError, TradingError
from core.logger import log_sweep, utc_iso_str
from core.logging_utils import get_logger
from core.models import AccountSnapshot
from core.trading_interfaces import IMarketData, IOrderExecutor

logger = get_logger(__name__)


@dataclass
class SweepReport:
    checked: list[str] = field(default_factory=list)
    cancelled: dict[str, list[str]] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)

    @property
    def cancelled_count(self) -> int:
        return sum(len(ids) for ids in self.cancelled.values())


class ReconciliationSweeper:
    """Cancels reduce-only algo orders on flat instruments."""

    def __init__(
        self,
        market: IMarketData,
        executor: IOrderExecutor,
        interval_seconds: float = None,
        clock=time.monotonic,
    ):
        self.market = market
        self.executor = executor
        self.interval_seconds = settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
        self._clock = clock
        self._last_full_sweep: Optional[float] = None
        self._previously_active: set[str] = set()

    def is_due(self) -> bool:
        if self._last_full_sweep is None:
            return True
        return self._clock() - self._last_full_sweep >= self.interval_seconds

    async def run(self, account: AccountSnapshot, instruments: Iterable[str]) -> SweepReport:
        """Per-cycle entry point.

        Instruments that held a position last cycle and are flat now are
        always swept. Every interval, all flat instruments are swept.
        """
        active = account.active_instruments
        just_closed = self._previously_active - active
        self._previously_active = set(active)

        if self.is_due():
            self._last_full_sweep = self._clock()
            targets = [inst for inst in instruments if inst not in active]
            targets += [inst for inst in just_closed if inst not in targets]
        else:
            targets = sorted(just_closed)

        if not targets:
            return SweepReport()
        if just_closed:
            logger.info("[SWEEP] Just closed: %s", ", ".join(sorted(just_closed)))
        return await self.sweep(targets, account)

    async def sweep(self, instruments: Iterable[str], account: AccountSnapshot) -> SweepReport:
        report = SweepReport()
        for inst in instruments:
            if account.position_for(inst) is not None:
                continue
            report.checked.append(inst)
            try:
                ids = await self._sweep_one(inst)
            except TradingError as e:
                logger.warning("[SWEEP] %s failed: %s", inst, e)
                report.failed.append(inst)
                continue
            except Exception:
                logger.exception("[SWEEP] %s unexpected error", inst)
                report.failed.append(inst)
                continue
            if ids:
                report.cancelled[inst] = ids

        if report.cancelled:
            log_sweep({
                "ts": utc_iso_str(),
                "checked": report.checked,
                "cancelled": report.cancelled,
                "failed": report.failed,
            })
        return report

    async def _sweep_one(self, instrument: str) -> list[str]:
        pending = await self.market.get_pending_algo_orders(instrument)
        orphans = [o.id for o in pending if o.reduce_only]
        if not orphans:
            return []
        logger.info("[SWEEP] %s: %d orphaned reduce-only order(s), cancelling", instrument, len(orphans))
        result = await self.executor.cancel_orders(instrument, orphans)
        if not result.success:
            raise OrderError(f"cancel failed: {result.message}")
        return orphans
