"""
Engine loop.

One cycle:
    1. busy guard (a cycle never overlaps the previous one)
    2. fetch account + per-instrument market snapshots; any failure aborts
    3. sweep orphaned reduce-only orders (own timer plus just-closed instruments)
    4. stop here when disabled
    5. cadence gate: 180s between decision rounds when flat, 60s with a position
    6. evaluate every enabled instrument concurrently, size and dispatch
    7. optional narrative, then record decisions
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from core.config import settings
from core.instruments import INSTRUMENTS, InstrumentSpec, get_instrument
from core.logger import log_decision, utc_iso_str
from core.logging_utils import get_logger
from core.models import (
    AccountSnapshot,
    Action,
    Decision,
    EntrySignal,
    MarketSnapshot,
    Position,
    PositionSide,
    SizeRequest,
    attach_emas,
)
from core.stage_ledger import StageLedger, StageRecord
from core.state import EngineContext, EventLevel
from core.trading_interfaces import IMarketData, INarrator, IOrderExecutor
from execution.allocator import CapitalAllocator, ladder_stages_filled
from execution.dispatcher import OrderDispatcher
from execution.sweeper import ReconciliationSweeper, SweepReport
from logic.entry import EntryDetector
from logic.position_machine import PositionStateMachine
from logic.trend import classify_trend

logger = get_logger(__name__)


@dataclass
class CycleReport:
    started_at: datetime
    status: str = "completed"      # skipped | aborted | disabled | waiting | completed
    reason: str = ""
    decisions: list[Decision] = field(default_factory=list)
    sweep: Optional[SweepReport] = None
    errors: dict[str, str] = field(default_factory=dict)


class Orchestrator:
    """Runs decision cycles against a market data source and an executor."""

    def __init__(
        self,
        context: EngineContext,
        market: IMarketData,
        executor: IOrderExecutor,
        ledger: Optional[StageLedger] = None,
        narrator: Optional[INarrator] = None,
        allocator: Optional[CapitalAllocator] = None,
        machine: Optional[PositionStateMachine] = None,
        detector: Optional[EntryDetector] = None,
        dispatcher: Optional[OrderDispatcher] = None,
        sweeper: Optional[ReconciliationSweeper] = None,
    ):
        self.context = context
        self.market = market
        self.executor = executor
        self.ledger = ledger or StageLedger()
        self.narrator = narrator
        self.allocator = allocator or CapitalAllocator()
        self.dispatcher = dispatcher or OrderDispatcher(executor, self.ledger)
        self.machine = machine or PositionStateMachine(exchange_exits=self.dispatcher.exit_ladder_enabled)
        self.detector = detector or EntryDetector()
        self.sweeper = sweeper or ReconciliationSweeper(market, executor)
        self._running = False

    @property
    def instruments(self) -> list[str]:
        return [INSTRUMENTS[coin].inst_id for coin in self.context.runtime.enabled_instruments]

    # Loop

    async def run_forever(self, interval: float = None):
        interval = settings.loop_interval_seconds if interval is None else interval
        self._running = True
        logger.info("[CYCLE] Loop started (%.0fs tick, %d instruments)", interval, len(self.instruments))
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.exception("[CYCLE] Error: %s", e)
                self.context.log(f"Cycle error: {e}", EventLevel.ERROR)
            await asyncio.sleep(interval)

    async def close(self):
        """Stop the loop and release clients. Positions stay open on the exchange."""
        self._running = False
        if self.narrator is not None and hasattr(self.narrator, "close"):
            await self.narrator.close()
        open_count = len(self.context.account.active_instruments) if self.context.account else 0
        logger.info("[CYCLE] Shut down, %d position(s) left open", open_count)

    async def run_cycle(self, now: datetime = None) -> CycleReport:
        now = now or datetime.now(timezone.utc)
        ctx = self.context
        if ctx.busy:
            logger.debug("[CYCLE] Previous cycle still running, skipped")
            return CycleReport(now, "skipped", "previous cycle still running")
        ctx.busy = True
        try:
            return await self._cycle(now)
        finally:
            ctx.busy = False

    async def _cycle(self, now: datetime) -> CycleReport:
        ctx = self.context
        ctx.cycles += 1
        ctx.last_cycle_at = now
        report = CycleReport(now)
        instruments = self.instruments

        try:
            account = await self.market.get_account()
            snapshots = await asyncio.gather(*(self._fetch(inst) for inst in instruments))
        except Exception as e:
            logger.error("[CYCLE] Snapshot fetch failed, cycle aborted: %s", e, exc_info=True)
            ctx.log(f"Market data unavailable: {e}", EventLevel.ERROR)
            report.status, report.reason = "aborted", str(e)
            return report

        ctx.account = account
        for snap in snapshots:
            ctx.prices[snap.instrument] = snap.price
        self.ledger.retain_only(account.active_instruments)

        report.sweep = await self.sweeper.run(account, instruments)
        if report.sweep.cancelled_count:
            ctx.log(f"Cancelled {report.sweep.cancelled_count} orphaned order(s) on "
                    f"{', '.join(sorted(report.sweep.cancelled))}", EventLevel.WARNING)

        if not ctx.enabled:
            report.status, report.reason = "disabled", "engine disabled"
            return report

        interval = (settings.active_decision_interval if account.has_open_position
                    else settings.idle_decision_interval)
        if ctx.last_analysis_at is not None:
            elapsed = (now - ctx.last_analysis_at).total_seconds()
            if elapsed < interval:
                report.status = "waiting"
                report.reason = f"next decision round in {interval - elapsed:.0f}s"
                return report
        ctx.last_analysis_at = now

        results = await asyncio.gather(
            *(self._evaluate(snap, account) for snap in snapshots),
            return_exceptions=True,
        )
        for snap, result in zip(snapshots, results):
            if isinstance(result, Exception):
                logger.error("[CYCLE] %s evaluation failed: %s", snap.instrument, result, exc_info=result)
                ctx.log(f"{snap.instrument}: {result}", EventLevel.ERROR)
                report.errors[snap.instrument] = str(result)
                continue
            report.decisions.append(result)

        report.decisions = await self._narrate(report.decisions)
        for decision in report.decisions:
            ctx.record_decision(decision)
            log_decision({"ts": utc_iso_str(now), **decision.to_dict()})

        actionable = sum(1 for d in report.decisions if d.is_actionable)
        logger.info("[CYCLE] #%d: %d decision(s), %d actionable, %d error(s)",
                    ctx.cycles, len(report.decisions), actionable, len(report.errors))
        return report

    # Per instrument

    async def _fetch(self, instrument: str) -> MarketSnapshot:
        count = settings.candle_count
        price, slow, fast = await asyncio.gather(
            self.market.get_ticker(instrument),
            self.market.get_candles(instrument, settings.slow_timeframe, count),
            self.market.get_candles(instrument, settings.fast_timeframe, count),
        )
        periods = (settings.ema_fast_period, settings.ema_slow_period)
        return MarketSnapshot(
            instrument=instrument,
            price=price,
            slow_candles=attach_emas(slow, *periods),
            fast_candles=attach_emas(fast, *periods),
        )

    async def _evaluate(self, snap: MarketSnapshot, account: AccountSnapshot) -> Decision:
        ctx = self.context
        inst = snap.instrument
        spec = get_instrument(inst)
        leverage = ctx.runtime.leverage
        pct = ctx.runtime.allocation_pct

        trend = classify_trend(snap.slow_candles)
        ctx.trends[inst] = trend
        position = account.position_for(inst)

        if position is not None:
            ctx.entries[inst] = EntrySignal.none("managing open position")
            history = ctx.history_for(inst)
            record = self.ledger.match(position)
            if record is None:
                progress = self.machine.progress(position, history, account.total_equity, pct,
                                                 position.leverage or leverage, spec)
                record = self.ledger.adopt(position, progress.stage, progress.original_contracts)
            if self.dispatcher.exit_ladder_enabled:
                self._reconcile_ladder(position, record, spec)
            decision = self.machine.evaluate(
                position, snap.price, trend, leverage, history, account.total_equity, spec, pct, record
            )
        else:
            entry = self.detector.detect(snap.fast_candles, trend, snap.price, leverage)
            ctx.entries[inst] = entry
            if entry.triggered:
                action = Action.OPEN_LONG if entry.side is PositionSide.LONG else Action.OPEN_SHORT
                decision = Decision(
                    instrument=inst,
                    action=action,
                    size_request=SizeRequest.pct(pct),
                    stop_price=spec.round_price(entry.stop_price),
                    side=entry.side,
                    rationale=f"{trend.description}; {entry.reason}",
                )
            else:
                decision = Decision.hold(inst, f"{trend.description}; {entry.reason}")

        decision = self.allocator.allocate(decision, spec, snap.price, leverage, account, position)
        if not decision.is_actionable:
            return decision

        decision = await self.dispatcher.dispatch(decision, spec, position, leverage, snap.price)
        if decision.dispatched:
            ctx.log(f"{inst} {decision.action.value} {decision.contracts:g} contracts", EventLevel.TRADE)
        else:
            ctx.log(f"{inst} {decision.action.value} not sent: {decision.rationale}", EventLevel.ERROR)
        return decision

    def _reconcile_ladder(self, position: Position, record: StageRecord, spec: InstrumentSpec) -> None:
        """Advance the ledger past take-profits that filled on the exchange."""
        filled = ladder_stages_filled(record.original_contracts, position.contracts, spec,
                                      settings.stage_fractions)
        if filled > record.stage:
            logger.info("[STAGE] %s: exchange take-profit %d filled (%g of %g contracts left)",
                        position.instrument, filled, position.contracts, record.original_contracts)
            self.ledger.advance(position.instrument, filled)

    async def _narrate(self, decisions: list[Decision]) -> list[Decision]:
        if self.narrator is None or not decisions or not getattr(self.narrator, "enabled", True):
            return decisions
        headlines = []
        if hasattr(self.narrator, "fetch_headlines"):
            headlines = await self.narrator.fetch_headlines()

        async def one(decision: Decision) -> Decision:
            trend = self.context.trends.get(decision.instrument)
            text = await self.narrator.summarize({
                "instrument": decision.instrument,
                "action": decision.action.value,
                "rationale": decision.rationale,
                "trend": trend.description if trend else "",
                "price": self.context.prices.get(decision.instrument),
                "headlines": headlines,
            })
            return replace(decision, narrative=text) if text else decision

        results = await asyncio.gather(*(one(d) for d in decisions), return_exceptions=True)
        narrated = []
        for decision, result in zip(decisions, results):
            if isinstance(result, Exception):
                logger.warning("[NARRATE] %s: %s", decision.instrument, result)
                narrated.append(decision)
            else:
                narrated.append(result)
        return narrated
