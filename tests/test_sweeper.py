from datetime import datetime, timezone

import pytest

from core.errors import MarketDataError
from core.instruments import get_instrument
from core.models import AccountSnapshot, Position, PositionSide
from core.trading_interfaces import OrderResult
from execution.paper_exchange import PaperExchange
from execution.sweeper import ReconciliationSweeper

ETH = get_instrument("ETH").inst_id
BTC = get_instrument("BTC").inst_id
SOL = get_instrument("SOL").inst_id


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def flat():
    return AccountSnapshot(total_equity=1000.0, available_equity=1000.0)


def holding(instrument):
    position = Position(instrument, PositionSide.LONG, 1.0, 100.0, 20, 5.0, datetime(2025, 1, 1, tzinfo=timezone.utc))
    return AccountSnapshot(total_equity=1000.0, available_equity=995.0, positions=[position])


@pytest.mark.asyncio
async def test_cancels_only_reduce_only_orders_on_flat_instrument():
    exchange = PaperExchange()
    orphans = [exchange.add_algo_order(ETH, reduce_only=True) for _ in range(3)]
    keeper = exchange.add_algo_order(ETH, reduce_only=False)

    report = await ReconciliationSweeper(exchange, exchange).sweep([ETH], flat())

    assert sorted(report.cancelled[ETH]) == sorted(orphans)
    remaining = await exchange.get_pending_algo_orders(ETH)
    assert [o.id for o in remaining] == [keeper]


@pytest.mark.asyncio
async def test_sweep_is_idempotent():
    exchange = PaperExchange()
    exchange.add_algo_order(ETH, reduce_only=True)
    sweeper = ReconciliationSweeper(exchange, exchange)

    first = await sweeper.sweep([ETH], flat())
    second = await sweeper.sweep([ETH], flat())

    assert first.cancelled_count == 1
    assert second.cancelled_count == 0


@pytest.mark.asyncio
async def test_instrument_with_position_is_left_alone():
    exchange = PaperExchange()
    stop = exchange.add_algo_order(ETH, reduce_only=True)

    report = await ReconciliationSweeper(exchange, exchange).sweep([ETH], holding(ETH))

    assert report.checked == []
    assert [o.id for o in await exchange.get_pending_algo_orders(ETH)] == [stop]


@pytest.mark.asyncio
async def test_failure_on_one_instrument_does_not_stop_others():
    exchange = PaperExchange()
    exchange.add_algo_order(SOL, reduce_only=True)

    class FlakyMarket:
        async def get_pending_algo_orders(self, instrument):
            if instrument == ETH:
                raise MarketDataError("timeout")
            return await exchange.get_pending_algo_orders(instrument)

    report = await ReconciliationSweeper(FlakyMarket(), exchange).sweep([ETH, SOL], flat())

    assert report.failed == [ETH]
    assert report.cancelled_count == 1


@pytest.mark.asyncio
async def test_full_sweep_on_interval_and_just_closed_every_cycle():
    exchange = PaperExchange()
    clock = FakeClock()
    sweeper = ReconciliationSweeper(exchange, exchange, interval_seconds=30, clock=clock)

    # first cycle: full sweep, ETH still open
    report = await sweeper.run(holding(ETH), [ETH, BTC])
    assert report.checked == [BTC]

    # ETH closes by its stop 5s later; the take-profit is left behind
    exchange.add_algo_order(ETH, reduce_only=True)
    exchange.add_algo_order(BTC, reduce_only=True)
    clock.now += 5
    report = await sweeper.run(flat(), [ETH, BTC])
    assert report.checked == [ETH]
    assert report.cancelled_count == 1

    # interval elapsed: BTC gets swept too
    clock.now += 30
    report = await sweeper.run(flat(), [ETH, BTC])
    assert report.checked == [ETH, BTC]
    assert list(report.cancelled) == [BTC]


@pytest.mark.asyncio
async def test_rejected_cancel_is_reported_as_failed():
    exchange = PaperExchange()
    exchange.add_algo_order(ETH, reduce_only=True)

    class RefusingExecutor:
        async def cancel_orders(self, instrument, order_ids):
            return OrderResult(success=False, message="order not found")

    report = await ReconciliationSweeper(exchange, RefusingExecutor()).sweep([ETH], flat())

    assert report.failed == [ETH]
    assert report.cancelled == {}
