from datetime import datetime, timezone

import pytest

from core.errors import OrderRejectedError
from core.instruments import get_instrument
from core.models import Action, Decision, Position, PositionSide, SizeRequest
from core.stage_ledger import StageLedger
from core.trading_interfaces import OrderResult
from execution.dispatcher import OrderDispatcher, ShrinkingRetryPolicy, trailing_callback_ratio
from execution.paper_exchange import PaperExchange

ETH = get_instrument("ETH")
OPENED = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeExecutor:
    def __init__(self, rejections=()):
        self.rejections = list(rejections)
        self.orders = []
        self.stops = []
        self.algos = []
        self.leverage = {}

    async def set_leverage(self, instrument, leverage):
        self.leverage[instrument] = leverage

    async def place_order(self, instrument, side, contracts, reduce_only, stop_price=None):
        self.orders.append((instrument, side, contracts, reduce_only, stop_price))
        if self.rejections:
            raise self.rejections.pop(0)
        return OrderResult(success=True, order_id=f"ord{len(self.orders)}", contracts=contracts, fill_price=3000.0)

    async def update_stop(self, instrument, side, size, stop_price):
        self.stops.append((instrument, side, size, stop_price))
        return OrderResult(success=True, contracts=size)

    async def cancel_orders(self, instrument, order_ids):
        return OrderResult(success=True)

    async def place_algo_order(self, instrument, side, size, trigger_price, order_type="conditional",
                               callback_ratio=None):
        self.algos.append((size, trigger_price, order_type, callback_ratio))
        return OrderResult(success=True, contracts=size)


def margin_reject():
    return OrderRejectedError("insufficient margin", code="51008")


def open_decision(contracts=10.0):
    return Decision(ETH.inst_id, Action.OPEN_LONG, SizeRequest.pct(0.05), stop_price=2990.0,
                    side=PositionSide.LONG, contracts=contracts)


def position(contracts=10.0):
    return Position(ETH.inst_id, PositionSide.LONG, contracts, 3000.0, 20, 150.0, OPENED)


@pytest.mark.asyncio
async def test_open_dispatch_records_pending_ledger_entry():
    executor = FakeExecutor()
    ledger = StageLedger()
    sent = await OrderDispatcher(executor, ledger, exit_ladder_enabled=False).dispatch(open_decision(), ETH, leverage=20)

    assert sent.dispatched
    assert executor.leverage[ETH.inst_id] == 20
    assert executor.orders == [(ETH.inst_id, PositionSide.LONG, 10.0, False, 2990.0)]
    record = ledger.get(ETH.inst_id)
    assert record.original_contracts == 10.0
    assert record.stage == 0
    assert record.opened_at is None


@pytest.mark.asyncio
async def test_margin_rejection_retries_with_smaller_size():
    executor = FakeExecutor([margin_reject(), margin_reject()])
    sent = await OrderDispatcher(executor, StageLedger(), exit_ladder_enabled=False).dispatch(
        open_decision(10.0), ETH, leverage=20
    )

    assert [o[2] for o in executor.orders] == [10.0, 8.0, 6.4]
    assert sent.dispatched
    assert sent.contracts == pytest.approx(6.4)
    assert "3 attempts" in sent.rationale


@pytest.mark.asyncio
async def test_retries_are_bounded():
    executor = FakeExecutor([margin_reject(), margin_reject(), margin_reject()])
    ledger = StageLedger()
    sent = await OrderDispatcher(executor, ledger, exit_ladder_enabled=False).dispatch(
        open_decision(10.0), ETH, leverage=20
    )

    assert len(executor.orders) == 3
    assert not sent.dispatched
    assert "51008" in sent.rationale
    assert ledger.get(ETH.inst_id) is None


@pytest.mark.asyncio
async def test_other_rejections_are_not_retried():
    executor = FakeExecutor([OrderRejectedError("price out of range", code="51121")])
    sent = await OrderDispatcher(executor, StageLedger(), exit_ladder_enabled=False).dispatch(
        open_decision(), ETH, leverage=20
    )
    assert len(executor.orders) == 1
    assert not sent.dispatched


def test_shrink_stops_at_floor():
    policy = ShrinkingRetryPolicy(max_retries=5, shrink_factor=0.8, floor_size=0.01)
    assert policy.shrink(0.02) == 0.01
    assert policy.shrink(0.01) is None


@pytest.mark.asyncio
async def test_stage_reduce_moves_stop_then_advances_ledger():
    executor = FakeExecutor()
    ledger = StageLedger()
    ledger.adopt(position(7.0), 1, 10.0)
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(3.0), stop_price=3003.6,
                        side=PositionSide.LONG, stage=2, contracts=3.0)

    sent = await OrderDispatcher(executor, ledger).dispatch(decision, ETH, position(7.0), leverage=20)

    assert sent.dispatched
    assert executor.stops == [(ETH.inst_id, PositionSide.LONG, 4.0, 3003.6)]
    assert executor.orders == [(ETH.inst_id, PositionSide.LONG, 3.0, True, None)]
    assert ledger.get(ETH.inst_id).stage == 2


@pytest.mark.asyncio
async def test_failed_reduce_leaves_ledger_untouched():
    executor = FakeExecutor([OrderRejectedError("reduce failed", code="51000")])
    ledger = StageLedger()
    ledger.adopt(position(10.0), 0, 10.0)
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(3.0), stage=1, contracts=3.0)

    sent = await OrderDispatcher(executor, ledger).dispatch(decision, ETH, position(10.0), leverage=20)

    assert not sent.dispatched
    assert ledger.get(ETH.inst_id).stage == 0


@pytest.mark.asyncio
async def test_close_discards_ledger_entry():
    executor = FakeExecutor()
    ledger = StageLedger()
    ledger.adopt(position(2.0), 3, 10.0)
    decision = Decision(ETH.inst_id, Action.CLOSE, SizeRequest.contracts(2.0), contracts=2.0)

    sent = await OrderDispatcher(executor, ledger).dispatch(decision, ETH, position(2.0), leverage=20)

    assert sent.dispatched
    assert ledger.get(ETH.inst_id) is None


@pytest.mark.asyncio
async def test_exit_ladder_after_open():
    executor = FakeExecutor()
    dispatcher = OrderDispatcher(executor, StageLedger(), exit_ladder_enabled=True)
    await dispatcher.dispatch(open_decision(10.0), ETH, leverage=20, price=3000.0)

    sizes = [a[0] for a in executor.algos]
    triggers = [a[1] for a in executor.algos]
    types = [a[2] for a in executor.algos]
    assert sizes == [3.0, 3.0, 2.0, 2.0]
    assert triggers == [3007.5, 3012.0, 3018.0, 3018.0]
    assert types == ["conditional", "conditional", "conditional", "move_order_stop"]
    assert executor.algos[-1][3] == pytest.approx(0.002)


def test_trailing_callback_floor():
    assert trailing_callback_ratio(20, 0.05) == pytest.approx(0.002)
    assert trailing_callback_ratio(125, 0.05) == pytest.approx(0.001)


@pytest.mark.asyncio
async def test_paper_exchange_round_trip():
    exchange = PaperExchange(start_balance=1000.0)
    exchange.set_price(ETH.inst_id, 3000.0)
    ledger = StageLedger()
    dispatcher = OrderDispatcher(exchange, ledger, exit_ladder_enabled=False)

    sent = await dispatcher.dispatch(open_decision(1.0), ETH, leverage=20, price=3000.0)
    assert sent.dispatched

    account = await exchange.get_account()
    held = account.position_for(ETH.inst_id)
    assert held.contracts == 1.0
    assert held.current_stop_price == 2990.0
    assert ledger.match(held).opened_at == held.opened_at
