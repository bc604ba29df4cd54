from datetime import datetime, timezone

import pytest

from core.instruments import get_instrument
from core.models import AccountSnapshot, Action, Decision, Position, PositionSide, SizeRequest
from execution.allocator import CapitalAllocator, floor_to_step, ladder_stages_filled, plan_exit_ladder

ETH = get_instrument("ETH")
BNB = get_instrument("BNB")


def account(equity=1000.0, available=None):
    return AccountSnapshot(total_equity=equity, available_equity=equity if available is None else available)


def open_long(pct=0.10):
    return Decision(ETH.inst_id, Action.OPEN_LONG, SizeRequest.pct(pct), stop_price=2990.0,
                    side=PositionSide.LONG, rationale="entry")


def held(contracts):
    return Position(ETH.inst_id, PositionSide.LONG, contracts, 3000.0, 20, 150.0,
                    datetime(2025, 1, 1, tzinfo=timezone.utc))


def test_floor_to_step():
    assert floor_to_step(6.6666666, 0.01) == 6.66
    assert floor_to_step(0.29 * 100, 0.01) == 29.0
    assert floor_to_step(2.7, 1) == 2.0
    assert floor_to_step(0.004, 0.01) == 0.0


def test_percent_equity_open():
    # 1000 x 10% x 20 = 2000 notional over 0.1 x 3000 per contract
    decision = CapitalAllocator().allocate(open_long(0.10), ETH, 3000.0, 20, account(1000.0))

    assert decision.action is Action.OPEN_LONG
    assert decision.contracts == pytest.approx(6.66)
    margin = decision.contracts * ETH.contract_value * 3000.0 / 20
    assert margin == pytest.approx(99.9)
    assert margin <= 1000.0


def test_scales_down_to_available_margin():
    decision = CapitalAllocator().allocate(open_long(0.10), ETH, 3000.0, 20, account(1000.0, available=50.0))

    # 95% of 50 at 15 USDT per contract
    assert decision.contracts == pytest.approx(3.16)
    assert "scaled" in decision.rationale


def test_insufficient_funds_holds():
    decision = CapitalAllocator().allocate(open_long(0.10), ETH, 3000.0, 20, account(1000.0, available=0.1))
    assert decision.action is Action.HOLD
    assert "insufficient funds" in decision.rationale


def test_tiny_budget_below_minimum_size():
    decision = CapitalAllocator().allocate(open_long(0.05), ETH, 3000.0, 20, account(0.1))
    assert decision.action is Action.HOLD
    assert "below minimum order size" in decision.rationale


@pytest.mark.parametrize("equity,available", [(1000.0, 1000.0), (1000.0, 80.0), (5000.0, 120.0), (20.0, 3.0)])
def test_margin_never_exceeds_available(equity, available):
    decision = CapitalAllocator().allocate(open_long(0.10), ETH, 3000.0, 20, account(equity, available))
    margin = decision.contracts * ETH.contract_value * 3000.0 / 20
    assert margin <= available


def test_contract_request_is_quantized():
    decision = Decision(ETH.inst_id, Action.OPEN_SHORT, SizeRequest.contracts(1.2345), side=PositionSide.SHORT)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account())
    assert sized.contracts == pytest.approx(1.23)


def test_reduce_within_position():
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(3.0), stage=1)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(10.0))
    assert sized.action is Action.REDUCE
    assert sized.contracts == pytest.approx(3.0)


def test_reduce_capped_at_held_size_becomes_close():
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(5.0), stage=1)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(2.0))
    assert sized.action is Action.CLOSE
    assert sized.contracts == 2.0


def test_dust_remainder_closes_everything():
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(3.0), stage=3)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(3.005))
    assert sized.action is Action.CLOSE
    assert sized.contracts == 3.005
    assert "dust close" in sized.rationale


def test_sub_step_request_raised_to_one_step():
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(0.004), stage=1)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(10.0))
    assert sized.action is Action.REDUCE
    assert sized.contracts == 0.01


def test_dust_position_closes_residual():
    decision = Decision(ETH.inst_id, Action.REDUCE, SizeRequest.contracts(0.001), stage=1)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(0.005))
    assert sized.action is Action.CLOSE
    assert sized.contracts == 0.005


def test_close_uses_exact_held_size():
    decision = Decision(ETH.inst_id, Action.CLOSE, SizeRequest.contracts(99.0))
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), held(4.37))
    assert sized.contracts == 4.37


def test_closing_without_position_holds():
    decision = Decision(ETH.inst_id, Action.CLOSE)
    sized = CapitalAllocator().allocate(decision, ETH, 3000.0, 20, account(), None)
    assert sized.action is Action.HOLD


def test_exit_ladder_split():
    assert plan_exit_ladder(10.0, ETH) == [3.0, 3.0, 2.0, 2.0]


def test_exit_ladder_respects_minimum_size():
    assert plan_exit_ladder(0.03, ETH) == [0.01, 0.01, 0.01, 0.0]
    assert plan_exit_ladder(3, BNB) == [1.0, 1.0, 1.0, 0.0]


@pytest.mark.parametrize("current,filled", [(10.0, 0), (8.5, 0), (7.0, 1), (5.0, 1), (4.0, 2), (2.0, 3), (0.5, 3)])
def test_ladder_stages_filled(current, filled):
    # ladder for 10 contracts is 3 / 3 / 2 with 2 trailing
    assert ladder_stages_filled(10.0, current, ETH) == filled
