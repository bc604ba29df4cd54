import logging
from datetime import datetime, timedelta, timezone

import pytest

from core.instruments import get_instrument
from core.models import Action, Decision, Position, PositionSide, TrendDirection, TrendState
from core.stage_ledger import StageRecord
from logic.position_machine import PositionStateMachine, net_profit_and_roi, ratchet_stop

ETH = get_instrument("ETH")
OPENED = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)
UP = TrendState(TrendDirection.UP, description="uptrend")
DOWN = TrendState(TrendDirection.DOWN, description="downtrend")


def long_eth(contracts=10.0, stop=None):
    # 10 ETH contracts = 1 ETH, 150 USDT margin at 20x
    return Position(
        instrument=ETH.inst_id,
        side=PositionSide.LONG,
        contracts=contracts,
        avg_entry_price=3000.0,
        leverage=20,
        margin=contracts * ETH.contract_value * 3000.0 / 20,
        opened_at=OPENED,
        current_stop_price=stop,
    )


def short_eth(contracts=10.0, stop=None):
    return Position(
        instrument=ETH.inst_id,
        side=PositionSide.SHORT,
        contracts=contracts,
        avg_entry_price=3000.0,
        leverage=20,
        margin=150.0,
        opened_at=OPENED,
        current_stop_price=stop,
    )


def record(stage, original=10.0, side=PositionSide.LONG):
    return StageRecord(ETH.inst_id, side, original, stage=stage, opened_at=OPENED)


def evaluate(position, price, stage=None, trend=UP, history=(), equity=3000.0):
    machine = PositionStateMachine()
    rec = record(stage, side=position.side) if stage is not None else None
    return machine.evaluate(position, price, trend, 20, list(history), equity, ETH, 0.05, rec)


def test_net_roi_subtracts_round_trip_fees():
    net, roi = net_profit_and_roi(long_eth(), 3012.0, ETH, 20, 0.0005)
    assert net == pytest.approx(12.0 - (3000.0 + 3012.0) * 0.0005)
    assert roi == pytest.approx(net / 150.0)


def test_trend_flip_closes_before_anything_else():
    decision = evaluate(long_eth(), 3100.0, stage=0, trend=DOWN)
    assert decision.action is Action.CLOSE
    assert decision.size_request.value == 10.0
    assert "trend flipped" in decision.rationale


def test_below_first_stage_holds():
    decision = evaluate(long_eth(), 3005.0, stage=0)
    assert decision.action is Action.HOLD


def test_stage_one_reduces_thirty_percent():
    decision = evaluate(long_eth(), 3012.0, stage=0)
    assert decision.action is Action.REDUCE
    assert decision.stage == 1
    assert decision.size_request.value == pytest.approx(3.0)
    assert decision.stop_price is None


def test_only_one_stage_per_cycle():
    # ROI is past all three thresholds, but stage 1 has not fired yet
    decision = evaluate(long_eth(), 3025.0, stage=0)
    assert decision.stage == 1


def test_stage_two_moves_stop_to_break_even():
    decision = evaluate(long_eth(7.0), 3025.0, stage=1)
    assert decision.action is Action.REDUCE
    assert decision.stage == 2
    assert decision.size_request.value == pytest.approx(3.0)
    assert decision.stop_price == pytest.approx(3003.6)


def test_stage_two_break_even_for_short():
    decision = evaluate(short_eth(7.0), 2975.0, stage=1)
    assert decision.stage == 2
    assert decision.stop_price == pytest.approx(2996.4)


def test_stage_three_reduces_twenty_percent():
    decision = evaluate(long_eth(4.0, stop=3003.6), 3025.0, stage=2)
    assert decision.stage == 3
    assert decision.size_request.value == pytest.approx(2.0)


def test_fired_stage_does_not_refire():
    decision = evaluate(long_eth(7.0), 3012.0, stage=1)
    assert decision.action is Action.HOLD


def test_runner_trails_stop():
    decision = evaluate(long_eth(2.0, stop=3003.6), 3025.0, stage=3)
    assert decision.action is Action.UPDATE_STOP
    assert decision.stop_price == pytest.approx(round(3025.0 * (1 - 0.05 / 20), 2))


def test_trailing_stop_never_moves_back():
    decision = evaluate(long_eth(2.0, stop=3020.0), 3025.0, stage=3)
    assert decision.action is Action.HOLD


def test_runner_closes_below_floor():
    decision = evaluate(long_eth(2.0, stop=3003.6), 3004.0, stage=3)
    assert decision.action is Action.CLOSE
    assert "floor" in decision.rationale


def test_ratchet_direction():
    assert ratchet_stop(PositionSide.LONG, 101.0, 100.0) == 101.0
    assert ratchet_stop(PositionSide.LONG, 99.0, 100.0) is None
    assert ratchet_stop(PositionSide.SHORT, 99.0, 100.0) == 99.0
    assert ratchet_stop(PositionSide.SHORT, 101.0, 100.0) is None
    assert ratchet_stop(PositionSide.LONG, 95.0, None) == 95.0


def test_history_reconstructs_stage_without_ledger():
    history = [Decision(ETH.inst_id, Action.REDUCE, stage=1, dispatched=True,
                        created_at=OPENED + timedelta(minutes=5))]
    decision = evaluate(long_eth(7.0), 3012.0, history=history)
    assert decision.action is Action.HOLD


def test_history_from_previous_position_is_ignored():
    history = [Decision(ETH.inst_id, Action.REDUCE, stage=3, dispatched=True,
                        created_at=OPENED - timedelta(hours=1))]
    decision = evaluate(long_eth(10.0), 3012.0, history=history)
    assert decision.stage == 1


def test_heuristics_disagree_higher_stage_wins(caplog):
    machine = PositionStateMachine()
    # equity 3000 at 5% x 20 on a 3000 entry means 10 contracts originally
    with caplog.at_level(logging.WARNING):
        progress = machine.progress(long_eth(4.0), [], 3000.0, 0.05, 20, ETH)
    assert progress.stage == 2
    assert progress.original_contracts == pytest.approx(10.0)
    assert "size ratio says 2" in caplog.text


def test_estimated_original_never_below_current():
    original = PositionStateMachine.estimate_original(long_eth(12.0), 3000.0, 0.05, 20, ETH)
    assert original == 12.0


def test_ledger_is_authoritative():
    machine = PositionStateMachine()
    progress = machine.progress(long_eth(4.0), [], 3000.0, 0.05, 20, ETH, record(1, original=5.0))
    assert progress.stage == 1
    assert progress.original_contracts == 5.0
    assert progress.source == "ledger"


def test_resting_take_profits_are_not_reduced_again():
    # take-profit 1 filled on the exchange: 7 of 10 contracts left, ledger at stage 1
    machine = PositionStateMachine(exchange_exits=True)
    decision = machine.evaluate(long_eth(7.0, stop=2990.0), 3011.0, UP, 20, [], 3000.0, ETH, 0.05, record(1))
    assert decision.action is Action.HOLD
    assert "resting on exchange" in decision.rationale

    decision = machine.evaluate(long_eth(10.0), 3025.0, UP, 20, [], 3000.0, ETH, 0.05, record(0))
    assert decision.action is Action.HOLD


def test_resting_take_profits_still_move_stop_to_break_even():
    machine = PositionStateMachine(exchange_exits=True)
    decision = machine.evaluate(long_eth(4.0, stop=2990.0), 3020.0, UP, 20, [], 3000.0, ETH, 0.05, record(2))

    assert decision.action is Action.UPDATE_STOP
    assert decision.stop_price == pytest.approx(3003.6)

    moved = machine.evaluate(long_eth(4.0, stop=3003.6), 3020.0, UP, 20, [], 3000.0, ETH, 0.05, record(2))
    assert moved.action is Action.HOLD


def test_resting_take_profits_keep_trend_exit_and_runner():
    machine = PositionStateMachine(exchange_exits=True)
    flipped = machine.evaluate(long_eth(7.0), 3011.0, DOWN, 20, [], 3000.0, ETH, 0.05, record(1))
    assert flipped.action is Action.CLOSE

    runner = machine.evaluate(long_eth(2.0, stop=3003.6), 3025.0, UP, 20, [], 3000.0, ETH, 0.05, record(3))
    assert runner.action is Action.UPDATE_STOP
