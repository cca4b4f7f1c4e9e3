"""
Tests for exit priority, trailing stops and add-on buys.
"""
from datetime import timedelta

import pytest

from core.decisions import AddToPosition, Skip
from core.models import TradeMode
from core.position_manager import PositionManager
from tests.helpers import START, make_consensus, make_position


@pytest.fixture
def manager():
    return PositionManager({})


class TestExitPriority:
    def test_stop_loss_fires_regardless_of_opinion(self, manager):
        """Entry 1.0, SCALP stop 3%, price 0.968 is -3.2%"""
        position = make_position()
        bullish = make_consensus("BUY", 0.95)

        decision = manager.evaluate_exit(position, 0.968, START, bullish)

        assert decision.should_exit
        assert decision.reason == "stop_loss"

    def test_trailing_floor_only_rises(self, manager):
        position = make_position()

        manager.update_tracking(position, 1.02)
        assert position.trailing_armed
        first_floor = position.trailing_floor
        assert first_floor == pytest.approx(1.02 * 0.97)

        manager.update_tracking(position, 1.05)
        raised = position.trailing_floor
        assert raised > first_floor

        manager.update_tracking(position, 1.01)
        assert position.trailing_floor == raised

        decision = manager.evaluate_exit(position, 1.01, START)
        assert decision.reason == "trailing_stop"

    def test_trailing_not_armed_below_threshold(self, manager):
        position = make_position()

        manager.update_tracking(position, 1.01)

        assert not position.trailing_armed
        assert position.trailing_floor is None

    def test_max_hold_for_non_swing(self, manager):
        position = make_position(max_hold_minutes=60)

        decision = manager.evaluate_exit(position, 1.01, START + timedelta(minutes=61))

        assert decision.reason == "max_hold"

    def test_swing_ignores_max_hold(self, manager):
        position = make_position(mode=TradeMode.SWING, max_hold_minutes=60, stop_loss_pct=12, profit_target_pct=50)

        decision = manager.evaluate_exit(position, 1.01, START + timedelta(hours=10))

        assert not decision.should_exit

    def test_take_profit(self, manager):
        decision = manager.evaluate_exit(make_position(), 1.04, START)

        assert decision.reason == "take_profit"

    def test_confident_hold_overrides_take_profit(self, manager):
        decision = manager.evaluate_exit(make_position(), 1.04, START, make_consensus("HOLD", 0.8))

        assert not decision.should_exit

    def test_failed_closed_opinion_does_not_hold_at_target(self, manager):
        no_quorum = make_consensus("HOLD", 0.0, status="insufficient_quorum")

        decision = manager.evaluate_exit(make_position(), 1.04, START, no_quorum)

        assert decision.reason == "take_profit"

    def test_advisor_sell_in_profit(self, manager):
        decision = manager.evaluate_exit(make_position(), 1.02, START, make_consensus("SELL", 0.7))

        assert decision.should_exit
        assert decision.reason == "advisor_sell"

    def test_advisor_sell_held_back_below_mode_minimum(self, manager):
        position = make_position(mode=TradeMode.SWING, stop_loss_pct=12, profit_target_pct=50)

        decision = manager.evaluate_exit(position, 1.02, START, make_consensus("SELL", 0.7))

        assert not decision.should_exit
        assert decision.held_back
        assert decision.reason == "advisor_sell_held"

    def test_repeated_low_readings_exit_under_water(self, manager):
        position = make_position()
        manager.update_tracking(position, 0.99)
        for _ in range(3):
            manager.record_advisor_reading(position, make_consensus("SELL", 0.6))

        decision = manager.evaluate_exit(position, 0.99, START, make_consensus("HOLD", 0.3))

        assert position.low_confidence_count == 3
        assert decision.reason == "advisor_exit"


class TestAdvisorReadings:
    def test_fail_closed_reading_is_ignored(self, manager):
        position = make_position()
        manager.update_tracking(position, 0.99)

        manager.record_advisor_reading(position, make_consensus("HOLD", 0.0, status="insufficient_quorum"))

        assert position.low_confidence_count == 0

    def test_profit_resets_counter(self, manager):
        position = make_position(low_confidence_count=2)
        manager.update_tracking(position, 1.01)

        manager.record_advisor_reading(position, make_consensus("SELL", 0.9))

        assert position.low_confidence_count == 0

    def test_confident_hold_resets_counter(self, manager):
        position = make_position(low_confidence_count=2)
        manager.update_tracking(position, 0.99)

        manager.record_advisor_reading(position, make_consensus("HOLD", 0.8))

        assert position.low_confidence_count == 0


class TestAddOns:
    def test_rebuy_on_deep_dip_with_higher_confidence(self, manager):
        add = manager.evaluate_add(make_position(entry_confidence=70), 0.88, 0.8)

        assert isinstance(add, AddToPosition)
        assert add.kind == "rebuy"

    def test_rebuy_needs_higher_confidence_than_last_buy(self, manager):
        add = manager.evaluate_add(make_position(entry_confidence=85), 0.88, 0.8)

        assert isinstance(add, Skip)
        assert add.gate == "rebuy"

    def test_rebuy_cap(self, manager):
        add = manager.evaluate_add(make_position(rebuy_count=2), 0.5, 0.99)

        assert isinstance(add, Skip)
        assert add.reason == "rebuy cap reached"

    def test_merge_buy_refuses_third_rebuy(self):
        position = make_position(rebuy_count=2)

        with pytest.raises(ValueError):
            position.merge_buy(price=0.5, sol_amount=0.5, quantity=1.0, confidence=90)

    def test_rebuy_count_bounded_on_construction(self):
        with pytest.raises(ValueError):
            make_position(rebuy_count=3)

    def test_merge_buy_averages_entry(self):
        position = make_position(entry_price=1.0, token_quantity=1.0, sol_committed=1.0)

        position.merge_buy(price=0.8, sol_amount=0.8, quantity=1.0, confidence=90)

        assert position.entry_price == pytest.approx(0.9)
        assert position.token_quantity == 2.0
        assert position.sol_committed == pytest.approx(1.8)
        assert position.entry_confidence == 90
        assert position.rebuy_count == 1

    def test_accumulate_limited_to_position_multiple(self, manager):
        add = manager.evaluate_add(make_position(entry_confidence=95), 0.95, 0.9)

        assert isinstance(add, AddToPosition)
        assert add.kind == "accumulate"
        assert add.size == pytest.approx(1.0)

    def test_accumulate_refused_when_drawdown_too_deep(self, manager):
        add = manager.evaluate_add(make_position(entry_confidence=95), 0.7, 0.9)

        assert isinstance(add, Skip)
        assert add.gate == "accumulate"
