"""
Tests for rotation planning: weakest-holding selection and the capital check.
"""
from datetime import timedelta

import pytest

from core.decisions import RotationPlan, Skip
from core.rotation import RotationPlanner
from tests.helpers import START, make_position


def _held(token_id, entry_confidence=60.0, quantity=1.0, minutes=60):
    return make_position(
        token_id=token_id, symbol=token_id, entry_confidence=entry_confidence,
        token_quantity=quantity, opened_at=START - timedelta(minutes=minutes),
    )


@pytest.fixture
def planner():
    return RotationPlanner()


class TestRotationPlanner:
    def test_below_trigger_does_not_rotate(self, planner):
        plan = planner.plan(0.7, required=0.5, available=1.0, positions=[_held("A")], prices={"A": 1.0}, now=START)

        assert isinstance(plan, Skip)
        assert plan.gate == "rotation"
        assert plan.threshold == 0.78

    def test_emergency_balance_ignores_trigger(self, planner):
        plan = planner.plan(0.6, required=0.5, available=0.01, positions=[_held("A")], prices={"A": 1.0}, now=START)

        assert isinstance(plan, RotationPlan)
        assert plan.emergency

    def test_recent_positions_are_not_eligible(self, planner):
        plan = planner.plan(
            0.9, required=0.5, available=0.1, positions=[_held("A", minutes=10)], prices={"A": 1.0}, now=START,
        )

        assert isinstance(plan, Skip)
        assert plan.reason == "no position eligible for rotation"

    def test_confidence_margin_triggers(self, planner):
        plan = planner.plan(0.9, required=0.5, available=0.1, positions=[_held("A", 70)], prices={"A": 1.0}, now=START)

        assert isinstance(plan, RotationPlan)
        assert "margin" in plan.reason

    def test_losing_holding_rotates_on_small_margin(self, planner):
        plan = planner.plan(
            0.85, required=0.5, available=0.1, positions=[_held("A", 80)], prices={"A": 0.94}, now=START,
        )

        assert isinstance(plan, RotationPlan)
        assert "loss" in plan.reason

    def test_small_margin_without_loss_is_skipped(self, planner):
        plan = planner.plan(
            0.85, required=0.5, available=0.1, positions=[_held("A", 80)], prices={"A": 1.0}, now=START,
        )

        assert isinstance(plan, Skip)
        assert plan.gate == "rotation"

    def test_big_winner_is_protected(self, planner):
        winner = _held("WIN", entry_confidence=60)
        flat = _held("FLAT", entry_confidence=75)

        plan = planner.plan(
            0.9, required=0.5, available=0.1, positions=[winner, flat],
            prices={"WIN": 1.3, "FLAT": 1.0}, now=START,
        )

        assert plan.sell.token_id == "FLAT"
        assert plan.scores["WIN"] > plan.scores["FLAT"]

    def test_proceeds_are_haircut_estimate(self, planner):
        assert planner.expected_proceeds(_held("A", quantity=2.0), 0.5) == pytest.approx(0.95)

    def test_capital_check(self, planner):
        """Available plus haircut proceeds must cover the required size"""
        plan = planner.plan(
            0.9, required=1.0, available=0.04, positions=[_held("A", quantity=1.0)], prices={"A": 1.0}, now=START,
        )

        assert isinstance(plan, Skip)
        assert plan.gate == "rotation_capital"
        assert plan.measured == pytest.approx(0.99)

    def test_unpriced_positions_are_skipped(self, planner):
        plan = planner.plan(0.9, required=0.5, available=0.1, positions=[_held("A")], prices={}, now=START)

        assert isinstance(plan, Skip)
