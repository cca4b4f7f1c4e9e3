"""
Tests for strategy regeneration and candidate pre-selection.
"""
from datetime import timedelta

import pytest

from analytics.trade_journal import PerformanceSummary, build_journal_entry
from infra.state_store import JsonStateStore
from strategy.hivemind import (
    DEFAULT_PRESETS,
    StrategyGenerator,
    adjust_for_confidence,
    classify_sentiment,
    select_deep_candidates,
    select_quick_candidates,
    strategy_filters,
)
from tests.helpers import FixedClock, make_position, make_snapshot, make_strategy


@pytest.fixture
def store(tmp_path):
    return JsonStateStore(str(tmp_path / "state.json"))


def _journal(store, clock, *sol_outs):
    for i, sol_out in enumerate(sol_outs):
        closed_at = clock() - timedelta(hours=1, minutes=i)
        store.append_journal(build_journal_entry(make_position(), sol_out, sol_out, "test", closed_at))


class TestSentiment:
    @pytest.mark.parametrize(
        "win_rate,avg,expected",
        [(70, 25, "bullish"), (30, 10, "bearish"), (50, -1, "bearish"), (55, 35, "volatile"), (50, 5, "neutral")],
    )
    def test_classification(self, win_rate, avg, expected):
        summary = PerformanceSummary(total_trades=10, win_rate=win_rate, avg_profit_pct=avg)

        assert classify_sentiment(summary)[0] == expected

    def test_high_confidence_loosens(self):
        params = adjust_for_confidence(DEFAULT_PRESETS["neutral"], 95)

        assert params["max_daily_trades"] == 5
        assert params["min_confidence"] == 70
        assert params["budget_per_trade"] == pytest.approx(0.025)
        assert params["profit_target_multiplier"] == pytest.approx(0.96)

    def test_low_confidence_tightens(self):
        params = adjust_for_confidence(DEFAULT_PRESETS["neutral"], 50)

        assert params["max_daily_trades"] == 1
        assert params["min_confidence"] == 90
        assert params["budget_per_trade"] == pytest.approx(0.01)

    def test_preset_not_mutated(self):
        adjust_for_confidence(DEFAULT_PRESETS["neutral"], 95)

        assert DEFAULT_PRESETS["neutral"]["max_daily_trades"] == 3


class TestStrategyGenerator:
    def test_default_until_enough_trades(self, store, clock):
        _journal(store, clock, 1.5, 1.5)

        strategy = StrategyGenerator(store, clock=clock).generate("wallet1")

        assert strategy.sentiment == "neutral"
        assert strategy.min_confidence == 75
        assert "Default conservative" in strategy.reasoning

    def test_learns_bullish(self, store, clock):
        _journal(store, clock, 1.3, 1.3, 1.3, 1.3)

        strategy = StrategyGenerator(store, clock=clock).generate("wallet1")

        assert strategy.sentiment == "bullish"
        assert strategy.min_confidence == 72
        assert strategy.valid_until == clock() + timedelta(hours=3)

    def test_learns_bearish(self, store, clock):
        _journal(store, clock, 0.9, 0.9, 0.9)

        strategy = StrategyGenerator(store, clock=clock).generate("wallet1")

        assert strategy.sentiment == "bearish"
        assert strategy.max_daily_trades == 1

    def test_old_trades_ignored(self, store, clock):
        _journal(store, clock, 0.9, 0.9, 0.9)
        clock.advance(days=2)

        assert StrategyGenerator(store, clock=clock).generate("wallet1").sentiment == "neutral"

    def test_ensure_fresh_reuses_then_regenerates(self, store, clock):
        generator = StrategyGenerator(store, clock=clock)

        first = generator.ensure_fresh("wallet1")
        clock.advance(hours=1)
        assert generator.ensure_fresh("wallet1").generated_at == first.generated_at

        clock.advance(hours=3)
        refreshed = generator.ensure_fresh("wallet1")
        assert refreshed.generated_at == clock()

    def test_config_overrides_preset(self, store, clock):
        config = {"presets": {"neutral": {**DEFAULT_PRESETS["neutral"], "min_confidence": 65}}}

        strategy = StrategyGenerator(store, config, clock=clock).generate("wallet1")

        assert strategy.min_confidence == 65


class TestCandidateSelection:
    def test_quick_needs_positive_momentum(self):
        tokens = [
            make_snapshot("UP", quality_score=60),
            make_snapshot("BEST", quality_score=90),
            make_snapshot("DOWN", price_change_1h=-2),
            make_snapshot("THIN", liquidity_usd=1000),
        ]

        picked = select_quick_candidates(tokens, make_strategy(), limit=2)

        assert [t.token_id for t in picked] == ["BEST", "UP"]

    def test_deep_applies_strategy_filters(self):
        tokens = [make_snapshot("OK"), make_snapshot("LOW", organic_score=50)]

        picked = select_deep_candidates(tokens, make_strategy())

        assert [t.token_id for t in picked] == ["OK"]

    def test_filters_from_strategy(self):
        filters = strategy_filters(make_strategy(min_liquidity_usd=30000))

        assert filters["min_liquidity_usd"] == 30000
        assert set(filters) == {
            "min_liquidity_usd", "min_volume_usd", "min_organic_score", "min_quality_score", "min_transactions_24h",
        }
