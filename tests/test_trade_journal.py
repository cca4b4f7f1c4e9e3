"""
Tests for journal entries and performance summaries.
"""
from datetime import timedelta

import pytest

from analytics.trade_journal import build_journal_entry, classify_outcome, summarize
from core.models import TradeOutcome
from tests.helpers import START, make_position


def _entry(sol_out, minutes_after=30, lost_track=False, mode="SCALP"):
    position = make_position(mode=mode)
    return build_journal_entry(
        position, exit_price=sol_out, sol_out=sol_out, exit_reason="take_profit",
        closed_at=START + timedelta(minutes=minutes_after), lost_track=lost_track,
    )


class TestClassifyOutcome:
    @pytest.mark.parametrize(
        "profit,outcome",
        [(0.6, TradeOutcome.WIN), (0.5, TradeOutcome.BREAKEVEN), (-0.5, TradeOutcome.BREAKEVEN), (-0.6, TradeOutcome.LOSS)],
    )
    def test_breakeven_band(self, profit, outcome):
        assert classify_outcome(profit) == outcome

    def test_lost_track_overrides_profit(self):
        assert classify_outcome(50.0, lost_track=True) == TradeOutcome.LOST_TRACK


class TestBuildJournalEntry:
    def test_profit_measured_in_sol(self):
        entry = _entry(1.25)

        assert entry.profit_pct == pytest.approx(25.0)
        assert entry.outcome == TradeOutcome.WIN
        assert entry.hold_minutes == pytest.approx(30.0)
        assert entry.entry_snapshot["rebuy_count"] == 0

    def test_lost_track_is_total_loss(self):
        entry = _entry(0.0, lost_track=True)

        assert entry.profit_pct == -100.0
        assert entry.outcome == TradeOutcome.LOST_TRACK

    def test_round_trips_through_dict(self):
        entry = _entry(0.9)

        restored = type(entry).from_dict(entry.to_dict())

        assert restored.outcome == TradeOutcome.LOSS
        assert restored.closed_at == entry.closed_at


class TestSummarize:
    def test_empty(self):
        assert summarize([]).total_trades == 0

    def test_win_rate_and_streak(self):
        entries = [
            _entry(1.2, minutes_after=10),
            _entry(0.9, minutes_after=20),
            _entry(0.0, minutes_after=30, lost_track=True),
            _entry(1.1, minutes_after=40, mode="SWING"),
        ]

        summary = summarize(entries)

        assert summary.total_trades == 4
        assert summary.wins == 2
        assert summary.losses == 2
        assert summary.lost_track == 1
        assert summary.win_rate == pytest.approx(50.0)
        assert summary.max_consecutive_losses == 2
        assert summary.net_sol == pytest.approx(-0.8)
        assert summary.by_mode == {"SCALP": 3, "SWING": 1}
        assert "4 trades" in summary.describe()
