"""
Trade journal: build round-trip records and summarize recent performance.

Summaries feed strategy regeneration and the periodic log line the rebalance
job writes.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.models import Position, TradeJournalEntry, TradeOutcome

logger = logging.getLogger(__name__)

BREAKEVEN_BAND_PCT = 0.5


def classify_outcome(profit_pct: float, lost_track: bool = False) -> TradeOutcome:
    if lost_track:
        return TradeOutcome.LOST_TRACK
    if profit_pct > BREAKEVEN_BAND_PCT:
        return TradeOutcome.WIN
    if profit_pct < -BREAKEVEN_BAND_PCT:
        return TradeOutcome.LOSS
    return TradeOutcome.BREAKEVEN


def build_journal_entry(
    position: Position,
    exit_price: Optional[float],
    sol_out: float,
    exit_reason: str,
    closed_at: datetime,
    lost_track: bool = False,
    exit_snapshot: Optional[Dict[str, Any]] = None,
) -> TradeJournalEntry:
    """Round-trip record. Profit is measured in SOL so rebuys and slippage are included."""
    if lost_track:
        profit_pct = -100.0
    elif position.sol_committed > 0:
        profit_pct = (sol_out - position.sol_committed) / position.sol_committed * 100.0
    else:
        profit_pct = 0.0

    return TradeJournalEntry(
        wallet=position.wallet,
        token_id=position.token_id,
        symbol=position.symbol,
        mode=position.mode.value,
        entry_price=position.entry_price,
        exit_price=exit_price,
        sol_in=position.sol_committed,
        sol_out=sol_out,
        profit_pct=profit_pct,
        hold_minutes=position.hold_minutes(closed_at),
        entry_confidence=position.entry_confidence,
        exit_reason=exit_reason,
        outcome=classify_outcome(profit_pct, lost_track),
        opened_at=position.opened_at,
        closed_at=closed_at,
        entry_snapshot={
            "entry_price": position.entry_price,
            "entry_confidence": position.entry_confidence,
            "rebuy_count": position.rebuy_count,
            "stop_loss_pct": position.stop_loss_pct,
            "profit_target_pct": position.profit_target_pct,
        },
        exit_snapshot={
            "peak_profit_pct": position.peak_profit_pct,
            "trailing_floor": position.trailing_floor,
            **(exit_snapshot or {}),
        },
    )


@dataclass
class PerformanceSummary:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    lost_track: int = 0
    win_rate: float = 0.0               # percent
    avg_profit_pct: float = 0.0
    net_sol: float = 0.0
    max_consecutive_losses: int = 0
    by_mode: Dict[str, int] = field(default_factory=dict)

    def describe(self) -> str:
        return (
            f"{self.total_trades} trades, win rate {self.win_rate:.1f}%, "
            f"avg {self.avg_profit_pct:+.2f}%, net {self.net_sol:+.4f} SOL"
        )


def summarize(entries: List[TradeJournalEntry]) -> PerformanceSummary:
    if not entries:
        return PerformanceSummary()

    ordered = sorted(entries, key=lambda e: e.closed_at)
    summary = PerformanceSummary(total_trades=len(ordered))
    by_mode: Dict[str, int] = defaultdict(int)
    streak = 0

    for entry in ordered:
        by_mode[entry.mode] += 1
        summary.net_sol += entry.sol_out - entry.sol_in
        if entry.outcome == TradeOutcome.WIN:
            summary.wins += 1
            streak = 0
        elif entry.outcome in (TradeOutcome.LOSS, TradeOutcome.LOST_TRACK):
            summary.losses += 1
            if entry.outcome == TradeOutcome.LOST_TRACK:
                summary.lost_track += 1
            streak += 1
            summary.max_consecutive_losses = max(summary.max_consecutive_losses, streak)

    summary.win_rate = summary.wins / summary.total_trades * 100.0
    summary.avg_profit_pct = sum(e.profit_pct for e in ordered) / summary.total_trades
    summary.by_mode = dict(by_mode)
    return summary
