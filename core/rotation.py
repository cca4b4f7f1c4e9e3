"""
Rotation: sell the weakest holding to fund a stronger candidate.

Only used when a high-confidence candidate cannot be funded from free
balance. Expected proceeds are an estimate from the last known price with a
slippage haircut; the follow-up buy is re-sized from the real balance.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .decisions import RotationPlan, Skip
from .models import Position

logger = logging.getLogger(__name__)

_EPS = 1e-9


class RotationPlanner:
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.trigger_confidence = float(config.get("trigger_confidence", 0.78))
        self.min_hold_minutes = float(config.get("min_hold_minutes", 30))
        self.min_confidence_margin = float(config.get("min_confidence_margin", 10))
        self.loss_threshold_pct = float(config.get("loss_threshold_pct", 5.0))
        self.high_confidence = float(config.get("high_confidence", 0.80))
        self.emergency_balance_sol = float(config.get("emergency_balance_sol", 0.02))
        self.slippage_haircut_pct = float(config.get("slippage_haircut_pct", 5.0))
        self.protect_profit_pct = float(config.get("protect_profit_pct", 20.0))
        self.small_profit_pct = float(config.get("small_profit_pct", 5.0))
        self.profit_weight = float(config.get("profit_weight", 0.5))

    def score(self, position: Position, price: float, candidate_confidence: float) -> float:
        """Lower is weaker (sold first). Big winners are pushed far up."""
        profit = position.profit_pct(price)
        score = position.entry_confidence + profit * self.profit_weight
        if 0 < profit <= self.small_profit_pct:
            score -= 15.0
        if position.entry_confidence < candidate_confidence * 100.0:
            score -= 10.0
        if profit >= self.protect_profit_pct:
            score += 100.0
        return score

    def expected_proceeds(self, position: Position, price: float) -> float:
        return position.value_at(price) * (1.0 - self.slippage_haircut_pct / 100.0)

    def plan(
        self,
        candidate_confidence: float,
        required: float,
        available: float,
        positions: List[Position],
        prices: Dict[str, float],
        now: datetime,
    ) -> Union[RotationPlan, Skip]:
        emergency = available < self.emergency_balance_sol
        if not emergency and candidate_confidence < self.trigger_confidence:
            return Skip(
                reason="candidate confidence below rotation trigger",
                gate="rotation",
                measured=candidate_confidence,
                threshold=self.trigger_confidence,
            )

        eligible = [
            p for p in positions
            if p.is_open and prices.get(p.token_id) is not None and p.hold_minutes(now) >= self.min_hold_minutes
        ]
        if not eligible:
            return Skip(reason="no position eligible for rotation", gate="rotation")

        scores = {p.token_id: self.score(p, prices[p.token_id], candidate_confidence) for p in eligible}
        weakest = min(eligible, key=lambda p: scores[p.token_id])
        price = prices[weakest.token_id]
        profit = weakest.profit_pct(price)
        proceeds = self.expected_proceeds(weakest, price)

        if emergency:
            reason = f"emergency: free balance {available:.4f} < {self.emergency_balance_sol:.4f} SOL"
        else:
            margin = candidate_confidence * 100.0 - weakest.entry_confidence
            if margin >= self.min_confidence_margin:
                reason = f"confidence margin {margin:.1f} >= {self.min_confidence_margin:.1f}"
            elif profit <= -self.loss_threshold_pct and candidate_confidence >= self.high_confidence:
                reason = f"weakest at {profit:.1f}% loss and candidate at {candidate_confidence:.2f}"
            else:
                return Skip(
                    reason=f"confidence margin too small vs {weakest.symbol}",
                    gate="rotation",
                    measured=margin,
                    threshold=self.min_confidence_margin,
                )

        projected = available + proceeds
        if projected + _EPS < required:
            return Skip(
                reason=f"rotation of {weakest.symbol} would not fund the trade",
                gate="rotation_capital",
                measured=projected,
                threshold=required,
            )

        logger.info(
            "Rotation plan: sell %s (score %.1f, profit %.1f%%, ~%.4f SOL) to fund %.4f SOL; %s",
            weakest.symbol, scores[weakest.token_id], profit, proceeds, required, reason,
        )
        return RotationPlan(
            sell=weakest,
            expected_proceeds=proceeds,
            score=scores[weakest.token_id],
            reason=reason,
            emergency=emergency,
            scores=scores,
        )
