"""
Position Management: exit logic, trailing stops, rebuy and accumulation rules.

Pure decisions over a Position and the latest price/opinion. Exits are
evaluated in strict priority order:

1. stop_loss      - profit at or below the mode stop, no advisor consulted
2. trailing_stop  - armed floor breached
3. max_hold       - non-SWING position past its hold limit without hitting target
4. take_profit    - target reached unless the panel wants to keep holding
5. advisor exits  - SELL in enough profit, or repeated low readings while under entry
"""
import logging
from datetime import datetime
from typing import Dict, Optional, Union

from ai.schemas import ConsensusResult

from .decisions import HOLD_POSITION, AddToPosition, ExitDecision, Skip
from .models import MAX_REBUYS, Position, TradeMode
from .sizing import ModeSelector

logger = logging.getLogger(__name__)


class PositionManager:
    """
    Manages position exits and add-on buys.

    Args:
        policy: Policy config dict (uses the exits, rebuy and accumulate sections)
        mode_selector: Supplies the per-mode minimum profit for advisor SELLs
    """

    def __init__(self, policy: Dict, mode_selector: Optional[ModeSelector] = None):
        self.policy = policy
        self.mode_selector = mode_selector or ModeSelector(policy.get("modes"))

        exits = policy.get("exits", {})
        self.trailing_arm_pct = float(exits.get("trailing_arm_pct", 1.5))
        self.trailing_distance_pct = float(exits.get("trailing_distance_pct", 3.0))
        self.low_confidence_threshold = float(exits.get("low_confidence_threshold", 0.40))
        self.low_confidence_readings = int(exits.get("low_confidence_readings", 3))
        self.hold_if_high_confidence = float(exits.get("hold_if_high_confidence", 0.70))

        rebuy = policy.get("rebuy", {})
        self.rebuy_min_dip_pct = float(rebuy.get("min_dip_pct", 10.0))
        self.max_rebuys = min(int(rebuy.get("max_rebuys", MAX_REBUYS)), MAX_REBUYS)

        accumulate = policy.get("accumulate", {})
        self.accumulate_min_confidence = float(accumulate.get("min_confidence", 0.85))
        self.accumulate_max_multiple = float(accumulate.get("max_position_multiple", 2.0))
        self.accumulate_max_drawdown_pct = float(accumulate.get("max_drawdown_pct", 25.0))

    def update_tracking(self, position: Position, price: float) -> None:
        """Record the latest price, peaks and trailing-stop state. The floor only ever rises."""
        profit = position.profit_pct(price)
        position.last_price = price
        position.last_profit_pct = profit
        position.price_miss_count = 0

        if price > position.peak_price:
            position.peak_price = price
        position.peak_profit_pct = max(position.peak_profit_pct, profit)

        if not position.trailing_armed and position.peak_profit_pct >= self.trailing_arm_pct:
            position.trailing_armed = True
            logger.info(
                "%s trailing stop armed at peak profit %.2f%%", position.symbol, position.peak_profit_pct
            )

        if position.trailing_armed:
            candidate = position.peak_price * (1.0 - self.trailing_distance_pct / 100.0)
            if position.trailing_floor is None or candidate > position.trailing_floor:
                position.trailing_floor = candidate

    def record_advisor_reading(self, position: Position, opinion: Optional[ConsensusResult]) -> None:
        """
        Maintain the consecutive low-confidence counter.

        Reset while in profit and on any confident non-SELL reading. Only
        real consensus results count; a fail-closed HOLD is not a reading.
        """
        profit = position.last_profit_pct or 0.0
        if profit > 0:
            position.low_confidence_count = 0
            return
        if opinion is None or opinion.status != "consensus":
            return
        if opinion.action == "SELL" or opinion.confidence < self.low_confidence_threshold:
            position.low_confidence_count += 1
        else:
            position.low_confidence_count = 0

    def evaluate_exit(
        self,
        position: Position,
        price: float,
        now: datetime,
        opinion: Optional[ConsensusResult] = None,
    ) -> ExitDecision:
        profit = position.profit_pct(price)

        # 1. Stop-loss: unconditional
        if profit <= -abs(position.stop_loss_pct):
            return ExitDecision(
                should_exit=True,
                reason="stop_loss",
                detail=f"profit {profit:.2f}% <= -{abs(position.stop_loss_pct):.2f}%",
            )

        # 2. Trailing stop
        floor_breached = (
            position.trailing_armed
            and position.trailing_floor is not None
            and price < position.trailing_floor
        )
        if floor_breached:
            return ExitDecision(
                should_exit=True,
                reason="trailing_stop",
                detail=f"price {price:.10g} < floor {position.trailing_floor:.10g}",
            )

        # 3. Max hold for non-SWING modes
        if (
            position.mode != TradeMode.SWING
            and position.max_hold_minutes
            and position.hold_minutes(now) > position.max_hold_minutes
            and profit < position.profit_target_pct
        ):
            return ExitDecision(
                should_exit=True,
                reason="max_hold",
                detail=f"held {position.hold_minutes(now):.0f}m > {position.max_hold_minutes:.0f}m at {profit:.2f}%",
            )

        consensus = opinion if opinion is not None and opinion.status == "consensus" else None

        # 4. Take-profit, unless the panel is confidently holding
        if profit >= position.profit_target_pct:
            if consensus and consensus.action in ("BUY", "HOLD") and consensus.confidence >= self.hold_if_high_confidence:
                logger.info(
                    "%s at target (%.2f%%) but panel says %s @ %.2f; holding",
                    position.symbol, profit, consensus.action, consensus.confidence,
                )
            else:
                return ExitDecision(
                    should_exit=True,
                    reason="take_profit",
                    detail=f"profit {profit:.2f}% >= target {position.profit_target_pct:.2f}%",
                )

        # 5a. Advisor SELL while in profit, gated by the mode's minimum profit
        if consensus and consensus.action == "SELL" and profit > 0:
            min_profit = self.mode_selector.min_profit_for_ai_sell(position.mode)
            if profit >= min_profit:
                return ExitDecision(
                    should_exit=True,
                    reason="advisor_sell",
                    detail=f"panel SELL @ {consensus.confidence:.2f} with profit {profit:.2f}% >= {min_profit:.2f}%",
                )
            return ExitDecision(
                should_exit=False,
                held_back=True,
                reason="advisor_sell_held",
                detail=f"panel SELL held back: profit {profit:.2f}% < {min_profit:.2f}% for {position.mode.value}",
            )

        # 5b. Repeated low readings while under water
        if position.low_confidence_count >= self.low_confidence_readings and (price < position.entry_price or floor_breached):
            return ExitDecision(
                should_exit=True,
                reason="advisor_exit",
                detail=(
                    f"{position.low_confidence_count} consecutive low readings, "
                    f"price below entry ({profit:.2f}%)"
                ),
            )

        return HOLD_POSITION

    def evaluate_add(self, position: Position, price: float, confidence: float) -> Union[AddToPosition, Skip]:
        """
        Decide whether a fresh BUY consensus on a held token may add to it.

        Returns an AddToPosition whose ``size`` is the most SOL the rule allows
        (``inf`` when only the normal sizing caps apply).
        """
        if position.rebuy_count >= self.max_rebuys:
            return Skip(
                reason="rebuy cap reached", gate="rebuy",
                measured=position.rebuy_count, threshold=self.max_rebuys,
            )

        profit = position.profit_pct(price)
        confidence_pct = confidence * 100.0

        if profit <= -self.rebuy_min_dip_pct and confidence_pct > position.entry_confidence:
            return AddToPosition(kind="rebuy", size=float("inf"), confidence=confidence, profit_pct=profit)

        if profit < 0 and confidence >= self.accumulate_min_confidence:
            if profit < -self.accumulate_max_drawdown_pct:
                return Skip(
                    reason="position drawdown too deep to accumulate", gate="accumulate",
                    measured=profit, threshold=-self.accumulate_max_drawdown_pct,
                )
            headroom = position.initial_sol * self.accumulate_max_multiple - position.sol_committed
            if headroom <= 0:
                return Skip(
                    reason="position already at max multiple of original stake", gate="accumulate",
                    measured=position.sol_committed, threshold=position.initial_sol * self.accumulate_max_multiple,
                )
            return AddToPosition(kind="accumulate", size=headroom, confidence=confidence, profit_pct=profit)

        if profit > -self.rebuy_min_dip_pct:
            return Skip(reason="dip too shallow for rebuy", gate="rebuy", measured=profit, threshold=-self.rebuy_min_dip_pct)
        return Skip(
            reason="confidence not above previous buy", gate="rebuy",
            measured=confidence_pct, threshold=position.entry_confidence,
        )
