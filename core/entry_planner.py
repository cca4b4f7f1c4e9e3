"""
Candidate evaluation as a pure function.

``plan_entry`` turns a consensus result plus the wallet's current numbers
into Buy, AddToPosition, Rotate or Skip. It performs no I/O: prices,
balances and the loss-screen outcome are gathered by the caller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ai.schemas import ConsensusResult

from .decisions import AddToPosition, Buy, EntryDecision, Rotate, RotationPlan, Skip
from .models import BotConfig, Position, Strategy
from .position_manager import PositionManager
from .risk import RiskCheckResult
from .rotation import RotationPlanner
from .sizing import ModeSelector, compute_trade_size


@dataclass
class EntryInputs:
    token_id: str
    symbol: str
    consensus: ConsensusResult
    strategy: Strategy
    bot_config: BotConfig
    portfolio_value: float
    available: float                    # free SOL after reserve and deployable cap
    concentration_headroom: float       # SOL this token may still grow by
    price: float
    risk: RiskCheckResult
    now: datetime
    min_trade: float = 0.01
    existing: Optional[Position] = None
    positions: List[Position] = field(default_factory=list)
    prices: Dict[str, float] = field(default_factory=dict)


def consensus_gate(consensus: ConsensusResult, strategy: Strategy) -> Optional[Skip]:
    """Strategy thresholds on the panel's answer. Runs before the loss screen is paid for."""
    if consensus.action != "BUY":
        return Skip(
            reason=f"panel says {consensus.action} ({consensus.status})",
            gate="consensus",
            measured=consensus.confidence,
        )
    if consensus.confidence * 100.0 < strategy.min_confidence:
        return Skip(
            reason="consensus confidence below strategy minimum",
            gate="strategy_confidence",
            measured=consensus.confidence * 100.0,
            threshold=strategy.min_confidence,
        )
    if consensus.potential_upside_pct < strategy.min_potential_pct:
        return Skip(
            reason="potential upside below strategy minimum",
            gate="strategy_potential",
            measured=consensus.potential_upside_pct,
            threshold=strategy.min_potential_pct,
        )
    return None


def plan_entry(
    inputs: EntryInputs,
    mode_selector: ModeSelector,
    position_manager: PositionManager,
    rotation_planner: Optional[RotationPlanner] = None,
) -> EntryDecision:
    consensus = inputs.consensus
    confidence = consensus.confidence

    gate = consensus_gate(consensus, inputs.strategy)
    if gate is not None:
        return gate

    risk = inputs.risk
    if not risk.approved:
        return Skip(
            reason=risk.reason or "risk gate rejected",
            gate=(risk.violated_checks or ["risk"])[0],
            measured=risk.measured,
            threshold=risk.threshold,
        )

    if inputs.bot_config.trades_today >= inputs.strategy.max_daily_trades:
        return Skip(
            reason="daily trade limit reached",
            gate="daily_trades",
            measured=inputs.bot_config.trades_today,
            threshold=inputs.strategy.max_daily_trades,
        )

    profile = mode_selector.select(confidence)
    if profile is None:
        return Skip(
            reason="confidence below lowest trade mode",
            gate="mode",
            measured=confidence,
            threshold=mode_selector.lowest_confidence,
        )

    size_pct = min(profile.size_pct, inputs.bot_config.max_trade_pct) * risk.size_factor
    size = compute_trade_size(
        portfolio_value=inputs.portfolio_value,
        size_pct=size_pct,
        available_balance=inputs.available,
        concentration_headroom=inputs.concentration_headroom,
        min_trade=inputs.min_trade,
        budget_remaining=inputs.bot_config.budget_remaining,
    )

    if inputs.existing is not None and inputs.existing.is_open:
        add = position_manager.evaluate_add(inputs.existing, inputs.price, confidence)
        if isinstance(add, Skip):
            return add
        if not size.tradeable:
            return Skip(reason=size.reason or "no size for add-on buy", gate="sizing", measured=size.requested)
        amount = min(size.amount, add.size)
        if amount < inputs.min_trade:
            return Skip(
                reason=f"{add.kind} room below minimum trade",
                gate=add.kind,
                measured=amount,
                threshold=inputs.min_trade,
            )
        return AddToPosition(kind=add.kind, size=amount, confidence=confidence, profit_pct=add.profit_pct)

    stop_loss_pct = profile.stop_loss_pct * risk.stop_loss_factor
    profit_target_pct = profile.profit_target_pct * inputs.strategy.profit_target_multiplier

    if size.tradeable:
        note = f"{profile.mode.value} {size_pct:.2f}% of {inputs.portfolio_value:.4f} SOL, bound by {size.binding_cap}"
        if risk.size_factor < 1.0:
            note += f"; reduced x{risk.size_factor:.2f} by loss screen"
        return Buy(
            size=size.amount,
            profile=profile,
            stop_loss_pct=stop_loss_pct,
            profit_target_pct=profit_target_pct,
            confidence=confidence,
            size_note=note,
        )

    if size.binding_cap == "available_balance" and rotation_planner is not None:
        required = max(inputs.min_trade, min(size.requested, inputs.concentration_headroom))
        plan = rotation_planner.plan(
            candidate_confidence=confidence,
            required=required,
            available=inputs.available,
            positions=[p for p in inputs.positions if p.token_id != inputs.token_id],
            prices=inputs.prices,
            now=inputs.now,
        )
        if isinstance(plan, RotationPlan):
            return Rotate(
                token_id=inputs.token_id,
                plan=plan,
                profile=profile,
                required=required,
                confidence=confidence,
            )
        return plan

    return Skip(
        reason=size.reason or "trade size below minimum",
        gate="sizing",
        measured=size.amount,
        threshold=inputs.min_trade,
    )
