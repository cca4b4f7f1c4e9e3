"""
Pre-trade risk gate: loss-probability screen and drawdown protection.

Both gates must pass before a buy executes. Blocks are policy decisions, not
errors; every one is logged with the threshold and the measured value that
triggered it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ai.schemas import AdvisorContext, LossEstimate

from .models import BotConfig, TokenMarketSnapshot

logger = logging.getLogger(__name__)

VERDICT_PASS = "pass"
VERDICT_REDUCE = "reduce"
VERDICT_BLOCK = "block"

# Ratio comparisons against float thresholds need a little slack
_EPS = 1e-9


@dataclass
class RiskCheckResult:
    """Result of risk check"""
    approved: bool
    reason: Optional[str] = None
    violated_checks: List[str] = None
    measured: Optional[float] = None
    threshold: Optional[float] = None
    size_factor: float = 1.0
    stop_loss_factor: float = 1.0

    def __post_init__(self):
        if self.violated_checks is None:
            self.violated_checks = []


@dataclass
class LossScreenResult:
    verdict: str
    size_factor: float = 1.0
    stop_loss_factor: float = 1.0
    probabilities: List[float] = field(default_factory=list)
    source: str = "advisors"            # advisors | rules
    reason: str = ""
    red_flags: List[str] = field(default_factory=list)
    measured: Optional[float] = None
    threshold: Optional[float] = None

    @property
    def blocked(self) -> bool:
        return self.verdict == VERDICT_BLOCK


def rule_based_loss_score(
    snapshot: TokenMarketSnapshot,
    now: datetime,
    config: Optional[Dict[str, Any]] = None,
) -> Tuple[float, List[str]]:
    """
    Deterministic loss score from concrete red flags.

    Each flag adds a fixed penalty; unknown inputs (no lock info, no pair
    creation time) add nothing.
    """
    config = config or {}
    penalties = config.get("penalties", {})
    score = 0.0
    flags: List[str] = []

    if snapshot.liquidity_locked is False:
        score += penalties.get("unlocked_liquidity", 30)
        flags.append("unlocked_liquidity")

    if snapshot.liquidity_usd < config.get("low_liquidity_usd", 5000):
        score += penalties.get("low_liquidity", 25)
        flags.append(f"low_liquidity(${snapshot.liquidity_usd:,.0f})")

    if snapshot.price_change_1h > config.get("spike_1h_pct", 100):
        score += penalties.get("spike_1h", 20)
        flags.append(f"spike_1h({snapshot.price_change_1h:+.0f}%)")

    age = snapshot.age_hours(now)
    if age is not None and age < config.get("young_token_hours", 1.0):
        score += penalties.get("young_token", 15)
        flags.append(f"young_token({age:.1f}h)")

    if snapshot.price_change_24h < 0:
        score += penalties.get("negative_24h", 10)
        flags.append(f"negative_24h({snapshot.price_change_24h:+.1f}%)")

    return score, flags


class LossProbabilityScreen:
    """
    Rug/scam/loss screen over a small advisor panel.

    - Every responder above ``extreme_threshold``: block.
    - Every responder above ``high_threshold`` (not all extreme): reduce to ``all_high_size_factor``.
    - Majority above ``high_threshold``: reduce to ``majority_high_size_factor``.
    - Nobody answered: the rule-based score is judged against the same thresholds.
    Reduced trades also get their stop-loss distance scaled by ``tightened_stop_factor``.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        estimator: Optional[Callable[[AdvisorContext], Awaitable[List[LossEstimate]]]] = None,
    ):
        config = config or {}
        self.config = config
        self.estimator = estimator
        self.extreme_threshold = float(config.get("extreme_threshold", 95))
        self.high_threshold = float(config.get("high_threshold", 70))
        self.majority_high_size_factor = float(config.get("majority_high_size_factor", 0.5))
        self.all_high_size_factor = float(config.get("all_high_size_factor", 0.25))
        self.tightened_stop_factor = float(config.get("tightened_stop_factor", 0.5))
        self.rules_config = config.get("rules", {})

    def _reduce(self, factor: float, **kwargs) -> LossScreenResult:
        return LossScreenResult(
            verdict=VERDICT_REDUCE,
            size_factor=factor,
            stop_loss_factor=self.tightened_stop_factor,
            threshold=self.high_threshold,
            **kwargs,
        )

    def assess(self, estimates: List[LossEstimate], snapshot: TokenMarketSnapshot, now: datetime) -> LossScreenResult:
        probabilities = [e.probability for e in estimates]

        if not probabilities:
            score, flags = rule_based_loss_score(snapshot, now, self.rules_config)
            if score > self.extreme_threshold:
                return LossScreenResult(
                    verdict=VERDICT_BLOCK, size_factor=0.0, source="rules", red_flags=flags,
                    reason=f"rule score {score:.0f} > {self.extreme_threshold:.0f}",
                    measured=score, threshold=self.extreme_threshold,
                )
            if score > self.high_threshold:
                return self._reduce(
                    self.majority_high_size_factor, source="rules", red_flags=flags,
                    reason=f"rule score {score:.0f} > {self.high_threshold:.0f}", measured=score,
                )
            return LossScreenResult(
                verdict=VERDICT_PASS, source="rules", red_flags=flags,
                reason=f"rule score {score:.0f} <= {self.high_threshold:.0f}", measured=score,
                threshold=self.high_threshold,
            )

        n = len(probabilities)
        worst = max(probabilities)
        extreme = sum(1 for p in probabilities if p > self.extreme_threshold)
        high = sum(1 for p in probabilities if p > self.high_threshold)

        if extreme == n:
            return LossScreenResult(
                verdict=VERDICT_BLOCK, size_factor=0.0, probabilities=probabilities,
                reason=f"all {n} loss estimates > {self.extreme_threshold:.0f}% (min {min(probabilities):.0f}%)",
                measured=min(probabilities), threshold=self.extreme_threshold,
            )
        if high == n:
            return self._reduce(
                self.all_high_size_factor, probabilities=probabilities,
                reason=f"all {n} loss estimates > {self.high_threshold:.0f}%", measured=worst,
            )
        if high * 2 > n:
            return self._reduce(
                self.majority_high_size_factor, probabilities=probabilities,
                reason=f"{high}/{n} loss estimates > {self.high_threshold:.0f}%", measured=worst,
            )
        return LossScreenResult(
            verdict=VERDICT_PASS, probabilities=probabilities,
            reason=f"{high}/{n} loss estimates > {self.high_threshold:.0f}%", measured=worst,
            threshold=self.high_threshold,
        )

    async def screen(self, ctx: AdvisorContext, snapshot: TokenMarketSnapshot, now: datetime) -> LossScreenResult:
        estimates: List[LossEstimate] = []
        if self.estimator is not None:
            estimates = await self.estimator(ctx)
        result = self.assess(estimates, snapshot, now)
        if result.verdict == VERDICT_BLOCK:
            logger.warning(
                "Loss screen BLOCK %s: %s (source=%s flags=%s)",
                snapshot.symbol, result.reason, result.source, result.red_flags,
            )
        elif result.verdict == VERDICT_REDUCE:
            logger.warning(
                "Loss screen REDUCE %s to %.0f%% size: %s (source=%s)",
                snapshot.symbol, result.size_factor * 100, result.reason, result.source,
            )
        return result


@dataclass
class DrawdownStatus:
    blocked: bool
    drawdown_pct: float
    peak_value: float
    current_value: float
    paused: bool
    bypassed: bool = False
    changed: bool = False
    reason: str = ""


class DrawdownGuard:
    """
    Pause/resume hysteresis on portfolio drawdown from peak.

    Pauses when value drops more than ``pause_pct`` below peak, resumes once
    it recovers to within ``resume_pct``. Between the two the previous state
    holds. The peak and paused flag live on BotConfig so they survive restarts.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.pause_pct = float(config.get("pause_pct", 20.0))
        self.resume_pct = float(config.get("resume_pct", 10.0))
        if self.resume_pct >= self.pause_pct:
            raise ValueError("drawdown resume_pct must be smaller than pause_pct")

    def evaluate(self, bot_config: BotConfig, current_value: float) -> DrawdownStatus:
        if current_value > bot_config.portfolio_peak_value:
            bot_config.portfolio_peak_value = current_value

        peak = bot_config.portfolio_peak_value
        ratio = current_value / peak if peak > 0 else 1.0
        drawdown_pct = (ratio - 1.0) * 100.0
        was_paused = bot_config.drawdown_paused

        if was_paused and ratio >= 1.0 - self.resume_pct / 100.0 - _EPS:
            bot_config.drawdown_paused = False
            logger.warning(
                "Drawdown RESUME %s: value %.4f is %.2f%% from peak %.4f (resume threshold -%.0f%%)",
                bot_config.wallet, current_value, drawdown_pct, peak, self.resume_pct,
            )
        elif not was_paused and ratio < 1.0 - self.pause_pct / 100.0 - _EPS:
            bot_config.drawdown_paused = True
            logger.warning(
                "Drawdown PAUSE %s: value %.4f is %.2f%% from peak %.4f (pause threshold -%.0f%%)",
                bot_config.wallet, current_value, drawdown_pct, peak, self.pause_pct,
            )

        paused = bot_config.drawdown_paused
        bypassed = paused and bot_config.drawdown_bypass
        if paused:
            reason = (
                f"drawdown {drawdown_pct:.2f}% from peak {peak:.4f}; "
                f"paused until within -{self.resume_pct:.0f}%"
            )
        else:
            reason = f"drawdown {drawdown_pct:.2f}% within limits"

        return DrawdownStatus(
            blocked=paused and not bypassed,
            drawdown_pct=drawdown_pct,
            peak_value=peak,
            current_value=current_value,
            paused=paused,
            bypassed=bypassed,
            changed=paused != was_paused,
            reason=reason,
        )


class RiskGate:
    """Combines the drawdown guard and the loss screen into one pass/fail."""

    def __init__(self, drawdown_guard: DrawdownGuard, loss_screen: LossProbabilityScreen):
        self.drawdown_guard = drawdown_guard
        self.loss_screen = loss_screen

    def check(self, drawdown: DrawdownStatus, loss: Optional[LossScreenResult]) -> RiskCheckResult:
        if drawdown.blocked:
            return RiskCheckResult(
                approved=False,
                reason=drawdown.reason,
                violated_checks=["drawdown"],
                measured=drawdown.drawdown_pct,
                threshold=-self.drawdown_guard.pause_pct,
            )
        if loss is None:
            return RiskCheckResult(approved=True)
        if loss.blocked:
            return RiskCheckResult(
                approved=False,
                reason=f"loss screen: {loss.reason}",
                violated_checks=["loss_probability"],
                measured=loss.measured,
                threshold=loss.threshold,
            )
        return RiskCheckResult(
            approved=True,
            reason=loss.reason if loss.verdict == VERDICT_REDUCE else None,
            size_factor=loss.size_factor,
            stop_loss_factor=loss.stop_loss_factor,
        )
