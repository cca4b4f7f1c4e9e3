"""
Weighted supermajority consensus across the advisor panel.

Advisors are queried concurrently; each call is isolated so a failing vendor
only costs its own vote (and health). Fewer successful answers than the
quorum fails closed to HOLD with zero confidence.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import AdvisorError

from .advisor import ROLE_CONSENSUS, ROLE_LOSS_SCREEN, Advisor, AdvisorRegistry
from .schemas import (
    ACTIONS,
    RISK_ORDER,
    AdvisorContext,
    ConsensusResult,
    ConsensusVote,
    LossEstimate,
)

log = logging.getLogger(__name__)


def tally_votes(
    votes: List[ConsensusVote],
    supermajority: float,
    top_reasons: int = 3,
) -> ConsensusResult:
    """
    Combine successful votes into one result.

    An action wins only when its share of total weight reaches the
    supermajority; its confidence is the weight-averaged confidence of the
    votes for that action alone. Anything short of a supermajority is HOLD
    with zero confidence.
    """
    total_weight = sum(v.weight for v in votes)
    weight_by_action: Dict[str, float] = defaultdict(float)
    for vote in votes:
        weight_by_action[vote.action] += vote.weight

    shares = {
        action: (weight_by_action[action] / total_weight if total_weight > 0 else 0.0)
        for action in ACTIONS
    }
    risk = max((v.opinion.risk_level for v in votes), key=lambda r: RISK_ORDER[r], default="medium")

    winner = max(ACTIONS, key=lambda a: shares[a])
    # Compare with a small tolerance so 0.64 of total weight counts as 0.64
    if total_weight <= 0 or shares[winner] + 1e-9 < supermajority:
        return ConsensusResult(
            action="HOLD",
            confidence=0.0,
            status="no_supermajority",
            reasoning=f"No supermajority (best {winner} at {shares[winner]:.2f} < {supermajority:.2f})",
            risk_level=risk,
            vote_shares=shares,
            votes=list(votes),
        )

    winning = [v for v in votes if v.action == winner]
    winning_weight = sum(v.weight for v in winning)
    confidence = sum(v.weight * v.confidence for v in winning) / winning_weight
    upside = sum(v.weight * v.opinion.potential_upside_pct for v in winning) / winning_weight

    contributors = sorted(winning, key=lambda v: v.weight * v.confidence, reverse=True)[:top_reasons]
    reasoning = " | ".join(f"{v.provider}: {v.opinion.reasoning}" for v in contributors if v.opinion.reasoning)

    return ConsensusResult(
        action=winner,
        confidence=confidence,
        status="consensus",
        reasoning=reasoning,
        potential_upside_pct=upside,
        risk_level=risk,
        vote_shares=shares,
        votes=list(votes),
    )


class ConsensusEngine:
    """
    Query eligible advisors and aggregate their opinions.

    Serves both candidate scoring and open-position re-evaluation; the
    context's ``kind`` selects the prompt, the voting is identical.
    """

    def __init__(self, registry: AdvisorRegistry, config: Optional[Dict[str, Any]] = None, metrics=None):
        config = config or {}
        self.registry = registry
        self.quorum = int(config.get("quorum", 3))
        self.supermajority = float(config.get("supermajority", 0.64))
        self.top_reasons = int(config.get("top_reasons", 3))
        self.metrics = metrics

    async def _ask(self, advisor: Advisor, ctx: AdvisorContext) -> Tuple[Advisor, Optional[ConsensusVote], Optional[str]]:
        try:
            opinion = await advisor.advise(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, AdvisorError) else AdvisorError(advisor.name, str(exc), exc)
            self.registry.record_failure(advisor, error)
            return advisor, None, str(error)
        self.registry.record_success(advisor)
        return advisor, ConsensusVote(provider=advisor.name, weight=advisor.weight, opinion=opinion), None

    async def evaluate(self, ctx: AdvisorContext) -> ConsensusResult:
        panel = self.registry.eligible(ROLE_CONSENSUS)
        outcomes = await asyncio.gather(*(self._ask(a, ctx) for a in panel)) if panel else []

        votes = [vote for _, vote, _ in outcomes if vote is not None]
        failures = {advisor.name: err for advisor, _, err in outcomes if err is not None}

        if len(votes) < self.quorum:
            log.warning(
                "Consensus for %s (%s): insufficient quorum %d/%d (eligible=%d, failed=%d); failing closed to HOLD",
                ctx.symbol, ctx.kind, len(votes), self.quorum, len(panel), len(failures),
            )
            result = ConsensusResult(
                action="HOLD",
                confidence=0.0,
                status="insufficient_quorum",
                reasoning=f"Only {len(votes)} of {self.quorum} required advisors responded",
                votes=votes,
                failures=failures,
            )
        else:
            result = tally_votes(votes, self.supermajority, self.top_reasons)
            result.failures = failures
            log.info("Consensus for %s (%s): %s", ctx.symbol, ctx.kind, result.summary())

        if self.metrics:
            self.metrics.record_consensus(result.status, result.action)
            self.metrics.record_advisor_health(self.registry.snapshot())
        return result

    async def _estimate(self, advisor: Advisor, ctx: AdvisorContext) -> Optional[LossEstimate]:
        try:
            estimate = await advisor.estimate_loss_probability(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, AdvisorError) else AdvisorError(advisor.name, str(exc), exc)
            self.registry.record_failure(advisor, error)
            return None
        self.registry.record_success(advisor)
        return estimate

    async def estimate_loss(self, ctx: AdvisorContext) -> List[LossEstimate]:
        """Ask the loss-screen panel; returns only the estimates that came back."""
        panel = self.registry.eligible(ROLE_LOSS_SCREEN)
        if not panel:
            return []
        estimates = await asyncio.gather(*(self._estimate(a, ctx) for a in panel))
        return [e for e in estimates if e is not None]
