"""
Advisor schemas and data structures.

Defines the contract between the consensus engine and individual advisors.
Advisor output is clamped on construction so downstream voting never sees
out-of-range confidence or unknown actions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

Action = Literal["BUY", "SELL", "HOLD"]
ACTIONS = ("BUY", "SELL", "HOLD")

RiskLabel = Literal["low", "medium", "high", "extreme"]
RISK_ORDER = {"low": 0, "medium": 1, "high": 2, "extreme": 3}

ContextKind = Literal["candidate", "position"]


@dataclass
class AdvisorContext:
    """Everything an advisor sees for one call."""
    kind: ContextKind
    token_id: str
    symbol: str
    market: Dict[str, Any]                      # snapshot fields as plain values
    position: Optional[Dict[str, Any]] = None   # position fields when kind == "position"
    strategy: Optional[Dict[str, Any]] = None


@dataclass
class AdvisorOpinion:
    """One advisor's answer, normalized."""
    action: Action
    confidence: float               # 0.0-1.0
    reasoning: str = ""
    potential_upside_pct: float = 0.0
    risk_level: RiskLabel = "medium"

    def __post_init__(self):
        action = str(self.action).upper()
        self.action = action if action in ACTIONS else "HOLD"
        confidence = float(self.confidence)
        # Some models answer on a 0-100 scale
        if confidence > 1.0:
            confidence = confidence / 100.0
        self.confidence = max(0.0, min(1.0, confidence))
        risk = str(self.risk_level).lower()
        self.risk_level = risk if risk in RISK_ORDER else "medium"
        self.potential_upside_pct = float(self.potential_upside_pct or 0.0)


@dataclass
class ConsensusVote:
    """A successful advisor opinion tagged with its provider and weight."""
    provider: str
    weight: float
    opinion: AdvisorOpinion

    @property
    def action(self) -> str:
        return self.opinion.action

    @property
    def confidence(self) -> float:
        return self.opinion.confidence


ConsensusStatus = Literal["consensus", "no_supermajority", "insufficient_quorum"]


@dataclass
class ConsensusResult:
    """Aggregated decision from the advisor panel."""
    action: Action
    confidence: float
    status: ConsensusStatus
    reasoning: str = ""
    potential_upside_pct: float = 0.0
    risk_level: RiskLabel = "medium"
    vote_shares: Dict[str, float] = field(default_factory=dict)
    votes: List[ConsensusVote] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def quorum_met(self) -> bool:
        return self.status != "insufficient_quorum"

    @property
    def responders(self) -> int:
        return len(self.votes)

    def summary(self) -> str:
        shares = ", ".join(f"{a}={s:.2f}" for a, s in sorted(self.vote_shares.items()))
        return (
            f"{self.action} conf={self.confidence:.2f} status={self.status} "
            f"votes={self.responders} shares[{shares}]"
        )


@dataclass
class LossEstimate:
    """One loss-screen panelist's rug/scam/loss probability."""
    provider: str
    probability: float              # 0-100
    reasoning: str = ""

    def __post_init__(self):
        self.probability = max(0.0, min(100.0, float(self.probability)))
