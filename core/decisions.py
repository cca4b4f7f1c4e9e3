"""
Tagged decision types returned by the pure planning functions.

The lifecycle manager pattern-matches on these and performs the I/O; the
planners never touch the network.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Union

from .models import Position
from .sizing import ModeProfile


@dataclass(frozen=True)
class Skip:
    """No trade. Carries the gate, measured value and threshold for the audit log."""
    reason: str
    gate: str = ""
    measured: Optional[float] = None
    threshold: Optional[float] = None

    def describe(self) -> str:
        if self.measured is None or self.threshold is None:
            return f"[{self.gate}] {self.reason}" if self.gate else self.reason
        return f"[{self.gate}] {self.reason} (measured={self.measured:.4g}, threshold={self.threshold:.4g})"


@dataclass(frozen=True)
class Buy:
    """Open a new position."""
    size: float
    profile: ModeProfile
    stop_loss_pct: float
    profit_target_pct: float
    confidence: float               # 0-1
    size_note: str = ""


@dataclass(frozen=True)
class AddToPosition:
    """Rebuy on a dip or accumulate into a loser under very high conviction."""
    kind: Literal["rebuy", "accumulate"]
    size: float
    confidence: float               # 0-1
    profit_pct: float


@dataclass(frozen=True)
class RotationPlan:
    sell: Position
    expected_proceeds: float
    score: float
    reason: str
    emergency: bool = False
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Rotate:
    """Sell a weaker holding first, then buy the candidate."""
    token_id: str
    plan: RotationPlan
    profile: ModeProfile
    required: float
    confidence: float


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    reason: str = ""
    detail: str = ""
    held_back: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


HOLD_POSITION = ExitDecision(should_exit=False)

EntryDecision = Union[Buy, AddToPosition, Rotate, Skip]
