"""
Mode selection and trade sizing.

Consensus confidence picks a trade mode by band; inside a band every mode
parameter is interpolated linearly between the values configured for the
band's lower and upper edge.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .models import TradeMode

logger = logging.getLogger(__name__)

DEFAULT_MODES: Dict[str, Dict[str, Any]] = {
    "SCALP": {
        "min_confidence": 0.52,
        "max_confidence": 0.78,
        "size_pct": [3.0, 6.0],
        "profit_target_pct": [3.0, 6.0],
        "stop_loss_pct": [3.0, 4.0],
        "max_hold_minutes": [30, 60],
        "min_profit_for_ai_sell_pct": 1.0,
    },
    "QUICK_2X": {
        "min_confidence": 0.78,
        "max_confidence": 0.88,
        "size_pct": [6.0, 9.0],
        "profit_target_pct": [25.0, 100.0],
        "stop_loss_pct": [8.0, 10.0],
        "max_hold_minutes": [240, 480],
        "min_profit_for_ai_sell_pct": 3.0,
    },
    "SWING": {
        "min_confidence": 0.88,
        "max_confidence": 1.0,
        "size_pct": [9.0, 12.0],
        "profit_target_pct": [50.0, 150.0],
        "stop_loss_pct": [12.0, 15.0],
        "max_hold_minutes": [1440, 4320],
        "min_profit_for_ai_sell_pct": 8.0,
    },
}


def _lerp(bounds: Sequence[float], t: float) -> float:
    if not isinstance(bounds, (list, tuple)):
        return float(bounds)
    low, high = float(bounds[0]), float(bounds[-1])
    return low + (high - low) * t


@dataclass
class ModeProfile:
    mode: TradeMode
    confidence: float
    size_pct: float
    profit_target_pct: float
    stop_loss_pct: float
    max_hold_minutes: float
    min_profit_for_ai_sell_pct: float


@dataclass
class TradeSize:
    amount: float                   # SOL, 0 means no trade
    binding_cap: str                # which cap set the amount
    requested: float
    floored: bool = False
    reason: str = ""

    @property
    def tradeable(self) -> bool:
        return self.amount > 0


class ModeSelector:
    """Maps consensus confidence (0-1) to a mode profile, or None below the lowest band."""

    def __init__(self, modes_config: Optional[Dict[str, Dict[str, Any]]] = None):
        modes_config = modes_config or DEFAULT_MODES
        self.bands: List[tuple] = sorted(
            ((TradeMode(name), cfg) for name, cfg in modes_config.items()),
            key=lambda item: item[1]["min_confidence"],
        )
        self.modes = {mode: cfg for mode, cfg in self.bands}

    @property
    def lowest_confidence(self) -> float:
        return self.bands[0][1]["min_confidence"]

    def select(self, confidence: float) -> Optional[ModeProfile]:
        for mode, cfg in reversed(self.bands):
            if confidence >= cfg["min_confidence"]:
                return self.profile(mode, confidence)
        return None

    def profile(self, mode: TradeMode, confidence: float) -> ModeProfile:
        cfg = self.modes[TradeMode(mode)]
        low, high = cfg["min_confidence"], cfg["max_confidence"]
        t = 0.0 if high <= low else max(0.0, min(1.0, (confidence - low) / (high - low)))
        return ModeProfile(
            mode=TradeMode(mode),
            confidence=confidence,
            size_pct=_lerp(cfg["size_pct"], t),
            profit_target_pct=_lerp(cfg["profit_target_pct"], t),
            stop_loss_pct=_lerp(cfg["stop_loss_pct"], t),
            max_hold_minutes=_lerp(cfg["max_hold_minutes"], t),
            min_profit_for_ai_sell_pct=float(cfg.get("min_profit_for_ai_sell_pct", 0.0)),
        )

    def min_profit_for_ai_sell(self, mode: TradeMode) -> float:
        return float(self.modes[TradeMode(mode)].get("min_profit_for_ai_sell_pct", 0.0))


def compute_trade_size(
    portfolio_value: float,
    size_pct: float,
    available_balance: float,
    concentration_headroom: float,
    min_trade: float,
    budget_remaining: Optional[float] = None,
) -> TradeSize:
    """
    Final size = min(portfolio_value x size_pct, available, concentration headroom[, budget]).

    A result under ``min_trade`` is bumped up to it when every cap still
    allows the minimum; otherwise the trade is dropped.
    """
    requested = max(0.0, portfolio_value * size_pct / 100.0)
    caps = {
        "mode_pct": requested,
        "available_balance": max(0.0, available_balance),
        "concentration_cap": max(0.0, concentration_headroom),
    }
    if budget_remaining is not None:
        caps["budget"] = max(0.0, budget_remaining)

    binding = min(caps, key=caps.get)
    amount = caps[binding]

    if amount >= min_trade:
        return TradeSize(amount=amount, binding_cap=binding, requested=requested)

    hard_caps = {k: v for k, v in caps.items() if k != "mode_pct"}
    tightest = min(hard_caps, key=hard_caps.get)
    if hard_caps[tightest] >= min_trade:
        return TradeSize(amount=min_trade, binding_cap="network_minimum", requested=requested, floored=True)

    return TradeSize(
        amount=0.0,
        binding_cap=tightest,
        requested=requested,
        reason=f"{tightest} {hard_caps[tightest]:.4f} SOL < minimum trade {min_trade:.4f} SOL",
    )
