"""
Portfolio valuation, concentration and deployable-capital limits.

Holdings are priced with one batched lookup per analysis. Values are in SOL.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import Position

logger = logging.getLogger(__name__)


@dataclass
class Holding:
    token_id: str
    symbol: str
    quantity: float
    price: Optional[float]
    value: float
    pct_of_total: float = 0.0


@dataclass
class PortfolioSnapshot:
    wallet: str
    sol_balance: float
    holdings: Dict[str, Holding] = field(default_factory=dict)
    total_value: float = 0.0
    deployed_value: float = 0.0
    largest_position_pct: float = 0.0
    hhi: float = 0.0
    diversification_score: float = 0.0
    reserve: float = 0.0
    deployable_cap: float = 0.0
    unpriced: List[str] = field(default_factory=list)

    def holding_value(self, token_id: str) -> float:
        holding = self.holdings.get(token_id)
        return holding.value if holding else 0.0

    def price_of(self, token_id: str) -> Optional[float]:
        holding = self.holdings.get(token_id)
        return holding.price if holding else None


def herfindahl(values: List[float]) -> float:
    total = sum(values)
    if total <= 0:
        return 0.0
    return sum((v / total) ** 2 for v in values)


class PortfolioAnalyzer:
    """
    Values a wallet and answers "how much can this trade be".

    Reserve: ``reserve_base + total x reserve_pct``, clamped to
    [reserve_base, reserve_max]. Deployable capital: ``deployable_pct`` of
    total value. Single-position ceiling: ``concentration_cap_pct`` of total.
    """

    def __init__(self, market_data, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.market_data = market_data
        self.deployable_pct = float(config.get("deployable_pct", 90.0))
        self.concentration_cap_pct = float(config.get("concentration_cap_pct", 25.0))
        reserve = config.get("reserve", {})
        self.reserve_base = float(reserve.get("base_sol", 0.01))
        self.reserve_pct = float(reserve.get("pct_of_portfolio", 1.0))
        self.reserve_max = float(reserve.get("max_sol", 0.1))

    async def analyze(self, wallet: str, positions: List[Position], sol_balance: float) -> PortfolioSnapshot:
        open_positions = [p for p in positions if p.is_open]
        prices = await self.market_data.batch_price_of([p.token_id for p in open_positions]) if open_positions else {}
        return self.build_snapshot(wallet, open_positions, sol_balance, prices)

    def build_snapshot(
        self,
        wallet: str,
        positions: List[Position],
        sol_balance: float,
        prices: Dict[str, float],
    ) -> PortfolioSnapshot:
        snapshot = PortfolioSnapshot(wallet=wallet, sol_balance=sol_balance)
        for position in positions:
            price = prices.get(position.token_id)
            if price is None:
                snapshot.unpriced.append(position.token_id)
                value = 0.0
            else:
                value = position.value_at(price)
            snapshot.holdings[position.token_id] = Holding(
                token_id=position.token_id,
                symbol=position.symbol,
                quantity=position.token_quantity,
                price=price,
                value=value,
            )

        snapshot.deployed_value = sum(h.value for h in snapshot.holdings.values())
        snapshot.total_value = sol_balance + snapshot.deployed_value
        if snapshot.total_value > 0:
            for holding in snapshot.holdings.values():
                holding.pct_of_total = holding.value / snapshot.total_value * 100.0
        snapshot.largest_position_pct = max((h.pct_of_total for h in snapshot.holdings.values()), default=0.0)

        snapshot.hhi = herfindahl([h.value for h in snapshot.holdings.values()])
        snapshot.diversification_score = round((1.0 - snapshot.hhi) * 100.0, 2) if snapshot.holdings else 0.0
        snapshot.reserve = self.reserve_for(snapshot.total_value)
        snapshot.deployable_cap = snapshot.total_value * self.deployable_pct / 100.0

        if snapshot.unpriced:
            logger.warning("%s: no price for %s; valued at 0", wallet, ", ".join(snapshot.unpriced))
        return snapshot

    def reserve_for(self, total_value: float) -> float:
        reserve = self.reserve_base + total_value * self.reserve_pct / 100.0
        return max(self.reserve_base, min(self.reserve_max, reserve))

    def available_for_trade(self, snapshot: PortfolioSnapshot) -> float:
        """Free SOL after the reserve, limited by remaining deployable capital."""
        free = snapshot.sol_balance - snapshot.reserve
        deployable_left = snapshot.deployable_cap - snapshot.deployed_value
        return max(0.0, min(free, deployable_left))

    def concentration_headroom(self, snapshot: PortfolioSnapshot, token_id: str) -> float:
        ceiling = snapshot.total_value * self.concentration_cap_pct / 100.0
        return max(0.0, ceiling - snapshot.holding_value(token_id))

    def over_concentrated(self, snapshot: PortfolioSnapshot) -> Dict[str, float]:
        """Token -> SOL value above the concentration ceiling."""
        ceiling = snapshot.total_value * self.concentration_cap_pct / 100.0
        return {
            token_id: holding.value - ceiling
            for token_id, holding in snapshot.holdings.items()
            if holding.value > ceiling
        }
