"""
Deterministic stand-ins for market data, swaps, advisors and the clock.

Used by the unit tests and by the lifecycle tests that run whole scan and
monitor passes without any network access.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from ai.advisor import ROLE_CONSENSUS, ROLE_LOSS_SCREEN, Advisor, AdvisorRegistry
from ai.model_client import MockClient
from ai.schemas import AdvisorOpinion, ConsensusResult, ConsensusVote
from core.exceptions import CriticalDataUnavailable
from core.execution import SwapResult
from core.models import Position, Strategy, TokenMarketSnapshot, TradeMode

START = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime = START):
        self._now = start
        self._mono = 1000.0

    def __call__(self) -> datetime:
        return self._now

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self._now += delta
        self._mono += delta.total_seconds()


class FakeMarket:
    """MarketDataProvider over in-memory prices and snapshots."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.snapshots: Dict[str, TokenMarketSnapshot] = {}
        self.discover_calls = 0
        self.price_calls = 0
        self.fail_prices = False

    def add(self, snapshot: TokenMarketSnapshot) -> TokenMarketSnapshot:
        self.snapshots[snapshot.token_id] = snapshot
        self.prices[snapshot.token_id] = snapshot.price_native
        return snapshot

    async def discover(self, filters: Dict[str, Any]) -> List[TokenMarketSnapshot]:
        self.discover_calls += 1
        return list(self.snapshots.values())

    async def price_of(self, token_id: str) -> Optional[float]:
        prices = await self.batch_price_of([token_id])
        return prices.get(token_id)

    async def batch_price_of(self, token_ids: Iterable[str]) -> Dict[str, float]:
        self.price_calls += 1
        if self.fail_prices:
            raise CriticalDataUnavailable("fake_prices")
        return {t: self.prices[t] for t in token_ids if t in self.prices}

    async def snapshot_of(self, token_id: str) -> Optional[TokenMarketSnapshot]:
        return self.snapshots.get(token_id)


class ScriptedExecutor:
    """Swap executor that replays scripted errors, then fills at ``rate``."""

    def __init__(self, name: str = "scripted", errors: Optional[List[str]] = None, rate: float = 1.0):
        self.name = name
        self.errors = list(errors or [])
        self.rate = rate
        self.calls: List[Dict[str, Any]] = []

    async def swap(self, direction, token_id, amount, slippage_bps, wallet, signing_key=None) -> SwapResult:
        self.calls.append({"direction": direction, "token_id": token_id, "amount": amount, "wallet": wallet})
        if self.errors:
            return SwapResult(False, direction, token_id, amount, error=self.errors.pop(0), route=self.name)
        output = amount / self.rate if direction == "BUY" else amount * self.rate
        return SwapResult(True, direction, token_id, amount, output_amount=output, signature="sig", route=self.name)


class RecordingAudit:
    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    def log_decision(self, wallet, token, decision_type, reason, gate=None, measured=None, threshold=None, extra=None):
        self.entries.append({
            "wallet": wallet, "token": token, "type": decision_type, "reason": reason,
            "gate": gate, "measured": measured, "threshold": threshold, "extra": extra or {},
        })

    def types(self) -> List[str]:
        return [e["type"] for e in self.entries]

    def gates(self) -> List[Optional[str]]:
        return [e["gate"] for e in self.entries]


class RecordingEvents:
    def __init__(self):
        self.published: List[Dict[str, Any]] = []

    def publish(self, event_type, message, severity=None, context=None):
        self.published.append({"type": event_type, "message": message, "severity": severity, "context": context})

    def types(self) -> List[str]:
        return [e["type"] for e in self.published]


def make_snapshot(token_id: str = "TOKEN1", price: float = 0.001, **overrides) -> TokenMarketSnapshot:
    fields = dict(
        token_id=token_id,
        symbol=token_id[:6],
        name=f"{token_id} coin",
        price_usd=price * 150,
        price_native=price,
        price_change_1h=5.0,
        price_change_6h=10.0,
        price_change_24h=40.0,
        volume_24h_usd=120_000.0,
        volume_change_24h=60.0,
        liquidity_usd=60_000.0,
        market_cap_usd=600_000.0,
        buys_24h=400,
        sells_24h=350,
        pair_created_at=START - timedelta(days=3),
        liquidity_locked=True,
        organic_score=85.0,
        quality_score=75.0,
    )
    fields.update(overrides)
    return TokenMarketSnapshot(**fields)


def make_strategy(now: datetime = START, **overrides) -> Strategy:
    fields = dict(
        wallet="wallet1",
        sentiment="neutral",
        risk_level="conservative",
        confidence=60.0,
        min_confidence=60.0,
        min_potential_pct=0.0,
        min_liquidity_usd=20_000.0,
        min_volume_usd=25_000.0,
        min_organic_score=70.0,
        min_quality_score=60.0,
        min_transactions_24h=50,
        budget_per_trade=0.02,
        max_daily_trades=5,
        profit_target_multiplier=1.0,
        reasoning="test strategy",
        generated_at=now,
        valid_until=now + timedelta(hours=3),
    )
    fields.update(overrides)
    return Strategy(**fields)


def make_position(**overrides) -> Position:
    fields = dict(
        wallet="wallet1",
        token_id="TOKEN1",
        symbol="TOK",
        entry_price=1.0,
        sol_committed=1.0,
        token_quantity=1.0,
        entry_confidence=70.0,
        mode=TradeMode.SCALP,
        stop_loss_pct=3.0,
        profit_target_pct=3.0,
        max_hold_minutes=60,
        opened_at=START,
    )
    fields.update(overrides)
    return Position(**fields)


def make_consensus(
    action: str = "BUY",
    confidence: float = 0.8,
    status: str = "consensus",
    upside: float = 50.0,
) -> ConsensusResult:
    votes = [ConsensusVote(provider="a", weight=1.0, opinion=AdvisorOpinion(action=action, confidence=confidence))]
    return ConsensusResult(
        action=action,
        confidence=confidence,
        status=status,
        potential_upside_pct=upside,
        vote_shares={action: 1.0},
        votes=votes if status != "insufficient_quorum" else [],
    )


Response = Union[Dict[str, Any], Exception]


def make_registry(
    responses: List[Response],
    loss_screen: bool = False,
    clock=None,
    **registry_kwargs,
) -> AdvisorRegistry:
    """One mock advisor per response; an Exception response makes that advisor fail every call."""
    roles = (ROLE_CONSENSUS, ROLE_LOSS_SCREEN) if loss_screen else (ROLE_CONSENSUS,)
    advisors = []
    for i, response in enumerate(responses):
        name = f"advisor{i}"
        if isinstance(response, Exception):
            client = MockClient(error=response, provider=name)
        else:
            client = MockClient(fixed_response=response, provider=name)
        weight = response.get("_weight", 1.0) if isinstance(response, dict) else 1.0
        advisors.append(Advisor(name=name, client=client, weight=weight, roles=roles, timeout_s=1.0))
    if clock is not None:
        registry_kwargs["clock"] = clock
    return AdvisorRegistry(advisors, **registry_kwargs)
