"""
Domain records shared across the engine.

Positions, per-wallet bot config, strategies, market snapshots and journal
entries. Everything persisted round-trips through ``to_dict``/``from_dict``
so the state store only ever sees plain JSON types.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TradeMode(str, Enum):
    SCALP = "SCALP"
    QUICK_2X = "QUICK_2X"
    SWING = "SWING"


class PositionStatus(str, Enum):
    SCOUTED = "SCOUTED"
    OPEN = "OPEN"
    EXITING = "EXITING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class TradeOutcome(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"
    LOST_TRACK = "LOST_TRACK"


MAX_REBUYS = 2


@dataclass
class Position:
    """One holding of a single token for one wallet."""
    wallet: str
    token_id: str
    symbol: str
    entry_price: float              # SOL per token
    sol_committed: float
    token_quantity: float
    entry_confidence: float         # 0-100, confidence at the latest buy
    mode: TradeMode = TradeMode.SCALP
    stop_loss_pct: float = 3.0
    profit_target_pct: float = 3.0
    max_hold_minutes: Optional[float] = None
    initial_sol: float = 0.0
    peak_profit_pct: float = 0.0
    peak_price: float = 0.0
    trailing_armed: bool = False
    trailing_floor: Optional[float] = None
    rebuy_count: int = 0
    low_confidence_count: int = 0
    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = field(default_factory=utc_now)
    closed_at: Optional[datetime] = None
    last_price: Optional[float] = None
    last_profit_pct: Optional[float] = None
    price_miss_count: int = 0
    sell_failures: int = 0
    exit_reason: Optional[str] = None

    def __post_init__(self):
        self.mode = TradeMode(self.mode)
        self.status = PositionStatus(self.status)
        if self.initial_sol <= 0:
            self.initial_sol = self.sol_committed
        if self.peak_price <= 0:
            self.peak_price = self.entry_price
        if not 0 <= self.rebuy_count <= MAX_REBUYS:
            raise ValueError(f"rebuy_count must be within 0..{MAX_REBUYS}, got {self.rebuy_count}")

    @property
    def is_open(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.EXITING)

    def profit_pct(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    def value_at(self, price: float) -> float:
        return self.token_quantity * price

    def hold_minutes(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 60.0

    def merge_buy(self, price: float, sol_amount: float, quantity: float, confidence: float) -> None:
        """
        Fold an additional buy into the position.

        Entry price becomes the quantity-weighted average of both fills and the
        recorded confidence moves to the new buy's confidence.
        """
        if self.rebuy_count >= MAX_REBUYS:
            raise ValueError(f"{self.token_id}: rebuy cap {MAX_REBUYS} reached")
        if quantity <= 0:
            raise ValueError("additional buy must receive a positive token quantity")

        total_qty = self.token_quantity + quantity
        self.entry_price = (self.token_quantity * self.entry_price + quantity * price) / total_qty
        self.token_quantity = total_qty
        self.sol_committed += sol_amount
        self.entry_confidence = confidence
        self.rebuy_count += 1
        self.low_confidence_count = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["status"] = self.status.value
        data["opened_at"] = _iso(self.opened_at)
        data["closed_at"] = _iso(self.closed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["opened_at"] = _parse_dt(kwargs.get("opened_at")) or utc_now()
        kwargs["closed_at"] = _parse_dt(kwargs.get("closed_at"))
        return cls(**kwargs)


@dataclass
class BotConfig:
    """Per-wallet toggle and budget state."""
    wallet: str
    enabled: bool = True
    total_budget: float = 0.0           # SOL; 0 disables the budget cap
    budget_used: float = 0.0
    max_trade_pct: float = 10.0         # per-trade cap, % of portfolio value
    fee_exempt: bool = False
    drawdown_bypass: bool = False
    portfolio_peak_value: float = 0.0
    drawdown_paused: bool = False
    trades_today: int = 0
    trades_date: Optional[str] = None

    @property
    def budget_remaining(self) -> Optional[float]:
        if self.total_budget <= 0:
            return None
        return max(0.0, self.total_budget - self.budget_used)

    def roll_trade_day(self, today: str) -> None:
        if self.trades_date != today:
            self.trades_date = today
            self.trades_today = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class Strategy:
    """Time-boxed threshold set. Superseded by newer strategies, never edited."""
    wallet: str
    sentiment: str                      # bullish | bearish | neutral | volatile
    risk_level: str                     # conservative | moderate | aggressive
    confidence: float                   # 0-100, confidence in the sentiment call
    min_confidence: float               # 0-100, minimum consensus confidence to buy
    min_potential_pct: float
    min_liquidity_usd: float
    min_volume_usd: float
    min_organic_score: float
    min_quality_score: float
    min_transactions_24h: int
    budget_per_trade: float
    max_daily_trades: int
    profit_target_multiplier: float
    reasoning: str
    generated_at: datetime
    valid_until: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["generated_at"] = _iso(self.generated_at)
        data["valid_until"] = _iso(self.valid_until)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Strategy":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["generated_at"] = _parse_dt(kwargs["generated_at"])
        kwargs["valid_until"] = _parse_dt(kwargs["valid_until"])
        return cls(**kwargs)


@dataclass
class TokenMarketSnapshot:
    """Ephemeral market view of one token. Cache-only, never persisted."""
    token_id: str
    symbol: str
    name: str = ""
    price_usd: float = 0.0
    price_native: float = 0.0           # SOL per token
    price_change_5m: float = 0.0
    price_change_1h: float = 0.0
    price_change_6h: float = 0.0
    price_change_24h: float = 0.0
    volume_24h_usd: float = 0.0
    volume_change_24h: float = 0.0
    liquidity_usd: float = 0.0
    market_cap_usd: float = 0.0
    buys_24h: int = 0
    sells_24h: int = 0
    pair_created_at: Optional[datetime] = None
    liquidity_locked: Optional[bool] = None
    organic_score: float = 0.0
    quality_score: float = 0.0

    @property
    def transactions_24h(self) -> int:
        return self.buys_24h + self.sells_24h

    def age_hours(self, now: datetime) -> Optional[float]:
        if self.pair_created_at is None:
            return None
        return (now - self.pair_created_at).total_seconds() / 3600.0


@dataclass(frozen=True)
class TradeJournalEntry:
    """Immutable record of one completed round trip."""
    wallet: str
    token_id: str
    symbol: str
    mode: str
    entry_price: float
    exit_price: Optional[float]
    sol_in: float
    sol_out: float
    profit_pct: float
    hold_minutes: float
    entry_confidence: float
    exit_reason: str
    outcome: TradeOutcome
    opened_at: datetime
    closed_at: datetime
    entry_snapshot: Dict[str, Any] = field(default_factory=dict)
    exit_snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = TradeOutcome(self.outcome).value
        data["opened_at"] = _iso(self.opened_at)
        data["closed_at"] = _iso(self.closed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeJournalEntry":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["outcome"] = TradeOutcome(kwargs["outcome"])
        kwargs["opened_at"] = _parse_dt(kwargs["opened_at"])
        kwargs["closed_at"] = _parse_dt(kwargs["closed_at"])
        return cls(**kwargs)
