"""
Strategy regeneration from the trade journal.

Recent win rate and average profit pick a market sentiment; the sentiment
selects a preset of thresholds, which is then nudged by how confident the
sentiment call is. Strategies are time-boxed and superseded, never edited.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from analytics.trade_journal import PerformanceSummary, summarize
from core.market_data import passes_discovery_filters
from core.models import Strategy, TokenMarketSnapshot

logger = logging.getLogger(__name__)

DEFAULT_PRESETS: Dict[str, Dict[str, Any]] = {
    "bullish": {
        "risk_level": "moderate", "min_confidence": 72, "max_daily_trades": 4,
        "profit_target_multiplier": 1.0, "budget_per_trade": 0.025, "min_volume_usd": 25000,
        "min_liquidity_usd": 20000, "min_organic_score": 80, "min_quality_score": 70,
        "min_transactions_24h": 50, "min_potential_pct": 35,
    },
    "bearish": {
        "risk_level": "conservative", "min_confidence": 85, "max_daily_trades": 1,
        "profit_target_multiplier": 0.3, "budget_per_trade": 0.015, "min_volume_usd": 60000,
        "min_liquidity_usd": 30000, "min_organic_score": 70, "min_quality_score": 60,
        "min_transactions_24h": 80, "min_potential_pct": 25,
    },
    "volatile": {
        "risk_level": "conservative", "min_confidence": 80, "max_daily_trades": 2,
        "profit_target_multiplier": 0.5, "budget_per_trade": 0.02, "min_volume_usd": 25000,
        "min_liquidity_usd": 20000, "min_organic_score": 70, "min_quality_score": 60,
        "min_transactions_24h": 50, "min_potential_pct": 35,
    },
    "neutral": {
        "risk_level": "conservative", "min_confidence": 75, "max_daily_trades": 3,
        "profit_target_multiplier": 0.8, "budget_per_trade": 0.02, "min_volume_usd": 25000,
        "min_liquidity_usd": 20000, "min_organic_score": 70, "min_quality_score": 60,
        "min_transactions_24h": 50, "min_potential_pct": 30,
    },
}


def classify_sentiment(summary: PerformanceSummary) -> Tuple[str, float]:
    """(sentiment, confidence 0-100) from recent performance."""
    if summary.win_rate > 60 and summary.avg_profit_pct > 20:
        return "bullish", 75.0
    if summary.win_rate < 40 or summary.avg_profit_pct < 0:
        return "bearish", 70.0
    if abs(summary.avg_profit_pct) > 30:
        return "volatile", 65.0
    return "neutral", 60.0


def adjust_for_confidence(params: Dict[str, Any], confidence: float) -> Dict[str, Any]:
    params = dict(params)
    if confidence >= 90:
        params["max_daily_trades"] = min(5, params["max_daily_trades"] + 2)
        params["min_confidence"] = max(70, params["min_confidence"] - 5)
        params["budget_per_trade"] = min(0.03, params["budget_per_trade"] * 1.25)
        params["profit_target_multiplier"] = params["profit_target_multiplier"] * 1.2
    elif confidence < 60:
        params["max_daily_trades"] = max(1, params["max_daily_trades"] - 2)
        params["min_confidence"] = min(90, params["min_confidence"] + 15)
        params["budget_per_trade"] = params["budget_per_trade"] * 0.5
        params["profit_target_multiplier"] = params["profit_target_multiplier"] * 0.6
    return params


class StrategyGenerator:
    def __init__(
        self,
        store,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        config = config or {}
        self.store = store
        self.clock = clock
        self.validity = timedelta(hours=float(config.get("validity_hours", 3)))
        self.lookback = timedelta(hours=float(config.get("lookback_hours", 24)))
        self.min_trades = int(config.get("min_trades_for_learning", 3))
        self.presets = {**DEFAULT_PRESETS, **config.get("presets", {})}

    def generate(self, wallet: str) -> Strategy:
        now = self.clock()
        summary = summarize(self.store.journal(wallet=wallet, since=now - self.lookback))

        if summary.total_trades < self.min_trades:
            sentiment, confidence = "neutral", 60.0
            reasoning = (
                f"Default conservative strategy: {summary.total_trades} recent trades "
                f"(< {self.min_trades} needed to learn)"
            )
        else:
            sentiment, confidence = classify_sentiment(summary)
            reasoning = f"{sentiment} from {summary.describe()}"

        params = adjust_for_confidence(self.presets[sentiment], confidence)
        strategy = Strategy(
            wallet=wallet,
            sentiment=sentiment,
            risk_level=params["risk_level"],
            confidence=confidence,
            min_confidence=float(params["min_confidence"]),
            min_potential_pct=float(params["min_potential_pct"]),
            min_liquidity_usd=float(params["min_liquidity_usd"]),
            min_volume_usd=float(params["min_volume_usd"]),
            min_organic_score=float(params["min_organic_score"]),
            min_quality_score=float(params["min_quality_score"]),
            min_transactions_24h=int(params["min_transactions_24h"]),
            budget_per_trade=float(params["budget_per_trade"]),
            max_daily_trades=int(params["max_daily_trades"]),
            profit_target_multiplier=float(params["profit_target_multiplier"]),
            reasoning=reasoning,
            generated_at=now,
            valid_until=now + self.validity,
        )
        logger.info(
            "Strategy for %s: %s (%.0f%%), min conf %.0f, %d trades/day. %s",
            wallet, sentiment, confidence, strategy.min_confidence, strategy.max_daily_trades, reasoning,
        )
        return strategy

    def ensure_fresh(self, wallet: str) -> Strategy:
        current = self.store.latest_strategy(wallet)
        if current is not None and current.is_valid(self.clock()):
            return current
        strategy = self.generate(wallet)
        self.store.save_strategy(strategy)
        return strategy


def strategy_filters(strategy: Strategy) -> Dict[str, Any]:
    return {
        "min_liquidity_usd": strategy.min_liquidity_usd,
        "min_volume_usd": strategy.min_volume_usd,
        "min_organic_score": strategy.min_organic_score,
        "min_quality_score": strategy.min_quality_score,
        "min_transactions_24h": strategy.min_transactions_24h,
    }


def select_quick_candidates(tokens: List[TokenMarketSnapshot], strategy: Strategy, limit: int = 2) -> List[TokenMarketSnapshot]:
    """Technical pre-filter for the fast scan: positive 1h and 24h momentum with enough volume and liquidity."""
    kept = [
        t for t in tokens
        if t.price_change_1h > 0
        and t.price_change_24h > 0
        and t.volume_24h_usd >= strategy.min_volume_usd
        and t.liquidity_usd >= strategy.min_liquidity_usd
    ]
    kept.sort(key=lambda t: t.quality_score, reverse=True)
    return kept[:limit]


def select_deep_candidates(tokens: List[TokenMarketSnapshot], strategy: Strategy, limit: int = 10) -> List[TokenMarketSnapshot]:
    kept = [t for t in tokens if passes_discovery_filters(t, strategy_filters(strategy))]
    kept.sort(key=lambda t: t.quality_score, reverse=True)
    return kept[:limit]
