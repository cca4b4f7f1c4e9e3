"""
Token-discovery cache, adaptive advisor-analysis cache and fingerprint table.

All three sit on injected TTLStore instances. The analysis cache invalidates
entries early when price or position profit has moved past a threshold; the
fingerprint table skips re-analysis of an open position altogether while it
is effectively unchanged and was looked at recently.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ai.schemas import ConsensusResult
from infra.ttl_store import TTLStore

from .models import TokenMarketSnapshot

logger = logging.getLogger(__name__)


def _pct_move(old: float, new: float) -> float:
    if old == 0:
        return 0.0 if new == 0 else float("inf")
    return abs(new - old) / abs(old) * 100.0


class TokenDiscoveryCache:
    """Discovery results keyed by the canonical JSON of the filter set."""

    def __init__(self, store: TTLStore, ttl_seconds: float = 900.0):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(filters: Dict[str, Any]) -> str:
        return json.dumps(filters, sort_keys=True, default=str)

    def get(self, filters: Dict[str, Any]) -> Optional[List[TokenMarketSnapshot]]:
        return self.store.get(self.key(filters))

    def put(self, filters: Dict[str, Any], tokens: List[TokenMarketSnapshot]) -> None:
        self.store.set(self.key(filters), list(tokens), ttl=self.ttl_seconds)

    async def get_or_fetch(
        self,
        filters: Dict[str, Any],
        fetch: Callable[[Dict[str, Any]], Awaitable[List[TokenMarketSnapshot]]],
    ) -> List[TokenMarketSnapshot]:
        cached = self.get(filters)
        if cached is not None:
            self.hits += 1
            logger.debug("Token cache hit (%d tokens)", len(cached))
            return cached
        self.misses += 1
        tokens = await fetch(filters)
        self.put(filters, tokens)
        logger.info("Token cache refreshed: %d tokens", len(tokens))
        return tokens


@dataclass
class CachedAnalysis:
    result: ConsensusResult
    price: float
    profit_pct: Optional[float] = None


class AnalysisCache:
    """
    Consensus results keyed by token, with adaptive invalidation.

    An entry is served only while it is younger than ``max_age_seconds``,
    price has moved no more than ``price_move_pct`` and profit has moved no
    more than ``profit_move_pct`` percentage points since it was produced.
    """

    def __init__(
        self,
        store: TTLStore,
        max_age_seconds: float = 1800.0,
        price_move_pct: float = 5.0,
        profit_move_pct: float = 5.0,
    ):
        self.store = store
        self.max_age_seconds = max_age_seconds
        self.price_move_pct = price_move_pct
        self.profit_move_pct = profit_move_pct

    def get(self, key: str, price: float, profit_pct: Optional[float] = None) -> Optional[ConsensusResult]:
        cached: Optional[CachedAnalysis] = self.store.get(key)
        if cached is None:
            return None

        moved = _pct_move(cached.price, price)
        if moved > self.price_move_pct:
            logger.debug("Analysis cache %s invalidated: price moved %.2f%%", key, moved)
            self.store.pop(key)
            return None

        if profit_pct is not None and cached.profit_pct is not None:
            drift = abs(profit_pct - cached.profit_pct)
            if drift > self.profit_move_pct:
                logger.debug("Analysis cache %s invalidated: profit moved %.2f pts", key, drift)
                self.store.pop(key)
                return None

        return cached.result

    def put(self, key: str, result: ConsensusResult, price: float, profit_pct: Optional[float] = None) -> None:
        self.store.set(key, CachedAnalysis(result=result, price=price, profit_pct=profit_pct), ttl=self.max_age_seconds)

    def peek(self, key: str) -> Optional[ConsensusResult]:
        """Last result for ``key`` without the move checks."""
        cached: Optional[CachedAnalysis] = self.store.get(key)
        return cached.result if cached is not None else None

    def drop(self, key: str) -> None:
        self.store.pop(key)


@dataclass
class Fingerprint:
    price: float
    profit_pct: float
    analyzed_at: float


class FingerprintTable:
    """Suppresses position re-analysis while price and profit are flat and the last look is recent."""

    def __init__(
        self,
        store: TTLStore,
        price_move_pct: float = 2.0,
        profit_move_pct: float = 2.0,
        min_interval_seconds: float = 900.0,
    ):
        self.store = store
        self.price_move_pct = price_move_pct
        self.profit_move_pct = profit_move_pct
        self.min_interval_seconds = min_interval_seconds
        self.suppressed = 0

    def should_reanalyze(self, key: str, price: float, profit_pct: float) -> bool:
        fp: Optional[Fingerprint] = self.store.get(key)
        if fp is None:
            return True
        elapsed = self.store.now() - fp.analyzed_at
        flat = (
            _pct_move(fp.price, price) < self.price_move_pct
            and abs(profit_pct - fp.profit_pct) < self.profit_move_pct
        )
        if flat and elapsed < self.min_interval_seconds:
            self.suppressed += 1
            return False
        return True

    def record(self, key: str, price: float, profit_pct: float) -> None:
        self.store.set(key, Fingerprint(price=price, profit_pct=profit_pct, analyzed_at=self.store.now()))

    def forget(self, key: str) -> None:
        self.store.pop(key)
