"""
Market data provider: discovery, single and batched price lookups.

DexScreenerMarketData talks to the public DexScreener REST API with
``requests``; blocking calls run in worker threads so the event loop keeps
serving other jobs. Organic-volume and quality scores are computed here so
every consumer sees the same numbers.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

import requests

from .exceptions import CriticalDataUnavailable
from .models import TokenMarketSnapshot

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_FILTERS = {
    "min_organic_score": 40,
    "min_quality_score": 30,
    "min_liquidity_usd": 5000,
    "min_transactions_24h": 20,
    "limit": 35,
}

BATCH_LIMIT = 30


class MarketDataProvider(Protocol):
    async def discover(self, filters: Dict[str, Any]) -> List[TokenMarketSnapshot]: ...

    async def price_of(self, token_id: str) -> Optional[float]: ...

    async def batch_price_of(self, token_ids: Iterable[str]) -> Dict[str, float]: ...


def organic_volume_score(snapshot: TokenMarketSnapshot) -> float:
    """0-100; high means volume looks like real trading rather than wash or bot flow."""
    score = 100.0
    liquidity = snapshot.liquidity_usd
    volume = snapshot.volume_24h_usd
    txns = snapshot.transactions_24h

    if liquidity > 0:
        ratio = volume / liquidity
        if ratio > 15:
            score -= 30
        elif ratio > 10:
            score -= 15
        elif ratio < 0.3:
            score -= 20

    if txns > 0:
        avg_trade = volume / txns
        if avg_trade > 10000:
            score -= 25
        elif avg_trade > 5000:
            score -= 15
        elif avg_trade < 10:
            score -= 10
        else:
            score += 10

        buy_ratio = snapshot.buys_24h / txns
        if 0.4 < buy_ratio < 0.6:
            score += 15
        elif buy_ratio > 0.7 or buy_ratio < 0.3:
            score -= 20

    if abs(snapshot.price_change_1h) > 100 or abs(snapshot.price_change_24h) > 500:
        score -= 30
    elif 0 < snapshot.price_change_24h < 200:
        score += 10

    if liquidity < 3000:
        score -= 40
    elif liquidity < 10000:
        score -= 20
    elif liquidity > 100000:
        score += 15

    if liquidity > 0 and snapshot.market_cap_usd > 0:
        mcap_ratio = snapshot.market_cap_usd / liquidity
        if mcap_ratio > 50:
            score -= 25
        elif mcap_ratio > 30:
            score -= 10
        elif 3 <= mcap_ratio <= 20:
            score += 10

    return max(0.0, min(100.0, score))


def quality_score(snapshot: TokenMarketSnapshot, organic: float) -> float:
    """0-100 blend of organic score, momentum, volume growth and activity."""
    score = organic * 0.4

    h1, h6, h24 = snapshot.price_change_1h, snapshot.price_change_6h, snapshot.price_change_24h
    momentum = 0.0
    if h1 > 0 and h6 > 0 and h24 > 0:
        momentum = 30.0
    elif h1 > 0 and h24 > 0:
        momentum = 20.0
    elif h24 > 0:
        momentum = 10.0
    if h1 > h24 / 24:
        momentum += 10.0
    score += min(momentum, 30.0)

    if snapshot.volume_change_24h > 100:
        score += 20
    elif snapshot.volume_change_24h > 50:
        score += 15
    elif snapshot.volume_change_24h > 0:
        score += 10

    txns = snapshot.transactions_24h
    if txns > 1000:
        score += 10
    elif txns > 500:
        score += 7
    elif txns > 100:
        score += 5
    elif txns > 50:
        score += 3

    return min(100.0, score)


def passes_discovery_filters(snapshot: TokenMarketSnapshot, filters: Dict[str, Any]) -> bool:
    return (
        snapshot.organic_score >= filters.get("min_organic_score", 40)
        and snapshot.quality_score >= filters.get("min_quality_score", 30)
        and snapshot.liquidity_usd >= filters.get("min_liquidity_usd", 5000)
        and snapshot.transactions_24h >= filters.get("min_transactions_24h", 20)
        and snapshot.volume_24h_usd >= filters.get("min_volume_usd", 0)
    )


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def snapshot_from_pair(pair: Dict[str, Any]) -> TokenMarketSnapshot:
    base = pair.get("baseToken") or {}
    txns = (pair.get("txns") or {}).get("h24") or {}
    volume = pair.get("volume") or {}
    change = pair.get("priceChange") or {}
    liquidity = pair.get("liquidity") or {}
    created = pair.get("pairCreatedAt")

    snapshot = TokenMarketSnapshot(
        token_id=base.get("address", ""),
        symbol=base.get("symbol") or "UNKNOWN",
        name=base.get("name") or "Unknown",
        price_usd=_num(pair.get("priceUsd")),
        price_native=_num(pair.get("priceNative")),
        price_change_5m=_num(change.get("m5")),
        price_change_1h=_num(change.get("h1")),
        price_change_6h=_num(change.get("h6")),
        price_change_24h=_num(change.get("h24")),
        volume_24h_usd=_num(volume.get("h24")),
        volume_change_24h=_num(volume.get("h24ChangePercent")),
        liquidity_usd=_num(liquidity.get("usd")),
        market_cap_usd=_num(pair.get("fdv") or pair.get("marketCap")),
        buys_24h=int(_num(txns.get("buys"))),
        sells_24h=int(_num(txns.get("sells"))),
        pair_created_at=datetime.fromtimestamp(created / 1000, tz=timezone.utc) if created else None,
    )
    organic = organic_volume_score(snapshot)
    return replace(snapshot, organic_score=organic, quality_score=quality_score(snapshot, organic))


class DexScreenerMarketData:
    """MarketDataProvider backed by the DexScreener public API."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, session: Optional[requests.Session] = None):
        config = config or {}
        self.base_url = config.get("base_url", "https://api.dexscreener.com").rstrip("/")
        self.timeout = float(config.get("timeout_seconds", 10))
        self.search_queries = list(config.get("search_queries", ["pump", "raydium", "jupiter"]))
        self.chain_id = config.get("chain_id", "solana")
        self.quote_symbols = set(config.get("quote_symbols", ["SOL", "WSOL"]))
        self._semaphore = asyncio.Semaphore(int(config.get("max_concurrency", 4)))
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def _fetch(self, path: str) -> Dict[str, Any]:
        async with self._semaphore:
            return await asyncio.to_thread(self._get_json, path)

    async def _search_pairs(self) -> List[Dict[str, Any]]:
        results = await asyncio.gather(
            *(self._fetch(f"/latest/dex/search?q={q}") for q in self.search_queries),
            return_exceptions=True,
        )
        pairs: List[Dict[str, Any]] = []
        for query, result in zip(self.search_queries, results):
            if isinstance(result, Exception):
                logger.error("DexScreener search %r failed: %s", query, result)
                continue
            pairs.extend(result.get("pairs") or [])
        if not pairs and all(isinstance(r, Exception) for r in results):
            raise CriticalDataUnavailable("dexscreener_search", results[0] if results else None)
        return pairs

    async def discover(self, filters: Dict[str, Any]) -> List[TokenMarketSnapshot]:
        filters = {**DEFAULT_DISCOVERY_FILTERS, **(filters or {})}
        pairs = await self._search_pairs()

        seen = set()
        snapshots = []
        for pair in pairs:
            address = (pair.get("baseToken") or {}).get("address")
            if pair.get("chainId") != self.chain_id or not address or address in seen:
                continue
            seen.add(address)
            if _num((pair.get("volume") or {}).get("h24")) <= 0:
                continue
            snapshots.append(snapshot_from_pair(pair))

        kept = [s for s in snapshots if passes_discovery_filters(s, filters)]
        kept.sort(key=lambda s: s.quality_score, reverse=True)
        kept = kept[: int(filters.get("limit", 35))]
        logger.info(
            "Discovery: %d pairs -> %d unique -> %d after filters (organic>=%s quality>=%s)",
            len(pairs), len(snapshots), len(kept), filters["min_organic_score"], filters["min_quality_score"],
        )
        return kept

    def _best_pairs(self, pairs: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        best: Dict[str, Dict[str, Any]] = {}
        for pair in pairs:
            if pair.get("chainId") != self.chain_id:
                continue
            if (pair.get("quoteToken") or {}).get("symbol") not in self.quote_symbols:
                continue
            address = (pair.get("baseToken") or {}).get("address")
            if not address or _num(pair.get("priceNative")) <= 0:
                continue
            current = best.get(address)
            if current is None or _num((pair.get("liquidity") or {}).get("usd")) > _num((current.get("liquidity") or {}).get("usd")):
                best[address] = pair
        return best

    async def snapshot_of(self, token_id: str) -> Optional[TokenMarketSnapshot]:
        try:
            data = await self._fetch(f"/latest/dex/tokens/{token_id}")
        except (requests.RequestException, ValueError) as exc:
            raise CriticalDataUnavailable("dexscreener_snapshot", exc)
        pair = self._best_pairs(data.get("pairs") or []).get(token_id)
        return snapshot_from_pair(pair) if pair else None

    async def price_of(self, token_id: str) -> Optional[float]:
        prices = await self.batch_price_of([token_id])
        return prices.get(token_id)

    async def batch_price_of(self, token_ids: Iterable[str]) -> Dict[str, float]:
        """SOL price per token; tokens with no SOL-quoted pair are absent from the result."""
        ids = list(dict.fromkeys(token_ids))
        if not ids:
            return {}
        chunks = [ids[i:i + BATCH_LIMIT] for i in range(0, len(ids), BATCH_LIMIT)]
        results = await asyncio.gather(
            *(self._fetch(f"/latest/dex/tokens/{','.join(chunk)}") for chunk in chunks),
            return_exceptions=True,
        )
        prices: Dict[str, float] = {}
        for chunk, result in zip(chunks, results):
            if isinstance(result, Exception):
                # A missing price must mean "no market", never "request failed"
                raise CriticalDataUnavailable("dexscreener_prices", result)
            for address, pair in self._best_pairs(result.get("pairs") or []).items():
                prices[address] = _num(pair.get("priceNative"))
        return prices
