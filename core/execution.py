"""
Swap execution: the executor contract, a primary/secondary router and two executors.

PaperSwapExecutor fills against live market prices and a PaperWallet.
HttpSwapExecutor hands the swap to an external signing service; building and
signing chain transactions happens there, not here.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Protocol

import requests

from .wallet import PaperWallet

logger = logging.getLogger(__name__)

Direction = Literal["BUY", "SELL"]

_UNSELLABLE_MARKERS = (
    "no liquidity",
    "no route",
    "could not find any route",
    "token account not found",
    "account not found",
    "insufficient token balance",
    "zero balance",
    "no pairs",
)


def is_unsellable_error(error: Optional[str]) -> bool:
    text = (error or "").lower()
    return any(marker in text for marker in _UNSELLABLE_MARKERS)


@dataclass
class SwapResult:
    """Result of a swap attempt"""
    success: bool
    direction: Direction
    token_id: str
    amount_in: float                    # SOL for BUY, tokens for SELL
    output_amount: Optional[float] = None  # tokens for BUY, SOL for SELL
    signature: Optional[str] = None
    error: Optional[str] = None
    route: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.success and not self.output_amount:
            self.success = False
            self.error = self.error or "zero output amount"

    @property
    def unsellable(self) -> bool:
        return not self.success and is_unsellable_error(self.error)


class SwapExecutor(Protocol):
    name: str

    async def swap(
        self,
        direction: Direction,
        token_id: str,
        amount: float,
        slippage_bps: int,
        wallet: str,
        signing_key: Any = None,
    ) -> SwapResult: ...


class SwapRouter:
    """Primary route, then the secondary route once. Never loops."""

    def __init__(self, primary: SwapExecutor, secondary: Optional[SwapExecutor] = None):
        self.primary = primary
        self.secondary = secondary

    async def swap(
        self,
        direction: Direction,
        token_id: str,
        amount: float,
        slippage_bps: int,
        wallet: str,
        signing_key: Any = None,
    ) -> SwapResult:
        result = await self.primary.swap(direction, token_id, amount, slippage_bps, wallet, signing_key)
        if result.success or self.secondary is None:
            return result

        logger.warning(
            "%s %s via %s failed (%s); trying %s once",
            direction, token_id, self.primary.name, result.error, self.secondary.name,
        )
        fallback = await self.secondary.swap(direction, token_id, amount, slippage_bps, wallet, signing_key)
        if not fallback.success:
            logger.error(
                "%s %s failed on both routes: %s / %s", direction, token_id, result.error, fallback.error,
            )
        return fallback


class PaperSwapExecutor:
    """Simulated fills at the current SOL price, less simulated slippage."""

    def __init__(self, market_data, wallet: PaperWallet, simulated_slippage_bps: float = 50.0, name: str = "paper"):
        self.market_data = market_data
        self.wallet = wallet
        self.simulated_slippage_bps = simulated_slippage_bps
        self.name = name

    async def swap(
        self,
        direction: Direction,
        token_id: str,
        amount: float,
        slippage_bps: int,
        wallet: str,
        signing_key: Any = None,
    ) -> SwapResult:
        logger.info(f"PAPER: Simulating {direction} {amount:.6f} of {token_id}")
        price = await self.market_data.price_of(token_id)
        if not price:
            return SwapResult(False, direction, token_id, amount, error="no pairs for token", route=self.name)

        slip = self.simulated_slippage_bps / 10_000.0
        holdings = self.wallet.tokens.setdefault(wallet, {})
        if direction == "BUY":
            if self.wallet.sol.get(wallet, 0.0) + 1e-12 < amount:
                return SwapResult(False, direction, token_id, amount, error="insufficient SOL balance", route=self.name)
            tokens = amount / (price * (1 + slip))
            self.wallet.sol[wallet] = self.wallet.sol.get(wallet, 0.0) - amount
            holdings[token_id] = holdings.get(token_id, 0.0) + tokens
            output = tokens
        else:
            held = holdings.get(token_id, 0.0)
            if held <= 0:
                return SwapResult(False, direction, token_id, amount, error="zero balance", route=self.name)
            amount = min(amount, held)
            output = amount * price * (1 - slip)
            holdings[token_id] = held - amount
            self.wallet.sol[wallet] = self.wallet.sol.get(wallet, 0.0) + output

        return SwapResult(
            success=True,
            direction=direction,
            token_id=token_id,
            amount_in=amount,
            output_amount=output,
            signature=f"paper_{uuid.uuid4().hex[:16]}",
            route=self.name,
        )


class HttpSwapExecutor:
    """Delegates swaps to a signing service over HTTP (one request per swap, no retries)."""

    def __init__(self, base_url: str, name: str = "http", timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(f"{self.base_url}/swap", json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            return {"success": False, "error": f"HTTP {response.status_code}: {response.text[:200]}"}
        return response.json()

    async def swap(
        self,
        direction: Direction,
        token_id: str,
        amount: float,
        slippage_bps: int,
        wallet: str,
        signing_key: Any = None,
    ) -> SwapResult:
        payload = {
            "direction": direction,
            "mint": token_id,
            "amount": amount,
            "slippageBps": slippage_bps,
            "wallet": wallet,
            "signingKey": signing_key,
        }
        try:
            data = await asyncio.to_thread(self._post, payload)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"{self.name} swap request failed: {e}")
            return SwapResult(False, direction, token_id, amount, error=str(e), route=self.name)

        return SwapResult(
            success=bool(data.get("success")),
            direction=direction,
            token_id=token_id,
            amount_in=amount,
            output_amount=data.get("outputAmount"),
            signature=data.get("signature"),
            error=data.get("error"),
            route=self.name,
        )
