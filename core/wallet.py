"""
Wallet/key access.

The engine only reads balances and obtains a signing capability per wallet.
Key storage and decryption belong to whatever ``key_provider`` is plugged in.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from .exceptions import CriticalDataUnavailable

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class WalletAccess(Protocol):
    async def balance_of(self, address: str) -> float: ...

    async def decrypted_key_for(self, wallet: str) -> Any: ...


class RpcWalletAccess:
    """SOL balances over Solana JSON-RPC ``getBalance``."""

    def __init__(
        self,
        rpc_url: str,
        key_provider: Optional[Callable[[str], Any]] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url
        self.key_provider = key_provider
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_balance(self, address: str) -> float:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getBalance", "params": [address]}
        response = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        body = response.json()
        if "error" in body:
            raise CriticalDataUnavailable(f"getBalance: {body['error']}")
        return body["result"]["value"] / LAMPORTS_PER_SOL

    async def balance_of(self, address: str) -> float:
        try:
            return await asyncio.to_thread(self._get_balance, address)
        except (requests.RequestException, KeyError, ValueError) as e:
            raise CriticalDataUnavailable("wallet_balance", e)

    async def decrypted_key_for(self, wallet: str) -> Any:
        if self.key_provider is None:
            raise CriticalDataUnavailable(f"no key provider configured for {wallet}")
        return await asyncio.to_thread(self.key_provider, wallet)


class PaperWallet:
    """In-memory SOL and token balances for PAPER mode."""

    def __init__(self, balances: Optional[Dict[str, float]] = None):
        self.sol: Dict[str, float] = dict(balances or {})
        self.tokens: Dict[str, Dict[str, float]] = {}

    async def balance_of(self, address: str) -> float:
        return self.sol.get(address, 0.0)

    async def decrypted_key_for(self, wallet: str) -> Any:
        return None

    def token_balance(self, address: str, token_id: str) -> float:
        return self.tokens.get(address, {}).get(token_id, 0.0)
