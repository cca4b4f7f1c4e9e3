"""
State Store: persistent positions, bot configs, strategies and the trade journal.

Single JSON document with atomic writes (temp file + os.replace). Every
mutation is written through immediately; reads come from the in-memory copy
loaded at first use.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from core.models import BotConfig, Position, Strategy, TradeJournalEntry

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "positions": {},            # wallet -> token -> open position
    "closed_positions": [],     # bounded history of closed/failed positions
    "bot_configs": {},          # wallet -> BotConfig
    "strategies": {},           # wallet -> list of strategies, newest last
    "journal": [],              # completed round trips
}


class PositionStore(Protocol):
    def get_open_positions(self, wallet: str) -> List[Position]: ...

    def get_position(self, wallet: str, token_id: str) -> Optional[Position]: ...

    def create_position(self, position: Position) -> None: ...

    def save_position(self, position: Position) -> None: ...

    def close_position(self, position: Position) -> None: ...

    def get_bot_config(self, wallet: str) -> Optional[BotConfig]: ...

    def save_bot_config(self, config: BotConfig) -> None: ...

    def enabled_configs(self) -> List[BotConfig]: ...

    def save_strategy(self, strategy: Strategy) -> None: ...

    def latest_strategy(self, wallet: str) -> Optional[Strategy]: ...

    def append_journal(self, entry: TradeJournalEntry) -> None: ...

    def journal(self, wallet: Optional[str] = None, since: Optional[datetime] = None) -> List[TradeJournalEntry]: ...


class JsonStateStore:
    """
    PositionStore backed by one JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - One open position per (wallet, token), keyed in the document
    - Bounded closed-position, strategy and event history
    """

    MAX_CLOSED_HISTORY = 500
    MAX_STRATEGIES_PER_WALLET = 20

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $STATE_FILE or data/.state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("STATE_FILE", "data/.state.json"))

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized StateStore at {self.state_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load state from file.

        Returns:
            State dict with defaults merged
        """
        if not self.state_file.exists():
            logger.debug("No state file found, using defaults")
            self._state = json.loads(json.dumps(DEFAULT_STATE))
            return self._state

        with open(self.state_file, "r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(f"State file {self.state_file} is not a JSON object")

        self._state = {**json.loads(json.dumps(DEFAULT_STATE)), **data}
        logger.debug("Loaded state from file")
        return self._state

    @property
    def state(self) -> Dict[str, Any]:
        if self._state is None:
            self.load()
        return self._state

    def save(self) -> None:
        """Write the in-memory state atomically."""
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.state_file.parent,
            prefix=".state_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(self.state, f, indent=2)
            os.replace(temp_path, self.state_file)
        except Exception as e:
            logger.error(f"Failed to save state: {e}")
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    # Positions

    def get_open_positions(self, wallet: str) -> List[Position]:
        return [Position.from_dict(d) for d in self.state["positions"].get(wallet, {}).values()]

    def get_position(self, wallet: str, token_id: str) -> Optional[Position]:
        data = self.state["positions"].get(wallet, {}).get(token_id)
        return Position.from_dict(data) if data else None

    def create_position(self, position: Position) -> None:
        if self.get_position(position.wallet, position.token_id) is not None:
            raise ValueError(f"{position.wallet} already holds an open position in {position.token_id}")
        self.save_position(position)

    def save_position(self, position: Position) -> None:
        if not position.is_open:
            raise ValueError(f"use close_position for {position.status.value} positions")
        self.state["positions"].setdefault(position.wallet, {})[position.token_id] = position.to_dict()
        self.save()

    def close_position(self, position: Position) -> None:
        """Drop from the open set and archive. Status must already be CLOSED or FAILED."""
        if position.is_open:
            raise ValueError(f"position {position.token_id} is still {position.status.value}")
        if position.closed_at is None:
            position.closed_at = datetime.now(timezone.utc)
        wallet_positions = self.state["positions"].get(position.wallet, {})
        wallet_positions.pop(position.token_id, None)
        if not wallet_positions:
            self.state["positions"].pop(position.wallet, None)

        history = self.state["closed_positions"]
        history.append(position.to_dict())
        if len(history) > self.MAX_CLOSED_HISTORY:
            self.state["closed_positions"] = history[-self.MAX_CLOSED_HISTORY:]
        self.save()

    def closed_positions(self, wallet: Optional[str] = None) -> List[Position]:
        return [
            Position.from_dict(d) for d in self.state["closed_positions"]
            if wallet is None or d.get("wallet") == wallet
        ]

    # Bot configs

    def get_bot_config(self, wallet: str) -> Optional[BotConfig]:
        data = self.state["bot_configs"].get(wallet)
        return BotConfig.from_dict(data) if data else None

    def save_bot_config(self, config: BotConfig) -> None:
        self.state["bot_configs"][config.wallet] = config.to_dict()
        self.save()

    def enabled_configs(self) -> List[BotConfig]:
        return [BotConfig.from_dict(d) for d in self.state["bot_configs"].values() if d.get("enabled")]

    def wallets_with_positions(self) -> List[str]:
        return [wallet for wallet, positions in self.state["positions"].items() if positions]

    # Strategies

    def save_strategy(self, strategy: Strategy) -> None:
        history = self.state["strategies"].setdefault(strategy.wallet, [])
        history.append(strategy.to_dict())
        if len(history) > self.MAX_STRATEGIES_PER_WALLET:
            self.state["strategies"][strategy.wallet] = history[-self.MAX_STRATEGIES_PER_WALLET:]
        self.save()

    def latest_strategy(self, wallet: str) -> Optional[Strategy]:
        history = self.state["strategies"].get(wallet) or []
        return Strategy.from_dict(history[-1]) if history else None

    # Journal

    def append_journal(self, entry: TradeJournalEntry) -> None:
        self.state["journal"].append(entry.to_dict())
        self.save()

    def journal(self, wallet: Optional[str] = None, since: Optional[datetime] = None) -> List[TradeJournalEntry]:
        entries = []
        for data in self.state["journal"]:
            if wallet is not None and data.get("wallet") != wallet:
                continue
            entry = TradeJournalEntry.from_dict(data)
            if since is not None and entry.closed_at < since:
                continue
            entries.append(entry)
        return entries

    # Housekeeping

    def purge_before(self, cutoff: datetime) -> int:
        """Drop closed positions and journal entries finished before ``cutoff``. Returns rows removed."""
        cutoff_iso = cutoff.isoformat()

        def _keep(rows: List[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
            return [r for r in rows if (r.get(key) or cutoff_iso) >= cutoff_iso]

        before = len(self.state["closed_positions"]) + len(self.state["journal"])
        self.state["closed_positions"] = _keep(self.state["closed_positions"], "closed_at")
        self.state["journal"] = _keep(self.state["journal"], "closed_at")
        removed = before - len(self.state["closed_positions"]) - len(self.state["journal"])
        if removed:
            self.save()
            logger.info("Purged %d records closed before %s", removed, cutoff_iso)
        return removed
