"""
Audit Logger

Structured JSONL record of every trade decision: buys, adds, rotations,
exits and every skip with the gate that stopped it.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Each line carries:
    - wallet and token
    - decision type (BUY, ADD, ROTATE, EXIT, SKIP, BLOCKED, ...)
    - reason, gate, and the measured value against its threshold

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None, mode: str = "DRY_RUN"):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
            mode: Trading mode stamped on every record
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")
        self.mode = mode

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_decision(
        self,
        wallet: str,
        token: Optional[str],
        decision_type: str,
        reason: str,
        gate: Optional[str] = None,
        measured: Any = None,
        threshold: Any = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": self.mode,
            "wallet": wallet,
            "token": token,
            "decision": decision_type,
            "reason": reason,
            "gate": gate,
            "measured": measured,
            "threshold": threshold,
        }
        if extra:
            entry["extra"] = extra

        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")
            return

        logger.debug(f"Audited {decision_type} {token or '-'} for {wallet}: {reason}")

    def get_recent(self, n: int = 10) -> List[Dict[str, Any]]:
        """
        Get the N most recent decisions.

        Returns:
            List of decision records (most recent first)
        """
        if not self.audit_file.exists():
            return []

        with open(self.audit_file, "r", encoding="utf-8") as f:
            lines = f.readlines()

        records = []
        for line in lines[-n:]:
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue

        return list(reversed(records))
