"""Fire-and-forget event broadcasting to a webhook."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import socket
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional, Set

logger = logging.getLogger(__name__)


class EventSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["EventSeverity"] = None) -> "EventSeverity":
        if not value:
            return default or cls.INFO
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.INFO


@dataclass
class BroadcastConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: EventSeverity
    dry_run: bool
    timeout: float = 5.0
    dedupe_seconds: float = 60.0


class EventBroadcaster:
    """
    Publish trading events (trades, exits, alerts) to an external webhook.

    publish() never blocks the caller and never raises: delivery runs on a
    worker thread in a background task and failures are only logged.
    Identical events inside the dedupe window are suppressed.
    """

    MAX_RECENT = 200

    def __init__(self, config: BroadcastConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not config.webhook_url and not config.dry_run:
            logger.warning("Event broadcasting enabled but no webhook URL set; disabling")

        self._last_sent: Dict[str, float] = {}
        self._pending: Set[asyncio.Task] = set()
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=self.MAX_RECENT)
        self.delivery_failures = 0

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "EventBroadcaster":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "EVENT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = BroadcastConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=EventSeverity.from_string(raw_config.get("min_severity", "info")),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 60.0)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def publish(
        self,
        event_type: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = {"type": event_type, "severity": severity.name, "message": message, "context": context or {}}
        self.recent.append(event)

        if not self._enabled or severity.value < self._config.min_severity.value:
            return

        fingerprint = self._fingerprint(event_type, message)
        now = self._clock()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug("Event deduped: %s", event_type)
            return
        self._last_sent[fingerprint] = now

        if self._config.dry_run:
            logger.info("[EVENT:%s] %s - %s | %s", severity.name, event_type, message, context or {})
            return

        payload = self._build_payload(event)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._send(payload)
            return

        task = loop.create_task(asyncio.to_thread(self._send, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight deliveries (used at shutdown)."""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        if pending:
            logger.warning("%d event deliveries still pending at shutdown", len(pending))

    def _send(self, payload: Dict[str, Any]) -> None:
        request = urllib.request.Request(
            self._config.webhook_url,
            data=json.dumps(payload, default=str).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(request, timeout=self._config.timeout) as response:
                if response.status >= 400:
                    raise urllib.error.HTTPError(
                        self._config.webhook_url, response.status, "webhook rejected event", response.headers, None,
                    )
        except (urllib.error.URLError, urllib.error.HTTPError, socket.timeout, ValueError) as exc:
            self.delivery_failures += 1
            logger.error("Failed to deliver event '%s': %s", payload.get("type"), exc)

    @staticmethod
    def _fingerprint(event_type: str, message: str) -> str:
        return hashlib.sha256(f"{event_type}|{message}".encode("utf-8")).hexdigest()

    @staticmethod
    def _build_payload(event: Dict[str, Any]) -> Dict[str, Any]:
        line_items = [f"[{event['severity']}] {event['type']}", event["message"]]
        if event["context"]:
            line_items.append(f"context={json.dumps(event['context'], sort_keys=True, default=str)}")
        return {"type": event["type"], "text": " | ".join(filter(None, line_items))}


__all__ = ["EventBroadcaster", "EventSeverity", "BroadcastConfig"]
