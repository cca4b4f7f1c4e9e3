"""
Keyed in-memory store with per-entry expiry.

Backs the token cache, analysis cache and fingerprint table. The clock is
injected so expiry is deterministic under test.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class TTLEntry(Generic[V]):
    value: V
    created_at: float
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def age(self, now: float) -> float:
        return now - self.created_at


class TTLStore(Generic[K, V]):
    """Map of key -> (value, created_at, expires_at). Expired entries read as missing."""

    def __init__(self, name: str, default_ttl: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[K, TTLEntry[V]] = {}

    def now(self) -> float:
        return self._clock()

    def set(self, key: K, value: V, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = TTLEntry(value=value, created_at=now, expires_at=None if ttl is None else now + ttl)

    def entry(self, key: K) -> Optional[TTLEntry[V]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        entry = self.entry(key)
        return default if entry is None else entry.value

    def pop(self, key: K) -> Optional[V]:
        entry = self._entries.pop(key, None)
        return None if entry is None else entry.value

    def __contains__(self, key: K) -> bool:
        return self.entry(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> Iterator[Tuple[K, V]]:
        now = self._clock()
        for key, entry in list(self._entries.items()):
            if not entry.expired(now):
                yield key, entry.value

    def evict_expired(self) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if e.expired(now)]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("%s: evicted %d expired entries", self.name, len(stale))
        return len(stale)

    def evict_older_than(self, max_age: float) -> int:
        now = self._clock()
        stale = [k for k, e in self._entries.items() if e.expired(now) or e.age(now) >= max_age]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
