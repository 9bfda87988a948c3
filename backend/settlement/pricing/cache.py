"""
TTL cache for spot prices.

Staleness is a pure function of (entry, now, ttl) so it can be tested
without touching the clock; the cache itself takes an injectable clock.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    value: V
    inserted_at: float


def is_stale(entry: CacheEntry, now: float, ttl: float) -> bool:
    return now - entry.inserted_at >= ttl


class TtlCache(Generic[V]):
    """String-keyed cache whose entries expire `ttl` seconds after insertion."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry[V]] = {}

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if is_stale(entry, self._clock(), self.ttl):
            del self._entries[key]
            return None
        return entry.value

    def put(self, key: str, value: V) -> None:
        self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def __len__(self) -> int:
        return len(self._entries)
