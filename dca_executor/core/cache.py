from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class TtlCache(Generic[V]):
    """Small keyed cache with a freshness window.

    Expired entries are kept so callers can fall back to the last known value
    when a refresh fails (see ``get_stale``).
    """

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: Dict[str, _Entry[V]] = {}

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry.stored_at > self.ttl_sec:
            return None
        return entry.value

    def get_stale(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def set(self, key: str, value: V) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()


__all__ = ["TtlCache"]
