from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Optional, Protocol, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class Cache(Protocol[K, V]):
    def get(self, key: K) -> Optional[V]: ...

    def set(self, key: K, value: V) -> None: ...

    def evict(self, key: K) -> None: ...


class TTLCache(Generic[K, V]):
    """Bounded LRU mapping whose entries expire ``ttl_seconds`` after being set."""

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._expire()
            return len(self._entries)

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self._ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def evict(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _expire(self) -> None:
        now = self._clock()
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            del self._entries[key]


class ConversationHistory:
    """Short-term per-thread turns used when persistent context is unavailable."""

    def __init__(self, cache: Cache[str, list[tuple[str, str]]], max_turns: int = 20) -> None:
        self._cache = cache
        self._max_turns = max_turns

    def remember(self, thread_id: str, role: str, text: str) -> None:
        if not text:
            return
        turns = list(self._cache.get(thread_id) or [])
        turns.append((role, text))
        self._cache.set(thread_id, turns[-self._max_turns :])

    def turns(self, thread_id: str) -> list[tuple[str, str]]:
        return list(self._cache.get(thread_id) or [])

    def merged_turns(self, thread_id: str) -> list[tuple[str, str]]:
        """Turns with consecutive same-role entries joined, for strictly alternating chat APIs."""
        merged: list[tuple[str, str]] = []
        for role, text in self.turns(thread_id):
            if merged and merged[-1][0] == role:
                merged[-1] = (role, f"{merged[-1][1]}\n{text}")
            else:
                merged.append((role, text))
        return merged

    def clear(self, thread_id: str) -> None:
        self._cache.evict(thread_id)
