"""Pluggable cache for semantic-similarity scores."""

import hashlib
import time
from collections import OrderedDict
from typing import Callable, Optional, Protocol, Tuple

from consensus_backend.config import SIMILARITY_CACHE_MAX_ENTRIES, SIMILARITY_CACHE_TTL_SECONDS

CACHE_KEY_LENGTH = 64


def similarity_cache_key(text1: str, text2: str) -> str:
    """Order-independent key for a text pair."""
    joined = "|||".join(sorted([text1, text2]))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


class SimilarityCache(Protocol):
    ttl_seconds: float

    def get(self, key: str) -> Optional[float]:
        ...

    def set(self, key: str, value: float) -> None:
        ...


class InMemoryTTLCache:
    """Process-local LRU cache; entries older than ``ttl_seconds`` are evicted on read."""

    def __init__(
        self,
        ttl_seconds: float = SIMILARITY_CACHE_TTL_SECONDS,
        max_entries: int = SIMILARITY_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, float]]" = OrderedDict()

    def get(self, key: str) -> Optional[float]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: float) -> None:
        self._entries[key] = (value, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class NullCache:
    """Never stores anything."""

    ttl_seconds = 0.0

    def get(self, key: str) -> Optional[float]:
        return None

    def set(self, key: str, value: float) -> None:
        return None
