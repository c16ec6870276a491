"""In-process cache for hot per-user data (settings, daily stats, history).

Entries expire lazily on read; there is no background sweep. When the cache
is full the oldest inserted entry is dropped to make room.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .settings import CACHE_DEFAULT_TTL_MS, CACHE_MAX_SIZE

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class MemoryCache:
    def __init__(
        self,
        max_size: int = CACHE_MAX_SIZE,
        default_ttl_ms: float = CACHE_DEFAULT_TTL_MS,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = max_size
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        # dicts keep insertion order, so the first key is the oldest insert
        self._entries: dict[str, CacheEntry] = {}

    def set(self, key: str, value: Any, ttl_ms: float | None = None) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms

        if key not in self._entries and len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug("cache full (%d), evicted %s", self.max_size, oldest)

        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default

        if entry.is_expired(self._clock()):
            self._entries.pop(key, None)
            return default

        return entry.value

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISS) is not _MISS

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key starting with ``pattern`` minus its wildcard.

        ``"user:42:*"`` removes ``user:42:settings`` and ``user:42:daily:...``
        but not ``user:43:settings``.
        """
        prefix = pattern.replace("*", "", 1)
        doomed = [k for k in self._entries if k.startswith(prefix)]
        for k in doomed:
            del self._entries[k]
        if doomed:
            logger.debug("invalidated %d cache keys for %s", len(doomed), pattern)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


_MISS = object()


def user_settings_key(user_id: int | str) -> str:
    return f"user:{user_id}:settings"


def daily_stats_key(user_id: int | str, date: str) -> str:
    return f"user:{user_id}:daily:{date}"


def water_history_key(user_id: int | str) -> str:
    return f"user:{user_id}:history"


def invalidate_user_caches(cache: MemoryCache, user_id: int | str) -> int:
    return cache.invalidate_pattern(f"user:{user_id}:*")


def barcode_product_key(barcode: str) -> str:
    return f"barcode:{barcode}"
