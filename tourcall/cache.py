"""In-memory response cache with per-entry TTL.

Each consumer owns (or is handed) its own instance; there is no module-level
cache. Entries carry a hit counter and the least-hit entry is evicted when
the cache is full.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    stored_at: float
    hits: int = 0


class ResponseCache:
    def __init__(
        self,
        ttl_sec: float = 2 * 60 * 60,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_sec = float(ttl_sec)
        self.max_entries = int(max_entries)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, ttl: Optional[float] = None) -> Any:
        """Return the cached value, or None when absent or expired.

        `ttl` overrides the instance TTL for this lookup only; 0 disables
        caching for the lookup.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        max_age = self.ttl_sec if ttl is None else float(ttl)
        if self._clock() - entry.stored_at > max_age or max_age <= 0:
            del self._entries[key]
            self._misses += 1
            return None

        entry.hits += 1
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_least_used()
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [k for k in self._entries if k.startswith(prefix)]
        for k in keys:
            del self._entries[k]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def cleanup(self) -> int:
        """Drop every entry older than the instance TTL."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at > self.ttl_sec]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("cache cleanup removed=%s remaining=%s", len(expired), len(self._entries))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._entries), "hits": self._hits, "misses": self._misses}

    def get_or_create(self, key: str, factory: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        value = self.get(key, ttl)
        if value is not None:
            return value
        value = factory()
        if value is not None:
            self.set(key, value)
        return value

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        value = self.get(key, ttl)
        if value is not None:
            return value
        value = await fetch()
        if value is not None:
            self.set(key, value)
        return value

    def _evict_least_used(self) -> None:
        if not self._entries:
            return
        key = min(self._entries, key=lambda k: self._entries[k].hits)
        del self._entries[key]
        logger.debug("cache evicted key=%s", key)
