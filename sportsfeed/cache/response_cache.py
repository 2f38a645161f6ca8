from __future__ import annotations
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


def canonicalize(params: Optional[Mapping[str, Any]]) -> str:
    """Deterministic text form of a parameter map: sorted keys, compact JSON."""
    return json.dumps(
        {str(k): str(v) for k, v in (params or {}).items()},
        sort_keys=True, separators=(",", ":"),
    )


@dataclass(frozen=True)
class CacheEntry:
    """Raw response body plus the time it was stored. Never mutated after insertion."""

    body: str
    fetched_at: float
    ttl_s: int

    def age_s(self, now: float) -> float:
        return now - self.fetched_at

    def is_expired(self, now: float) -> bool:
        return self.age_s(now) > self.ttl_s


class ResponseCache:
    """
    Process-local TTL cache for raw API response bodies.

    Key schema:
        sportsfeed:cache:{namespace}:{path}:{md5(canonical params)}

    A put always stores a brand-new CacheEntry; concurrent misses on the same
    key may both write, the last one wins (the bodies are equivalent).
    A ttl of 0 means "never cache": put is a no-op.

    Bounded by max_entries; the oldest insertion is evicted first.
    """

    KEY_PREFIX = "sportsfeed:cache"

    def __init__(
        self,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Key construction
    # ------------------------------------------------------------------

    def build_key(
        self, namespace: str, path: str, params: Optional[Mapping[str, Any]] = None
    ) -> str:
        digest = hashlib.md5(canonicalize(params).encode()).hexdigest()
        return f"{self.KEY_PREFIX}:{namespace}:{path}:{digest}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Return the cached body if present and not expired, else None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                logger.debug("Cache EXPIRED %s (age=%.1fs)", key, entry.age_s(now))
                return None

            self._hits += 1
            logger.debug("Cache HIT %s (age=%.1fs)", key, entry.age_s(now))
            return entry.body

    def put(self, key: str, body: str, ttl_s: int) -> None:
        """Store body under key for ttl_s seconds."""
        if ttl_s <= 0:
            return
        entry = CacheEntry(body=body, fetched_at=self._clock(), ttl_s=ttl_s)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache EVICT %s", evicted)
        logger.debug("Cache PUT %s (ttl=%ds, bytes=%d)", key, ttl_s, len(body))

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0
            return {
                "hits": self._hits,
                "misses": self._misses,
                "total_requests": total,
                "hit_rate_percent": round(hit_rate, 2),
                "entries": len(self._entries),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
