from __future__ import annotations
import threading
from typing import Dict

from prometheus_client import Counter

# ---------------------------------------------------------------------------
# Prometheus counters (process-wide, scraped by the gateway's /metrics)
# ---------------------------------------------------------------------------
NETWORK_CALLS = Counter(
    "sportsfeed_network_calls_total",
    "Successful HTTP calls issued to the sports API",
    ["namespace"],
)
CACHE_HITS = Counter(
    "sportsfeed_cache_hits_total",
    "Executions answered from the response cache",
    ["namespace"],
)
RATE_LIMITED = Counter(
    "sportsfeed_rate_limited_total",
    "Executions refused by the local limiter or an HTTP 429",
    ["namespace", "source"],
)
FAILURES = Counter(
    "sportsfeed_failures_total",
    "Executions that ended in a transport or remote error",
    ["namespace", "kind"],
)


class CallCounters:
    """
    Per-executor call counters, read-only to the host via snapshot().

    Kept apart from the transport so the transport stays stateless; every
    increment happens under one lock.
    """

    def __init__(self, namespace: str) -> None:
        self.namespace = namespace
        self._lock = threading.Lock()
        self._network_calls = 0
        self._cache_hits = 0
        self._rate_limited = 0
        self._failures = 0

    def record_network_call(self) -> None:
        with self._lock:
            self._network_calls += 1
        NETWORK_CALLS.labels(namespace=self.namespace).inc()

    def record_cache_hit(self) -> None:
        with self._lock:
            self._cache_hits += 1
        CACHE_HITS.labels(namespace=self.namespace).inc()

    def record_rate_limited(self, source: str) -> None:
        with self._lock:
            self._rate_limited += 1
        RATE_LIMITED.labels(namespace=self.namespace, source=source).inc()

    def record_failure(self, kind: str) -> None:
        with self._lock:
            self._failures += 1
        FAILURES.labels(namespace=self.namespace, kind=kind).inc()

    @property
    def network_calls(self) -> int:
        with self._lock:
            return self._network_calls

    @property
    def cache_hits(self) -> int:
        with self._lock:
            return self._cache_hits

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "network_calls": self._network_calls,
                "cache_hits": self._cache_hits,
                "total_requests": self._network_calls + self._cache_hits,
                "rate_limited": self._rate_limited,
                "failures": self._failures,
            }
