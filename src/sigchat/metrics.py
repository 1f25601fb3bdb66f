"""Simple metrics and telemetry for sigchat.

This module provides:
- Request timing (HTTP middleware)
- Store operation timing
- Cache hit/miss tracking
- Relay event and connection counters

Everything lives in memory and is exposed via the /metrics endpoint.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from threading import Lock
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Record a timing measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class CacheStats:
    """Statistics for cache operations."""

    hits: int = 0
    misses: int = 0

    def record_hit(self) -> None:
        self.hits += 1

    def record_miss(self) -> None:
        self.misses += 1

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_pct": round(self.hit_rate, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    cache_stats: dict[str, CacheStats] = field(default_factory=lambda: defaultdict(CacheStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    relay_events: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    relay_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    connections: int = 0
    swept_messages: int = 0
    _start_time: float = field(default_factory=time.time)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self.db_operations[operation].record(duration_ms)

    def record_cache_hit(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].record_hit()

    def record_cache_miss(self, cache_name: str) -> None:
        with self._lock:
            self.cache_stats[cache_name].record_miss()

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def record_relay_event(self, event: str, failed: bool = False) -> None:
        """Count an inbound relay event, and whether its handler failed."""
        with self._lock:
            self.relay_events[event] += 1
            if failed:
                self.relay_errors[event] += 1

    def connection_opened(self) -> None:
        with self._lock:
            self.connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self.connections = max(0, self.connections - 1)

    def record_sweep(self, deleted: int) -> None:
        with self._lock:
            self.swept_messages += deleted

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "cache": {k: v.to_dict() for k, v in self.cache_stats.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "relay": {
                    "connections": self.connections,
                    "events": dict(self.relay_events),
                    "errors": dict(self.relay_errors),
                },
                "swept_messages": self.swept_messages,
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.db_operations.clear()
            self.cache_stats.clear()
            self.request_stats.clear()
            self.relay_events.clear()
            self.relay_errors.clear()
            self.connections = 0
            self.swept_messages = 0
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str):
    """Context manager to time a store operation.

    Usage:
        with timed_db_operation("sweep_expired"):
            cursor = conn.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator to time a function and record it as a store operation.

    Usage:
        @timed_operation("list_messages")
        def list_messages(room_id: int) -> list[dict]:
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with timed_db_operation(operation_name):
                return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
