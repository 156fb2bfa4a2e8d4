"""Simple metrics and telemetry for huddle.

This module provides:
- Message store operation timing
- Request timing (recorded by the HTTP middleware)
- Inbound event counts and outbound delivery success/failure
- A live connection gauge

Metrics are in-memory only and exposed through the /metrics endpoint.
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

# Store operations slower than this are logged
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
        """Convert to dictionary for JSON serialization."""
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class DeliveryStats:
    """Outbound sends to individual connections."""

    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"delivered": self.delivered, "failed": self.failed}


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    store_operations: dict[str, TimingStats] = field(
        default_factory=lambda: defaultdict(TimingStats)
    )
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    inbound_events: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    deliveries: dict[str, DeliveryStats] = field(default_factory=lambda: defaultdict(DeliveryStats))
    rejected: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    connections: int = 0
    _start_time: float = field(default_factory=time.time)

    def record_store_operation(self, operation: str, duration_ms: float) -> None:
        """Record a message store operation timing."""
        with self._lock:
            self.store_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        """Record a request timing."""
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def record_inbound(self, event: str) -> None:
        with self._lock:
            self.inbound_events[event] += 1

    def record_delivery(self, event: str, ok: bool) -> None:
        with self._lock:
            if ok:
                self.deliveries[event].delivered += 1
            else:
                self.deliveries[event].failed += 1

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self.rejected[code] += 1

    def connection_opened(self) -> None:
        with self._lock:
            self.connections += 1

    def connection_closed(self) -> None:
        with self._lock:
            self.connections = max(0, self.connections - 1)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "connections": self.connections,
                "store_operations": {k: v.to_dict() for k, v in self.store_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "inbound_events": dict(self.inbound_events),
                "deliveries": {k: v.to_dict() for k, v in self.deliveries.items()},
                "rejected": dict(self.rejected),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.store_operations.clear()
            self.request_stats.clear()
            self.inbound_events.clear()
            self.deliveries.clear()
            self.rejected.clear()
            self.connections = 0
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_store_operation(operation: str):
    """Context manager to time a message store operation.

    Usage:
        with timed_store_operation("insert_message"):
            conn.execute(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_store_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow store operation: {operation} took {duration_ms:.1f}ms")


def timed_operation(operation_name: str) -> Callable[[F], F]:
    """Decorator to time a function and record it as a store operation.

    Usage:
        @timed_operation("list_room_messages")
        def list_room_messages(room: str) -> list[dict]:
            ...
    """

    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with timed_store_operation(operation_name):
                return func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
