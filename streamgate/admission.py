"""Admission control: per-client rate limiting plus a memory health gate.

Admission is synchronous and never awaits, so it cannot add queueing delay.
Only admitted requests are recorded in a client's window; a rejected request
does not eat into the budget of a client that is already being turned away.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

import psutil

from .errors import FetchError, Overloaded, RateLimited

logger = logging.getLogger(__name__)

_MB = 1024 ** 2


@dataclass(frozen=True)
class MemorySnapshot:
    rss_mb: float
    system_percent: float
    total_mb: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "rss_mb": round(self.rss_mb, 1),
            "system_percent": round(self.system_percent, 1),
            "total_mb": round(self.total_mb, 1),
        }


def psutil_probe() -> MemorySnapshot:
    """Resident memory of this process and overall system memory use."""
    vm = psutil.virtual_memory()
    return MemorySnapshot(
        rss_mb=psutil.Process().memory_info().rss / _MB,
        system_percent=vm.percent,
        total_mb=vm.total / _MB,
    )


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: Optional[FetchError] = None

    @classmethod
    def allow(cls) -> "Admission":
        return cls(allowed=True)


class SlidingWindowRateLimiter:
    """Per-client sliding window over (timestamp, cost) pairs."""

    def __init__(
        self,
        max_requests: int,
        window: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Deque[Tuple[float, int]]] = {}

    def _prune(self, entries: Deque[Tuple[float, int]], now: float) -> None:
        cutoff = now - self.window
        while entries and entries[0][0] <= cutoff:
            entries.popleft()

    def window_count(self, client_id: str) -> int:
        entries = self._windows.get(client_id)
        if not entries:
            return 0
        self._prune(entries, self._clock())
        return sum(cost for _, cost in entries)

    def check(self, client_id: str, cost: int = 1) -> Optional[float]:
        """Return seconds until the client may retry, or None if allowed."""
        entries = self._windows.get(client_id)
        if not entries:
            return None if cost <= self.max_requests else self.window
        now = self._clock()
        self._prune(entries, now)
        used = sum(c for _, c in entries)
        if used + cost <= self.max_requests:
            return None
        # Wait until enough of the oldest entries age out of the window.
        excess = used + cost - self.max_requests
        freed = 0
        for stamp, c in entries:
            freed += c
            if freed >= excess:
                return max(stamp + self.window - now, 0.0)
        return self.window

    def record(self, client_id: str, cost: int = 1) -> None:
        self._windows.setdefault(client_id, deque()).append((self._clock(), cost))

    def sweep(self) -> int:
        now = self._clock()
        empty = []
        for client_id, entries in self._windows.items():
            self._prune(entries, now)
            if not entries:
                empty.append(client_id)
        for client_id in empty:
            del self._windows[client_id]
        return len(empty)

    def __len__(self) -> int:
        return len(self._windows)


class HealthMonitor:
    def __init__(
        self,
        limit_mb: float,
        limit_percent: float,
        probe: Callable[[], MemorySnapshot] = psutil_probe,
    ) -> None:
        self.limit_mb = limit_mb
        self.limit_percent = limit_percent
        self._probe = probe

    def snapshot(self) -> MemorySnapshot:
        return self._probe()

    def overloaded(self, snapshot: Optional[MemorySnapshot] = None) -> Optional[str]:
        snapshot = snapshot or self.snapshot()
        if snapshot.rss_mb > self.limit_mb:
            return f"process memory {snapshot.rss_mb:.0f}MB exceeds {self.limit_mb:.0f}MB"
        if snapshot.system_percent > self.limit_percent:
            return f"system memory at {snapshot.system_percent:.0f}% exceeds {self.limit_percent:.0f}%"
        return None


class AdmissionController:
    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        health: HealthMonitor,
        overload_retry_after: float = 10.0,
    ) -> None:
        self.limiter = limiter
        self.health = health
        self.overload_retry_after = overload_retry_after

    def admit(self, client_id: str, estimated_cost: int = 1) -> Admission:
        retry_after = self.limiter.check(client_id, estimated_cost)
        if retry_after is not None:
            logger.info("Rate limited client %s", client_id)
            return Admission(
                allowed=False,
                reason=RateLimited(
                    f"Rate limit of {self.limiter.max_requests} requests per "
                    f"{self.limiter.window:.0f}s exceeded",
                    retry_after=retry_after,
                ),
            )
        problem = self.health.overloaded()
        if problem is not None:
            logger.warning("Rejecting client %s: %s", client_id, problem)
            return Admission(
                allowed=False,
                reason=Overloaded(retry_after=self.overload_retry_after, detail=problem),
            )
        self.limiter.record(client_id, estimated_cost)
        return Admission.allow()

    def sweep(self) -> int:
        return self.limiter.sweep()
