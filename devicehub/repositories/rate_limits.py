"""Fixed-window request counters keyed by scope and caller address.

The window resets abruptly at its boundary, so a caller can land up to
``2 * limit`` requests across two adjacent windows. In exchange each key costs
one small record and O(1) work per request.
"""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import monotonic
from typing import Callable, Dict, Tuple

import structlog

from ..domain.rate_limits import RateLimitStatus

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class RateLimitRepository(ABC):
    """Interface describing operations for tracking request quotas."""

    @abstractmethod
    async def hit(
        self,
        *,
        scope: str,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitStatus:
        """Record a request and return the latest quota status."""

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired windows and return how many were removed."""


@dataclass
class _Window:
    started_at: float
    count: int
    window_seconds: int


class InMemoryRateLimitRepository(RateLimitRepository):
    """Process-local fixed-window counters guarded by a single lock."""

    def __init__(self, clock: Clock = monotonic) -> None:
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = asyncio.Lock()

    async def hit(
        self,
        *,
        scope: str,
        key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitStatus:
        bucket_key = (scope, key)
        async with self._lock:
            now = self._clock()
            window = self._windows.get(bucket_key)
            if window is None or now - window.started_at >= window_seconds:
                self._windows[bucket_key] = _Window(
                    started_at=now, count=1, window_seconds=window_seconds
                )
                return RateLimitStatus(
                    allowed=True,
                    limit=limit,
                    remaining=max(limit - 1, 0),
                    retry_after_seconds=0,
                )

            if window.count >= limit:
                elapsed = now - window.started_at
                retry_after = max(math.ceil(window_seconds - elapsed), 1)
                return RateLimitStatus(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after_seconds=retry_after,
                )

            window.count += 1
            return RateLimitStatus(
                allowed=True,
                limit=limit,
                remaining=max(limit - window.count, 0),
                retry_after_seconds=0,
            )

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                bucket_key
                for bucket_key, window in self._windows.items()
                if now - window.started_at >= window.window_seconds
            ]
            for bucket_key in expired:
                del self._windows[bucket_key]
        if expired:
            logger.debug("rate_limit.sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
