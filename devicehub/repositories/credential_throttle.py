"""Failed-login tracking keyed by account identity rather than source address."""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from time import monotonic
from typing import AsyncContextManager, AsyncIterator, Callable, Dict

import structlog

from ..domain.rate_limits import CredentialThrottleStatus

logger = structlog.get_logger(__name__)


class CredentialThrottleRepository(ABC):
    """Interface for the per-identity authentication failure store."""

    @abstractmethod
    async def status(self, identity: str) -> CredentialThrottleStatus:
        """Return whether the identity is currently locked out."""

    @abstractmethod
    async def record_failure(self, identity: str) -> None:
        """Count one failed authentication for the identity."""

    @abstractmethod
    async def reset(self, identity: str) -> None:
        """Forget every recorded failure for the identity."""

    @abstractmethod
    def attempt(self, identity: str) -> AsyncContextManager[None]:
        """Hold exclusive use of the identity for one login attempt.

        The status check, the password check and the resulting failure record
        or reset all run inside it, one attempt per identity at a time.
        """

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired records and return how many were removed."""


@dataclass
class _FailureRecord:
    failures: int
    first_failure: float


class InMemoryCredentialThrottleRepository(CredentialThrottleRepository):
    def __init__(
        self,
        *,
        max_failures: int,
        window_seconds: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._clock = clock
        self._records: Dict[str, _FailureRecord] = {}
        self._lock = asyncio.Lock()
        self._attempt_locks: Dict[str, asyncio.Lock] = {}
        self._attempt_holders: Counter[str] = Counter()

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def _expired(self, record: _FailureRecord, now: float) -> bool:
        return now - record.first_failure >= self._window_seconds

    async def status(self, identity: str) -> CredentialThrottleStatus:
        if not identity:
            return CredentialThrottleStatus(blocked=False)
        async with self._lock:
            record = self._records.get(identity)
            if record is None:
                return CredentialThrottleStatus(blocked=False)
            now = self._clock()
            if self._expired(record, now):
                del self._records[identity]
                return CredentialThrottleStatus(blocked=False)
            if record.failures >= self._max_failures:
                elapsed = now - record.first_failure
                return CredentialThrottleStatus(
                    blocked=True,
                    retry_after_seconds=max(math.ceil(self._window_seconds - elapsed), 1),
                )
            return CredentialThrottleStatus(blocked=False)

    async def record_failure(self, identity: str) -> None:
        if not identity:
            return
        async with self._lock:
            now = self._clock()
            record = self._records.get(identity)
            if record is None or self._expired(record, now):
                self._records[identity] = _FailureRecord(failures=1, first_failure=now)
                return
            record.failures += 1
            if record.failures == self._max_failures:
                logger.warning("auth.credential_throttle.locked", failures=record.failures)

    @asynccontextmanager
    async def attempt(self, identity: str) -> AsyncIterator[None]:
        if not identity:
            yield
            return
        lock = self._attempt_locks.setdefault(identity, asyncio.Lock())
        self._attempt_holders[identity] += 1
        try:
            async with lock:
                yield
        finally:
            self._attempt_holders[identity] -= 1
            if self._attempt_holders[identity] <= 0:
                del self._attempt_holders[identity]
                self._attempt_locks.pop(identity, None)

    async def reset(self, identity: str) -> None:
        async with self._lock:
            self._records.pop(identity, None)

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [key for key, record in self._records.items() if self._expired(record, now)]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug("credential_throttle.sweep", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
