"""
Retry-with-backoff around datastore operations, plus the connectivity state
it maintains.

The datastore may be scaled to zero and take tens of seconds to accept
connections again, so every operation that touches it goes through
ResilientExecutor.execute() with a RetryPolicy chosen by the call site.

Retrying is only safe for idempotent operations. An insert whose response is
lost (e.g. a timeout after the row was committed) is retried like any other
transient failure and may be stored twice; that is accepted, not deduplicated.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Policy
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_delay: float
    max_delay: float
    label: str = "database operation"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")

    def delay_for(self, attempt: int) -> float:
        """
        Seconds to wait after failed attempt number `attempt` (1-based).
        """
        return min(self.initial_delay * 2 ** (attempt - 1), self.max_delay)

    def backoff_schedule(self) -> list[float]:
        return [self.delay_for(a) for a in range(1, self.max_attempts)]

    def worst_case_wait(self) -> float:
        return sum(self.backoff_schedule())


# -----------------------------------------------------------------------------
# Connectivity state
# -----------------------------------------------------------------------------
class ConnectivityState:
    """
    Last known reachability of the datastore.

    Advisory only: it lets health checks skip a round trip when the datastore
    answered a moment ago. Request paths never consult it.

    Only ResilientExecutor writes it (_mark_connected() / _mark_disconnected()); every
    other component gets this object through `executor.connectivity` and reads.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._connected = False
        self._last_checked_at: float | None = None

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def last_checked_at(self) -> float | None:
        with self._lock:
            return self._last_checked_at

    def is_likely_connected(self, max_age: float = 5.0) -> bool:
        with self._lock:
            if not self._connected or self._last_checked_at is None:
                return False
            return self._clock() - self._last_checked_at < max_age

    def _mark_connected(self) -> bool:
        """
        Returns True if this call flipped the state from disconnected.
        """
        with self._lock:
            was_connected = self._connected
            self._connected = True
            self._last_checked_at = self._clock()
        return not was_connected

    def _mark_disconnected(self) -> None:
        with self._lock:
            self._connected = False
            self._last_checked_at = self._clock()


# -----------------------------------------------------------------------------
# Executor
# -----------------------------------------------------------------------------
class ResilientExecutor:
    """
    Runs async operations with exponential backoff on transient failures.

    Holds no per-call state; concurrent execute() calls only share the
    connectivity state. The backoff wait only yields within the calling
    request's own event loop: under Flask each async view runs on a loop in
    its worker thread, so a waiting retry holds that thread. Other requests
    are served by the remaining worker threads (see gunicorn.conf.py).
    """

    def __init__(
        self,
        connectivity: ConnectivityState | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connectivity = connectivity or ConnectivityState()
        self._sleep = sleep

    @property
    def connectivity(self) -> ConnectivityState:
        return self._connectivity

    async def execute(self, operation: Callable[[], Awaitable[T]], policy: RetryPolicy) -> T:
        attempt = 1
        while True:
            try:
                result = await operation()
            except Exception as exc:
                if not is_retryable(exc):
                    raise

                self._connectivity._mark_disconnected()
                if attempt >= policy.max_attempts:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        policy.label, policy.max_attempts, exc,
                    )
                    raise

                delay = policy.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    policy.label, attempt, policy.max_attempts, delay, exc,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if self._connectivity._mark_connected():
                logger.info("Database connection established")
            return result
