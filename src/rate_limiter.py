"""
RateLimiter: fixed-window request quota per client identity.

The first request from a client opens a window and schedules eviction of its
record; every later request in the window bumps the counter. When the window
elapses the record is dropped entirely and the next request starts from a
clean slate. Quotas live in memory only and are per process.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, MutableMapping

from config import RateLimitConfig
from logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class RateRecord:
    """Request count for one client in the current window."""
    count: int
    window_start: float


RateStore = MutableMapping[str, RateRecord]


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(RateLimitConfig(window_seconds=60, max_requests=10))
        if not limiter.admit(client_id):
            ...  # tell the client to retry later

    The store and clock are injectable so tests can inspect the table and
    move time forward without sleeping.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: RateStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.store: RateStore = store if store is not None else {}
        self._clock = clock

    def admit(self, client_id: str | None) -> bool:
        """
        Count a request from client_id and decide whether it may run.

        Returns:
            False if the client cannot be identified or is over quota.
        """
        if not client_id:
            return False

        now = self._clock()
        record = self.store.get(client_id)

        if record is None or now - record.window_start >= self.config.window_seconds:
            record = RateRecord(count=1, window_start=now)
            self.store[client_id] = record
            self._schedule_eviction(client_id, record)
        else:
            record.count += 1

        if record.count > self.config.max_requests:
            logger.warning("Rate limit exceeded for client: %s", client_id)
            return False
        return True

    def evict(self, client_id: str, record: RateRecord | None = None) -> None:
        """
        Drop the client's window.

        When record is given, only that exact record is removed, so a stale
        eviction never clears a window opened after it was scheduled.
        """
        current = self.store.get(client_id)
        if current is None:
            return
        if record is not None and current is not record:
            return
        del self.store[client_id]

    def _schedule_eviction(self, client_id: str, record: RateRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous caller): expiry is checked lazily in admit()
            return
        loop.call_later(self.config.window_seconds, self.evict, client_id, record)
