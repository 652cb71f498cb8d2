"""
Processing Lock Manager

In-process table of content keys currently being transcribed. A second
request for a held key fails fast with AlreadyProcessingError (after an
optional bounded wait) instead of queuing.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from .errors import AlreadyProcessingError

logger = logging.getLogger(__name__)


class ProcessingLockManager:
    """
    Per-key mutual exclusion for pipeline runs.

    Only the key being acquired is touched; runs for different keys never
    contend. Locks are not shared across processes.
    """

    def __init__(self, wait_seconds: float = 0.0, poll_interval: float = 0.1):
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self._locks: Dict[str, float] = {}

    def try_acquire(self, key: str) -> bool:
        """Take the lock for key if it is free."""
        if key in self._locks:
            return False
        self._locks[key] = time.time()
        logger.info(f"Added processing lock for: {key}")
        return True

    async def acquire(self, key: str, wait_seconds: Optional[float] = None) -> None:
        """
        Acquire the lock for key.

        Args:
            key: Lock key
            wait_seconds: Bounded wait before giving up; defaults to the manager setting

        Raises:
            AlreadyProcessingError: if the key is still held after the wait
        """
        wait = self.wait_seconds if wait_seconds is None else wait_seconds
        deadline = time.monotonic() + max(0.0, wait)

        while not self.try_acquire(key):
            if time.monotonic() >= deadline:
                logger.warning(f"{key} is already being processed, rejecting duplicate request")
                raise AlreadyProcessingError(
                    f"Processing lock held for {key}",
                    context={'lock_key': key, 'held_since': self._locks.get(key)},
                )
            await asyncio.sleep(self.poll_interval)

    def release(self, key: str) -> None:
        if self._locks.pop(key, None) is not None:
            logger.info(f"Removed processing lock for: {key}")

    def is_locked(self, key: str) -> bool:
        return key in self._locks

    def active_locks(self) -> List[str]:
        return list(self._locks.keys())

    def clear_all(self) -> int:
        """Drop every lock (admin/debug use). Returns how many were held."""
        count = len(self._locks)
        self._locks.clear()
        logger.warning(f"Cleared {count} processing locks")
        return count

    @asynccontextmanager
    async def hold(self, key: str, wait_seconds: Optional[float] = None) -> AsyncIterator[str]:
        """Hold the lock for the duration of the block, releasing on every exit path."""
        await self.acquire(key, wait_seconds)
        try:
            yield key
        finally:
            self.release(key)
