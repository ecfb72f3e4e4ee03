"""Per-job mutual exclusion for workflow operations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class JobLockRegistry:
    """
    Hands out one asyncio.Lock per job_id.

    Operations on the same job are serialized; operations on different jobs
    never wait on each other. A lock is dropped from the registry once no
    caller holds or waits for it, so the registry does not grow with the
    number of jobs ever touched.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        """Hold the lock for job_id for the duration of the block."""
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        self._holders[job_id] = self._holders.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[job_id] - 1
            if remaining == 0:
                del self._holders[job_id]
                del self._locks[job_id]
            else:
                self._holders[job_id] = remaining

    def is_locked(self, job_id: str) -> bool:
        lock = self._locks.get(job_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
