"""Per-job in-process overlap guard.

The guard only stops a job from overlapping with its own previous run inside
this process. It does not coordinate between scheduler instances and is not
what keeps transitions at-most-once: that is the conditional status update in
``ListingRepository``. Skipping a tick merely avoids redundant queries.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, FrozenSet, Set

from loguru import logger


class RunGuard:
    """Tracks which job names are currently running."""

    def __init__(self) -> None:
        self._running: Set[str] = set()

    def try_acquire(self, job_name: str) -> bool:
        # Check and add happen without an await in between, so this is atomic on the event loop
        if job_name in self._running:
            return False
        self._running.add(job_name)
        return True

    def release(self, job_name: str) -> None:
        self._running.discard(job_name)

    def is_running(self, job_name: str) -> bool:
        return job_name in self._running

    @property
    def running(self) -> FrozenSet[str]:
        return frozenset(self._running)

    @asynccontextmanager
    async def hold(self, job_name: str) -> AsyncIterator[bool]:
        """Yield True when admitted; False when the previous run is still in progress."""

        admitted = self.try_acquire(job_name)
        if not admitted:
            logger.info("Previous run still in progress; skipping tick", job=job_name)
        try:
            yield admitted
        finally:
            if admitted:
                self.release(job_name)
