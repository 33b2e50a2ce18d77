"""
Asyncio helpers for the lifecycle jobs.

Provides the event loop setup used by the server and a bounded batch
processor that runs per-item coroutines with a fixed concurrency limit.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Tuple, TypeVar

from loguru import logger

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchMetrics:
    """Timing for one processed batch."""

    started: float = field(default_factory=time.perf_counter)
    finished: float = 0.0
    item_count: int = 0
    failed_count: int = 0

    @property
    def duration(self) -> float:
        end = self.finished or time.perf_counter()
        return end - self.started


class BoundedBatchProcessor:
    """
    Runs an async function over a batch with at most ``max_concurrent`` items in flight.

    With ``max_concurrent=1`` items are processed strictly one after another in
    input order. Exceptions escaping ``processor_func`` are collected per item
    and never abort the remaining items.
    """

    def __init__(self, max_concurrent: int = 1):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.last_metrics: BatchMetrics | None = None

    async def process_batch(
        self, items: Iterable[T], processor_func: Callable[[T], Awaitable[R]]
    ) -> Tuple[List[R], List[BaseException]]:
        items = list(items)
        metrics = BatchMetrics(item_count=len(items))
        results: List[R] = []
        exceptions: List[BaseException] = []

        if self.max_concurrent == 1:
            for item in items:
                try:
                    results.append(await processor_func(item))
                except Exception as exc:
                    exceptions.append(exc)
        else:
            semaphore = asyncio.Semaphore(self.max_concurrent)

            async def run_one(item: T) -> Any:
                async with semaphore:
                    return await processor_func(item)

            outcomes = await asyncio.gather(
                *(run_one(item) for item in items), return_exceptions=True
            )
            for outcome in outcomes:
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    exceptions.append(outcome)
                else:
                    results.append(outcome)

        metrics.finished = time.perf_counter()
        metrics.failed_count = len(exceptions)
        self.last_metrics = metrics
        logger.debug(
            "Batch processed",
            items=metrics.item_count,
            failed=metrics.failed_count,
            duration=round(metrics.duration, 3),
        )
        return results, exceptions


class EventLoopOptimizer:
    """
    Event loop optimization utilities.
    """

    @staticmethod
    def setup_uvloop() -> bool:
        """Install uvloop's event loop policy when available."""
        try:
            import uvloop

            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
            return True
        except ImportError:
            logger.info("uvloop not available, using default event loop")
            return False
