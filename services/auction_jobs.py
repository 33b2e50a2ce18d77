"""Lifecycle jobs: activate scheduled listings, end due auctions, purge old notifications."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, ClassVar, List, Optional

from loguru import logger
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import async_sessionmaker

from db import transaction
from db.models import Bid, Listing, ListingStatus
from events import AuctionUpdated
from repositories import ListingRepository, NotificationRepository
from services.event_bus import EventBus
from services.lifecycle import AuctionOutcome, Transition, resolve_outcome, transition_for
from services.notifications import NotificationDispatcher
from utils.asyncio_optimizations import BoundedBatchProcessor
from utils.error_handling import ErrorCategory, StructuredError, capture_exception

ACTIVATION_JOB = "activate-scheduled-listings"
ENDING_JOB = "end-active-auctions"
CLEANUP_JOB = "cleanup-old-notifications"

AUCTION_TRANSITIONS = Counter(
    "auction_transitions_total",
    "Committed listing status transitions",
    labelnames=["transition"],
)
AUCTION_TRANSITION_CONFLICTS = Counter(
    "auction_transition_conflicts_total",
    "Conditional updates that found the listing already moved on",
    labelnames=["job"],
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class JobRunResult:
    """Outcome of one job invocation."""

    job: str
    started_at: datetime
    status: str = "success"
    matched: int = 0
    transitioned: int = 0
    lost_races: int = 0
    failed: int = 0
    deleted: int = 0
    duration_seconds: float = 0.0
    message: Optional[str] = None
    errors: List[StructuredError] = field(default_factory=list)

    @classmethod
    def skipped(cls, job: str, started_at: datetime) -> "JobRunResult":
        return cls(
            job=job,
            started_at=started_at,
            status="skipped",
            message="Previous run still in progress",
        )

    @property
    def result_count(self) -> int:
        return self.transitioned + self.deleted

    def finish(self, started_perf: float) -> None:
        self.duration_seconds = time.perf_counter() - started_perf
        if self.status in {"error", "skipped"}:
            return
        if self.failed:
            self.status = "partial"
            self.message = f"{self.failed} of {self.matched} items failed"
        elif self.matched == 0:
            self.status = "noop"


class LifecycleJob:
    """Shared run loop: query due items, process each in isolation, summarise.

    A failing query aborts the run; nothing has been mutated at that point, so
    the next tick simply starts over.
    """

    name: ClassVar[str] = "lifecycle-job"

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        event_bus: Optional[EventBus] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        max_concurrency: int = 1,
    ) -> None:
        self._session_factory = session_factory
        self._event_bus = event_bus
        self._dispatcher = dispatcher
        self._clock = clock
        self._processor = BoundedBatchProcessor(max_concurrency)

    async def __call__(self) -> JobRunResult:
        return await self.run()

    async def run(self, now: Optional[datetime] = None) -> JobRunResult:
        now = now or self._clock()
        result = JobRunResult(job=self.name, started_at=now)
        started = time.perf_counter()
        try:
            await self._execute(now, result)
        except Exception as exc:
            result.status = "error"
            error = capture_exception(exc, operation=self.name, scope=ErrorCategory.RUN, job=self.name)
            result.errors.append(error)
            result.message = error.message[:512]
        result.finish(started)

        log = logger.debug if result.status == "noop" else logger.info
        log(
            "Lifecycle job finished",
            job=self.name,
            status=result.status,
            matched=result.matched,
            transitioned=result.transitioned,
            lost_races=result.lost_races,
            failed=result.failed,
            deleted=result.deleted,
            duration=round(result.duration_seconds, 3),
        )
        return result

    async def _execute(self, now: datetime, result: JobRunResult) -> None:
        raise NotImplementedError

    def _record_failure(
        self, result: JobRunResult, exc: Exception, *, operation: str, listing_id: str
    ) -> None:
        result.failed += 1
        result.errors.append(
            capture_exception(exc, operation=operation, job=self.name, listing_id=listing_id)
        )

    def _record_lost_race(self, result: JobRunResult, listing: Listing, expected: ListingStatus) -> None:
        result.lost_races += 1
        AUCTION_TRANSITION_CONFLICTS.labels(job=self.name).inc()
        logger.info(
            "Listing already moved on; conditional update skipped",
            job=self.name,
            listing_id=listing.id,
            expected=expected.value,
        )

    def _record_transition(self, result: JobRunResult, transition: Transition, listing: Listing) -> None:
        result.transitioned += 1
        AUCTION_TRANSITIONS.labels(transition=transition.label).inc()
        logger.info(
            "Listing transitioned",
            job=self.name,
            listing_id=listing.id,
            transition=transition.label,
        )

    async def _publish(self, event: AuctionUpdated) -> None:
        if self._event_bus is None:
            return
        try:
            await self._event_bus.publish(event)
        except Exception as exc:
            capture_exception(exc, operation="publish_auction_updated", job=self.name, listing_id=event.listing_id)


class ActivationJob(LifecycleJob):
    """Promotes due SCHEDULED listings to ACTIVE and tells their watchers."""

    name = ACTIVATION_JOB

    async def _execute(self, now: datetime, result: JobRunResult) -> None:
        async with self._session_factory() as session:
            listings = await ListingRepository(session).find_due_for_activation(now)

        result.matched = len(listings)
        if not listings:
            logger.debug("No listings due for activation", now=now.isoformat())
            return

        logger.info("Activating scheduled listings", count=len(listings))
        _, escaped = await self._processor.process_batch(
            listings, lambda listing: self._activate(listing, now, result)
        )
        for exc in escaped:
            self._record_failure(result, exc, operation="activate_listing", listing_id="unknown")

    async def _activate(self, listing: Listing, now: datetime, result: JobRunResult) -> None:
        transition = transition_for(ListingStatus.SCHEDULED, ListingStatus.ACTIVE)
        try:
            async with transaction(self._session_factory) as session:
                changed = await ListingRepository(session).try_transition_to_active(
                    listing.id, expected_status=ListingStatus.SCHEDULED, now=now
                )
        except Exception as exc:
            self._record_failure(result, exc, operation="activate_listing", listing_id=listing.id)
            return

        if not changed:
            self._record_lost_race(result, listing, ListingStatus.SCHEDULED)
            return

        self._record_transition(result, transition, listing)
        if transition.publish_update:
            await self._publish(AuctionUpdated.from_listing(listing, ListingStatus.ACTIVE))
        if transition.notify_watchers and self._dispatcher is not None and listing.watchers:
            try:
                await self._dispatcher.notify_watchers(listing, list(listing.watchers))
            except Exception as exc:
                capture_exception(exc, operation="notify_watchers", job=self.name, listing_id=listing.id)


class EndingJob(LifecycleJob):
    """Resolves due ACTIVE auctions into ENDED, ENDED_NO_BIDS or ENDED_NO_SALE."""

    name = ENDING_JOB

    async def _execute(self, now: datetime, result: JobRunResult) -> None:
        async with self._session_factory() as session:
            due = await ListingRepository(session).find_due_for_ending(now)

        result.matched = len(due)
        if not due:
            logger.debug("No auctions due for ending", now=now.isoformat())
            return

        logger.info("Ending due auctions", count=len(due))
        _, escaped = await self._processor.process_batch(
            due, lambda item: self._end(item[0], item[1], now, result)
        )
        for exc in escaped:
            self._record_failure(result, exc, operation="end_auction", listing_id="unknown")

    async def _end(
        self, listing: Listing, winning_bid: Optional[Bid], now: datetime, result: JobRunResult
    ) -> None:
        try:
            outcome: AuctionOutcome = resolve_outcome(winning_bid, listing.reserve_price, now)
            async with transaction(self._session_factory) as session:
                changed = await ListingRepository(session).try_transition_to_ended(
                    listing.id, outcome, expected_status=ListingStatus.ACTIVE, now=now
                )
        except Exception as exc:
            self._record_failure(result, exc, operation="end_auction", listing_id=listing.id)
            return

        if not changed:
            self._record_lost_race(result, listing, ListingStatus.ACTIVE)
            return

        transition = outcome.transition
        self._record_transition(result, transition, listing)
        if transition.publish_update:
            await self._publish(
                AuctionUpdated.from_listing(
                    listing,
                    outcome.status,
                    winner_id=outcome.winner_id,
                    winning_bid_id=outcome.winning_bid_id,
                    sold_at=outcome.sold_at,
                )
            )
        if transition.notify_winner and winning_bid is not None and self._dispatcher is not None:
            try:
                await self._dispatcher.notify_winner(listing, winning_bid)
            except Exception as exc:
                capture_exception(exc, operation="notify_winner", job=self.name, listing_id=listing.id)


class CleanupJob(LifecycleJob):
    """Deletes read notifications older than the retention window."""

    name = CLEANUP_JOB

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        retention_days: int = 30,
        batch_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(session_factory=session_factory, clock=clock)
        if retention_days <= 0 or batch_size <= 0:
            raise ValueError("retention_days and batch_size must be positive")
        self._retention = timedelta(days=retention_days)
        self._batch_size = batch_size

    async def _execute(self, now: datetime, result: JobRunResult) -> None:
        cutoff = now - self._retention
        while True:
            async with transaction(self._session_factory) as session:
                repo = NotificationRepository(session)
                ids = await repo.find_stale_read_notifications(cutoff, limit=self._batch_size)
                deleted = await repo.delete_notifications(ids)

            result.matched += len(ids)
            result.deleted += deleted
            if len(ids) < self._batch_size or deleted == 0:
                break

        logger.info(
            "Cleaned up old read notifications",
            deleted=result.deleted,
            older_than=cutoff.isoformat(),
        )
