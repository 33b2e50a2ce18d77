"""Repository for auction listing lifecycle queries and conditional updates."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Bid, Listing, ListingStatus
from services.lifecycle import AuctionOutcome, ensure_transition


class ListingRepository:
    """Encapsulates lifecycle persistence logic for listings.

    Status writes are always conditional on the previously observed status, so
    two overlapping runs (or two scheduler processes) cannot both transition
    the same listing.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, listing_id: str) -> Optional[Listing]:
        stmt = select(Listing).where(Listing.id == listing_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_due_for_activation(self, now: datetime) -> List[Listing]:
        stmt = (
            select(Listing)
            .where(
                Listing.status == ListingStatus.SCHEDULED.value,
                Listing.starts_at <= now,
            )
            .order_by(Listing.starts_at.asc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_due_for_ending(self, now: datetime) -> List[Tuple[Listing, Optional[Bid]]]:
        """Return due active listings with their current winning bid, if any."""

        stmt = (
            select(Listing, Bid)
            .outerjoin(
                Bid,
                and_(Bid.listing_id == Listing.id, Bid.is_winning.is_(True)),
            )
            .where(
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.ends_at <= now,
            )
            .order_by(Listing.ends_at.asc())
        )
        result = await self.session.execute(stmt)

        due: Dict[str, Tuple[Listing, Optional[Bid]]] = {}
        for listing, bid in result.all():
            existing = due.get(listing.id)
            if existing is None:
                due[listing.id] = (listing, bid)
                continue
            # More than one bid flagged as winning breaks the bid invariant upstream
            current = existing[1]
            logger.warning(
                "Listing has more than one winning bid",
                listing_id=listing.id,
                bid_ids=[b.id for b in (current, bid) if b is not None],
            )
            if current is None or (bid is not None and Decimal(bid.amount) > Decimal(current.amount)):
                due[listing.id] = (listing, bid)
        return list(due.values())

    async def try_transition_to_active(
        self,
        listing_id: str,
        *,
        expected_status: ListingStatus = ListingStatus.SCHEDULED,
        now: Optional[datetime] = None,
    ) -> bool:
        ensure_transition(expected_status, ListingStatus.ACTIVE)
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.status == expected_status.value)
            .values(
                status=ListingStatus.ACTIVE.value,
                updated_at=now or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        changed = result.rowcount == 1
        logger.debug(
            "Conditional activation",
            listing_id=listing_id,
            expected=expected_status.value,
            changed=changed,
        )
        return changed

    async def try_transition_to_ended(
        self,
        listing_id: str,
        outcome: AuctionOutcome,
        *,
        expected_status: ListingStatus = ListingStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> bool:
        """Write status and winner fields together, only if still ``expected_status``."""

        ensure_transition(expected_status, outcome.status)
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.status == expected_status.value)
            .values(
                status=outcome.status.value,
                winner_id=outcome.winner_id,
                winning_bid_id=outcome.winning_bid_id,
                sold_at=outcome.sold_at,
                updated_at=now or outcome.sold_at or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        changed = result.rowcount == 1
        logger.debug(
            "Conditional ending",
            listing_id=listing_id,
            expected=expected_status.value,
            outcome=outcome.status.value,
            changed=changed,
        )
        return changed
