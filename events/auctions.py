"""Auction lifecycle domain events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional

from db.models import Listing, ListingStatus


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class AuctionUpdated:
    """Emitted after a listing's status change committed."""

    name: ClassVar[str] = "auctionUpdated"

    listing_id: str
    status: ListingStatus
    starts_at: datetime
    ends_at: datetime
    current_price: Decimal
    bid_count: int
    winner_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    sold_at: Optional[datetime] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_listing(
        cls,
        listing: Listing,
        status: ListingStatus,
        *,
        winner_id: Optional[str] = None,
        winning_bid_id: Optional[str] = None,
        sold_at: Optional[datetime] = None,
    ) -> "AuctionUpdated":
        return cls(
            listing_id=listing.id,
            status=status,
            starts_at=listing.starts_at,
            ends_at=listing.ends_at,
            current_price=Decimal(listing.current_price or 0),
            bid_count=listing.bid_count or 0,
            winner_id=winner_id,
            winning_bid_id=winning_bid_id,
            sold_at=sold_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.listing_id,
            "status": self.status.value,
            "startsAt": _iso(self.starts_at),
            "endsAt": _iso(self.ends_at),
            "currentPrice": str(self.current_price),
            "bidCount": self.bid_count,
            "winnerId": self.winner_id,
            "winningBidId": self.winning_bid_id,
            "soldAt": _iso(self.sold_at),
        }


@dataclass(slots=True)
class NotificationCreated:
    """Emitted after a notification record was persisted."""

    name: ClassVar[str] = "notificationCreated"

    notification_id: str
    user_id: str
    type: str
    title: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.notification_id,
            "userId": self.user_id,
            "type": self.type,
            "title": self.title,
            "createdAt": _iso(self.created_at),
        }
