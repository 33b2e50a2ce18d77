"""Auction lifecycle: the transition table and outcome resolution.

The lifecycle is a small directed graph::

    SCHEDULED -> ACTIVE -> {ENDED, ENDED_NO_BIDS, ENDED_NO_SALE}

Every edge is listed in ``TRANSITIONS`` together with the side effects the
jobs perform after the conditional update committed. Adding a new terminal
state (for example a cancellation) means adding a row here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Tuple

from db.models import Bid, ListingStatus
from utils.error_handling import InvalidTransitionError


@dataclass(frozen=True, slots=True)
class Transition:
    """One edge of the lifecycle graph and what happens after it commits."""

    source: ListingStatus
    target: ListingStatus
    condition: str
    publish_update: bool = True
    notify_watchers: bool = False
    notify_winner: bool = False

    @property
    def label(self) -> str:
        return f"{self.source.value}->{self.target.value}"


TRANSITIONS: Dict[Tuple[ListingStatus, ListingStatus], Transition] = {
    (t.source, t.target): t
    for t in (
        Transition(
            ListingStatus.SCHEDULED,
            ListingStatus.ACTIVE,
            condition="now >= starts_at",
            notify_watchers=True,
        ),
        Transition(
            ListingStatus.ACTIVE,
            ListingStatus.ENDED_NO_BIDS,
            condition="now >= ends_at and no winning bid",
        ),
        Transition(
            ListingStatus.ACTIVE,
            ListingStatus.ENDED_NO_SALE,
            condition="now >= ends_at and winning bid below reserve",
        ),
        Transition(
            ListingStatus.ACTIVE,
            ListingStatus.ENDED,
            condition="now >= ends_at and winning bid meets reserve",
            notify_winner=True,
        ),
    )
}

TERMINAL_STATUSES: FrozenSet[ListingStatus] = frozenset(
    {ListingStatus.ENDED, ListingStatus.ENDED_NO_BIDS, ListingStatus.ENDED_NO_SALE}
)


def can_transition(source: ListingStatus, target: ListingStatus) -> bool:
    return (ListingStatus(source), ListingStatus(target)) in TRANSITIONS


def transition_for(source: ListingStatus, target: ListingStatus) -> Transition:
    """Return the table row for ``source -> target`` or raise ``InvalidTransitionError``."""

    try:
        return TRANSITIONS[(ListingStatus(source), ListingStatus(target))]
    except KeyError:
        raise InvalidTransitionError(ListingStatus(source).value, ListingStatus(target).value) from None


def ensure_transition(source: ListingStatus, target: ListingStatus) -> None:
    transition_for(source, target)


def is_terminal(status: ListingStatus) -> bool:
    return ListingStatus(status) in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class AuctionOutcome:
    """Terminal state of an ended auction, written in one conditional update."""

    status: ListingStatus
    winner_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    sold_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in TERMINAL_STATUSES:
            raise ValueError(f"{self.status.value} is not a terminal status")
        has_winner = self.winner_id is not None
        if has_winner != (self.status is ListingStatus.ENDED):
            raise ValueError("winner_id must be set exactly when the status is ENDED")
        if (self.sold_at is not None) != has_winner:
            raise ValueError("sold_at must be set exactly when a winner is set")
        if (self.winning_bid_id is not None) != has_winner:
            raise ValueError("winning_bid_id must be set exactly when a winner is set")

    @property
    def transition(self) -> Transition:
        return TRANSITIONS[(ListingStatus.ACTIVE, self.status)]


def resolve_outcome(
    winning_bid: Optional[Bid],
    reserve_price: Optional[Decimal],
    now: datetime,
) -> AuctionOutcome:
    """Decide how an ended auction resolves.

    Pure function of the winning bid (presence and amount) and the reserve
    price; ``now`` only becomes ``sold_at`` when there is a sale.
    """

    if winning_bid is None:
        return AuctionOutcome(status=ListingStatus.ENDED_NO_BIDS)

    amount = Decimal(winning_bid.amount)
    if reserve_price is not None and amount < Decimal(reserve_price):
        return AuctionOutcome(status=ListingStatus.ENDED_NO_SALE)

    return AuctionOutcome(
        status=ListingStatus.ENDED,
        winner_id=winning_bid.bidder_id,
        winning_bid_id=winning_bid.id,
        sold_at=now,
    )
