"""Best-effort notification dispatch for lifecycle transitions."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Optional, Set

from loguru import logger
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import async_sessionmaker

from db import transaction
from db.models import Bid, Listing, NotificationType, User
from events import NotificationCreated
from repositories import NotificationRepository
from services.event_bus import EventBus
from services.mailer import MailMessage, MailRelayClient
from utils.error_handling import ErrorCategory, capture_exception

NOTIFICATION_DELIVERIES = Counter(
    "notification_deliveries_total",
    "Email deliveries attempted for lifecycle notifications",
    labelnames=["status"],
)

NOTIFICATION_TITLES: Dict[NotificationType, str] = {
    NotificationType.BID_PLACED: "New Bid on Your Listing",
    NotificationType.BID_OUTBID: "You Have Been Outbid",
    NotificationType.AUCTION_WON: "Congratulations! You Won the Auction",
    NotificationType.AUCTION_ENDED: "Auction Has Ended",
    NotificationType.LISTING_STARTED: "Auction Started",
    NotificationType.SYSTEM_ANNOUNCEMENT: "System Announcement",
}


def notification_title(kind: NotificationType) -> str:
    return NOTIFICATION_TITLES.get(kind, "Notification")


def notification_message(kind: NotificationType, data: Dict[str, Any]) -> str:
    title = data.get("listingTitle")
    if kind is NotificationType.LISTING_STARTED:
        return f'The auction for "{title}" has started.'
    if kind is NotificationType.AUCTION_WON:
        return (
            f'Congratulations! You won the auction for "{title}" '
            f"with a bid of {data.get('amount')} {data.get('currency')}."
        )
    if kind is NotificationType.AUCTION_ENDED:
        return f'The auction for "{title}" has ended.'
    if kind is NotificationType.SYSTEM_ANNOUNCEMENT:
        return str(data.get("message") or "System announcement")
    return "You have a new notification"


class NotificationDispatcher:
    """Creates notification records and sends emails without blocking the caller.

    Every recipient is handled in isolation. Record creation is awaited; email
    delivery runs as a background task whose failure is only logged.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        mailer: Optional[MailRelayClient] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._session_factory = session_factory
        self._mailer = mailer
        self._event_bus = event_bus
        self._deliveries: Set[asyncio.Task] = set()

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def notify_watchers(
        self,
        listing: Listing,
        watchers: Iterable[User],
        kind: NotificationType = NotificationType.LISTING_STARTED,
    ) -> int:
        """Notify every watcher; returns how many notification records were created."""

        data = {
            "listingId": listing.id,
            "listingTitle": listing.title,
            "startsAt": listing.starts_at.isoformat() if listing.starts_at else None,
            "endsAt": listing.ends_at.isoformat() if listing.ends_at else None,
        }
        created = 0
        for watcher in watchers:
            try:
                if await self._notify(watcher.id, watcher.email, kind, data):
                    created += 1
            except Exception as exc:
                capture_exception(
                    exc,
                    operation="notify_watcher",
                    listing_id=listing.id,
                    recipient_id=getattr(watcher, "id", None),
                )
        logger.debug(
            "Watchers notified",
            listing_id=listing.id,
            kind=kind.value,
            created=created,
        )
        return created

    async def notify_winner(self, listing: Listing, winning_bid: Bid) -> bool:
        data = {
            "listingId": listing.id,
            "listingTitle": listing.title,
            "amount": str(winning_bid.amount),
            "currency": listing.currency,
            "bidId": winning_bid.id,
        }
        bidder = winning_bid.bidder
        try:
            return await self._notify(
                winning_bid.bidder_id,
                bidder.email if bidder is not None else None,
                NotificationType.AUCTION_WON,
                data,
            )
        except Exception as exc:
            capture_exception(
                exc,
                operation="notify_winner",
                listing_id=listing.id,
                recipient_id=winning_bid.bidder_id,
            )
            return False

    async def wait_for_deliveries(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding email deliveries started so far."""

        pending = list(self._deliveries)
        if not pending:
            return
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("Email deliveries still pending", pending=len(not_done))

    async def _notify(
        self,
        user_id: str,
        email: Optional[str],
        kind: NotificationType,
        data: Dict[str, Any],
    ) -> bool:
        title = notification_title(kind)
        message = notification_message(kind, data)

        try:
            async with transaction(self._session_factory) as session:
                repo = NotificationRepository(session)
                notification = await repo.create_notification(
                    user_id=user_id,
                    type=kind,
                    title=title,
                    message=message,
                    data=data,
                )
                if email is None:
                    user = await session.get(User, user_id)
                    email = user.email if user is not None else None
        except Exception as exc:
            capture_exception(
                exc,
                operation="create_notification",
                listing_id=data.get("listingId"),
                recipient_id=user_id,
                kind=kind.value,
            )
            return False

        if self._event_bus is not None:
            try:
                await self._event_bus.publish(
                    NotificationCreated(
                        notification_id=notification.id,
                        user_id=user_id,
                        type=kind.value,
                        title=title,
                        created_at=notification.created_at,
                    )
                )
            except Exception as exc:
                capture_exception(exc, operation="publish_notification_created", recipient_id=user_id)

        if email and self._mailer is not None:
            self._schedule_delivery(user_id, MailMessage(to=email, subject=title, body=message))
        return True

    def _schedule_delivery(self, user_id: str, message: MailMessage) -> None:
        task = asyncio.create_task(self._deliver(user_id, message), name=f"email-{user_id}")
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, user_id: str, message: MailMessage) -> None:
        assert self._mailer is not None
        try:
            sent = await self._mailer.send(message)
        except Exception as exc:
            NOTIFICATION_DELIVERIES.labels(status="error").inc()
            capture_exception(
                exc,
                operation="send_email",
                scope=ErrorCategory.TRANSIENT,
                recipient_id=user_id,
                subject=message.subject,
            )
            return
        NOTIFICATION_DELIVERIES.labels(status="sent" if sent else "disabled").inc()
