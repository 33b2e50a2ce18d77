"""Event type definitions for inter-service communication."""

from .auctions import AuctionUpdated, NotificationCreated

__all__ = ["AuctionUpdated", "NotificationCreated"]
