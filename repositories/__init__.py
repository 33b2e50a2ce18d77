"""Repository helpers for database interactions."""

from .listings import ListingRepository
from .notifications import NotificationRepository
from .scheduler import SchedulerJobRepository

__all__ = ["ListingRepository", "NotificationRepository", "SchedulerJobRepository"]
