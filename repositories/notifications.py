"""Repository for notification records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Notification, NotificationType


class NotificationRepository:
    """Encapsulates CRUD operations for notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_notification(
        self,
        *,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=NotificationType(type).value,
            title=title,
            message=message,
            data=data,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def list_for_user(self, user_id: str) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_stale_read_notifications(
        self, older_than: datetime, *, limit: Optional[int] = None
    ) -> List[str]:
        """Ids of read notifications created before ``older_than``. Unread ones never qualify."""

        stmt = (
            select(Notification.id)
            .where(
                Notification.created_at < older_than,
                Notification.read_at.is_not(None),
            )
            .order_by(Notification.created_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_notifications(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        stmt = (
            delete(Notification)
            .where(Notification.id.in_(list(ids)), Notification.read_at.is_not(None))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0
