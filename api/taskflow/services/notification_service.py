from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.models.notification import Notification
from taskflow.utils.datetime import utcnow


async def list_notifications(
    session: AsyncSession, user_id: uuid.UUID, *, unread_only: bool = False, limit: int = 50
) -> list[Notification]:
    stmt = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        stmt = stmt.where(Notification.read_at.is_(None))
    result = await session.execute(stmt.order_by(Notification.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def mark_read(session: AsyncSession, notification_id: uuid.UUID, user_id: uuid.UUID) -> Notification:
    notification = await session.get(Notification, notification_id)
    if notification is None or notification.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    if notification.read_at is None:
        notification.read_at = utcnow()
        await session.commit()
        await session.refresh(notification)
    return notification
