import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.api.deps import get_current_user, get_db
from taskflow.models.user import User
from taskflow.schema.notification import NotificationRead
from taskflow.services import notification_service

router = APIRouter()


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    unread: bool = Query(default=False),
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List the current user's notifications, newest first."""
    return await notification_service.list_notifications(session, current_user.id, unread_only=unread)


@router.post("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: uuid.UUID,
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await notification_service.mark_read(session, notification_id, current_user.id)
