"""
services/notification/router.py
The caller's in-app inbox. Rows are written by services/notification/dispatch.py.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, User
from shared.schemas.schemas import NotificationResponse, dump, ok

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _mine(user: User, *criteria):
    return (Notification.user_id == user.id, *criteria)


def _mark_read(user: User, *criteria):
    return (
        update(Notification)
        .where(*_mine(user, Notification.is_read.is_(False), *criteria))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Newest first, with the unread total for the badge."""
    filters = _mine(current_user, Notification.is_read.is_(False)) if unread_only else _mine(current_user)
    rows = await db.scalars(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    unread = await db.scalar(
        select(func.count(Notification.id)).where(*_mine(current_user, Notification.is_read.is_(False)))
    )
    return ok({
        "notifications": [dump(NotificationResponse, n) for n in rows],
        "unread_count": unread or 0,
    })


@router.post("/read-all")
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(_mark_read(current_user))
    return ok({"updated": result.rowcount}, message="All notifications marked as read")


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await db.scalar(
        select(Notification).where(*_mine(current_user, Notification.id == notification_id))
    )
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.execute(_mark_read(current_user, Notification.id == notification_id))
    return ok(message="Marked as read")


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(delete(Notification).where(*_mine(current_user, Notification.id == notification_id)))
    if not result.rowcount:
        raise HTTPException(status_code=404, detail="Notification not found")
    return ok(message="Notification deleted")


@router.delete("")
async def clear_notifications(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(delete(Notification).where(*_mine(current_user)))
    return ok({"deleted": result.rowcount}, message="All notifications cleared")
