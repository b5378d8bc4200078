"""Absence alerts raised by the streak engine."""
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query

from attendance_streaks.api.deps import Store
from attendance_streaks.models.notification import NotificationOut, NotificationType, ResolveRequest

router = APIRouter()


@router.get("/", response_model=List[NotificationOut])
async def list_notifications(
    store: Store,
    resolved: Optional[bool] = Query(None),
    type: Optional[NotificationType] = Query(None),
    student_id: Optional[str] = Query(None),
):
    """List alerts, newest first."""
    return await store.list_notifications(resolved=resolved, kind=type, student_id=student_id)


@router.patch("/{notification_id}/resolve", response_model=NotificationOut)
async def resolve_notification(notification_id: str, store: Store, data: Optional[ResolveRequest] = None):
    notification = await store.resolve_notification(notification_id, data.resolved_by if data else None)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/resolve-all")
async def resolve_all_notifications(store: Store, data: Optional[ResolveRequest] = None):
    """Mark every open alert as resolved."""
    count = await store.resolve_all_notifications(data.resolved_by if data else None)
    return {"status": "success", "resolved": count}
