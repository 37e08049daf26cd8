from fastapi import APIRouter, Depends, HTTPException, status, Query
from typing import Optional
from bson import ObjectId
from pharmalink.models.notification import NotificationOut, PaginatedNotificationsResponse
from pharmalink.services.notification_service import NotificationService
from pharmalink.utils.auth import get_current_user

router = APIRouter(
    tags=["notifications"]
)


@router.get("", response_model=PaginatedNotificationsResponse)
async def get_user_notifications(
    current_user: dict = Depends(get_current_user),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: Optional[bool] = Query(None)
):
    return await NotificationService().list_for_user(current_user["_id"], page=page, limit=limit, unread_only=unread_only)


@router.post("/mark-all-read")
async def mark_all_notifications_as_read(current_user: dict = Depends(get_current_user)):
    updated = await NotificationService().mark_all_read(current_user["_id"])
    return {"message": f"{updated} notifications marked as read", "updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_notification_as_read(
    notification_id: str,
    current_user: dict = Depends(get_current_user)
):
    if not ObjectId.is_valid(notification_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid notification ID format")

    updated = await NotificationService().mark_read(current_user["_id"], notification_id)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return updated
