from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Any, List


class NotificationOut(BaseModel):
    id: str
    userId: str
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    type: str = "info"  # e.g. "new_request", "response", "message"
    isRead: bool = False
    link: Optional[str] = None
    payload: Optional[dict[str, Any]] = None
    createdAt: datetime
    updatedAt: Optional[datetime] = None


class PaginatedNotificationsResponse(BaseModel):
    items: List[NotificationOut]
    total: int
    page: int
    limit: int
    totalPages: int
    unreadCount: int
