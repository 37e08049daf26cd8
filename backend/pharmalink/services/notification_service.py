from pharmalink.db import get_db
from pharmalink.models.notification import NotificationOut, PaginatedNotificationsResponse
from pharmalink.utils.ws_manager import manager
from pymongo.errors import DuplicateKeyError
from pymongo import ReturnDocument
from bson import ObjectId
from datetime import datetime
from typing import Optional, Any
import logging

logger = logging.getLogger(__name__)


class NotificationService:
    """Alert channel: stores a notification and pushes it to open sockets.

    ``notify`` is fire-and-forget. Nothing in the matching core depends on an
    alert being delivered, so failures are logged and reported as False.
    """

    def __init__(self, db=None, connections=None):
        self.db = db if db is not None else get_db()
        self.connections = connections if connections is not None else manager

    async def notify(
        self,
        recipient_id: str,
        title: str,
        body: str,
        type: str = "info",
        link: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ) -> bool:
        """Deliver an alert. With ``dedupe_key`` the alert is sent at most once per recipient."""
        now = datetime.utcnow()
        notification_id = ObjectId()
        notification_data = {
            "_id": notification_id,
            "userId": recipient_id,
            "title": title[:100],
            "message": body[:500],
            "type": type,
            "isRead": False,
            "link": link,
            "payload": payload or {},
            "dedupeKey": dedupe_key or str(notification_id),
            "createdAt": now,
        }

        try:
            await self.db["notifications"].insert_one(notification_data)
        except DuplicateKeyError:
            logger.debug("Alert %s already sent to %s", dedupe_key, recipient_id)
            return False
        except Exception as e:
            logger.warning(f"Error storing notification for {recipient_id}: {e}")
            return False

        try:
            await self.connections.notify(recipient_id, {
                "type": "notification",
                "notification": self._to_out(notification_data).model_dump(),
            })
        except Exception as e:
            logger.warning(f"Error pushing notification to {recipient_id}: {e}")
        return True

    @staticmethod
    def _to_out(doc: dict) -> NotificationOut:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        doc["userId"] = str(doc["userId"])
        return NotificationOut(**doc)

    async def list_for_user(self, user_id: str, page: int = 1, limit: int = 20, unread_only: Optional[bool] = None) -> PaginatedNotificationsResponse:
        query = {"userId": user_id}
        if unread_only is True:
            query["isRead"] = False
        elif unread_only is False:
            query["isRead"] = True

        total = await self.db["notifications"].count_documents(query)
        unread_count = await self.db["notifications"].count_documents({"userId": user_id, "isRead": False})

        skip = (page - 1) * limit
        docs = await self.db["notifications"].find(query).sort("createdAt", -1).skip(skip).limit(limit).to_list(None)

        return PaginatedNotificationsResponse(
            items=[self._to_out(doc) for doc in docs],
            total=total,
            page=page,
            limit=limit,
            totalPages=(total + limit - 1) // limit,
            unreadCount=unread_count
        )

    async def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationOut]:
        if not ObjectId.is_valid(notification_id):
            return None
        updated = await self.db["notifications"].find_one_and_update(
            {"_id": ObjectId(notification_id), "userId": user_id},
            {"$set": {"isRead": True, "updatedAt": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER
        )
        return self._to_out(updated) if updated else None

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db["notifications"].update_many(
            {"userId": user_id, "isRead": False},
            {"$set": {"isRead": True, "updatedAt": datetime.utcnow()}}
        )
        return result.modified_count
