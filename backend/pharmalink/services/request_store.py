import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union
from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pharmalink import config
from pharmalink.db import get_db
from pharmalink.errors import NotFoundError, RequestClosedError, ValidationError
from pharmalink.models.location import Location
from pharmalink.models.request import CloseReason, MedicineRequest, RequestStatus, RequestType
from pharmalink.services.chat_service import ChatService
from pharmalink.services.stats_service import StatsService
from pharmalink.utils.logger import log_event, EventTypes
from pharmalink.utils.retry import insert_once, with_retry

logger = logging.getLogger(__name__)

CLOSED_NOTICE = "This request has been closed by the customer"
EXPIRED_NOTICE = "This request has expired"


def coerce_location(location: Union[Location, dict, None]) -> Location:
    if location is None:
        raise ValidationError("A location with valid coordinates is required")
    if isinstance(location, Location):
        return location
    try:
        return Location(**location)
    except (PydanticValidationError, TypeError) as e:
        raise ValidationError(f"Invalid location: {e}")


class RequestStore:
    """Owns the MedicineRequest state machine.

    ``active`` moves to ``closed`` or ``expired`` exactly once and never back.
    Every mutation is a conditional update against the stored document so
    concurrent responders and the expiry sweep cannot overwrite each other.
    """

    def __init__(self, db=None, chats: ChatService = None, stats: StatsService = None):
        self.db = db if db is not None else get_db()
        self.chats = chats or ChatService(self.db)
        self.stats = stats or StatsService(self.db)

    @property
    def collection(self):
        return self.db["requests"]

    @staticmethod
    def _oid(request_id: str) -> Optional[ObjectId]:
        return ObjectId(request_id) if ObjectId.is_valid(request_id) else None

    @staticmethod
    def _to_model(doc: dict) -> MedicineRequest:
        doc["_id"] = str(doc["_id"])
        return MedicineRequest(**doc)

    async def create(
        self,
        customer_id: str,
        customer_name: Optional[str],
        customer_phone: Optional[str],
        request_type: Union[RequestType, str],
        location: Union[Location, dict, None],
        prescription_image_urls: Optional[List[str]] = None,
        medicine_text: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> str:
        try:
            request_type = RequestType(request_type)
        except ValueError:
            raise ValidationError(f"Unknown request type: {request_type}")

        urls = [url for url in (prescription_image_urls or []) if url and url.strip()]
        text = (medicine_text or "").strip()
        if request_type == RequestType.PRESCRIPTION:
            if not urls:
                raise ValidationError("Prescription requests need at least one image")
            if text:
                raise ValidationError("Prescription requests cannot carry medicine text")
        else:
            if not text:
                raise ValidationError("Text requests need the medicine name")
            if urls:
                raise ValidationError("Text requests cannot carry prescription images")

        location = coerce_location(location)

        now = datetime.utcnow()
        request_doc = {
            "_id": ObjectId(),
            "customerId": customer_id,
            "customerName": customer_name,
            "customerPhone": customer_phone,
            "requestType": request_type.value,
            "prescriptionImageUrls": urls,
            "medicineText": text or None,
            "notes": (notes or "").strip() or None,
            "location": location.model_dump(),
            "status": RequestStatus.ACTIVE.value,
            "createdAt": now,
            "expiresAt": now + timedelta(minutes=config.REQUEST_TTL_MINUTES),
            "closedAt": None,
            "closedReason": None,
            "firstResponseAt": None,
            "responseCount": 0,
            # Response ids already reflected in responseCount
            "countedResponses": [],
        }
        await insert_once(self.collection, request_doc, "create request")

        request_id = str(request_doc["_id"])
        await self.stats.increment(totalRequests=1, activeRequests=1)
        await log_event(
            EventTypes.REQUEST_CREATED,
            {"request_id": request_id, "type": request_type.value, "geohash": location.geohash},
            user_id=customer_id,
        )
        return request_id

    async def get(self, request_id: str, now: datetime = None) -> Optional[MedicineRequest]:
        """Point lookup. A request found past its deadline is expired on the spot."""
        oid = self._oid(request_id)
        if oid is None:
            return None
        doc = await with_retry(lambda: self.collection.find_one({"_id": oid}), "get request")
        if doc is None:
            return None
        return await self._settle(doc, now or datetime.utcnow())

    async def require(self, request_id: str, now: datetime = None) -> MedicineRequest:
        request = await self.get(request_id, now=now)
        if request is None:
            raise NotFoundError("Request not found")
        return request

    async def _settle(self, doc: dict, now: datetime) -> MedicineRequest:
        """Apply an expiry the sweep has not caught yet, then build the model."""
        if doc["status"] == RequestStatus.ACTIVE.value and doc["expiresAt"] <= now:
            await self._transition(doc["_id"], {}, RequestStatus.EXPIRED, CloseReason.EXPIRED, now)
            # Re-read: a concurrent manual close may have won
            oid = doc["_id"]
            doc = await with_retry(lambda: self.collection.find_one({"_id": oid}), "get request")
        return self._to_model(doc)

    async def _transition(self, oid: ObjectId, extra_filter: dict, status: RequestStatus, reason: CloseReason, now: datetime) -> bool:
        result = await with_retry(
            lambda: self.collection.update_one(
                {"_id": oid, "status": RequestStatus.ACTIVE.value, **extra_filter},
                {"$set": {"status": status.value, "closedAt": now, "closedReason": reason.value}},
            ),
            "close request",
        )
        if result.modified_count == 0:
            return False
        await self._after_close(str(oid), reason)
        return True

    async def close(self, request_id: str, reason: Union[CloseReason, str] = CloseReason.MANUAL, now: datetime = None) -> bool:
        """Move an active request to its terminal state.

        A manual close of a request already past its deadline records it as
        expired instead. Returns False (a no-op) when the request is already
        closed or expired.
        """
        reason = CloseReason(reason)
        oid = self._oid(request_id)
        if oid is None:
            raise NotFoundError("Request not found")
        now = now or datetime.utcnow()

        if reason == CloseReason.MANUAL:
            if await self._transition(oid, {"expiresAt": {"$gt": now}}, RequestStatus.CLOSED, reason, now):
                return True
        if await self._transition(oid, {}, RequestStatus.EXPIRED, CloseReason.EXPIRED, now):
            return True

        exists = await with_retry(lambda: self.collection.find_one({"_id": oid}, {"_id": 1}), "get request")
        if exists is None:
            raise NotFoundError("Request not found")
        return False

    async def _after_close(self, request_id: str, reason: CloseReason):
        await self.stats.increment(activeRequests=-1)
        notice = EXPIRED_NOTICE if reason == CloseReason.EXPIRED else CLOSED_NOTICE
        for chat in await self.chats.list_for_request(request_id):
            try:
                await self.chats.post_system_message(chat.chatId, notice)
            except Exception as e:
                logger.warning(f"Failed to post closing notice to chat {chat.chatId}: {e}")
        await log_event(EventTypes.REQUEST_CLOSED, {"request_id": request_id, "reason": reason.value})

    async def record_response(self, request_id: str, response_id: str, now: datetime = None) -> None:
        """Count a response against an open request.

        ``response_id`` makes the increment idempotent, so this is safe to
        retry after a timeout. Raises RequestClosedError when the request is
        no longer open (including a passed deadline the sweep has not caught).
        """
        oid = self._oid(request_id)
        if oid is None:
            raise NotFoundError("Request not found")
        now = now or datetime.utcnow()

        counted = {
            "_id": oid,
            "status": RequestStatus.ACTIVE.value,
            "expiresAt": {"$gt": now},
            "countedResponses": {"$ne": response_id},
        }
        increment = {"$inc": {"responseCount": 1}, "$addToSet": {"countedResponses": response_id}}

        # The update that takes responseCount off zero also stamps firstResponseAt
        result = await with_retry(
            lambda: self.collection.update_one(
                {**counted, "responseCount": 0},
                {**increment, "$set": {"firstResponseAt": now}},
            ),
            "record first response",
        )
        if result.modified_count == 0:
            result = await with_retry(lambda: self.collection.update_one(counted, increment), "record response")
        if result.modified_count == 0:
            doc = await with_retry(
                lambda: self.collection.find_one({"_id": oid}, {"countedResponses": 1}), "get request"
            )
            if doc is None:
                raise NotFoundError("Request not found")
            if response_id not in doc.get("countedResponses", []):
                raise RequestClosedError()

    async def expire_overdue(self, now: datetime = None) -> List[str]:
        """Expire every active request whose deadline has passed. Returns the ids expired."""
        now = now or datetime.utcnow()
        docs = await with_retry(
            lambda: self.collection.find(
                {"status": RequestStatus.ACTIVE.value, "expiresAt": {"$lte": now}}, {"_id": 1}
            ).to_list(None),
            "find overdue requests",
        )

        expired = []
        for doc in docs:
            # A manual close may have won the race
            if await self._transition(doc["_id"], {}, RequestStatus.EXPIRED, CloseReason.EXPIRED, now):
                expired.append(str(doc["_id"]))

        if expired:
            await log_event(EventTypes.REQUESTS_EXPIRED, {"count": len(expired), "request_ids": expired})
        return expired

    async def find_active_in_range(self, lower: str, upper: str, now: datetime = None) -> List[MedicineRequest]:
        """Open requests whose geohash falls in ``[lower, upper]``. Coarse filter only."""
        now = now or datetime.utcnow()
        docs = await with_retry(
            lambda: self.collection.find({
                "status": RequestStatus.ACTIVE.value,
                "location.geohash": {"$gte": lower, "$lte": upper},
                "expiresAt": {"$gt": now},
            }).to_list(None),
            "scan geohash range",
        )
        return [self._to_model(doc) for doc in docs]

    async def list_for_customer(self, customer_id: str, limit: int = None, now: datetime = None) -> List[MedicineRequest]:
        limit = limit or config.CUSTOMER_RECENT_REQUESTS_LIMIT
        now = now or datetime.utcnow()
        docs = await with_retry(
            lambda: self.collection.find({"customerId": customer_id}).sort("createdAt", -1).limit(limit).to_list(None),
            "list customer requests",
        )
        return [await self._settle(doc, now) for doc in docs]

    async def list_all(
        self, status: Optional[RequestStatus] = None, skip: int = 0, limit: int = 100, now: datetime = None
    ) -> List[MedicineRequest]:
        query = {}
        if status is not None:
            status = RequestStatus(status)
            query["status"] = status.value
        now = now or datetime.utcnow()
        docs = await with_retry(
            lambda: self.collection.find(query).sort("createdAt", -1).skip(skip).limit(limit).to_list(None),
            "list requests",
        )
        requests = [await self._settle(doc, now) for doc in docs]
        # Settling can move an "active" match to expired
        return [r for r in requests if status is None or r.status == status]
