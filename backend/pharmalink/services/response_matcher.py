import logging
from datetime import datetime
from typing import List, Optional, Union
from bson import ObjectId
from pymongo.errors import DuplicateKeyError
from pharmalink.db import get_db
from pharmalink.errors import DuplicateResponseError, NotFoundError, RequestClosedError, ValidationError
from pharmalink.models.location import Location
from pharmalink.models.request import RequestStatus
from pharmalink.models.response import Availability, PharmacyResponse, SubmitResult
from pharmalink.services.chat_service import ChatService
from pharmalink.services.request_store import RequestStore, coerce_location
from pharmalink.utils.geohash import distance_km
from pharmalink.utils.logger import log_event, log_error, EventTypes
from pharmalink.utils.retry import insert_once, with_retry

logger = logging.getLogger(__name__)


class ResponseMatcher:
    """Records availability declarations and opens a chat for every positive one.

    The unique ``(requestId, pharmacyId)`` index on ``responses`` is the only
    thing that decides whether a submission is a duplicate. Any number of
    pharmacies may answer ``available`` to the same request.
    """

    def __init__(self, db=None, requests: RequestStore = None, chats: ChatService = None):
        self.db = db if db is not None else get_db()
        self.chats = chats or ChatService(self.db)
        self.requests = requests or RequestStore(self.db, chats=self.chats)

    @property
    def collection(self):
        return self.db["responses"]

    async def submit(
        self,
        request_id: str,
        pharmacy_id: str,
        pharmacy_name: str,
        pharmacy_phone: Optional[str],
        pharmacy_location: Union[Location, dict],
        availability: Union[Availability, str],
        response_id: Optional[str] = None,
        now: datetime = None,
    ) -> SubmitResult:
        """Submit a response; pass the same ``response_id`` again to retry safely."""
        now = now or datetime.utcnow()
        try:
            availability = Availability(availability)
        except ValueError:
            raise ValidationError(f"Unknown availability: {availability}")
        if response_id is not None and not ObjectId.is_valid(response_id):
            raise ValidationError("responseId must be a 24 character hex id")
        pharmacy_location = coerce_location(pharmacy_location)

        # get() expires a request whose deadline passed before the sweep ran
        request = await self.requests.get(request_id, now=now)
        if request is None:
            raise NotFoundError("Request not found")
        if not request.is_open(now):
            if request.status == RequestStatus.CLOSED:
                raise RequestClosedError("This request has been closed")
            raise RequestClosedError("This request has expired")

        response_oid = ObjectId(response_id) if response_id else ObjectId()
        chat_id = str(ObjectId()) if availability == Availability.AVAILABLE else None
        response_doc = {
            "_id": response_oid,
            "requestId": request_id,
            "pharmacyId": pharmacy_id,
            "pharmacyName": pharmacy_name,
            "pharmacyPhone": pharmacy_phone,
            "pharmacyLocation": pharmacy_location.model_dump(),
            "distanceKm": round(distance_km(pharmacy_location.point, request.location.point), 3),
            "availability": availability.value,
            "chatId": chat_id,
            "respondedAt": now,
        }

        try:
            inserted = await insert_once(self.collection, response_doc, "insert response")
        except DuplicateKeyError:
            raise DuplicateResponseError()

        if not inserted:
            existing = await with_retry(lambda: self.collection.find_one({"_id": response_oid}), "get response")
            if existing["requestId"] != request_id or existing["pharmacyId"] != pharmacy_id:
                raise DuplicateResponseError("responseId already used for a different response")
            # Finish whatever the earlier attempt left undone
            chat_id = existing.get("chatId")

        response_id = str(response_oid)
        try:
            if chat_id:
                await self.chats.create(
                    request_id,
                    request.customerId,
                    request.customerName,
                    pharmacy_id,
                    pharmacy_name,
                    chat_id=chat_id,
                )
            await self.requests.record_response(request_id, response_id, now=now)
        except Exception as e:
            await self._rollback(response_oid, chat_id, e)
            raise

        await log_event(
            EventTypes.RESPONSE_SUBMITTED,
            {"request_id": request_id, "response_id": response_id, "availability": availability.value, "chat_id": chat_id},
            user_id=pharmacy_id,
        )
        return SubmitResult(responseId=response_id, chatId=chat_id)

    async def _rollback(self, response_oid: ObjectId, chat_id: Optional[str], cause: Exception):
        """Undo a half-finished submission so no response exists without its chat and count."""
        try:
            await with_retry(lambda: self.collection.delete_one({"_id": response_oid}), "roll back response")
            if chat_id:
                await self.chats.discard(chat_id)
        except Exception as e:
            log_error(f"Rollback of response {response_oid} failed", e)
            return
        await log_event(
            EventTypes.RESPONSE_ROLLED_BACK,
            {"response_id": str(response_oid), "chat_id": chat_id, "cause": type(cause).__name__},
        )

    @staticmethod
    def _to_model(doc: dict) -> PharmacyResponse:
        doc["_id"] = str(doc["_id"])
        return PharmacyResponse(**doc)

    async def get_for_pharmacy(self, request_id: str, pharmacy_id: str) -> Optional[PharmacyResponse]:
        doc = await with_retry(
            lambda: self.collection.find_one({"requestId": request_id, "pharmacyId": pharmacy_id}),
            "get pharmacy response",
        )
        return self._to_model(doc) if doc else None

    async def list_for_request(self, request_id: str, grouped: bool = False) -> List[PharmacyResponse]:
        """Responses oldest first; ``grouped`` gives available ones first, nearest first."""
        docs = await with_retry(
            lambda: self.collection.find({"requestId": request_id}).sort("respondedAt", 1).to_list(None),
            "list responses",
        )
        responses = [self._to_model(doc) for doc in docs]
        if grouped:
            responses.sort(key=lambda r: (r.availability != Availability.AVAILABLE, r.distanceKm))
        return responses
