import asyncio
from datetime import timedelta
import pytest
from pharmalink.errors import NotFoundError, RequestClosedError, ValidationError
from pharmalink.models.request import CloseReason, RequestStatus
from pharmalink.services.chat_service import ChatService
from pharmalink.services.request_store import RequestStore, EXPIRED_NOTICE
from pharmalink.services.stats_service import StatsService
from pharmalink.utils.geohash import encode
from conftest import MUMBAI_CUSTOMER


async def _create_text_request(store, text="Paracetamol 500mg", location=MUMBAI_CUSTOMER):
    return await store.create("cust-1", "Asha Patel", "+919800000001", "text", location, medicine_text=text)


async def test_create_sets_initial_state(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)

    request = await store.get(request_id)
    assert request.status == RequestStatus.ACTIVE
    assert request.responseCount == 0
    assert request.firstResponseAt is None
    assert request.medicineText == "Paracetamol 500mg"
    assert request.expiresAt - request.createdAt == timedelta(minutes=60)

    stored = await db["requests"].find_one({})
    assert stored["location"]["geohash"] == encode(19.07, 72.87)
    assert (await StatsService(db).get())["activeRequests"] == 1


async def test_create_prescription_request(db):
    store = RequestStore(db)
    request_id = await store.create(
        "cust-1", "Asha", None, "prescription", MUMBAI_CUSTOMER,
        prescription_image_urls=["http://localhost:8000/uploads/prescriptions/cust-1/0_1.jpg"],
    )
    request = await store.get(request_id)
    assert request.prescriptionImageUrls == ["http://localhost:8000/uploads/prescriptions/cust-1/0_1.jpg"]
    assert request.medicineText is None
    assert request.summary() == "Prescription (1 image)"


@pytest.mark.parametrize("kwargs", [
    {"request_type": "text", "medicine_text": "   "},
    {"request_type": "text", "medicine_text": "Crocin", "prescription_image_urls": ["http://x/1.jpg"]},
    {"request_type": "prescription", "prescription_image_urls": []},
    {"request_type": "prescription", "prescription_image_urls": ["http://x/1.jpg"], "medicine_text": "Crocin"},
    {"request_type": "delivery", "medicine_text": "Crocin"},
])
async def test_create_rejects_payload_mismatch(db, kwargs):
    request_type = kwargs.pop("request_type")
    with pytest.raises(ValidationError):
        await RequestStore(db).create("cust-1", "Asha", None, request_type, MUMBAI_CUSTOMER, **kwargs)
    assert await db["requests"].count_documents({}) == 0


@pytest.mark.parametrize("location", [None, {"lat": 95, "lng": 72.87}, {"lat": 19.07}])
async def test_create_rejects_invalid_location(db, location):
    with pytest.raises(ValidationError):
        await RequestStore(db).create("cust-1", "Asha", None, "text", location, medicine_text="Crocin")


async def test_get_unknown_request_returns_none(db):
    store = RequestStore(db)
    assert await store.get("5f0c1a2b3c4d5e6f7a8b9c0d") is None
    assert await store.get("not-an-id") is None


async def test_close_is_idempotent(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)

    assert await store.close(request_id, CloseReason.MANUAL) is True
    first = await store.get(request_id)
    assert first.status == RequestStatus.CLOSED
    assert first.closedReason == CloseReason.MANUAL

    assert await store.close(request_id, CloseReason.EXPIRED) is False
    second = await store.get(request_id)
    assert second.status == RequestStatus.CLOSED
    assert second.closedAt == first.closedAt
    assert (await StatsService(db).get())["activeRequests"] == 0


async def test_close_unknown_request(db):
    with pytest.raises(NotFoundError):
        await RequestStore(db).close("5f0c1a2b3c4d5e6f7a8b9c0d")


async def test_record_response_counts_each_response_once(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)

    await store.record_response(request_id, "resp-1")
    first = await store.get(request_id)
    await store.record_response(request_id, "resp-1")
    await store.record_response(request_id, "resp-2")

    request = await store.get(request_id)
    assert request.responseCount == 2
    assert request.firstResponseAt == first.firstResponseAt


async def test_record_response_concurrent_increments(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)

    await asyncio.gather(*(store.record_response(request_id, f"resp-{i}") for i in range(10)))
    assert (await store.get(request_id)).responseCount == 10


async def test_record_response_rejects_closed_and_overdue(db):
    store = RequestStore(db)
    closed_id = await _create_text_request(store)
    await store.close(closed_id)
    with pytest.raises(RequestClosedError):
        await store.record_response(closed_id, "resp-1")

    overdue_id = await _create_text_request(store)
    request = await store.get(overdue_id)
    with pytest.raises(RequestClosedError):
        await store.record_response(overdue_id, "resp-1", now=request.expiresAt + timedelta(seconds=1))
    assert (await store.get(overdue_id)).responseCount == 0

    with pytest.raises(NotFoundError):
        await store.record_response("5f0c1a2b3c4d5e6f7a8b9c0d", "resp-1")


async def test_expire_overdue_posts_notice_to_chats(db):
    chats = ChatService(db)
    store = RequestStore(db, chats=chats)
    request_id = await _create_text_request(store)
    fresh_id = await _create_text_request(store, text="Crocin")
    chat_id = await chats.create(request_id, "cust-1", "Asha", "pharm-1", "Apollo")

    request = await store.get(request_id)
    later = request.expiresAt + timedelta(seconds=5)
    expired = await store.expire_overdue(now=later)
    assert set(expired) == {request_id, fresh_id}

    after = await store.get(request_id)
    assert after.status == RequestStatus.EXPIRED
    assert after.closedReason == CloseReason.EXPIRED

    messages = await chats.list_messages(chat_id)
    assert [m.text for m in messages] == [EXPIRED_NOTICE]
    assert messages[0].type.value == "system"
    assert (await chats.get(chat_id)).isActive is True

    assert await store.expire_overdue(now=later) == []


async def test_expire_overdue_leaves_open_requests(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)
    request = await store.get(request_id)

    assert await store.expire_overdue(now=request.expiresAt - timedelta(minutes=1)) == []
    assert (await store.get(request_id)).status == RequestStatus.ACTIVE


async def test_list_for_customer_newest_first(db):
    store = RequestStore(db)
    ids = []
    for text in ["Crocin", "Dolo 650", "Azithral"]:
        ids.append(await _create_text_request(store, text=text))
        await asyncio.sleep(0.005)
    await store.create("cust-2", "Ravi", None, "text", MUMBAI_CUSTOMER, medicine_text="ORS")

    requests = await store.list_for_customer("cust-1")
    assert [r.requestId for r in requests] == list(reversed(ids))


async def test_first_response_time_belongs_to_first_counted_response(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)
    request = await store.get(request_id)
    times = {f"resp-{i}": request.createdAt + timedelta(seconds=i + 1) for i in range(8)}

    await asyncio.gather(*(store.record_response(request_id, rid, now=at) for rid, at in times.items()))

    stored = await db["requests"].find_one({})
    assert stored["responseCount"] == 8
    assert stored["firstResponseAt"] == times[stored["countedResponses"][0]]


async def test_get_expires_overdue_request(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)
    stored = await db["requests"].find_one({})
    await db["requests"].update_one(
        {"_id": stored["_id"]}, {"$set": {"expiresAt": stored["createdAt"] - timedelta(minutes=1)}}
    )

    request = await store.get(request_id)
    assert request.status == RequestStatus.EXPIRED
    assert request.closedReason == CloseReason.EXPIRED
    assert (await StatsService(db).get())["activeRequests"] == 0
    assert await store.expire_overdue() == []


async def test_listings_report_expiry_before_the_sweep(db):
    store = RequestStore(db)
    request_id = await _create_text_request(store)
    request = await store.get(request_id)
    later = request.expiresAt + timedelta(seconds=1)

    [listed] = await store.list_for_customer("cust-1", now=later)
    assert listed.status == RequestStatus.EXPIRED
    assert await store.list_all(status=RequestStatus.ACTIVE, now=later) == []
    assert [r.requestId for r in await store.list_all(status=RequestStatus.EXPIRED)] == [request_id]


async def test_manual_close_after_deadline_records_expiry(db):
    chats = ChatService(db)
    store = RequestStore(db, chats=chats)
    request_id = await _create_text_request(store)
    chat_id = await chats.create(request_id, "cust-1", "Asha", "pharm-1", "Apollo")
    request = await store.get(request_id)

    assert await store.close(request_id, CloseReason.MANUAL, now=request.expiresAt + timedelta(seconds=1)) is True

    after = await db["requests"].find_one({})
    assert after["status"] == RequestStatus.EXPIRED.value
    assert after["closedReason"] == CloseReason.EXPIRED.value
    assert [m.text for m in await chats.list_messages(chat_id)] == [EXPIRED_NOTICE]
