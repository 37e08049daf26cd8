import asyncio
from datetime import timedelta
import pytest
from bson import ObjectId
from pharmalink.errors import (
    DuplicateResponseError, NotFoundError, RequestClosedError, TransientStorageError, ValidationError,
)
from pharmalink.models.request import RequestStatus
from pharmalink.models.response import Availability
from pharmalink.services.request_store import RequestStore
from pharmalink.services.response_matcher import ResponseMatcher
from conftest import MUMBAI_CUSTOMER, PHARMACY_A, PHARMACY_B


@pytest.fixture
async def matcher(db):
    return ResponseMatcher(db)


@pytest.fixture
async def request_id(matcher):
    return await matcher.requests.create(
        "cust-1", "Asha Patel", "+919800000001", "text", MUMBAI_CUSTOMER, medicine_text="Paracetamol 500mg"
    )


async def _submit(matcher, request_id, pharmacy_id="pharm-a", availability="available", location=PHARMACY_A, **kwargs):
    return await matcher.submit(request_id, pharmacy_id, f"Pharmacy {pharmacy_id}", "+912200000000", location, availability, **kwargs)


async def test_available_response_opens_chat(matcher, request_id):
    result = await _submit(matcher, request_id)
    assert result.chatId is not None

    chat = await matcher.chats.get(result.chatId)
    assert chat.requestId == request_id
    assert chat.participants.customerId == "cust-1"
    assert chat.participants.pharmacyId == "pharm-a"
    assert chat.isActive

    response = await matcher.get_for_pharmacy(request_id, "pharm-a")
    assert response.responseId == result.responseId
    assert response.chatId == result.chatId
    assert response.distanceKm == pytest.approx(1.53, abs=0.05)

    request = await matcher.requests.get(request_id)
    assert request.responseCount == 1
    assert request.firstResponseAt is not None


async def test_not_available_response_has_no_chat(matcher, request_id, db):
    result = await _submit(matcher, request_id, availability=Availability.NOT_AVAILABLE)
    assert result.chatId is None
    assert (await matcher.get_for_pharmacy(request_id, "pharm-a")).chatId is None
    assert await db["chats"].count_documents({}) == 0
    assert (await matcher.requests.get(request_id)).responseCount == 1


async def test_second_response_from_same_pharmacy_is_rejected(matcher, request_id, db):
    first = await _submit(matcher, request_id)
    with pytest.raises(DuplicateResponseError):
        await _submit(matcher, request_id, availability="not_available")

    stored = await matcher.get_for_pharmacy(request_id, "pharm-a")
    assert stored.responseId == first.responseId
    assert stored.availability == Availability.AVAILABLE
    assert await db["responses"].count_documents({}) == 1
    assert await db["chats"].count_documents({}) == 1
    assert (await matcher.requests.get(request_id)).responseCount == 1


async def test_simultaneous_duplicates_persist_one(matcher, request_id, db):
    results = await asyncio.gather(
        *(_submit(matcher, request_id) for _ in range(3)), return_exceptions=True
    )
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(r, DuplicateResponseError) for r in results if isinstance(r, Exception))
    assert await db["responses"].count_documents({}) == 1
    assert await db["chats"].count_documents({}) == 1
    assert (await matcher.requests.get(request_id)).responseCount == 1


async def test_retry_with_same_response_id_is_idempotent(matcher, request_id, db):
    response_id = str(ObjectId())
    first = await _submit(matcher, request_id, response_id=response_id)
    again = await _submit(matcher, request_id, response_id=response_id)

    assert again.responseId == first.responseId == response_id
    assert again.chatId == first.chatId
    assert await db["chats"].count_documents({}) == 1
    assert (await matcher.requests.get(request_id)).responseCount == 1


async def test_concurrent_distinct_pharmacies_are_all_counted(matcher, request_id):
    count = 12
    await asyncio.gather(*(_submit(matcher, request_id, pharmacy_id=f"pharm-{i}") for i in range(count)))

    request = await matcher.requests.get(request_id)
    assert request.responseCount == count
    assert len(await matcher.list_for_request(request_id)) == count


async def test_multiple_pharmacies_can_each_be_available(matcher, request_id):
    a = await _submit(matcher, request_id, pharmacy_id="pharm-a")
    b = await _submit(matcher, request_id, pharmacy_id="pharm-b", location=PHARMACY_B)
    assert a.chatId and b.chatId and a.chatId != b.chatId


async def test_chat_failure_rolls_back_response(matcher, request_id, db, monkeypatch):
    async def broken_create(*args, **kwargs):
        raise TransientStorageError()

    monkeypatch.setattr(matcher.chats, "create", broken_create)
    with pytest.raises(TransientStorageError):
        await _submit(matcher, request_id)

    assert await matcher.get_for_pharmacy(request_id, "pharm-a") is None
    assert await db["chats"].count_documents({}) == 0
    assert (await matcher.requests.get(request_id)).responseCount == 0

    # The pharmacy can try again once storage recovers
    monkeypatch.undo()
    result = await _submit(matcher, request_id)
    assert result.chatId is not None


async def test_counter_failure_rolls_back_response_and_chat(matcher, request_id, db, monkeypatch):
    async def broken_record(*args, **kwargs):
        raise TransientStorageError()

    monkeypatch.setattr(matcher.requests, "record_response", broken_record)
    with pytest.raises(TransientStorageError):
        await _submit(matcher, request_id)

    assert await db["responses"].count_documents({}) == 0
    assert await db["chats"].count_documents({}) == 0


async def test_submit_to_unknown_request(matcher):
    with pytest.raises(NotFoundError):
        await _submit(matcher, "5f0c1a2b3c4d5e6f7a8b9c0d")


async def test_submit_after_manual_close(matcher, request_id, db):
    await matcher.requests.close(request_id)
    with pytest.raises(RequestClosedError):
        await _submit(matcher, request_id)
    assert await db["responses"].count_documents({}) == 0


async def test_submit_after_deadline_before_sweep(matcher, request_id, db):
    request = await matcher.requests.get(request_id)
    assert request.status == RequestStatus.ACTIVE

    with pytest.raises(RequestClosedError):
        await _submit(matcher, request_id, now=request.expiresAt + timedelta(seconds=1))

    assert await db["responses"].count_documents({}) == 0
    after = await matcher.requests.get(request_id)
    assert after.status == RequestStatus.EXPIRED
    assert after.responseCount == 0


async def test_invalid_submissions(matcher, request_id):
    with pytest.raises(ValidationError):
        await _submit(matcher, request_id, availability="maybe")
    with pytest.raises(ValidationError):
        await _submit(matcher, request_id, response_id="not-hex")
    with pytest.raises(ValidationError):
        await _submit(matcher, request_id, location=None)


async def test_list_for_request_orders(matcher, request_id):
    await _submit(matcher, request_id, pharmacy_id="far-yes", location=PHARMACY_B)
    await asyncio.sleep(0.005)
    await _submit(matcher, request_id, pharmacy_id="near-no", availability="not_available")
    await asyncio.sleep(0.005)
    await _submit(matcher, request_id, pharmacy_id="near-yes")

    by_time = await matcher.list_for_request(request_id)
    assert [r.pharmacyId for r in by_time] == ["far-yes", "near-no", "near-yes"]

    grouped = await matcher.list_for_request(request_id, grouped=True)
    assert [r.pharmacyId for r in grouped] == ["near-yes", "far-yes", "near-no"]


async def test_request_store_is_shared_with_chats(db):
    matcher = ResponseMatcher(db)
    assert isinstance(matcher.requests, RequestStore)
    assert matcher.requests.chats is matcher.chats
