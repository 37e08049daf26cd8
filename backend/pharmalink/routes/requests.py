from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
from pharmalink import config
from pharmalink.errors import NotFoundError, ValidationError
from pharmalink.models.request import MedicineRequest, MedicineRequestCreate, NearbyRequest, CloseReason
from pharmalink.models.response import Availability, PharmacyResponse, ResponseCreate, SubmitResult
from pharmalink.models.user import CustomerProfile, PharmacyProfile
from pharmalink.services.broadcast import broadcast_engine
from pharmalink.services.notification_service import NotificationService
from pharmalink.services.request_store import RequestStore
from pharmalink.services.response_matcher import ResponseMatcher
from pharmalink.utils.auth import get_current_user, require_customer, require_pharmacy

router = APIRouter()


def _is_admin(user: dict) -> bool:
    return (user.get("email") or "").lower() in config.ADMIN_EMAILS


async def _owned_request(request_id: str, current_user: dict) -> MedicineRequest:
    request = await RequestStore().get(request_id)
    if request is None:
        raise NotFoundError("Request not found")
    if request.customerId != current_user["_id"] and not _is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your request")
    return request


@router.post("", response_model=MedicineRequest, status_code=201)
async def create_request(data: MedicineRequestCreate, current_user: dict = Depends(require_customer)):
    location = data.location
    if location is None:
        profile = CustomerProfile(**(current_user.get("customerProfile") or {}))
        location = profile.default_location()

    store = RequestStore()
    request_id = await store.create(
        current_user["_id"],
        current_user.get("displayName"),
        current_user.get("phone"),
        data.requestType,
        location,
        prescription_image_urls=data.prescriptionImageUrls,
        medicine_text=data.medicineText,
        notes=data.notes,
    )
    broadcast_engine.poke()
    return await store.get(request_id)


@router.get("/mine", response_model=List[MedicineRequest])
async def my_requests(
    limit: int = Query(config.CUSTOMER_RECENT_REQUESTS_LIMIT, ge=1, le=100),
    current_user: dict = Depends(require_customer),
):
    return await RequestStore().list_for_customer(current_user["_id"], limit=limit)


@router.get("/nearby", response_model=List[NearbyRequest])
async def nearby_requests(current_user: dict = Depends(require_pharmacy)):
    """Current snapshot of what the live feed would show this pharmacy."""
    profile = PharmacyProfile(**current_user["pharmacyProfile"]) if current_user.get("pharmacyProfile") else None
    if profile is None or not profile.isOnline or profile.location is None:
        return []
    return await broadcast_engine.snapshot(profile.location, config.BROADCAST_RADIUS_KM)


@router.get("/{request_id}", response_model=MedicineRequest)
async def get_request(request_id: str, current_user: dict = Depends(get_current_user)):
    request = await RequestStore().get(request_id)
    if request is None:
        raise NotFoundError("Request not found")
    if current_user.get("role") != "pharmacy" and request.customerId != current_user["_id"] and not _is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your request")
    return request


@router.post("/{request_id}/close", response_model=MedicineRequest)
async def close_request(request_id: str, current_user: dict = Depends(require_customer)):
    await _owned_request(request_id, current_user)
    store = RequestStore()
    if await store.close(request_id, CloseReason.MANUAL):
        broadcast_engine.poke()
    return await store.get(request_id)


@router.post("/{request_id}/responses", response_model=SubmitResult, status_code=201)
async def submit_response(
    request_id: str,
    data: ResponseCreate,
    current_user: dict = Depends(require_pharmacy),
):
    profile = PharmacyProfile(**current_user["pharmacyProfile"]) if current_user.get("pharmacyProfile") else None
    if profile is None or profile.location is None:
        raise ValidationError("Set the pharmacy location before responding")

    result = await ResponseMatcher().submit(
        request_id,
        current_user["_id"],
        profile.pharmacyName,
        current_user.get("phone"),
        profile.location,
        data.availability,
        response_id=data.responseId,
    )

    request = await RequestStore().get(request_id)
    if data.availability == Availability.AVAILABLE:
        title = f"{profile.pharmacyName} has your medicine"
        body = "Open the chat to arrange pickup."
    else:
        title = f"{profile.pharmacyName} does not have it"
        body = "We will keep looking nearby."
    await NotificationService().notify(
        request.customerId,
        title,
        body,
        type="response",
        link=f"/request/{request_id}",
        payload={"requestId": request_id, "responseId": result.responseId, "chatId": result.chatId},
        dedupe_key=f"response:{result.responseId}",
    )
    return result


@router.get("/{request_id}/responses", response_model=List[PharmacyResponse])
async def list_responses(
    request_id: str,
    grouped: bool = Query(False),
    current_user: dict = Depends(get_current_user),
):
    await _owned_request(request_id, current_user)
    return await ResponseMatcher().list_for_request(request_id, grouped=grouped)


@router.get("/{request_id}/responses/mine", response_model=Optional[PharmacyResponse])
async def my_response(request_id: str, current_user: dict = Depends(require_pharmacy)):
    return await ResponseMatcher().get_for_pharmacy(request_id, current_user["_id"])
