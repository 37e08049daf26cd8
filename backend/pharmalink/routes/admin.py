from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from pharmalink.db import get_db
from pharmalink.models.request import MedicineRequest, RequestStatus
from pharmalink.models.user import User, UserRole
from pharmalink.services.account_service import AccountService
from pharmalink.services.broadcast import broadcast_engine
from pharmalink.services.request_store import RequestStore
from pharmalink.services.stats_service import StatsService
from pharmalink.utils.auth import require_admin

router = APIRouter()


@router.get("/stats")
async def get_stats(current_user: dict = Depends(require_admin)):
    db = get_db()
    stats = await StatsService(db).get()
    stats["onlinePharmacies"] = await db["users"].count_documents(
        {"role": UserRole.PHARMACY.value, "pharmacyProfile.isOnline": True}
    )
    stats["liveSubscriptions"] = len(broadcast_engine.subscriptions)
    return stats


@router.get("/users", response_model=List[User])
async def list_users(
    role: Optional[UserRole] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(require_admin),
):
    return await AccountService().list(role=role, skip=(page - 1) * limit, limit=limit)


@router.get("/requests", response_model=List[MedicineRequest])
async def list_requests(
    status: Optional[RequestStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(require_admin),
):
    return await RequestStore().list_all(status=status, skip=(page - 1) * limit, limit=limit)
