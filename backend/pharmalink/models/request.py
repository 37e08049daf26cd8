from pydantic import AliasChoices, BaseModel, Field
from datetime import datetime
from typing import Optional, List
from enum import Enum
from pharmalink.models.location import Location


class RequestType(str, Enum):
    PRESCRIPTION = "prescription"
    TEXT = "text"


class RequestStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    EXPIRED = "expired"


class CloseReason(str, Enum):
    EXPIRED = "expired"
    MANUAL = "manual"


class MedicineRequest(BaseModel):
    requestId: str = Field(..., validation_alias=AliasChoices("_id", "requestId"))
    customerId: str
    customerName: Optional[str] = None
    customerPhone: Optional[str] = None

    requestType: RequestType
    prescriptionImageUrls: List[str] = Field(default_factory=list)
    medicineText: Optional[str] = None
    notes: Optional[str] = None

    location: Location

    status: RequestStatus = RequestStatus.ACTIVE
    createdAt: datetime
    expiresAt: datetime
    closedAt: Optional[datetime] = None
    closedReason: Optional[CloseReason] = None
    firstResponseAt: Optional[datetime] = None
    responseCount: int = Field(default=0, ge=0)

    class Config:
        populate_by_name = True

    def is_open(self, now: datetime) -> bool:
        """Open means active *and* before the deadline; ``status`` alone can lag a missed sweep."""
        return self.status == RequestStatus.ACTIVE and now < self.expiresAt

    def summary(self) -> str:
        if self.requestType == RequestType.TEXT:
            return self.medicineText or ""
        count = len(self.prescriptionImageUrls)
        return f"Prescription ({count} image{'s' if count != 1 else ''})"


class NearbyRequest(MedicineRequest):
    distanceKm: float


class MedicineRequestCreate(BaseModel):
    requestType: RequestType
    prescriptionImageUrls: List[str] = Field(default_factory=list)
    medicineText: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    # Falls back to the customer's default address when omitted
    location: Optional[Location] = None
