from pydantic import AliasChoices, BaseModel, Field
from datetime import datetime
from typing import Optional
from enum import Enum
from pharmalink.models.location import Location


class Availability(str, Enum):
    AVAILABLE = "available"
    NOT_AVAILABLE = "not_available"


class PharmacyResponse(BaseModel):
    responseId: str = Field(..., validation_alias=AliasChoices("_id", "responseId"))
    requestId: str
    pharmacyId: str
    pharmacyName: str
    pharmacyPhone: Optional[str] = None
    pharmacyLocation: Location
    distanceKm: float
    availability: Availability
    chatId: Optional[str] = None
    respondedAt: datetime

    class Config:
        populate_by_name = True


class ResponseCreate(BaseModel):
    availability: Availability
    # Client-generated id that makes a retried submission idempotent
    responseId: Optional[str] = None


class SubmitResult(BaseModel):
    responseId: str
    chatId: Optional[str] = None
