from pydantic import AliasChoices, BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum
from pharmalink.models.location import Location


class UserRole(str, Enum):
    CUSTOMER = "customer"
    PHARMACY = "pharmacy"


class Address(BaseModel):
    label: str = "Home"
    street: Optional[str] = None
    area: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    location: Optional[Location] = None


class CustomerProfile(BaseModel):
    addresses: List[Address] = Field(default_factory=list)
    defaultAddressIndex: int = 0

    def default_location(self) -> Optional[Location]:
        if 0 <= self.defaultAddressIndex < len(self.addresses):
            return self.addresses[self.defaultAddressIndex].location
        return None


class PharmacyProfile(BaseModel):
    pharmacyName: str
    licenseNumber: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[Location] = None
    isVerified: bool = False
    isOnline: bool = False


class User(BaseModel):
    uid: str = Field(..., validation_alias=AliasChoices("_id", "uid"))
    displayName: str
    role: UserRole
    phone: Optional[str] = None
    email: Optional[str] = None
    isActive: bool = True
    customerProfile: Optional[CustomerProfile] = None
    pharmacyProfile: Optional[PharmacyProfile] = None
    createdAt: datetime
    updatedAt: Optional[datetime] = None

    class Config:
        populate_by_name = True


class UserCreate(BaseModel):
    displayName: str = Field(..., min_length=1, max_length=100)
    role: UserRole
    phone: Optional[str] = None
    email: Optional[str] = None
    customerProfile: Optional[CustomerProfile] = None
    pharmacyProfile: Optional[PharmacyProfile] = None


class UserUpdate(BaseModel):
    displayName: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = None
    email: Optional[str] = None
    customerProfile: Optional[CustomerProfile] = None
    pharmacyProfile: Optional[PharmacyProfile] = None


class OnlineStatusUpdate(BaseModel):
    isOnline: bool
    location: Optional[Location] = None
