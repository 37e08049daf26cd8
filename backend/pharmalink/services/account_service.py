import logging
from datetime import datetime
from typing import List, Optional, Union
from pymongo.errors import DuplicateKeyError
from pharmalink.db import get_db
from pharmalink.errors import NotFoundError, ValidationError
from pharmalink.models.location import Location
from pharmalink.models.user import CustomerProfile, User, UserCreate, UserRole, UserUpdate
from pharmalink.services.request_store import coerce_location
from pharmalink.services.stats_service import StatsService
from pharmalink.utils.logger import log_event, EventTypes
from pharmalink.utils.retry import with_retry

logger = logging.getLogger(__name__)


class AccountService:
    """Role-tagged account records keyed by the sign-in provider's user id."""

    def __init__(self, db=None, stats: StatsService = None):
        self.db = db if db is not None else get_db()
        self.stats = stats or StatsService(self.db)

    @property
    def collection(self):
        return self.db["users"]

    @staticmethod
    def _to_model(doc: dict) -> User:
        doc["_id"] = str(doc["_id"])
        return User(**doc)

    async def create(self, user_id: str, data: UserCreate, email: Optional[str] = None) -> User:
        if data.role == UserRole.PHARMACY:
            if data.pharmacyProfile is None:
                raise ValidationError("Pharmacy accounts need a pharmacy profile")
            if data.pharmacyProfile.isOnline and data.pharmacyProfile.location is None:
                raise ValidationError("A pharmacy cannot be online without a location")
            customer_profile = None
        else:
            customer_profile = data.customerProfile or CustomerProfile()

        now = datetime.utcnow()
        user_doc = data.model_dump()
        user_doc.update({
            "_id": user_id,
            "email": data.email or email,
            "customerProfile": customer_profile.model_dump() if customer_profile else None,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        })
        if data.role == UserRole.CUSTOMER:
            user_doc["pharmacyProfile"] = None

        try:
            await self.collection.insert_one(user_doc)
        except DuplicateKeyError:
            raise ValidationError("Account already exists")

        if data.role == UserRole.PHARMACY:
            await self.stats.increment(totalPharmacies=1)
        else:
            await self.stats.increment(totalCustomers=1)
        await log_event(EventTypes.USER_CREATED, {"role": data.role.value}, user_id=user_id)
        return self._to_model(user_doc)

    async def get(self, user_id: str) -> Optional[User]:
        doc = await with_retry(lambda: self.collection.find_one({"_id": user_id}), "get user")
        return self._to_model(doc) if doc else None

    async def require(self, user_id: str) -> User:
        user = await self.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def update(self, user_id: str, data: UserUpdate) -> User:
        user = await self.require(user_id)
        update_dict = data.model_dump(exclude_unset=True)
        if user.role == UserRole.CUSTOMER:
            update_dict.pop("pharmacyProfile", None)
        else:
            update_dict.pop("customerProfile", None)
        if not update_dict:
            return user

        update_dict["updatedAt"] = datetime.utcnow()
        await with_retry(
            lambda: self.collection.update_one({"_id": user_id}, {"$set": update_dict}), "update user"
        )
        await log_event(EventTypes.USER_UPDATED, {"fields": sorted(update_dict)}, user_id=user_id)
        return await self.require(user_id)

    async def set_online(self, pharmacy_id: str, is_online: bool, location: Union[Location, dict, None] = None) -> User:
        """Only the pharmacy's own session calls this, so a plain overwrite is enough."""
        user = await self.require(pharmacy_id)
        if user.role != UserRole.PHARMACY or user.pharmacyProfile is None:
            raise ValidationError("Only pharmacies can go online")

        updates = {"pharmacyProfile.isOnline": is_online, "updatedAt": datetime.utcnow()}
        if location is not None:
            updates["pharmacyProfile.location"] = coerce_location(location).model_dump()
        elif is_online and user.pharmacyProfile.location is None:
            raise ValidationError("Set the pharmacy location before going online")

        await with_retry(
            lambda: self.collection.update_one({"_id": pharmacy_id}, {"$set": updates}), "set online status"
        )
        await log_event(EventTypes.PHARMACY_ONLINE_CHANGED, {"is_online": is_online}, user_id=pharmacy_id)
        return await self.require(pharmacy_id)

    async def list(self, role: Optional[UserRole] = None, skip: int = 0, limit: int = 100) -> List[User]:
        query = {}
        if role is not None:
            query["role"] = UserRole(role).value
        docs = await with_retry(
            lambda: self.collection.find(query).sort("createdAt", -1).skip(skip).limit(limit).to_list(None),
            "list users",
        )
        return [self._to_model(doc) for doc in docs]
