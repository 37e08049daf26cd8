from fastapi import APIRouter, Depends
from pharmalink.models.user import OnlineStatusUpdate, User, UserCreate, UserUpdate
from pharmalink.services.account_service import AccountService
from pharmalink.utils.auth import get_current_user, get_token_claims, require_pharmacy

router = APIRouter()


@router.post("", response_model=User, status_code=201)
async def create_account(data: UserCreate, claims: dict = Depends(get_token_claims)):
    """Create the account record for the signed-in user. The id comes from the token."""
    return await AccountService().create(claims["sub"], data, email=claims.get("email"))


@router.get("/me", response_model=User)
async def get_me(current_user: dict = Depends(get_current_user)):
    return await AccountService().require(current_user["_id"])


@router.patch("/me", response_model=User)
async def update_me(data: UserUpdate, current_user: dict = Depends(get_current_user)):
    return await AccountService().update(current_user["_id"], data)


@router.put("/me/online", response_model=User)
async def set_online(data: OnlineStatusUpdate, current_user: dict = Depends(require_pharmacy)):
    return await AccountService().set_online(current_user["_id"], data.isOnline, data.location)
