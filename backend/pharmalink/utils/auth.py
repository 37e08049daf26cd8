from datetime import datetime, timedelta
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pharmalink import config
from pharmalink.db import get_db
import logging

# ---------------------------------------------------------------------------
# Tokens are issued by the external sign-in provider and share SECRET_KEY with
# this service. ``sub`` is the account id used as ``users._id``.
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

security = HTTPBearer()

credentials_exception = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


def create_access_token(user_id: str, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    """Mint a token the way the sign-in provider does. Used by tests and local tooling."""
    payload = {
        "sub": user_id,
        "type": "access",
        "exp": datetime.utcnow() + timedelta(minutes=expires_minutes),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise credentials_exception

    logger.debug("Validated token for subject: %s", payload.get("sub"))
    if payload.get("sub") is None:
        raise credentials_exception
    if payload.get("type", "access") != "access":
        raise credentials_exception
    return payload


async def get_token_claims(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Token claims only; used before an account record exists."""
    return decode_token(credentials.credentials)


async def user_from_token(token: str) -> Optional[dict]:
    """Resolve a raw token to its account record. Returns None instead of raising (WebSocket use)."""
    try:
        payload = decode_token(token)
    except HTTPException:
        return None
    user = await get_db()["users"].find_one({"_id": payload["sub"]})
    if user is None or not user.get("isActive", True):
        return None
    user["email"] = user.get("email") or payload.get("email")
    return user


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    payload = decode_token(credentials.credentials)

    user = await get_db()["users"].find_one({"_id": payload["sub"]})
    if user is None:
        raise credentials_exception

    if not user.get("isActive", True):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    user["email"] = user.get("email") or payload.get("email")
    return user


def verify_role(required_roles: list):
    def role_checker(current_user: dict = Depends(get_current_user)):
        if current_user.get("role") not in required_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return current_user
    return role_checker


# Role-specific dependencies
require_customer = verify_role(["customer"])
require_pharmacy = verify_role(["pharmacy"])


def require_admin(current_user: dict = Depends(get_current_user)):
    email = (current_user.get("email") or "").lower()
    if email not in config.ADMIN_EMAILS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return current_user
