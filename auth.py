import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict

from bson import ObjectId
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from passlib.context import CryptContext

from database import db

logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", str(60 * 24 * 7)))
ADMIN_TOKEN_EXPIRE_MIN = int(os.getenv("ADMIN_TOKEN_EXPIRE_MIN", str(60 * 24 * 7)))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)

ROLE_PERMISSIONS: Dict[str, Dict[str, bool]] = {
    "super_admin": {
        "dashboard": True,
        "orders": True,
        "categories": True,
        "products": True,
        "messages": True,
        "users": True,
        "settings": True,
        "affiliates": True,
        "analytics": True,
        "admin_management": True,
    },
    "assistant_admin": {
        "dashboard": True,
        "orders": True,
        "categories": True,
        "products": True,
        "messages": True,
        "users": False,
        "settings": False,
        "affiliates": False,
        "analytics": False,
        "admin_management": False,
    },
}


def permissions_for_role(role: str) -> Dict[str, bool]:
    if role not in ROLE_PERMISSIONS:
        raise ValueError(f"Unknown admin role: {role}")
    return dict(ROLE_PERMISSIONS[role])


def create_access_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MIN):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def create_user_token(user_id: str) -> str:
    return create_access_token({"sub": user_id, "type": "user"})


def create_admin_token(admin_id: str, role: str, permissions: Dict[str, bool]) -> str:
    return create_access_token(
        {"sub": admin_id, "role": role, "permissions": permissions, "type": "admin"},
        expires_minutes=ADMIN_TOKEN_EXPIRE_MIN,
    )


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def extract_token(
    token: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Optional[str]:
    """The raw ``token`` header wins over ``Authorization: Bearer``."""
    if token:
        return token
    if credentials is not None:
        return credentials.credentials
    return None


def _decode(token: Optional[str], expected_type: str) -> dict:
    if not token:
        raise HTTPException(status_code=401, detail="Not authorized, please login again")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        logger.info("Rejected %s token: %s", expected_type, e)
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("type") != expected_type or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def _object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(token: Optional[str] = Depends(extract_token)) -> dict:
    payload = _decode(token, "user")
    user = db["user"].find_one({"_id": _object_id(payload["sub"])})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user["_id"] = str(user["_id"])
    return user


async def get_current_admin(token: Optional[str] = Depends(extract_token)) -> dict:
    payload = _decode(token, "admin")
    admin = db["admin"].find_one({"_id": _object_id(payload["sub"]), "is_active": True})
    if not admin:
        raise HTTPException(status_code=401, detail="Admin not found or inactive")
    admin["_id"] = str(admin["_id"])
    return admin


async def require_super_admin(admin: dict = Depends(get_current_admin)):
    if admin.get("role") != "super_admin":
        raise HTTPException(status_code=403, detail="Super admin only")
    return admin


def require_permission(name: str):
    """Dependency factory checking one permission of the calling admin.

    Permissions are read from the stored admin document, not from the token,
    so a role change takes effect on the next request.
    """

    async def checker(admin: dict = Depends(get_current_admin)):
        if not admin.get("permissions", {}).get(name):
            raise HTTPException(status_code=403, detail=f"Missing permission: {name}")
        return admin

    return checker
