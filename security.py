from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import utcnow
from schemas import UserRole

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

STAFF_ROLES = (UserRole.ADMIN.value, UserRole.COLLABORATOR.value)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None


def bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        return None
    return auth.split(" ", 1)[1].strip()


async def get_current_user(request: Request) -> Optional[Dict[str, Any]]:
    """Return the decoded JWT (sub = user id, role) if present, else None."""
    token = bearer_token(request)
    if not token:
        return None
    return decode_token(token)


def require_roles(*roles: str):
    async def _dep(user: Optional[Dict[str, Any]] = Depends(get_current_user)):
        if user is None:
            raise HTTPException(status_code=401, detail="Non autenticato")
        if roles and user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Non hai i permessi per questa operazione")
        return user
    return _dep


protected = require_roles()
staff_only = require_roles(*STAFF_ROLES)
admin_only = require_roles(UserRole.ADMIN.value)
student_only = require_roles(UserRole.STUDENT.value)
collaborator_only = require_roles(UserRole.COLLABORATOR.value)


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == UserRole.ADMIN.value


def is_student(user: Dict[str, Any]) -> bool:
    return user.get("role") == UserRole.STUDENT.value
