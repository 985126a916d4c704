import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

from database import USERS, create_document, get_db, to_object_id, utcnow
from notifier import notify_new_registration
from profiles import create_profile
from schemas import User, UserRole
from security import create_access_token, hash_password, protected, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8)
    role: UserRole = UserRole.STUDENT


class LoginPayload(BaseModel):
    email: str
    password: str


@router.post("/register", response_model=Dict[str, str])
def register_user(payload: RegisterPayload, db: Database = Depends(get_db)):
    if payload.role == UserRole.ADMIN:
        raise HTTPException(status_code=400, detail="Ruolo non valido")
    email = payload.email.strip().lower()
    if db[USERS].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email già registrata")
    doc = User(name=payload.name.strip(), email=email, password_hash=hash_password(payload.password), role=payload.role)
    uid = create_document(db, USERS, doc)
    create_profile(db, uid, doc.role)
    logger.info("Registered %s %s", doc.role, uid)
    notify_new_registration(db, {"_id": uid, "name": doc.name, "email": email, "role": doc.role})
    return {"id": uid}


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    user = db[USERS].find_one({"email": payload.email.strip().lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Credenziali non valide")
    if not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Credenziali non valide")
    db[USERS].update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
    token = create_access_token({
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "name": user.get("name"),
    })
    return TokenResponse(access_token=token)


@router.get("/me")
def me(user: Dict[str, Any] = Depends(protected), db: Database = Depends(get_db)):
    doc = db[USERS].find_one({"_id": to_object_id(user["sub"])})
    if not doc:
        raise HTTPException(status_code=401, detail="Utente non trovato")
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "email": doc.get("email"),
        "role": doc.get("role"),
        "is_active": doc.get("is_active", False),
        "profile_completed": doc.get("profile_completed", False),
    }
