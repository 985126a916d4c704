import logging
import re
from typing import Any, ClassVar, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from pymongo.database import Database

from database import (
    COLLABORATORS, STUDENTS, USERS, create_document, get_db, object_ids, serialize_doc, to_object_id,
    update_document, utcnow,
)
from notifier import notify_account_activated, notify_profile_completed
from profiles import common_fields
from schemas import CollaboratorProfile, UTCDateTime, UserRole
from security import admin_only, collaborator_only

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collaborators", tags=["collaborators"])

NOT_A_COLLABORATOR = "Collaboratore non trovato"
FISCAL_CODE_PATTERN = r"^[A-Z]{6}[0-9]{2}[A-Z][0-9]{2}[A-Z][0-9]{3}[A-Z]$"


class CompleteProfilePayload(BaseModel):
    min_age: ClassVar[int] = 18

    fiscal_code: str = Field(..., min_length=16, max_length=16)
    date_of_birth: UTCDateTime
    phone: str = Field(..., min_length=9, max_length=20)
    address: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=100)
    province: str = Field(..., pattern=r"^[A-Za-z]{2}$")
    postal_code: str = Field(..., pattern=r"^\d{5}$")

    @field_validator("fiscal_code")
    @classmethod
    def upper_fiscal_code(cls, v: str) -> str:
        v = v.upper()
        if not re.match(FISCAL_CODE_PATTERN, v):
            raise ValueError("Codice fiscale non valido")
        return v

    @field_validator("province")
    @classmethod
    def upper_province(cls, v: str) -> str:
        return v.upper()

    @field_validator("date_of_birth")
    @classmethod
    def check_age(cls, v):
        today = utcnow()
        age = today.year - v.year - ((today.month, today.day) < (v.month, v.day))
        if age < cls.min_age or age > 100:
            raise ValueError(f"L'età deve essere compresa tra {cls.min_age} e 100 anni")
        return v


class ActivePayload(BaseModel):
    is_active: bool


class PermissionsPayload(BaseModel):
    can_manage_questions: Optional[bool] = None
    can_manage_materials: Optional[bool] = None
    can_view_stats: Optional[bool] = None
    can_view_students: Optional[bool] = None
    specialization: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = Field(None, max_length=2000)


def _with_user(profile: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    out = serialize_doc(profile)
    u = users.get(profile["user_id"], {})
    out["user"] = {
        "id": profile["user_id"],
        "name": u.get("name"),
        "email": u.get("email"),
        "is_active": u.get("is_active", False),
        "profile_completed": u.get("profile_completed", False),
    }
    return out


def _users_by_id(db: Database, ids: List[str]) -> Dict[str, Dict[str, Any]]:
    return {str(u["_id"]): u for u in db[USERS].find({"_id": {"$in": object_ids(ids)}})}


def _get_collaborator_user(db: Database, user_id: str) -> Dict[str, Any]:
    target = db[USERS].find_one({"_id": to_object_id(user_id, NOT_A_COLLABORATOR)})
    if not target or target.get("role") != UserRole.COLLABORATOR.value:
        raise HTTPException(status_code=404, detail=NOT_A_COLLABORATOR)
    return target


@router.get("")
def list_collaborators(user=Depends(admin_only), db: Database = Depends(get_db)):
    profiles = list(db[COLLABORATORS].find().sort("created_at", -1))
    users = _users_by_id(db, [p["user_id"] for p in profiles])
    return [_with_user(p, users) for p in profiles]


@router.get("/pending")
def pending_registrations(user=Depends(admin_only), db: Database = Depends(get_db)):
    pending = list(db[USERS].find({"role": UserRole.COLLABORATOR.value, "is_active": False}).sort("created_at", -1))
    users = {str(u["_id"]): u for u in pending}
    profiles = db[COLLABORATORS].find({"user_id": {"$in": list(users)}})
    return [_with_user(p, users) for p in profiles]


@router.get("/profile")
def my_profile(user=Depends(collaborator_only), db: Database = Depends(get_db)):
    profile = db[COLLABORATORS].find_one({"user_id": user["sub"]})
    if not profile:
        raise HTTPException(status_code=404, detail="Profilo collaboratore non trovato")
    return _with_user(profile, _users_by_id(db, [user["sub"]]))


@router.post("/profile/complete")
def complete_profile(payload: CompleteProfilePayload, user=Depends(collaborator_only), db: Database = Depends(get_db)):
    profile = db[COLLABORATORS].find_one({"user_id": user["sub"]})
    if not profile:
        raise HTTPException(status_code=404, detail="Profilo collaboratore non trovato")
    update_document(db, COLLABORATORS, profile["_id"], payload.model_dump())
    account = update_document(db, USERS, user["sub"], {"profile_completed": True})
    notify_profile_completed(db, account)
    return {"success": True}


@router.get("/{user_id}")
def get_collaborator(user_id: str, user=Depends(admin_only), db: Database = Depends(get_db)):
    target = _get_collaborator_user(db, user_id)
    profile = db[COLLABORATORS].find_one({"user_id": user_id})
    if not profile:
        raise HTTPException(status_code=404, detail=NOT_A_COLLABORATOR)
    return _with_user(profile, {user_id: target})


@router.post("/{user_id}/active")
def set_active(user_id: str, payload: ActivePayload, background_tasks: BackgroundTasks,
               user=Depends(admin_only), db: Database = Depends(get_db)):
    target = _get_collaborator_user(db, user_id)
    update_document(db, USERS, target["_id"], {"is_active": payload.is_active})
    if payload.is_active and not target.get("is_active"):
        notify_account_activated(db, user_id, background_tasks=background_tasks)
    return {"id": user_id, "is_active": payload.is_active}


@router.patch("/{user_id}/permissions")
def update_permissions(user_id: str, payload: PermissionsPayload, user=Depends(admin_only),
                       db: Database = Depends(get_db)):
    profile = db[COLLABORATORS].find_one({"user_id": user_id})
    if not profile:
        raise HTTPException(status_code=404, detail=NOT_A_COLLABORATOR)
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        return serialize_doc(profile)
    return serialize_doc(update_document(db, COLLABORATORS, profile["_id"], changes))


@router.post("/{user_id}/convert-from-student")
def convert_from_student(user_id: str, user=Depends(admin_only), db: Database = Depends(get_db)):
    target = db[USERS].find_one({"_id": to_object_id(user_id, "Utente non trovato")})
    if not target:
        raise HTTPException(status_code=404, detail="Utente non trovato")
    if target.get("role") != UserRole.STUDENT.value:
        raise HTTPException(status_code=400, detail="L'utente non è uno studente")
    student = db[STUDENTS].find_one({"user_id": user_id})
    fields = common_fields(student)
    create_document(db, COLLABORATORS, CollaboratorProfile(user_id=user_id, **fields))
    if student:
        db[STUDENTS].delete_one({"_id": student["_id"]})
    update_document(db, USERS, target["_id"], {"role": UserRole.COLLABORATOR.value, "is_active": False})
    logger.info("Student %s converted to collaborator by %s", user_id, user["sub"])
    return {"id": user_id, "role": UserRole.COLLABORATOR.value}
