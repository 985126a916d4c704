import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo.database import Database

from database import (
    ASSIGNMENTS, COLLABORATORS, GROUPS, INVITATIONS, NOTIFICATIONS, PREFERENCES, RESULTS,
    SIMULATIONS, STUDENTS, USERS, get_db, paginate, serialize_list, to_object_id, update_document,
)
from notifier import notify_account_activated
from profiles import common_fields, create_profile, profile_collection, profile_is_complete
from schemas import SimulationType, UserRole
from security import admin_only, protected, STAFF_ROLES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])

USER_NOT_FOUND = "Utente non trovato"


class ChangeRolePayload(BaseModel):
    new_role: UserRole


def _get_user(db: Database, user_id: str) -> Dict[str, Any]:
    doc = db[USERS].find_one({"_id": to_object_id(user_id, USER_NOT_FOUND)})
    if not doc:
        raise HTTPException(status_code=404, detail=USER_NOT_FOUND)
    return doc


@router.get("")
def list_users(
    search: Optional[str] = None,
    role: Optional[UserRole] = None,
    status: str = Query("ALL", pattern="^(ALL|ACTIVE|INACTIVE|PENDING_PROFILE)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(admin_only),
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if search:
        rx = {"$regex": re.escape(search.strip()), "$options": "i"}
        filt["$or"] = [{"name": rx}, {"email": rx}]
    if role:
        filt["role"] = role.value
    if status == "ACTIVE":
        filt["is_active"] = True
    elif status == "INACTIVE":
        filt["is_active"] = False
    elif status == "PENDING_PROFILE":
        filt["profile_completed"] = False
    docs, pagination = paginate(db, USERS, filt, [("created_at", -1)], page, limit)
    return {"users": serialize_list(docs), "pagination": pagination}


@router.get("/stats")
def user_stats(user=Depends(admin_only), db: Database = Depends(get_db)):
    coll = db[USERS]
    return {
        "total": coll.count_documents({}),
        "admins": coll.count_documents({"role": UserRole.ADMIN.value}),
        "collaborators": coll.count_documents({"role": UserRole.COLLABORATOR.value}),
        "students": coll.count_documents({"role": UserRole.STUDENT.value}),
        "active": coll.count_documents({"is_active": True}),
        "pending_profile": coll.count_documents({"profile_completed": False}),
    }


@router.get("/staff")
def list_staff(user=Depends(protected), db: Database = Depends(get_db)):
    docs = db[USERS].find({"role": {"$in": list(STAFF_ROLES)}, "is_active": True}).sort("name", 1)
    return [{"id": str(d["_id"]), "name": d.get("name"), "role": d.get("role")} for d in docs]


@router.post("/{user_id}/role")
def change_role(user_id: str, payload: ChangeRolePayload, user=Depends(admin_only), db: Database = Depends(get_db)):
    if user_id == user["sub"]:
        raise HTTPException(status_code=403, detail="Non puoi modificare il tuo ruolo")
    target = _get_user(db, user_id)
    new_role = payload.new_role.value
    old_role = target.get("role")
    if old_role == new_role:
        return {"id": user_id, "role": new_role, "changed": False}

    old_collection = profile_collection(old_role)
    fields = {}
    if old_collection:
        fields = common_fields(db[old_collection].find_one({"user_id": user_id}))
        db[old_collection].delete_one({"user_id": user_id})
    create_profile(db, user_id, new_role, fields)
    update_document(db, USERS, target["_id"], {
        "role": new_role,
        "is_active": False,
        "profile_completed": profile_is_complete(new_role, fields),
    })
    logger.info("User %s role changed %s -> %s by %s", user_id, old_role, new_role, user["sub"])
    return {"id": user_id, "role": new_role, "changed": True}


@router.post("/{user_id}/toggle-active")
def toggle_active(user_id: str, background_tasks: BackgroundTasks, user=Depends(admin_only),
                  db: Database = Depends(get_db)):
    if user_id == user["sub"]:
        raise HTTPException(status_code=403, detail="Non puoi disattivare il tuo account")
    target = _get_user(db, user_id)
    is_active = not target.get("is_active", False)
    update_document(db, USERS, target["_id"], {"is_active": is_active})
    if is_active:
        notify_account_activated(db, user_id, background_tasks=background_tasks)
    return {"id": user_id, "is_active": is_active}


@router.delete("/{user_id}")
def delete_user(user_id: str, user=Depends(admin_only), db: Database = Depends(get_db)):
    if user_id == user["sub"]:
        raise HTTPException(status_code=403, detail="Non puoi eliminare il tuo account")
    target = _get_user(db, user_id)

    if db[STUDENTS].find_one({"user_id": user_id}):
        db[RESULTS].delete_many({"student_id": user_id})
        db[ASSIGNMENTS].delete_many({"student_id": user_id})
        db[SIMULATIONS].delete_many({"created_by_id": user_id, "type": SimulationType.QUICK_QUIZ.value})
        db[STUDENTS].delete_one({"user_id": user_id})
    db[COLLABORATORS].delete_one({"user_id": user_id})
    db[GROUPS].update_many({"member_ids": user_id}, {"$pull": {"member_ids": user_id}})
    db[GROUPS].update_many({"referent_id": user_id}, {"$set": {"referent_id": None}})
    db[INVITATIONS].delete_many({"user_id": user_id})
    db[PREFERENCES].delete_many({"user_id": user_id})
    db[NOTIFICATIONS].delete_many({"user_id": user_id})
    db[USERS].delete_one({"_id": target["_id"]})
    logger.info("User %s deleted by %s", user_id, user["sub"])
    return {"id": user_id, "deleted": True}
