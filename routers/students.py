import logging
from typing import ClassVar

from fastapi import APIRouter, Depends, HTTPException
from pymongo.database import Database

from database import STUDENTS, USERS, get_db, serialize_doc, update_document
from notifier import notify_profile_completed
from routers.collaborators import CompleteProfilePayload
from security import student_only

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/students", tags=["students"])

PROFILE_NOT_FOUND = "Profilo studente non trovato"


class StudentProfilePayload(CompleteProfilePayload):
    min_age: ClassVar[int] = 14


@router.get("/profile")
def my_profile(user=Depends(student_only), db: Database = Depends(get_db)):
    profile = db[STUDENTS].find_one({"user_id": user["sub"]})
    if not profile:
        raise HTTPException(status_code=404, detail=PROFILE_NOT_FOUND)
    return serialize_doc(profile)


@router.post("/profile/complete")
def complete_profile(payload: StudentProfilePayload, user=Depends(student_only), db: Database = Depends(get_db)):
    profile = db[STUDENTS].find_one({"user_id": user["sub"]})
    if not profile:
        raise HTTPException(status_code=404, detail=PROFILE_NOT_FOUND)
    taken = db[STUDENTS].find_one({"fiscal_code": payload.fiscal_code, "_id": {"$ne": profile["_id"]}})
    if taken:
        raise HTTPException(status_code=409, detail="Codice fiscale già registrato")

    updated = update_document(db, STUDENTS, profile["_id"], payload.model_dump())
    account = update_document(db, USERS, user["sub"], {"profile_completed": True})
    notify_profile_completed(db, account)
    logger.info("Student %s completed the profile", user["sub"])
    return {"success": True, "student": serialize_doc(updated)}
