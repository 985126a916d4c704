from typing import Any, Dict, Optional

from pymongo.database import Database

from database import COLLABORATORS, STUDENTS, create_document, utcnow
from schemas import PROFILE_FIELDS, CollaboratorProfile, StudentProfile, UserRole


def profile_collection(role: str) -> Optional[str]:
    if role == UserRole.STUDENT.value:
        return STUDENTS
    if role == UserRole.COLLABORATOR.value:
        return COLLABORATORS
    return None


def generate_matricola(database: Database, year: Optional[int] = None) -> str:
    """Next free student number for the year, e.g. LS20260001."""
    prefix = f"LS{year or utcnow().year}"
    last = database[STUDENTS].find_one({"matricola": {"$regex": f"^{prefix}"}}, sort=[("matricola", -1)])
    seq = int(last["matricola"][len(prefix):]) + 1 if last else 1
    return f"{prefix}{seq:04d}"


def common_fields(profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not profile:
        return {}
    return {k: profile.get(k) for k in PROFILE_FIELDS if profile.get(k) is not None}


def create_profile(database: Database, user_id: str, role: str, fields: Optional[Dict[str, Any]] = None) -> Optional[str]:
    fields = fields or {}
    if role == UserRole.STUDENT.value:
        profile = StudentProfile(user_id=user_id, matricola=generate_matricola(database), **fields)
        return create_document(database, STUDENTS, profile)
    if role == UserRole.COLLABORATOR.value:
        return create_document(database, COLLABORATORS, CollaboratorProfile(user_id=user_id, **fields))
    return None


def profile_is_complete(role: str, profile: Optional[Dict[str, Any]]) -> bool:
    if role == UserRole.ADMIN.value:
        return True
    if not profile:
        return False
    return all(profile.get(k) for k in ("fiscal_code", "date_of_birth", "phone", "address", "city", "province", "postal_code"))
