import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo.database import Database

from database import (
    NOTIFICATIONS, PREFERENCES, USERS, changed_fields, get_db, object_ids, paginate, serialize_doc, serialize_list,
    to_object_id, utcnow,
)
from notifier import create_bulk_notifications
from schemas import HHMM_PATTERN, NotificationChannel, NotificationType, UTCDateTime, UserRole
from security import admin_only, protected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

NOTIFICATION_NOT_FOUND = "Notifica non trovata"


class IdsPayload(BaseModel):
    ids: List[str] = Field(..., min_length=1, max_length=100)


class ArchiveReadPayload(BaseModel):
    older_than_days: Optional[int] = Field(None, ge=1, le=365)


class PreferencePayload(BaseModel):
    notification_type: NotificationType
    in_app_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    quiet_hours_end: Optional[str] = Field(None, pattern=HHMM_PATTERN)


class BulkPreferencesPayload(BaseModel):
    preferences: List[PreferencePayload] = Field(..., min_length=1)


class CreateNotificationPayload(BaseModel):
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    role: Optional[UserRole] = None
    type: NotificationType = NotificationType.GENERAL
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
    channel: NotificationChannel = NotificationChannel.IN_APP
    link_url: Optional[str] = None
    is_urgent: bool = False
    expires_at: Optional[UTCDateTime] = None


class CleanupPayload(BaseModel):
    older_than_days: int = Field(90, ge=7, le=365)
    only_read: bool = True


class PushTokenPayload(BaseModel):
    token: str = Field(..., min_length=1)


def not_expired() -> Dict[str, Any]:
    return {"$or": [{"expires_at": None}, {"expires_at": {"$gt": utcnow()}}]}


def own(user: Dict[str, Any], ids: List[str]) -> Dict[str, Any]:
    return {"user_id": user["sub"], "_id": {"$in": object_ids(ids)}}


# -------------------- Reading -------------------- #

@router.get("")
def list_notifications(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    archived_only: bool = False,
    types: Optional[List[NotificationType]] = Query(None),
    is_urgent: Optional[bool] = None,
    search: Optional[str] = None,
    sort_order: Literal["asc", "desc"] = "desc",
    user=Depends(protected),
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {"user_id": user["sub"], "is_archived": archived_only}
    if unread_only:
        filt["is_read"] = False
    if types:
        filt["type"] = {"$in": [t.value for t in types]}
    if is_urgent is not None:
        filt["is_urgent"] = is_urgent
    clauses = [filt, not_expired()]
    if search:
        rx = {"$regex": re.escape(search.strip()), "$options": "i"}
        clauses.append({"$or": [{"title": rx}, {"message": rx}]})
    direction = 1 if sort_order == "asc" else -1
    docs, pagination = paginate(db, NOTIFICATIONS, {"$and": clauses}, [("is_urgent", -1), ("created_at", direction)],
                                page, page_size)
    unread = db[NOTIFICATIONS].count_documents(
        {"$and": [{"user_id": user["sub"], "is_read": False, "is_archived": False}, not_expired()]})
    return {"notifications": serialize_list(docs), "unread_count": unread, "pagination": pagination}


@router.get("/unread-count")
def unread_count(user=Depends(protected), db: Database = Depends(get_db)):
    base = {"user_id": user["sub"], "is_read": False, "is_archived": False}
    coll = db[NOTIFICATIONS]
    return {
        "count": coll.count_documents({"$and": [base, not_expired()]}),
        "urgent_count": coll.count_documents({"$and": [{**base, "is_urgent": True}, not_expired()]}),
    }


# -------------------- Preferences -------------------- #

@router.get("/preferences")
def get_preferences(user=Depends(protected), db: Database = Depends(get_db)):
    stored = {p["notification_type"]: p for p in db[PREFERENCES].find({"user_id": user["sub"]})}
    rows = []
    for t in NotificationType:
        p = stored.get(t.value, {})
        rows.append({
            "notification_type": t.value,
            "in_app_enabled": p.get("in_app_enabled", True),
            "email_enabled": p.get("email_enabled", True),
            "quiet_hours_start": p.get("quiet_hours_start"),
            "quiet_hours_end": p.get("quiet_hours_end"),
        })
    return rows


def preference_changes(payload: PreferencePayload) -> Dict[str, Any]:
    changes = changed_fields(payload, clearable=("quiet_hours_start", "quiet_hours_end"))
    changes.pop("notification_type", None)
    return changes


def upsert_preference(db: Database, user_id: str, notification_type: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    now = utcnow()
    defaults = {"in_app_enabled": True, "email_enabled": True, "quiet_hours_start": None, "quiet_hours_end": None}
    on_insert = {k: v for k, v in defaults.items() if k not in changes}
    on_insert["created_at"] = now
    db[PREFERENCES].update_one(
        {"user_id": user_id, "notification_type": notification_type},
        {"$set": {**changes, "updated_at": now}, "$setOnInsert": on_insert},
        upsert=True,
    )
    return db[PREFERENCES].find_one({"user_id": user_id, "notification_type": notification_type})


@router.put("/preferences")
def update_preference(payload: PreferencePayload, user=Depends(protected), db: Database = Depends(get_db)):
    changes = preference_changes(payload)
    pref = upsert_preference(db, user["sub"], payload.notification_type.value, changes)
    return {"success": True, "preference": serialize_doc(pref)}


@router.put("/preferences/bulk")
def bulk_update_preferences(payload: BulkPreferencesPayload, user=Depends(protected), db: Database = Depends(get_db)):
    for pref in payload.preferences:
        changes = preference_changes(pref)
        upsert_preference(db, user["sub"], pref.notification_type.value, changes)
    return {"success": True, "updated_count": len(payload.preferences)}


@router.post("/preferences/disable-emails")
def disable_all_emails(user=Depends(protected), db: Database = Depends(get_db)):
    for t in NotificationType:
        upsert_preference(db, user["sub"], t.value, {"email_enabled": False})
    return {"success": True}


@router.post("/preferences/reset")
def reset_preferences(user=Depends(protected), db: Database = Depends(get_db)):
    res = db[PREFERENCES].delete_many({"user_id": user["sub"]})
    return {"success": True, "deleted_count": res.deleted_count}


# -------------------- Bulk state changes -------------------- #

@router.post("/read-all")
def mark_all_as_read(user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].update_many(
        {"user_id": user["sub"], "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return {"success": True, "updated_count": res.modified_count}


@router.post("/read")
def mark_multiple_as_read(payload: IdsPayload, user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].update_many(
        {**own(user, payload.ids), "is_read": False},
        {"$set": {"is_read": True, "read_at": utcnow()}},
    )
    return {"success": True, "updated_count": res.modified_count}


@router.post("/archive")
def archive(payload: IdsPayload, user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].update_many(own(user, payload.ids), {"$set": {"is_archived": True}})
    return {"success": True, "archived_count": res.modified_count}


@router.post("/archive-read")
def archive_all_read(payload: Optional[ArchiveReadPayload] = None, user=Depends(protected),
                     db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {"user_id": user["sub"], "is_read": True, "is_archived": False}
    if payload and payload.older_than_days:
        filt["created_at"] = {"$lt": utcnow() - timedelta(days=payload.older_than_days)}
    res = db[NOTIFICATIONS].update_many(filt, {"$set": {"is_archived": True}})
    return {"success": True, "archived_count": res.modified_count}


@router.post("/unarchive")
def unarchive(payload: IdsPayload, user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].update_many(own(user, payload.ids), {"$set": {"is_archived": False}})
    return {"success": True, "unarchived_count": res.modified_count}


@router.post("/delete")
def delete_notifications(payload: IdsPayload, user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].delete_many(own(user, payload.ids))
    return {"success": True, "deleted_count": res.deleted_count}


@router.delete("/archived")
def delete_all_archived(user=Depends(protected), db: Database = Depends(get_db)):
    res = db[NOTIFICATIONS].delete_many({"user_id": user["sub"], "is_archived": True})
    return {"success": True, "deleted_count": res.deleted_count}


# -------------------- Push tokens -------------------- #

@router.post("/push-token")
def register_push_token(payload: PushTokenPayload, user=Depends(protected), db: Database = Depends(get_db)):
    db[USERS].update_one({"_id": to_object_id(user["sub"])}, {"$set": {"expo_push_token": payload.token}})
    return {"success": True}


@router.delete("/push-token")
def remove_push_token(user=Depends(protected), db: Database = Depends(get_db)):
    db[USERS].update_one({"_id": to_object_id(user["sub"])}, {"$set": {"expo_push_token": None}})
    return {"success": True}


# -------------------- Admin -------------------- #

@router.post("/send")
def create_notification(payload: CreateNotificationPayload, background_tasks: BackgroundTasks,
                        user=Depends(admin_only), db: Database = Depends(get_db)):
    if payload.user_id:
        recipients = [payload.user_id]
    elif payload.user_ids:
        recipients = payload.user_ids
    elif payload.role:
        recipients = [str(u["_id"]) for u in db[USERS].find({"role": payload.role.value, "is_active": True}, {"_id": 1})]
    else:
        raise HTTPException(status_code=400, detail="Specifica almeno un destinatario (utente, lista di utenti o ruolo)")
    if not recipients:
        raise HTTPException(status_code=400, detail="Nessun destinatario trovato")
    count = create_bulk_notifications(
        db, recipients, payload.type, payload.title, payload.message, channel=payload.channel,
        link_url=payload.link_url, is_urgent=payload.is_urgent, expires_at=payload.expires_at,
        background_tasks=background_tasks,
    )
    logger.info("Admin %s sent %s notification to %d users", user["sub"], payload.type.value, count)
    return {"success": True, "count": count}


@router.get("/stats")
def notification_stats(user=Depends(admin_only), db: Database = Depends(get_db)):
    coll = db[NOTIFICATIONS]
    now = utcnow()
    total = coll.count_documents({})
    read = coll.count_documents({"is_read": True})
    by_type: Dict[str, int] = {}
    by_channel: Dict[str, int] = {}
    for n in coll.find({}, {"type": 1, "channel": 1}):
        by_type[n.get("type")] = by_type.get(n.get("type"), 0) + 1
        by_channel[n.get("channel")] = by_channel.get(n.get("channel"), 0) + 1
    top_types = sorted(by_type.items(), key=lambda kv: kv[1], reverse=True)[:10]
    return {
        "total": total,
        "unread": total - read,
        "read_rate": round(read / total * 100, 2) if total else 0,
        "last_24h": coll.count_documents({"created_at": {"$gte": now - timedelta(hours=24)}}),
        "last_7d": coll.count_documents({"created_at": {"$gte": now - timedelta(days=7)}}),
        "by_type": [{"type": t, "count": c} for t, c in top_types],
        "by_channel": [{"channel": ch, "count": c} for ch, c in by_channel.items()],
    }


@router.post("/cleanup")
def cleanup_old_notifications(payload: CleanupPayload, user=Depends(admin_only), db: Database = Depends(get_db)):
    filt: Dict[str, Any] = {"created_at": {"$lt": utcnow() - timedelta(days=payload.older_than_days)}}
    if payload.only_read:
        filt["is_read"] = True
    res = db[NOTIFICATIONS].delete_many(filt)
    logger.info("Deleted %d notifications older than %d days", res.deleted_count, payload.older_than_days)
    return {"success": True, "deleted_count": res.deleted_count}


# -------------------- Single notification -------------------- #

def get_own_notification(db: Database, user: Dict[str, Any], notification_id: str) -> Dict[str, Any]:
    doc = db[NOTIFICATIONS].find_one({"_id": to_object_id(notification_id, NOTIFICATION_NOT_FOUND)})
    if not doc:
        raise HTTPException(status_code=404, detail=NOTIFICATION_NOT_FOUND)
    if doc["user_id"] != user["sub"]:
        raise HTTPException(status_code=403, detail="Non puoi accedere a questa notifica")
    return doc


@router.get("/{notification_id}")
def get_notification(notification_id: str, user=Depends(protected), db: Database = Depends(get_db)):
    return serialize_doc(get_own_notification(db, user, notification_id))


@router.post("/{notification_id}/read")
def mark_as_read(notification_id: str, user=Depends(protected), db: Database = Depends(get_db)):
    doc = get_own_notification(db, user, notification_id)
    if not doc.get("is_read"):
        db[NOTIFICATIONS].update_one({"_id": doc["_id"]}, {"$set": {"is_read": True, "read_at": utcnow()}})
    return {"success": True}
