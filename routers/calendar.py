import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from pymongo.database import Database

import mailer
import notifier
from database import (
    ABSENCES, ATTENDANCES, EVENTS, INVITATIONS, USERS, changed_fields, create_document, get_db, object_ids,
    paginate, serialize_doc, serialize_list, to_object_id, update_document, utcnow,
)
from routers.groups import group_ids_for_user, members_of_groups
from schemas import (
    AttendanceStatus, CalendarEvent, EventInvitation, EventInviteStatus, EventLocationType, EventType,
    RecurrenceFrequency, StaffAbsence, StaffAbsenceStatus, UTCDateTime, UserRole, to_naive_utc,
)
from security import admin_only, is_admin, is_student, protected, staff_only

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["calendar"])

EVENT_NOT_FOUND = "Evento non trovato"
ABSENCE_NOT_FOUND = "Richiesta di assenza non trovata"
EVENT_CLEARABLE = (
    "description", "location_details", "online_link", "reminder_minutes", "recurrence_frequency", "recurrence_end_date",
)


def _check_link(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if v and not v.startswith(("http://", "https://")):
        raise ValueError("Il link deve essere un URL valido")
    return v


# -------------------- Payloads -------------------- #

class EventPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    type: EventType = EventType.OTHER
    start_date: UTCDateTime
    end_date: UTCDateTime
    is_all_day: bool = False
    location_type: EventLocationType = EventLocationType.IN_PERSON
    location_details: Optional[str] = Field(None, max_length=500)
    online_link: Optional[str] = None
    is_public: bool = False
    send_email_invites: bool = False
    send_email_reminders: bool = False
    reminder_minutes: Optional[int] = Field(None, ge=5, le=10080)
    is_recurring: bool = False
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_end_date: Optional[UTCDateTime] = None
    invited_user_ids: List[str] = Field(default_factory=list)
    invited_group_ids: List[str] = Field(default_factory=list)

    check_link = field_validator("online_link")(_check_link)


class EventUpdatePayload(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    type: Optional[EventType] = None
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    is_all_day: Optional[bool] = None
    location_type: Optional[EventLocationType] = None
    location_details: Optional[str] = Field(None, max_length=500)
    online_link: Optional[str] = None
    is_public: Optional[bool] = None
    send_email_invites: Optional[bool] = None
    send_email_reminders: Optional[bool] = None
    reminder_minutes: Optional[int] = Field(None, ge=5, le=10080)
    is_recurring: Optional[bool] = None
    recurrence_frequency: Optional[RecurrenceFrequency] = None
    recurrence_end_date: Optional[UTCDateTime] = None

    check_link = field_validator("online_link")(_check_link)


class CancelPayload(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class InvitationsPayload(BaseModel):
    user_ids: List[str] = Field(default_factory=list)
    group_ids: List[str] = Field(default_factory=list)


class RespondPayload(BaseModel):
    status: Literal["ACCEPTED", "DECLINED", "TENTATIVE"]
    note: Optional[str] = Field(None, max_length=500)


class AttendancePayload(BaseModel):
    student_id: str
    status: AttendanceStatus
    notes: Optional[str] = Field(None, max_length=500)
    arrival_time: Optional[UTCDateTime] = None
    leave_time: Optional[UTCDateTime] = None


class BulkAttendancePayload(BaseModel):
    attendances: List[AttendancePayload] = Field(..., min_length=1)


class AbsencePayload(BaseModel):
    start_date: UTCDateTime
    end_date: UTCDateTime
    is_all_day: bool = True
    reason: str = Field(..., min_length=5, max_length=1000)
    is_urgent: bool = False
    affected_event_id: Optional[str] = None


class AbsenceStatusPayload(BaseModel):
    status: Literal["CONFIRMED", "REJECTED"]
    admin_notes: Optional[str] = Field(None, max_length=1000)
    substitute_id: Optional[str] = None


# -------------------- Helpers -------------------- #

def get_event(db: Database, event_id: str) -> Dict[str, Any]:
    event = db[EVENTS].find_one({"_id": to_object_id(event_id, EVENT_NOT_FOUND)})
    if not event:
        raise HTTPException(status_code=404, detail=EVENT_NOT_FOUND)
    return event


def ensure_can_manage(user: Dict[str, Any], event: Dict[str, Any]) -> None:
    if not is_admin(user) and event.get("created_by_id") != user["sub"]:
        raise HTTPException(status_code=403, detail="Puoi gestire solo gli eventi che hai creato")


def invited_event_ids(db: Database, user_id: str) -> List[str]:
    """Events the user is invited to, directly or through one of their groups."""
    group_ids = group_ids_for_user(db, user_id)
    filt: Dict[str, Any] = {"user_id": user_id}
    if group_ids:
        filt = {"$or": [{"user_id": user_id}, {"group_id": {"$in": group_ids}}]}
    return list({inv["event_id"] for inv in db[INVITATIONS].find(filt, {"event_id": 1})})


def visibility_filter(db: Database, user: Dict[str, Any], only_mine: bool = False) -> Dict[str, Any]:
    me = user["sub"]
    invited = {"_id": {"$in": object_ids(invited_event_ids(db, me))}}
    if only_mine:
        return {"$or": [{"created_by_id": me}, invited]}
    if is_admin(user):
        return {}
    if is_student(user):
        return {"$or": [{"is_public": True}, invited]}
    return {"$or": [{"is_public": True}, {"created_by_id": me}, invited]}


def _and(*filters: Dict[str, Any]) -> Dict[str, Any]:
    parts = [f for f in filters if f]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


def event_invitee_ids(db: Database, event_id: str) -> List[str]:
    """Direct invitees plus members of invited groups, deduplicated in invitation order."""
    invitations = list(db[INVITATIONS].find({"event_id": event_id}))
    ids = [i["user_id"] for i in invitations if i.get("user_id")]
    ids.extend(members_of_groups(db, [i["group_id"] for i in invitations if i.get("group_id")]))
    return list(dict.fromkeys(ids))


def contacts(db: Database, user_ids: List[str]) -> List[Dict[str, Any]]:
    users = db[USERS].find({"_id": {"$in": object_ids(user_ids)}}, {"name": 1, "email": 1, "role": 1})
    return [{"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email"), "role": u.get("role")} for u in users]


def student_invitee_ids(db: Database, event_id: str) -> List[str]:
    return [c["id"] for c in contacts(db, event_invitee_ids(db, event_id)) if c["role"] == UserRole.STUDENT.value]


def add_invitations(db: Database, event_id: str, user_ids: List[str], group_ids: List[str]) -> List[str]:
    """Upsert invitations; returns the ids of the users or groups newly invited."""
    added = []
    now = utcnow()
    targets = [("user_id", u) for u in dict.fromkeys(user_ids)] + [("group_id", g) for g in dict.fromkeys(group_ids)]
    for key, target_id in targets:
        doc = EventInvitation(event_id=event_id, **{key: target_id}).model_dump()
        key_filter = {"event_id": event_id, "user_id": doc["user_id"], "group_id": doc["group_id"]}
        res = db[INVITATIONS].update_one(
            key_filter,
            {"$setOnInsert": {**doc, "created_at": now, "updated_at": now}},
            upsert=True,
        )
        if res.upserted_id is not None:
            added.append(target_id)
    return added


def _expand(db: Database, user_ids: List[str], group_ids: List[str]) -> List[str]:
    ids = list(user_ids) + members_of_groups(db, group_ids)
    return list(dict.fromkeys(ids))


def _email_event(event: Dict[str, Any]) -> Dict[str, Any]:
    return {**event, "id": str(event["_id"])}


def _query_date(value: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(value) if value is not None else None


# -------------------- Events -------------------- #

@router.get("/events")
def list_events(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    type: Optional[EventType] = None,
    created_by_id: Optional[str] = None,
    include_invitations: bool = False,
    include_cancelled: bool = False,
    only_my_events: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    user=Depends(protected),
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    start_date, end_date = _query_date(start_date), _query_date(end_date)
    if start_date:
        filt["start_date"] = {"$gte": start_date}
    if end_date:
        filt["end_date"] = {"$lte": end_date}
    if type:
        filt["type"] = type.value
    if created_by_id:
        filt["created_by_id"] = created_by_id
    if not include_cancelled:
        filt["is_cancelled"] = False

    query = _and(filt, visibility_filter(db, user, only_my_events))
    docs, pagination = paginate(db, EVENTS, query, [("start_date", 1)], page, page_size)

    event_ids = [str(d["_id"]) for d in docs]
    invitations = list(db[INVITATIONS].find({"event_id": {"$in": event_ids}}))
    attendances = list(db[ATTENDANCES].find({"event_id": {"$in": event_ids}}, {"event_id": 1}))
    events = []
    for doc in docs:
        eid = str(doc["_id"])
        event = serialize_doc(doc)
        own = [i for i in invitations if i["event_id"] == eid]
        event["invitation_count"] = len(own)
        event["attendance_count"] = sum(1 for a in attendances if a["event_id"] == eid)
        if include_invitations:
            event["invitations"] = serialize_list(own)
        events.append(event)
    return {"events": events, "pagination": pagination}


@router.get("/events/{event_id}")
def get_event_detail(event_id: str, user=Depends(protected), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    if is_student(user) and not event.get("is_public") and event_id not in invited_event_ids(db, user["sub"]):
        raise HTTPException(status_code=403, detail="Non hai accesso a questo evento")
    out = serialize_doc(event)
    out["invitations"] = serialize_list(list(db[INVITATIONS].find({"event_id": event_id})))
    out["attendances"] = serialize_list(list(db[ATTENDANCES].find({"event_id": event_id})))
    out["staff_absences"] = serialize_list(list(db[ABSENCES].find({"affected_event_id": event_id})))
    return out


@router.post("/events")
def create_event(payload: EventPayload, background_tasks: BackgroundTasks, user=Depends(staff_only),
                 db: Database = Depends(get_db)):
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="La data di fine deve essere successiva alla data di inizio")
    data = payload.model_dump(exclude={"invited_user_ids", "invited_group_ids"})
    data["online_link"] = data.get("online_link") or None
    event = CalendarEvent(**data, created_by_id=user["sub"]).model_dump()
    eid = create_document(db, EVENTS, event)
    event["_id"] = to_object_id(eid)

    add_invitations(db, eid, payload.invited_user_ids, payload.invited_group_ids)
    invitees = _expand(db, payload.invited_user_ids, payload.invited_group_ids)
    if invitees:
        notifier.notify_event_invitation(db, event, invitees)
        if payload.send_email_invites:
            emailable = [c for c in contacts(db, invitees) if c.get("email")]
            background_tasks.add_task(mailer.send_event_invitation_emails, _email_event(event), emailable)
    logger.info("Event %s created by %s with %d invitees", eid, user["sub"], len(invitees))
    return {"id": eid, "invited": len(invitees)}


@router.patch("/events/{event_id}")
def update_event(event_id: str, payload: EventUpdatePayload, background_tasks: BackgroundTasks,
                 user=Depends(staff_only), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    changes = changed_fields(payload, clearable=EVENT_CLEARABLE)
    for key in ("type", "location_type", "recurrence_frequency"):
        if changes.get(key) is not None:
            changes[key] = getattr(changes[key], "value", changes[key])
    if "online_link" in changes:
        changes["online_link"] = changes["online_link"] or None
    start = changes.get("start_date") or event["start_date"]
    end = changes.get("end_date") or event["end_date"]
    if end < start:
        raise HTTPException(status_code=400, detail="La data di fine deve essere successiva alla data di inizio")
    if not changes:
        return serialize_doc(event)

    updated = update_document(db, EVENTS, event["_id"], changes)
    invitees = event_invitee_ids(db, event_id)
    if invitees:
        notifier.notify_event_updated(db, updated, invitees)
        emailable = [c for c in contacts(db, invitees) if c.get("email")]
        background_tasks.add_task(mailer.send_event_modification_emails, _email_event(updated), emailable)
    return serialize_doc(updated)


@router.post("/events/{event_id}/cancel")
def cancel_event(event_id: str, payload: CancelPayload, background_tasks: BackgroundTasks,
                 user=Depends(staff_only), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    updated = update_document(db, EVENTS, event["_id"], {
        "is_cancelled": True,
        "cancelled_at": utcnow(),
        "cancelled_by_id": user["sub"],
        "cancel_reason": payload.reason,
    })
    invitees = event_invitee_ids(db, event_id)
    if invitees:
        notifier.notify_event_cancelled(db, updated, invitees, payload.reason)
        emailable = [c for c in contacts(db, invitees) if c.get("email")]
        background_tasks.add_task(mailer.send_event_cancellation_emails, _email_event(updated), emailable, payload.reason)
    logger.info("Event %s cancelled by %s", event_id, user["sub"])
    return serialize_doc(updated)


@router.delete("/events/{event_id}")
def delete_event(event_id: str, user=Depends(admin_only), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    db[INVITATIONS].delete_many({"event_id": event_id})
    db[ATTENDANCES].delete_many({"event_id": event_id})
    db[EVENTS].delete_one({"_id": event["_id"]})
    logger.info("Event %s deleted by %s", event_id, user["sub"])
    return {"id": event_id, "deleted": True}


# -------------------- Invitations -------------------- #

@router.post("/events/{event_id}/invitations")
def invite(event_id: str, payload: InvitationsPayload, user=Depends(staff_only), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    added = add_invitations(db, event_id, payload.user_ids, payload.group_ids)
    new_users = [u for u in payload.user_ids if u in added]
    new_groups = [g for g in payload.group_ids if g in added]
    invitees = _expand(db, new_users, new_groups)
    if invitees:
        notifier.notify_event_invitation(db, event, invitees)
    return {"added": len(added)}


@router.delete("/invitations/{invitation_id}")
def remove_invitation(invitation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    invitation = db[INVITATIONS].find_one({"_id": to_object_id(invitation_id, "Invito non trovato")})
    if not invitation:
        raise HTTPException(status_code=404, detail="Invito non trovato")
    ensure_can_manage(user, get_event(db, invitation["event_id"]))
    db[INVITATIONS].delete_one({"_id": invitation["_id"]})
    return {"id": invitation_id, "deleted": True}


@router.post("/events/{event_id}/respond")
def respond_to_invitation(event_id: str, payload: RespondPayload, user=Depends(protected),
                          db: Database = Depends(get_db)):
    invitation = db[INVITATIONS].find_one({"event_id": event_id, "user_id": user["sub"]})
    if not invitation:
        raise HTTPException(status_code=404, detail="Invito non trovato")
    updated = update_document(db, INVITATIONS, invitation["_id"], {
        "status": EventInviteStatus(payload.status).value,
        "responded_at": utcnow(),
        "response_note": payload.note,
    })
    return serialize_doc(updated)


# -------------------- Attendance -------------------- #

@router.get("/events/{event_id}/attendances")
def event_attendances(event_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    attendances = serialize_list(list(db[ATTENDANCES].find({"event_id": event_id})))
    students = [c for c in contacts(db, event_invitee_ids(db, event_id)) if c["role"] == UserRole.STUDENT.value]
    return {"event": serialize_doc(event), "attendances": attendances, "invited_students": students}


def record_one(db: Database, event_id: str, entry: AttendancePayload, recorder_id: str) -> None:
    now = utcnow()
    fields = {
        "status": entry.status.value,
        "notes": entry.notes,
        "arrival_time": entry.arrival_time,
        "leave_time": entry.leave_time,
        "updated_at": now,
    }
    key = {"event_id": event_id, "student_id": entry.student_id}
    existing = db[ATTENDANCES].find_one(key, {"_id": 1})
    if existing:
        fields.update({"last_edited_by_id": recorder_id, "last_edited_at": now})
        db[ATTENDANCES].update_one({"_id": existing["_id"]}, {"$set": fields})
    else:
        db[ATTENDANCES].update_one(
            key,
            {"$set": fields, "$setOnInsert": {"recorded_by_id": recorder_id, "created_at": now}},
            upsert=True,
        )


@router.post("/events/{event_id}/attendances")
def record_attendance(event_id: str, payload: AttendancePayload, user=Depends(staff_only),
                      db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    record_one(db, event_id, payload, user["sub"])
    return serialize_doc(db[ATTENDANCES].find_one({"event_id": event_id, "student_id": payload.student_id}))


@router.post("/events/{event_id}/attendances/bulk")
def bulk_record_attendance(event_id: str, payload: BulkAttendancePayload, user=Depends(staff_only),
                           db: Database = Depends(get_db)):
    event = get_event(db, event_id)
    ensure_can_manage(user, event)
    for entry in payload.attendances:
        record_one(db, event_id, entry, user["sub"])
    return {"recorded": len(payload.attendances)}


# -------------------- Staff absences -------------------- #

def get_absence(db: Database, absence_id: str) -> Dict[str, Any]:
    absence = db[ABSENCES].find_one({"_id": to_object_id(absence_id, ABSENCE_NOT_FOUND)})
    if not absence:
        raise HTTPException(status_code=404, detail=ABSENCE_NOT_FOUND)
    return absence


def _user_name(db: Database, user_id: str) -> str:
    found = contacts(db, [user_id])
    return found[0]["name"] if found else "Un membro dello staff"


@router.get("/absences")
def list_absences(
    status: Optional[StaffAbsenceStatus] = None,
    requester_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    only_mine: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    user=Depends(staff_only),
    db: Database = Depends(get_db),
):
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status.value
    if only_mine or not is_admin(user):
        filt["requester_id"] = user["sub"]
    elif requester_id:
        filt["requester_id"] = requester_id
    start_date, end_date = _query_date(start_date), _query_date(end_date)
    if start_date:
        filt["end_date"] = {"$gte": start_date}
    if end_date:
        filt["start_date"] = {"$lte": end_date}
    docs, pagination = paginate(db, ABSENCES, filt, [("start_date", -1)], page, page_size)
    people = {c["id"]: c for c in contacts(db, [d["requester_id"] for d in docs])}
    absences = []
    for doc in docs:
        out = serialize_doc(doc)
        requester = people.get(doc["requester_id"], {})
        out["requester"] = {"id": doc["requester_id"], "name": requester.get("name")}
        absences.append(out)
    return {"absences": absences, "pagination": pagination}


@router.post("/absences")
def request_absence(payload: AbsencePayload, user=Depends(staff_only), db: Database = Depends(get_db)):
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="La data di fine deve essere successiva alla data di inizio")
    if payload.affected_event_id:
        get_event(db, payload.affected_event_id)
    absence = StaffAbsence(requester_id=user["sub"], **payload.model_dump()).model_dump()
    aid = create_document(db, ABSENCES, absence)
    absence["_id"] = aid
    notifier.notify_absence_request(db, absence, _user_name(db, user["sub"]))
    logger.info("Absence %s requested by %s", aid, user["sub"])
    return {"id": aid, "status": absence["status"]}


@router.post("/absences/{absence_id}/status")
def update_absence_status(absence_id: str, payload: AbsenceStatusPayload, background_tasks: BackgroundTasks,
                          user=Depends(admin_only), db: Database = Depends(get_db)):
    absence = get_absence(db, absence_id)
    if absence["status"] == StaffAbsenceStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="La richiesta è stata annullata")
    updated = update_document(db, ABSENCES, absence["_id"], {
        "status": payload.status,
        "confirmed_by_id": user["sub"],
        "confirmed_at": utcnow(),
        "admin_notes": payload.admin_notes,
        "substitute_id": payload.substitute_id,
    })

    requester = contacts(db, [updated["requester_id"]])
    requester_name = requester[0]["name"] if requester else "Un membro dello staff"
    if requester and requester[0].get("email"):
        background_tasks.add_task(
            mailer.send_absence_status_email, requester[0]["email"], requester_name, payload.status,
            updated["start_date"], updated["end_date"], payload.admin_notes,
        )
    notifier.notify_absence_decision(db, updated)

    event = None
    if updated.get("affected_event_id"):
        event = db[EVENTS].find_one({"_id": to_object_id(updated["affected_event_id"])})
    if payload.substitute_id:
        notifier.notify_substitution(db, updated, requester_name, event)
    if event and payload.status == StaffAbsenceStatus.CONFIRMED.value:
        students = student_invitee_ids(db, str(event["_id"]))
        if students:
            notifier.notify_staff_absence(db, updated, requester_name, event, students)
    logger.info("Absence %s set to %s by %s", absence_id, payload.status, user["sub"])
    return serialize_doc(updated)


@router.post("/absences/{absence_id}/cancel")
def cancel_absence(absence_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    absence = get_absence(db, absence_id)
    if absence["requester_id"] != user["sub"] and not is_admin(user):
        raise HTTPException(status_code=403, detail="Puoi annullare solo le tue richieste")
    if absence["status"] == StaffAbsenceStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="La richiesta è già stata annullata")
    updated = update_document(db, ABSENCES, absence["_id"], {"status": StaffAbsenceStatus.CANCELLED.value})

    if absence.get("affected_event_id"):
        event = db[EVENTS].find_one({"_id": to_object_id(absence["affected_event_id"])})
        if event:
            recipients = [u for u in event_invitee_ids(db, str(event["_id"])) if u != absence["requester_id"]]
            message = (
                f"L'assenza di {_user_name(db, absence['requester_id'])} per l'evento \"{event['title']}\" "
                "è stata ritirata. L'evento si terrà come previsto."
            )
            notifier.notify_event_updated(db, event, recipients, message)
    return serialize_doc(updated)


# -------------------- Stats -------------------- #

def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """First instant of the month containing `now` and of the following month."""
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if month_start.month == 12:
        return month_start, month_start.replace(year=month_start.year + 1, month=1)
    return month_start, month_start.replace(month=month_start.month + 1)


@router.get("/stats")
def calendar_stats(user=Depends(staff_only), db: Database = Depends(get_db)):
    now = utcnow()
    month_start, next_month = month_bounds(now)
    visible = _and({"is_cancelled": False}, visibility_filter(db, user))
    coll = db[EVENTS]
    pending = {"status": StaffAbsenceStatus.PENDING.value}
    if not is_admin(user):
        pending["requester_id"] = user["sub"]
    return {
        "total_events": coll.count_documents(visible),
        "events_this_month": coll.count_documents(_and(visible, {"start_date": {"$gte": month_start, "$lt": next_month}})),
        "upcoming_events": coll.count_documents(_and(visible, {"start_date": {"$gte": now}})),
        "pending_absences": db[ABSENCES].count_documents(pending),
        "my_events": coll.count_documents({"created_by_id": user["sub"], "is_cancelled": False}),
    }
