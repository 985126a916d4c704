"""
Notification creation for every role.

In-app notifications honour the recipient's per-type preference; email
copies (channel EMAIL or BOTH) go out only when the preference allows email
and the current time is outside the recipient's quiet hours.
"""

import logging
from datetime import datetime
from html import escape
from typing import Any, Dict, Iterable, List, Optional

from fastapi import BackgroundTasks
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
import mailer
from database import NOTIFICATIONS, PREFERENCES, USERS, object_ids, utcnow
from schemas import Notification, NotificationChannel, NotificationType, UserRole

logger = logging.getLogger(__name__)

EMAIL_CHANNELS = (NotificationChannel.EMAIL.value, NotificationChannel.BOTH.value)


# -------------------- Preferences -------------------- #

def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def is_in_quiet_hours(pref: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if not pref or not pref.get("quiet_hours_start") or not pref.get("quiet_hours_end"):
        return False
    now = now or datetime.now()
    current = now.hour * 60 + now.minute
    start = _minutes(pref["quiet_hours_start"])
    end = _minutes(pref["quiet_hours_end"])
    if start <= end:
        return start <= current < end
    # window wraps past midnight, e.g. 22:00-07:00
    return current >= start or current < end


def in_app_allowed(pref: Optional[Dict[str, Any]]) -> bool:
    return pref is None or pref.get("in_app_enabled", True)


def email_allowed(pref: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if pref is not None and not pref.get("email_enabled", True):
        return False
    return not is_in_quiet_hours(pref, now)


def preferences_for(database: Database, user_ids: Iterable[str], notification_type: str) -> Dict[str, Dict[str, Any]]:
    prefs = database[PREFERENCES].find({"user_id": {"$in": list(user_ids)}, "notification_type": notification_type})
    return {p["user_id"]: p for p in prefs}


# -------------------- Creation -------------------- #

def _enum_value(value):
    return getattr(value, "value", value)


def notification_email(title: str, message: str, link_url: Optional[str]) -> str:
    body = f"<p>{escape(message)}</p>"
    if link_url:
        body += f"<p><a href=\"{config.APP_BASE_URL}{link_url}\">Apri</a></p>"
    return mailer.base_template(title, body)


def create_bulk_notifications(database: Database, user_ids: Iterable[str], type: NotificationType, title: str,
                              message: str, channel: NotificationChannel = NotificationChannel.IN_APP,
                              link_url: Optional[str] = None, link_type: Optional[str] = None,
                              link_entity_id: Optional[str] = None, is_urgent: bool = False,
                              expires_at: Optional[datetime] = None, metadata: Optional[Dict[str, Any]] = None,
                              background_tasks: Optional[BackgroundTasks] = None,
                              now: Optional[datetime] = None) -> int:
    """Create one notification per distinct user and return how many were stored.

    Failures are logged and never raised: notifications are a side effect of
    the operation that triggered them.
    """
    recipients = list(dict.fromkeys(u for u in user_ids if u))
    if not recipients:
        return 0
    type_value = _enum_value(type)
    channel_value = _enum_value(channel)
    try:
        prefs = preferences_for(database, recipients, type_value)
        created_at = utcnow()
        docs = []
        for user_id in recipients:
            if not in_app_allowed(prefs.get(user_id)):
                continue
            doc = Notification(
                user_id=user_id, type=type_value, title=title, message=message, channel=channel_value,
                link_url=link_url, link_type=link_type, link_entity_id=link_entity_id,
                is_urgent=is_urgent, expires_at=expires_at, metadata=metadata or {},
            ).model_dump()
            doc["created_at"] = created_at
            doc["updated_at"] = created_at
            docs.append(doc)
        if docs:
            database[NOTIFICATIONS].insert_many(docs)

        if channel_value in EMAIL_CHANNELS:
            email_to = [u for u in recipients if email_allowed(prefs.get(u), now)]
            users = database[USERS].find({"_id": {"$in": object_ids(email_to)}}, {"email": 1})
            html = notification_email(title, message, link_url)
            addresses = [u["email"] for u in users if u.get("email")]
            for address in addresses:
                if background_tasks is not None:
                    background_tasks.add_task(mailer.send_email, address, title, html)
                else:
                    mailer.send_email(address, title, html)
            if addresses:
                database[NOTIFICATIONS].update_many(
                    {"user_id": {"$in": email_to}, "type": type_value, "created_at": created_at},
                    {"$set": {"email_sent": True}},
                )
        return len(docs)
    except PyMongoError as e:
        logger.error("Failed to create %s notifications: %s", type_value, e)
        return 0


def create_notification(database: Database, user_id: str, type: NotificationType, title: str, message: str,
                        **kwargs) -> bool:
    return create_bulk_notifications(database, [user_id], type, title, message, **kwargs) == 1


def notify_by_role(database: Database, role: UserRole, type: NotificationType, title: str, message: str,
                   **kwargs) -> int:
    users = database[USERS].find({"role": _enum_value(role), "is_active": True}, {"_id": 1})
    return create_bulk_notifications(database, [str(u["_id"]) for u in users], type, title, message, **kwargs)


def notify_admins(database: Database, type: NotificationType, title: str, message: str, **kwargs) -> int:
    return notify_by_role(database, UserRole.ADMIN, type, title, message, **kwargs)


# -------------------- Domain messages -------------------- #

def _date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def date_range(start: datetime, end: datetime) -> str:
    first, last = _date(start), _date(end)
    return first if first == last else f"{first} - {last}"


def notify_new_registration(database: Database, user: Dict[str, Any]) -> int:
    role = "collaboratore" if user.get("role") == UserRole.COLLABORATOR.value else "studente"
    return notify_admins(
        database, NotificationType.NEW_REGISTRATION, "Nuova registrazione",
        f"{user.get('name')} ({user.get('email')}) si è registrato come {role}.",
        link_url="/utenti", link_type="user", link_entity_id=str(user.get("_id", "")),
    )


def notify_account_activated(database: Database, user_id: str,
                             background_tasks: Optional[BackgroundTasks] = None) -> bool:
    return create_notification(
        database, user_id, NotificationType.ACCOUNT_ACTIVATED, "Account attivato",
        "Il tuo account è stato attivato. Ora puoi accedere a tutte le funzionalità.",
        channel=NotificationChannel.BOTH, link_url="/dashboard", background_tasks=background_tasks,
    )


def notify_profile_completed(database: Database, user: Dict[str, Any]) -> int:
    if user.get("role") == UserRole.COLLABORATOR.value:
        link_url, link_type = f"/admin/collaboratori/{user['_id']}", "collaborator"
    else:
        link_url, link_type = f"/admin/studenti/{user['_id']}", "student"
    return notify_admins(
        database, NotificationType.PROFILE_COMPLETED, "Nuovo profilo completato",
        f"{user.get('name')} ha completato il profilo anagrafico",
        link_url=link_url, link_type=link_type, link_entity_id=str(user["_id"]),
    )


def notify_group_member_added(database: Database, group: Dict[str, Any], user_ids: List[str]) -> int:
    return create_bulk_notifications(
        database, user_ids, NotificationType.GROUP_MEMBER_ADDED, "Aggiunto a un gruppo",
        f"Sei stato aggiunto al gruppo \"{group.get('name')}\".",
        link_type="group", link_entity_id=str(group["_id"]),
    )


def notify_event_invitation(database: Database, event: Dict[str, Any], user_ids: List[str]) -> int:
    return create_bulk_notifications(
        database, user_ids, NotificationType.EVENT_INVITATION, "Nuovo invito evento",
        f"Sei stato invitato a: {event['title']} - {event['start_date'].strftime('%d/%m/%Y %H:%M')}",
        link_url=f"/calendario/{event['_id']}", link_type="event", link_entity_id=str(event["_id"]),
    )


def notify_event_updated(database: Database, event: Dict[str, Any], user_ids: List[str],
                         message: Optional[str] = None) -> int:
    return create_bulk_notifications(
        database, user_ids, NotificationType.EVENT_UPDATED, "Evento modificato",
        message or f"L'evento \"{event['title']}\" è stato modificato.",
        link_url=f"/calendario/{event['_id']}", link_type="event", link_entity_id=str(event["_id"]),
    )


def notify_event_cancelled(database: Database, event: Dict[str, Any], user_ids: List[str],
                           reason: Optional[str] = None) -> int:
    message = f"L'evento \"{event['title']}\" è stato annullato."
    if reason:
        message = f"L'evento \"{event['title']}\" è stato annullato. Motivo: {reason}"
    return create_bulk_notifications(
        database, user_ids, NotificationType.EVENT_CANCELLED, "Evento annullato", message,
        link_type="event", link_entity_id=str(event["_id"]), is_urgent=True,
    )


def notify_absence_request(database: Database, absence: Dict[str, Any], requester_name: str) -> int:
    urgent = absence.get("is_urgent", False)
    return notify_admins(
        database, NotificationType.ABSENCE_REQUEST,
        "Richiesta assenza URGENTE" if urgent else "Nuova richiesta di assenza",
        f"{requester_name} ha richiesto un'assenza: {date_range(absence['start_date'], absence['end_date'])}.",
        link_url="/admin/assenze", link_type="absence", link_entity_id=str(absence["_id"]), is_urgent=urgent,
    )


def notify_absence_decision(database: Database, absence: Dict[str, Any]) -> bool:
    period = date_range(absence["start_date"], absence["end_date"])
    if absence["status"] == "CONFIRMED":
        type, title = NotificationType.ABSENCE_CONFIRMED, "Assenza confermata"
        message = f"La tua assenza ({period}) è stata confermata."
    else:
        type, title = NotificationType.ABSENCE_REJECTED, "Assenza rifiutata"
        message = f"La tua assenza ({period}) è stata rifiutata."
        if absence.get("admin_notes"):
            message += f" Motivo: {absence['admin_notes']}"
    return create_notification(
        database, absence["requester_id"], type, title, message,
        link_url="/collaboratore/le-mie-assenze", link_type="absence", link_entity_id=str(absence["_id"]),
    )


def notify_substitution(database: Database, absence: Dict[str, Any], requester_name: str,
                        event: Optional[Dict[str, Any]] = None) -> bool:
    message = f"Sei stato assegnato come sostituto di {requester_name} ({date_range(absence['start_date'], absence['end_date'])})."
    if event:
        message += f" Evento: {event['title']}."
    return create_notification(
        database, absence["substitute_id"], NotificationType.SUBSTITUTION_ASSIGNED, "Sostituzione assegnata", message,
        link_type="event" if event else "absence",
        link_entity_id=str(event["_id"]) if event else str(absence["_id"]), is_urgent=True,
    )


def notify_staff_absence(database: Database, absence: Dict[str, Any], staff_name: str,
                         event: Dict[str, Any], student_ids: List[str]) -> int:
    message = (
        f"{staff_name} sarà assente il {date_range(absence['start_date'], absence['end_date'])}. "
        f"L'evento \"{event['title']}\" potrebbe subire modifiche."
    )
    return create_bulk_notifications(
        database, student_ids, NotificationType.STAFF_ABSENCE, "Assenza docente", message,
        link_type="event", link_entity_id=str(event["_id"]), is_urgent=True,
    )


def notify_simulation_assigned(database: Database, simulation: Dict[str, Any], student_ids: List[str],
                               due_date: Optional[datetime] = None) -> int:
    message = f"Ti è stata assegnata la simulazione \"{simulation['title']}\"."
    if due_date:
        message += f" Scadenza: {due_date.strftime('%d/%m/%Y %H:%M')}"
    return create_bulk_notifications(
        database, student_ids, NotificationType.SIMULATION_ASSIGNED, "Nuova simulazione assegnata", message,
        link_url=f"/studente/simulazioni/{simulation['_id']}", link_type="simulation",
        link_entity_id=str(simulation["_id"]),
    )
