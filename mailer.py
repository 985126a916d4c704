"""
Outgoing email over SMTP.

Calls are made from FastAPI background tasks, so every function here logs
failures and returns False instead of raising.
"""

import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from html import escape
from typing import Any, Dict, List, Optional

import config

logger = logging.getLogger(__name__)

SENDER_NAME = "School Portal"


def is_configured() -> bool:
    return bool(config.SMTP_SERVER and config.SMTP_EMAIL and config.SMTP_PASSWORD)


def send_email(to: str, subject: str, html: str) -> bool:
    if not is_configured():
        logger.info("SMTP not configured, skipping email to %s (%s)", to, subject)
        return False
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{SENDER_NAME} <{config.SMTP_EMAIL}>"
    msg["To"] = to
    msg.set_content("Apri questa email con un client che supporta HTML.")
    msg.add_alternative(html, subtype="html")
    try:
        with smtplib.SMTP(config.SMTP_SERVER, config.SMTP_PORT, timeout=15) as server:
            server.starttls()
            server.login(config.SMTP_EMAIL, config.SMTP_PASSWORD)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Failed to send email to %s: %s", to, e)
        return False


def format_datetime(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%d/%m/%Y %H:%M")


def base_template(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head>"
        "<body style=\"font-family: 'Segoe UI', Tahoma, sans-serif; line-height: 1.6; color: #333;\">"
        f"<h2>{escape(title)}</h2>{body}"
        f"<p style=\"font-size: 12px; color: #888;\">{SENDER_NAME}</p>"
        "</body></html>"
    )


def _event_block(event: Dict[str, Any]) -> str:
    rows = [
        ("Evento", escape(event.get("title", ""))),
        ("Inizio", format_datetime(event.get("start_date"))),
        ("Fine", format_datetime(event.get("end_date"))),
    ]
    if event.get("location_details"):
        rows.append(("Luogo", escape(event["location_details"])))
    if event.get("online_link"):
        link = escape(event["online_link"])
        rows.append(("Link", f"<a href=\"{link}\">{link}</a>"))
    cells = "".join(f"<tr><td><strong>{k}</strong></td><td>{v}</td></tr>" for k, v in rows)
    url = f"{config.APP_BASE_URL}/calendario/{event.get('id', '')}"
    return f"<table>{cells}</table><p><a href=\"{url}\">Apri nel calendario</a></p>"


def _send_to_invitees(invitees: List[Dict[str, Any]], subject: str, title: str, intro: str,
                      event: Dict[str, Any]) -> int:
    sent = 0
    for invitee in invitees:
        if not invitee.get("email"):
            continue
        body = f"<p>Ciao {escape(invitee.get('name') or '')},</p><p>{intro}</p>{_event_block(event)}"
        if send_email(invitee["email"], subject, base_template(title, body)):
            sent += 1
    logger.info("%s: %d/%d emails sent", subject, sent, len(invitees))
    return sent


def send_event_invitation_emails(event: Dict[str, Any], invitees: List[Dict[str, Any]]) -> int:
    return _send_to_invitees(
        invitees,
        f"Invito: {event.get('title', '')}",
        "Nuovo invito",
        "sei stato invitato al seguente evento.",
        event,
    )


def send_event_modification_emails(event: Dict[str, Any], invitees: List[Dict[str, Any]]) -> int:
    return _send_to_invitees(
        invitees,
        f"Evento modificato: {event.get('title', '')}",
        "Evento modificato",
        "un evento a cui sei invitato è stato modificato. Ecco i dettagli aggiornati.",
        event,
    )


def send_event_cancellation_emails(event: Dict[str, Any], invitees: List[Dict[str, Any]],
                                   reason: Optional[str] = None) -> int:
    intro = "il seguente evento è stato annullato."
    if reason:
        intro += f" Motivo: {escape(reason)}"
    return _send_to_invitees(
        invitees,
        f"Evento annullato: {event.get('title', '')}",
        "Evento annullato",
        intro,
        event,
    )


def send_absence_status_email(to: str, name: str, status: str, start_date: datetime, end_date: datetime,
                              admin_notes: Optional[str] = None) -> bool:
    confirmed = status == "CONFIRMED"
    title = "Assenza confermata" if confirmed else "Assenza rifiutata"
    body = (
        f"<p>Ciao {escape(name or '')},</p>"
        f"<p>la tua richiesta di assenza dal {format_datetime(start_date)} al {format_datetime(end_date)} "
        f"è stata {'confermata' if confirmed else 'rifiutata'}.</p>"
    )
    if admin_notes:
        body += f"<p><strong>Note:</strong> {escape(admin_notes)}</p>"
    return send_email(to, title, base_template(title, body))
