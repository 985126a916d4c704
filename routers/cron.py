"""
Scheduled maintenance endpoints.

An external scheduler calls these with ``Authorization: Bearer <CRON_SECRET>``.
When no secret is configured the endpoints refuse every request.
"""

import hmac
import logging
from datetime import timedelta
from typing import Any, Dict, List

from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException, Request
from pymongo.database import Database

import config
from database import ASSIGNMENTS, NOTIFICATIONS, RESULTS, SIMULATIONS, USERS, get_db, object_ids, utcnow
from routers.groups import members_of_groups
from schemas import AssignmentStatus, SimulationStatus, UserRole
from security import bearer_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])

READ_NOTIFICATION_RETENTION_DAYS = 90


def verify_cron_secret(request: Request) -> None:
    token = bearer_token(request)
    if not config.CRON_SECRET or not token or not hmac.compare_digest(token, config.CRON_SECRET):
        raise HTTPException(status_code=401, detail="Non autorizzato")


def _targeted_students(db: Database, assignment: Dict[str, Any]) -> List[str]:
    if assignment.get("student_id"):
        return [assignment["student_id"]]
    if not assignment.get("group_id"):
        return []
    members = members_of_groups(db, [assignment["group_id"]])
    students = db[USERS].find({"_id": {"$in": object_ids(members)}, "role": UserRole.STUDENT.value}, {"_id": 1})
    return [str(u["_id"]) for u in students]


def completed_assignments(db: Database, exclude: List[ObjectId]) -> List[Dict[str, Any]]:
    """ACTIVE assignments of published, non-repeatable simulations whose every targeted student has finished."""
    candidates = list(db[ASSIGNMENTS].find({"status": AssignmentStatus.ACTIVE.value, "_id": {"$nin": exclude}}))
    sim_ids = object_ids(list({a["simulation_id"] for a in candidates}))
    eligible = {str(s["_id"]) for s in db[SIMULATIONS].find(
        {"_id": {"$in": sim_ids}, "status": SimulationStatus.PUBLISHED.value, "is_repeatable": {"$ne": True}}, {"_id": 1})}
    done = []
    for assignment in candidates:
        if assignment["simulation_id"] not in eligible:
            continue
        targeted = _targeted_students(db, assignment)
        if not targeted:
            continue
        finished = set(db[RESULTS].distinct("student_id", {
            "simulation_id": assignment["simulation_id"],
            "student_id": {"$in": targeted},
            "completed_at": {"$ne": None},
        }))
        if finished.issuperset(targeted):
            done.append(assignment)
    return done


@router.post("/close-simulations", dependencies=[Depends(verify_cron_secret)])
def close_simulation_assignments(dry_run: bool = False, db: Database = Depends(get_db)):
    now = utcnow()
    filt = {"status": AssignmentStatus.ACTIVE.value, "end_date": {"$ne": None, "$lt": now}}
    expired = [a["_id"] for a in db[ASSIGNMENTS].find(filt, {"_id": 1})]
    completed = [a["_id"] for a in completed_assignments(db, expired)]
    summary = {
        "dry_run": dry_run,
        "closed_by_date": len(expired),
        "closed_by_completion": len(completed),
        "assignment_ids": [str(oid) for oid in expired + completed],
    }
    if dry_run:
        return {**summary, "would_close": len(expired) + len(completed)}

    closed = 0
    if expired or completed:
        res = db[ASSIGNMENTS].update_many(
            {"_id": {"$in": expired + completed}},
            {"$set": {"status": AssignmentStatus.CLOSED.value, "updated_at": now}},
        )
        closed = res.modified_count
    logger.info("Closed %s simulation assignments (%s by date, %s by completion)", closed, len(expired), len(completed))
    return {**summary, "closed": closed, "timestamp": now.isoformat()}


@router.post("/cleanup", dependencies=[Depends(verify_cron_secret)])
def cleanup_notifications(db: Database = Depends(get_db)):
    now = utcnow()
    old_read = db[NOTIFICATIONS].delete_many({
        "is_read": True,
        "created_at": {"$lt": now - timedelta(days=READ_NOTIFICATION_RETENTION_DAYS)},
    })
    expired = db[NOTIFICATIONS].delete_many({"expires_at": {"$ne": None, "$lt": now}})
    logger.info("Notification cleanup: %s read, %s expired", old_read.deleted_count, expired.deleted_count)
    return {"deleted_read": old_read.deleted_count, "deleted_expired": expired.deleted_count}
