from datetime import timedelta
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pymongo.database import Database

from database import ABSENCES, ATTENDANCES, EVENTS, RESULTS, SIMULATIONS, USERS, get_db, object_ids, utcnow
from routers.calendar import month_bounds
from schemas import AttendanceStatus, SimulationStatus, StaffAbsenceStatus, UserRole
from security import admin_only, student_only

router = APIRouter(prefix="/statistics", tags=["statistics"])

TREND_LENGTH = 10


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0


def attendance_summary(records: List[Dict[str, Any]]) -> Dict[str, Any]:
    counts = {s.value.lower(): 0 for s in AttendanceStatus}
    for r in records:
        key = str(r.get("status", "")).lower()
        if key in counts:
            counts[key] += 1
    total = len(records)
    attended = counts["present"] + counts["late"]
    return {**counts, "total": total, "rate": round(attended / total * 100, 2) if total else 0}


def monthly_activity(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    months: Dict[str, int] = {}
    for r in results:
        key = r["completed_at"].strftime("%Y-%m")
        months[key] = months.get(key, 0) + 1
    return [{"month": m, "attempts": months[m]} for m in sorted(months)]


@router.get("/student")
def student_dashboard(user=Depends(student_only), db: Database = Depends(get_db)):
    results = list(db[RESULTS].find({"student_id": user["sub"], "completed_at": {"$ne": None}}).sort("completed_at", 1))
    scores = [r.get("total_score") or 0 for r in results]
    recent = results[-TREND_LENGTH:]
    titles = {str(s["_id"]): s.get("title") for s in db[SIMULATIONS].find(
        {"_id": {"$in": object_ids([r["simulation_id"] for r in recent])}}, {"title": 1})}
    trend = [
        {
            "simulation_id": r["simulation_id"],
            "title": titles.get(r["simulation_id"]),
            "completed_at": r["completed_at"].isoformat(),
            "total_score": r.get("total_score"),
            "percentage_score": r.get("percentage_score"),
        }
        for r in recent
    ]
    attendances = list(db[ATTENDANCES].find({"student_id": user["sub"]}, {"status": 1}))
    return {
        "completed_simulations": len(results),
        "average_score": _avg(scores),
        "average_percentage": _avg([r.get("percentage_score") or 0 for r in results]),
        "best_score": max(scores) if scores else 0,
        "monthly_activity": monthly_activity(results),
        "score_trend": trend,
        "attendance": attendance_summary(attendances),
    }


@router.get("/admin")
def admin_dashboard(user=Depends(admin_only), db: Database = Depends(get_db)):
    now = utcnow()
    month_start, next_month = month_bounds(now)
    users_by_role = {role.value: db[USERS].count_documents({"role": role.value}) for role in UserRole}
    return {
        "users_by_role": users_by_role,
        "total_users": sum(users_by_role.values()),
        "active_users": db[USERS].count_documents({"is_active": True}),
        "events_this_month": db[EVENTS].count_documents(
            {"start_date": {"$gte": month_start, "$lt": next_month}, "is_cancelled": False}),
        "pending_absences": db[ABSENCES].count_documents({"status": StaffAbsenceStatus.PENDING.value}),
        "published_simulations": db[SIMULATIONS].count_documents({"status": SimulationStatus.PUBLISHED.value}),
        "completed_attempts_last_30_days": db[RESULTS].count_documents(
            {"completed_at": {"$gte": now - timedelta(days=30)}}),
    }
