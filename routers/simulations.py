import logging
import random
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from pymongo.database import Database

import notifier
import scoring
from database import (
    ASSIGNMENTS, EVENTS, GROUPS, RESULTS, SIMULATIONS, USERS, changed_fields, create_document, get_db, object_ids, paginate,
    serialize_doc, serialize_list, to_object_id, update_document, utcnow,
)
from routers.calendar import add_invitations
from routers.groups import group_ids_for_user, members_of_groups
from schemas import (
    CalendarEvent, EventType, Simulation, SimulationAssignment, SimulationQuestion,
    SimulationResult, SimulationSection, SimulationStatus, SimulationType, SimulationVisibility, UTCDateTime,
    UserRole,
)
from security import is_admin, is_student, protected, staff_only, student_only

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/simulations", tags=["simulations"])

SIMULATION_NOT_FOUND = "Simulazione non trovata"
RESULT_NOT_FOUND = "Tentativo non trovato"
SIMULATION_CLEARABLE = ("description", "start_date", "end_date", "max_attempts", "passing_score", "max_score")


# -------------------- Payloads -------------------- #

class AnswerPayload(BaseModel):
    id: Optional[str] = None
    text: str = Field(..., min_length=1)
    is_correct: bool = False


class QuestionPayload(BaseModel):
    id: Optional[str] = None
    text: str = Field(..., min_length=1)
    subject: Optional[str] = None
    difficulty: Optional[str] = Field(None, pattern="^(EASY|MEDIUM|HARD)$")
    answers: List[AnswerPayload] = Field(..., min_length=2)
    points: float = 1.0
    negative_points: float = Field(0.0, le=0)
    custom_points: Optional[float] = None
    custom_negative_points: Optional[float] = Field(None, le=0)

    @model_validator(mode="after")
    def one_correct_answer(self):
        if sum(1 for a in self.answers if a.is_correct) != 1:
            raise ValueError("Ogni domanda deve avere esattamente una risposta corretta")
        return self


class SimulationPayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    type: SimulationType = SimulationType.PRACTICE
    visibility: SimulationVisibility = SimulationVisibility.PRIVATE
    is_official: bool = False
    is_paper_based: bool = False
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    duration_minutes: int = Field(0, ge=0, le=600)
    show_results: bool = True
    show_correct_answers: bool = True
    allow_review: bool = True
    randomize_order: bool = False
    is_repeatable: bool = False
    max_attempts: Optional[int] = Field(None, ge=1)
    use_question_points: bool = False
    correct_points: float = Field(1.5, gt=0)
    wrong_points: float = Field(-0.4, le=0)
    blank_points: float = 0.0
    passing_score: Optional[float] = None
    max_score: Optional[float] = Field(None, gt=0)
    questions: List[QuestionPayload] = Field(default_factory=list)
    has_sections: bool = False
    sections: List[SimulationSection] = Field(default_factory=list)


class SimulationUpdatePayload(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    type: Optional[SimulationType] = None
    visibility: Optional[SimulationVisibility] = None
    is_official: Optional[bool] = None
    is_paper_based: Optional[bool] = None
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    duration_minutes: Optional[int] = Field(None, ge=0, le=600)
    show_results: Optional[bool] = None
    show_correct_answers: Optional[bool] = None
    allow_review: Optional[bool] = None
    randomize_order: Optional[bool] = None
    is_repeatable: Optional[bool] = None
    max_attempts: Optional[int] = Field(None, ge=1)
    use_question_points: Optional[bool] = None
    correct_points: Optional[float] = Field(None, gt=0)
    wrong_points: Optional[float] = Field(None, le=0)
    blank_points: Optional[float] = None
    passing_score: Optional[float] = None
    max_score: Optional[float] = Field(None, gt=0)
    questions: Optional[List[QuestionPayload]] = None
    has_sections: Optional[bool] = None
    sections: Optional[List[SimulationSection]] = None


class AssignmentTarget(BaseModel):
    student_id: Optional[str] = None
    group_id: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one(self):
        if bool(self.student_id) == bool(self.group_id):
            raise ValueError("Specifica uno studente oppure un gruppo")
        return self


class AssignmentsPayload(BaseModel):
    targets: List[AssignmentTarget] = Field(..., min_length=1)
    due_date: Optional[UTCDateTime] = None
    start_date: Optional[UTCDateTime] = None
    end_date: Optional[UTCDateTime] = None
    notes: Optional[str] = Field(None, max_length=1000)
    create_calendar_event: bool = False


class GivenAnswer(BaseModel):
    question_id: str
    answer_id: Optional[str] = None
    answer_text: Optional[str] = None
    time_spent: int = Field(0, ge=0)
    flagged: bool = False


class ProgressPayload(BaseModel):
    answers: List[GivenAnswer] = Field(default_factory=list)
    time_spent: int = Field(0, ge=0)


class PaperResultPayload(BaseModel):
    student_id: str
    answers: List[GivenAnswer] = Field(default_factory=list)
    completed_at: Optional[UTCDateTime] = None


class QuickQuizPayload(BaseModel):
    subjects: List[str] = Field(default_factory=list)
    difficulty: str = Field("MIXED", pattern="^(EASY|MEDIUM|HARD|MIXED)$")
    question_count: int = Field(10, ge=5, le=50)
    duration_minutes: int = Field(15, ge=0, le=180)
    correct_points: float = Field(1.0, gt=0)
    wrong_points: float = Field(0.0, le=0)
    show_results: bool = True
    show_correct_answers: bool = True


# -------------------- Helpers -------------------- #

def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def build_questions(questions: List[QuestionPayload]) -> List[Dict[str, Any]]:
    built = []
    for q in questions:
        data = q.model_dump()
        data["id"] = data.get("id") or _new_id()
        data["answers"] = [{**a, "id": a.get("id") or _new_id()} for a in data["answers"]]
        built.append(SimulationQuestion(**data).model_dump())
    return built


def get_simulation(db: Database, simulation_id: str) -> Dict[str, Any]:
    simulation = db[SIMULATIONS].find_one({"_id": to_object_id(simulation_id, SIMULATION_NOT_FOUND)})
    if not simulation:
        raise HTTPException(status_code=404, detail=SIMULATION_NOT_FOUND)
    return simulation


def has_default_max_score(simulation: Dict[str, Any]) -> bool:
    stored = simulation.get("max_score")
    return stored is None or stored == scoring.default_max_score(simulation)


def ensure_owner(user: Dict[str, Any], simulation: Dict[str, Any]) -> None:
    if not is_admin(user) and simulation.get("created_by_id") != user["sub"]:
        raise HTTPException(status_code=403, detail="Non hai i permessi su questa simulazione")


def _check_window(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="La data di fine deve essere successiva alla data di inizio")


def _enum_values(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: getattr(v, "value", v) for k, v in data.items()}


def assigned_simulation_ids(db: Database, user_id: str) -> List[str]:
    group_ids = group_ids_for_user(db, user_id)
    filt: Dict[str, Any] = {"student_id": user_id}
    if group_ids:
        filt = {"$or": [{"student_id": user_id}, {"group_id": {"$in": group_ids}}]}
    return list({a["simulation_id"] for a in db[ASSIGNMENTS].find(filt, {"simulation_id": 1})})


def student_access_filter(db: Database, user_id: str) -> Dict[str, Any]:
    return {
        "status": SimulationStatus.PUBLISHED.value,
        "$or": [
            {"visibility": SimulationVisibility.PUBLIC.value},
            {"created_by_id": user_id},
            {"_id": {"$in": object_ids(assigned_simulation_ids(db, user_id))}},
        ],
    }


def can_student_access(db: Database, user_id: str, simulation: Dict[str, Any]) -> bool:
    if simulation.get("status") != SimulationStatus.PUBLISHED.value:
        return False
    if simulation.get("visibility") == SimulationVisibility.PUBLIC.value or simulation.get("created_by_id") == user_id:
        return True
    return str(simulation["_id"]) in assigned_simulation_ids(db, user_id)


def _window_error(simulation: Dict[str, Any], now: datetime) -> Optional[str]:
    if simulation.get("start_date") and simulation["start_date"] > now:
        return "La simulazione non è ancora iniziata"
    if simulation.get("end_date") and simulation["end_date"] < now:
        return "La simulazione è scaduta"
    return None


def student_status(simulation: Dict[str, Any], results: List[Dict[str, Any]], now: datetime) -> str:
    if any(r.get("completed_at") for r in results):
        return "completed"
    if results:
        return "in_progress"
    if simulation.get("end_date") and simulation["end_date"] < now:
        return "expired"
    if simulation.get("start_date") and simulation["start_date"] > now:
        return "not_started"
    return "available"


def get_own_result(db: Database, user: Dict[str, Any], result_id: str) -> Dict[str, Any]:
    result = db[RESULTS].find_one({"_id": to_object_id(result_id, RESULT_NOT_FOUND)})
    if not result:
        raise HTTPException(status_code=404, detail=RESULT_NOT_FOUND)
    if result["student_id"] != user["sub"]:
        raise HTTPException(status_code=403, detail="Non autorizzato")
    return result


def _open_result(db: Database, user: Dict[str, Any], result_id: str):
    result = get_own_result(db, user, result_id)
    if result.get("completed_at"):
        raise HTTPException(status_code=400, detail="Tentativo già completato")
    return result, get_simulation(db, result["simulation_id"])


def _sync_sections(db: Database, simulation: Dict[str, Any], result: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    if not scoring.is_sectioned(simulation):
        return result
    changes = scoring.advance_expired_sections(simulation, result, now)
    if changes:
        result = update_document(db, RESULTS, result["_id"], changes)
    return result


def _merge_answers(simulation: Dict[str, Any], result: Dict[str, Any], incoming: List[GivenAnswer],
                   strict: bool) -> List[Dict[str, Any]]:
    """Combine stored and incoming answers; answers for locked sections keep their stored value."""
    stored = {a["question_id"]: a for a in result.get("answers", [])}
    allowed = scoring.answerable_question_ids(simulation, result)
    merged = dict(stored)
    for answer in incoming:
        data = answer.model_dump()
        if allowed is not None and answer.question_id not in allowed:
            previous = stored.get(answer.question_id, {})
            if strict and previous.get("answer_id") != answer.answer_id:
                raise HTTPException(status_code=400, detail="Non puoi modificare risposte di una sezione bloccata")
            continue
        merged[answer.question_id] = data
    return list(merged.values())


# -------------------- Staff -------------------- #

@router.get("")
def list_simulations(
    search: Optional[str] = None,
    type: Optional[SimulationType] = None,
    status: Optional[SimulationStatus] = None,
    visibility: Optional[SimulationVisibility] = None,
    is_official: Optional[bool] = None,
    created_by_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user=Depends(staff_only),
    db: Database = Depends(get_db),
):
    clauses: List[Dict[str, Any]] = [{"type": {"$ne": SimulationType.QUICK_QUIZ.value}}]
    if search:
        rx = {"$regex": re.escape(search.strip()), "$options": "i"}
        clauses.append({"$or": [{"title": rx}, {"description": rx}]})
    if type:
        clauses.append({"type": type.value})
    if status:
        clauses.append({"status": status.value})
    if visibility:
        clauses.append({"visibility": visibility.value})
    if is_official is not None:
        clauses.append({"is_official": is_official})
    if created_by_id:
        clauses.append({"created_by_id": created_by_id})
    if not is_admin(user):
        clauses.append({"$or": [{"created_by_id": user["sub"]}, {"status": SimulationStatus.PUBLISHED.value}]})
    docs, pagination = paginate(db, SIMULATIONS, {"$and": clauses}, [("created_at", -1)], page, page_size)
    ids = [str(d["_id"]) for d in docs]
    result_counts: Dict[str, int] = {}
    for r in db[RESULTS].find({"simulation_id": {"$in": ids}}, {"simulation_id": 1}):
        result_counts[r["simulation_id"]] = result_counts.get(r["simulation_id"], 0) + 1
    simulations = []
    for doc in docs:
        out = serialize_doc(doc)
        out.pop("questions", None)
        out["question_count"] = len(doc.get("questions", []))
        out["result_count"] = result_counts.get(str(doc["_id"]), 0)
        simulations.append(out)
    return {"simulations": simulations, "pagination": pagination}


@router.post("")
def create_simulation(payload: SimulationPayload, user=Depends(staff_only), db: Database = Depends(get_db)):
    official = payload.type == SimulationType.OFFICIAL or payload.is_official
    if official and not is_admin(user):
        raise HTTPException(status_code=403, detail="Solo gli amministratori possono creare simulazioni ufficiali")
    _check_window(payload.start_date, payload.end_date)
    data = payload.model_dump(exclude={"questions"})
    data["questions"] = build_questions(payload.questions)
    data["is_official"] = official
    simulation = Simulation(**data, created_by_id=user["sub"], creator_role=user["role"]).model_dump()
    if simulation["max_score"] is None:
        simulation["max_score"] = scoring.default_max_score(simulation)
    sid = create_document(db, SIMULATIONS, simulation)
    logger.info("Simulation %s created by %s", sid, user["sub"])
    return {"id": sid}


@router.patch("/{simulation_id}")
def update_simulation(simulation_id: str, payload: SimulationUpdatePayload, user=Depends(staff_only),
                      db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    if simulation["status"] == SimulationStatus.ARCHIVED.value:
        raise HTTPException(status_code=400, detail="Non puoi modificare una simulazione archiviata")
    changes = _enum_values(changed_fields(payload, clearable=SIMULATION_CLEARABLE))
    changes.pop("questions", None)
    changes.pop("sections", None)
    makes_official = changes.get("is_official") or changes.get("type") == SimulationType.OFFICIAL.value
    if makes_official and not is_admin(user):
        raise HTTPException(status_code=403, detail="Solo gli amministratori possono rendere ufficiale una simulazione")
    _check_window(changes.get("start_date", simulation.get("start_date")), changes.get("end_date", simulation.get("end_date")))
    if payload.questions is not None:
        changes["questions"] = build_questions(payload.questions)
    if payload.sections is not None:
        changes["sections"] = [s.model_dump() for s in payload.sections]
    if changes.get("max_score") is None:
        cleared = "max_score" in changes
        rescored = "questions" in changes or "correct_points" in changes
        if cleared or (rescored and has_default_max_score(simulation)):
            changes["max_score"] = scoring.default_max_score({**simulation, **changes})
    if not changes:
        return serialize_doc(simulation)
    return serialize_doc(update_document(db, SIMULATIONS, simulation["_id"], changes))


@router.delete("/{simulation_id}")
def delete_simulation(simulation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    if db[RESULTS].count_documents({"simulation_id": simulation_id}) > 0:
        raise HTTPException(status_code=400, detail="Non puoi eliminare una simulazione con risultati. Archiviala invece.")
    db[ASSIGNMENTS].delete_many({"simulation_id": simulation_id})
    db[SIMULATIONS].delete_one({"_id": simulation["_id"]})
    return {"id": simulation_id, "deleted": True}


@router.post("/{simulation_id}/publish")
def publish_simulation(simulation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    if not simulation.get("questions"):
        raise HTTPException(status_code=400, detail="La simulazione deve avere almeno una domanda")
    if simulation.get("has_sections"):
        if not simulation.get("sections"):
            raise HTTPException(status_code=400, detail="La simulazione a sezioni deve avere almeno una sezione")
        missing = scoring.uncovered_section_questions(simulation)
        if missing:
            raise HTTPException(status_code=400, detail=f"{len(missing)} domande delle sezioni non appartengono alla simulazione")
    return serialize_doc(update_document(db, SIMULATIONS, simulation["_id"], {"status": SimulationStatus.PUBLISHED.value}))


@router.post("/{simulation_id}/archive")
def archive_simulation(simulation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    return serialize_doc(update_document(db, SIMULATIONS, simulation["_id"], {"status": SimulationStatus.ARCHIVED.value}))


def _student_ids(db: Database, user_ids: List[str]) -> List[str]:
    users = db[USERS].find({"_id": {"$in": object_ids(user_ids)}, "role": UserRole.STUDENT.value}, {"_id": 1})
    return [str(u["_id"]) for u in users]


@router.post("/{simulation_id}/assignments")
def add_assignments(simulation_id: str, payload: AssignmentsPayload, user=Depends(staff_only),
                    db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    if simulation["status"] == SimulationStatus.ARCHIVED.value:
        raise HTTPException(status_code=400, detail="Non puoi assegnare una simulazione archiviata")
    _check_window(payload.start_date, payload.end_date)

    if not is_admin(user):
        managed = [str(g["_id"]) for g in db[GROUPS].find(
            {"$or": [{"member_ids": user["sub"]}, {"referent_id": user["sub"]}]}, {"_id": 1})]
        allowed_students = set(members_of_groups(db, managed))
        for target in payload.targets:
            if target.group_id and target.group_id not in managed:
                raise HTTPException(status_code=403, detail="Non puoi assegnare a gruppi che non gestisci")
            if target.student_id and target.student_id not in allowed_students:
                raise HTTPException(status_code=403, detail="Non puoi assegnare a studenti che non sono nei tuoi gruppi")

    event_id = None
    if payload.create_calendar_event:
        start = payload.start_date or simulation.get("start_date") or utcnow()
        end = payload.end_date or start + timedelta(minutes=simulation.get("duration_minutes") or 60)
        event = CalendarEvent(
            title=simulation["title"], description=simulation.get("description"), type=EventType.SIMULATION,
            start_date=start, end_date=end, created_by_id=user["sub"], simulation_id=simulation_id,
        )
        event_id = create_document(db, EVENTS, event)
        add_invitations(db, event_id, [t.student_id for t in payload.targets if t.student_id],
                        [t.group_id for t in payload.targets if t.group_id])

    created = 0
    direct, groups = [], []
    for target in payload.targets:
        key = {"simulation_id": simulation_id, "student_id": target.student_id, "group_id": target.group_id}
        if db[ASSIGNMENTS].find_one(key):
            continue
        assignment = SimulationAssignment(
            **key, due_date=payload.due_date, start_date=payload.start_date, end_date=payload.end_date,
            notes=payload.notes, assigned_by_id=user["sub"], calendar_event_id=event_id,
        )
        create_document(db, ASSIGNMENTS, assignment)
        created += 1
        if target.student_id:
            direct.append(target.student_id)
        else:
            groups.append(target.group_id)

    students = _student_ids(db, direct + members_of_groups(db, groups))
    if students:
        notifier.notify_simulation_assigned(db, simulation, students, payload.due_date)
    return {"created": created, "calendar_event_id": event_id}


@router.delete("/assignments/{assignment_id}")
def remove_assignment(assignment_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    assignment = db[ASSIGNMENTS].find_one({"_id": to_object_id(assignment_id, "Assegnazione non trovata")})
    if not assignment:
        raise HTTPException(status_code=404, detail="Assegnazione non trovata")
    ensure_owner(user, get_simulation(db, assignment["simulation_id"]))
    db[ASSIGNMENTS].delete_one({"_id": assignment["_id"]})
    return {"id": assignment_id, "deleted": True}


@router.get("/{simulation_id}/statistics")
def simulation_statistics(simulation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    results = list(db[RESULTS].find({"simulation_id": simulation_id}))
    return {"simulation_id": simulation_id, **scoring.simulation_statistics(simulation, results)}


@router.post("/{simulation_id}/paper-results")
def create_paper_result(simulation_id: str, payload: PaperResultPayload, user=Depends(staff_only),
                        db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    if not _student_ids(db, [payload.student_id]):
        raise HTTPException(status_code=404, detail="Studente non trovato")
    completed_at = payload.completed_at or utcnow()
    scored = scoring.score_attempt(simulation, [a.model_dump() for a in payload.answers])
    passed = scored.pop("passed")
    result = SimulationResult(
        simulation_id=simulation_id, student_id=payload.student_id, total_questions=len(simulation["questions"]),
        started_at=completed_at, completed_at=completed_at, is_paper_based=True, **scored,
    )
    rid = create_document(db, RESULTS, result)
    return {"result_id": rid, "score": scored["total_score"], "passed": passed}


# -------------------- Students -------------------- #

@router.get("/available")
def available_simulations(
    type: Optional[SimulationType] = None,
    status: Optional[str] = Query(None, pattern="^(available|in_progress|completed|expired|not_started)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user=Depends(student_only),
    db: Database = Depends(get_db),
):
    now = utcnow()
    filt = student_access_filter(db, user["sub"])
    if type:
        filt["type"] = type.value
    docs = list(db[SIMULATIONS].find(filt).sort("created_at", -1))
    results: Dict[str, List[Dict[str, Any]]] = {}
    for r in db[RESULTS].find({"student_id": user["sub"]}, {"simulation_id": 1, "completed_at": 1}):
        results.setdefault(r["simulation_id"], []).append(r)

    rows = []
    for doc in docs:
        state = student_status(doc, results.get(str(doc["_id"]), []), now)
        if status and state != status:
            continue
        out = serialize_doc(doc)
        out.pop("questions", None)
        out.pop("sections", None)
        out["question_count"] = len(doc.get("questions", []))
        out["student_status"] = state
        rows.append(out)
    total = len(rows)
    start = (page - 1) * page_size
    return {
        "simulations": rows[start:start + page_size],
        "pagination": {"page": page, "page_size": page_size, "total": total, "total_pages": -(-total // page_size)},
    }


@router.get("/my-results")
def my_results(user=Depends(student_only), db: Database = Depends(get_db)):
    results = list(db[RESULTS].find({"student_id": user["sub"], "completed_at": {"$ne": None}}).sort("completed_at", -1))
    sims = {str(s["_id"]): s for s in db[SIMULATIONS].find(
        {"_id": {"$in": object_ids([r["simulation_id"] for r in results])}}, {"title": 1, "type": 1, "max_score": 1,
                                                                          "passing_score": 1})}
    rows = []
    for r in results:
        sim = sims.get(r["simulation_id"], {})
        out = serialize_doc(r)
        out.pop("answers", None)
        out["simulation"] = {"id": r["simulation_id"], "title": sim.get("title"), "type": sim.get("type"),
                             "max_score": sim.get("max_score")}
        out["passed"] = scoring.is_passed(sim, r.get("total_score"))
        rows.append(out)
    return rows


@router.post("/quick-quiz")
def generate_quick_quiz(payload: QuickQuizPayload, user=Depends(student_only), db: Database = Depends(get_db)):
    pool: Dict[str, Dict[str, Any]] = {}
    source = db[SIMULATIONS].find(
        {"status": SimulationStatus.PUBLISHED.value, "type": {"$ne": SimulationType.QUICK_QUIZ.value}},
        {"questions": 1},
    )
    for sim in source:
        for q in sim.get("questions", []):
            if payload.subjects and q.get("subject") not in payload.subjects:
                continue
            if payload.difficulty != "MIXED" and q.get("difficulty") != payload.difficulty:
                continue
            pool.setdefault(q["text"], q)
    if len(pool) < payload.question_count:
        raise HTTPException(
            status_code=400,
            detail=f"Non ci sono abbastanza domande (disponibili: {len(pool)}, richieste: {payload.question_count})",
        )
    selected = random.sample(list(pool.values()), payload.question_count)
    questions = [{**q, "id": _new_id(), "custom_points": None, "custom_negative_points": None} for q in selected]
    quiz = Simulation(
        title=f"Quiz Veloce - {utcnow().strftime('%d/%m/%Y')}",
        type=SimulationType.QUICK_QUIZ, status=SimulationStatus.PUBLISHED, visibility=SimulationVisibility.PRIVATE,
        duration_minutes=payload.duration_minutes, show_results=payload.show_results,
        show_correct_answers=payload.show_correct_answers, randomize_order=True,
        correct_points=payload.correct_points, wrong_points=payload.wrong_points, blank_points=0,
        questions=questions, created_by_id=user["sub"], creator_role=UserRole.STUDENT,
    ).model_dump()
    quiz["max_score"] = scoring.default_max_score(quiz)
    qid = create_document(db, SIMULATIONS, quiz)
    return {"id": qid, "question_count": len(questions)}


# -------------------- Attempts -------------------- #

@router.put("/results/{result_id}/progress")
def save_progress(result_id: str, payload: ProgressPayload, user=Depends(student_only), db: Database = Depends(get_db)):
    result, simulation = _open_result(db, user, result_id)
    result = _sync_sections(db, simulation, result, utcnow())
    answers = _merge_answers(simulation, result, payload.answers, strict=True)
    update_document(db, RESULTS, result["_id"], {"answers": answers, "duration_seconds": payload.time_spent})
    return {"success": True}


@router.get("/results/{result_id}/sections")
def get_section_state(result_id: str, user=Depends(student_only), db: Database = Depends(get_db)):
    result, simulation = _open_result(db, user, result_id)
    if not scoring.is_sectioned(simulation):
        raise HTTPException(status_code=400, detail="La simulazione non è divisa in sezioni")
    now = utcnow()
    result = _sync_sections(db, simulation, result, now)
    return scoring.section_state(simulation, result, now)


@router.post("/results/{result_id}/sections/complete")
def complete_section(result_id: str, user=Depends(student_only), db: Database = Depends(get_db)):
    result, simulation = _open_result(db, user, result_id)
    if not scoring.is_sectioned(simulation):
        raise HTTPException(status_code=400, detail="La simulazione non è divisa in sezioni")
    now = utcnow()
    result = _sync_sections(db, simulation, result, now)
    changes = scoring.complete_section(simulation, result, now)
    if changes:
        result = update_document(db, RESULTS, result["_id"], changes)
    return scoring.section_state(simulation, result, now)


@router.post("/results/{result_id}/submit")
def submit(result_id: str, payload: ProgressPayload, user=Depends(student_only), db: Database = Depends(get_db)):
    result, simulation = _open_result(db, user, result_id)
    now = utcnow()
    result = _sync_sections(db, simulation, result, now)
    answers = _merge_answers(simulation, result, payload.answers, strict=False)
    scored = scoring.score_attempt(simulation, answers)
    passed = scored.pop("passed")
    changes = {**scored, "duration_seconds": payload.time_spent, "completed_at": now}
    if scoring.is_sectioned(simulation):
        changes.update({
            "current_section_index": len(simulation["sections"]),
            "section_started_at": None,
            "completed_sections": list(range(len(simulation["sections"]))),
        })
    update_document(db, RESULTS, result["_id"], changes)
    logger.info("Result %s submitted: %s", result_id, scored["total_score"])

    response: Dict[str, Any] = {"result_id": result_id, "show_results": simulation.get("show_results", True)}
    if simulation.get("show_results", True):
        response.update({
            "score": scored["total_score"],
            "max_score": simulation.get("max_score"),
            "percentage_score": scored["percentage_score"],
            "correct_count": scored["correct_answers"],
            "wrong_count": scored["wrong_answers"],
            "blank_count": scored["blank_answers"],
            "total_questions": len(simulation.get("questions", [])),
            "passed": passed,
        })
        if simulation.get("show_correct_answers", True):
            response["answers"] = scored["answers"]
    return response


@router.get("/results/{result_id}")
def result_details(result_id: str, user=Depends(student_only), db: Database = Depends(get_db)):
    result = get_own_result(db, user, result_id)
    if not result.get("completed_at"):
        raise HTTPException(status_code=400, detail="Il tentativo non è ancora completato")
    simulation = get_simulation(db, result["simulation_id"])
    out = serialize_doc(result)
    out["simulation"] = {
        "id": result["simulation_id"], "title": simulation["title"], "max_score": simulation.get("max_score"),
        "passing_score": simulation.get("passing_score"), "show_correct_answers": simulation.get("show_correct_answers"),
    }
    out["passed"] = scoring.is_passed(simulation, result.get("total_score"))
    if not simulation.get("allow_review", True):
        out.pop("answers", None)
        return out
    show_correct = simulation.get("show_correct_answers", True)
    given = {a["question_id"]: a for a in result.get("answers", [])}
    review = []
    for q in simulation.get("questions", []):
        a = given.get(q["id"], {})
        review.append({
            "question_id": q["id"],
            "text": q["text"],
            "answers": [{"id": x["id"], "text": x["text"], **({"is_correct": x["is_correct"]} if show_correct else {})}
                        for x in q.get("answers", [])],
            "given_answer_id": a.get("answer_id"),
            "is_correct": a.get("is_correct") if show_correct else None,
            "earned_points": a.get("earned_points"),
        })
    out["answers"] = review
    return out


# -------------------- Per simulation (student and shared) -------------------- #

@router.get("/{simulation_id}/student")
def simulation_for_student(simulation_id: str, user=Depends(student_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    if simulation.get("status") != SimulationStatus.PUBLISHED.value:
        raise HTTPException(status_code=404, detail=SIMULATION_NOT_FOUND)
    if not can_student_access(db, user["sub"], simulation):
        raise HTTPException(status_code=403, detail="Non hai accesso a questa simulazione")
    error = _window_error(simulation, utcnow())
    if error:
        raise HTTPException(status_code=400, detail=error)
    results = list(db[RESULTS].find({"simulation_id": simulation_id, "student_id": user["sub"]}))
    completed = sum(1 for r in results if r.get("completed_at"))
    in_progress = next((r for r in results if not r.get("completed_at")), None)
    if in_progress is None:
        if not simulation.get("is_repeatable") and completed > 0:
            raise HTTPException(status_code=400, detail="Hai già completato questa simulazione")
        if simulation.get("max_attempts") and completed >= simulation["max_attempts"]:
            raise HTTPException(status_code=400, detail=f"Hai raggiunto il numero massimo di tentativi ({simulation['max_attempts']})")
    out = serialize_doc(scoring.strip_correctness(simulation))
    if simulation.get("randomize_order"):
        random.shuffle(out["questions"])
    out["completed_attempts"] = completed
    out["in_progress_attempt_id"] = str(in_progress["_id"]) if in_progress else None
    return out


@router.post("/{simulation_id}/start")
def start_attempt(simulation_id: str, user=Depends(student_only), db: Database = Depends(get_db)):
    simulation = db[SIMULATIONS].find_one({"_id": to_object_id(simulation_id, "Simulazione non disponibile")})
    if not simulation or simulation.get("status") != SimulationStatus.PUBLISHED.value:
        raise HTTPException(status_code=404, detail="Simulazione non disponibile")
    if not can_student_access(db, user["sub"], simulation):
        raise HTTPException(status_code=403, detail="Non hai accesso a questa simulazione")
    now = utcnow()
    error = _window_error(simulation, now)
    if error:
        raise HTTPException(status_code=400, detail=error)

    results = list(db[RESULTS].find({"simulation_id": simulation_id, "student_id": user["sub"]}))
    in_progress = next((r for r in results if not r.get("completed_at")), None)
    if in_progress:
        return {"result_id": str(in_progress["_id"]), "resumed": True}
    completed = sum(1 for r in results if r.get("completed_at"))
    if not simulation.get("is_repeatable") and completed > 0:
        raise HTTPException(status_code=400, detail="Simulazione già completata")
    if simulation.get("max_attempts") and completed >= simulation["max_attempts"]:
        raise HTTPException(status_code=400, detail="Tentativi esauriti")

    result = SimulationResult(
        simulation_id=simulation_id, student_id=user["sub"], total_questions=len(simulation.get("questions", [])),
        started_at=now, section_started_at=now if scoring.is_sectioned(simulation) else None,
    )
    rid = create_document(db, RESULTS, result)
    return {"result_id": rid, "resumed": False}


@router.get("/{simulation_id}/leaderboard")
def leaderboard(simulation_id: str, limit: int = Query(50, ge=1, le=100), user=Depends(protected),
                db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    can_see_all = is_admin(user) or simulation.get("created_by_id") == user["sub"]
    me = user["sub"] if is_student(user) else None
    results = list(db[RESULTS].find({"simulation_id": simulation_id, "completed_at": {"$ne": None}}))
    ranked = scoring.rank_results(results)[:limit]
    names = {str(u["_id"]): u.get("name") for u in db[USERS].find(
        {"_id": {"$in": object_ids([r["student_id"] for r in ranked])}}, {"name": 1})}
    rows = []
    for position, r in enumerate(ranked):
        is_me = r["student_id"] == me
        show = can_see_all or is_me
        rows.append({
            "rank": r["rank"],
            "student_id": r["student_id"] if show else None,
            "student_name": names.get(r["student_id"]) if show else scoring.anonymous_name(position, r["rank"]),
            "is_current_user": is_me,
            "total_score": r.get("total_score"),
            "percentage_score": r.get("percentage_score"),
            "correct_answers": r.get("correct_answers", 0),
            "wrong_answers": r.get("wrong_answers", 0),
            "blank_answers": r.get("blank_answers", 0),
            "duration_seconds": r.get("duration_seconds", 0),
            "completed_at": r["completed_at"].isoformat() if r.get("completed_at") else None,
            "passed": scoring.is_passed(simulation, r.get("total_score")),
        })
    return {
        "simulation": {"id": simulation_id, "title": simulation["title"], "max_score": simulation.get("max_score"),
                       "passing_score": simulation.get("passing_score")},
        "leaderboard": rows,
        "total_participants": len(rows),
        "can_see_all_names": can_see_all,
    }


@router.get("/{simulation_id}")
def get_simulation_detail(simulation_id: str, user=Depends(staff_only), db: Database = Depends(get_db)):
    simulation = get_simulation(db, simulation_id)
    ensure_owner(user, simulation)
    out = serialize_doc(simulation)
    out["assignments"] = serialize_list(list(db[ASSIGNMENTS].find({"simulation_id": simulation_id})))
    out["result_count"] = db[RESULTS].count_documents({"simulation_id": simulation_id})
    return out
