"""
Simulation scoring, the sectioned (TOLC-style) exam timer and leaderboard
ranking.

Everything here works on plain Mongo documents so the routers can call it
directly and the tests can exercise it without a database.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

ANONYMOUS_ADJECTIVES = [
    "Misterioso", "Brillante", "Coraggioso", "Diligente", "Energico",
    "Fantastico", "Geniale", "Intraprendente", "Laborioso", "Metodico",
    "Notevole", "Originale", "Perseverante", "Risoluto", "Tenace",
]


# -------------------- Scoring -------------------- #

def question_points(simulation: Dict[str, Any], question: Dict[str, Any]) -> Tuple[float, float]:
    """Points for a correct and for a wrong answer to ``question``."""
    use_question = simulation.get("use_question_points", False)
    points = question.get("custom_points")
    if points is None:
        points = question.get("points", 1.0) if use_question else simulation.get("correct_points", 1.5)
    negative = question.get("custom_negative_points")
    if negative is None:
        negative = question.get("negative_points", 0.0) if use_question else simulation.get("wrong_points", -0.4)
    return points, negative


def correct_answer_id(question: Dict[str, Any]) -> Optional[str]:
    for answer in question.get("answers", []):
        if answer.get("is_correct"):
            return answer.get("id")
    return None


def default_max_score(simulation: Dict[str, Any]) -> float:
    return len(simulation.get("questions", [])) * simulation.get("correct_points", 1.5)


def is_passed(simulation: Dict[str, Any], total_score: Optional[float]) -> Optional[bool]:
    if simulation.get("passing_score") is None:
        return None
    return (total_score or 0) >= simulation["passing_score"]


def score_attempt(simulation: Dict[str, Any], answers: List[Dict[str, Any]]) -> Dict[str, Any]:
    by_question = {a.get("question_id"): a for a in answers}
    evaluated = []
    correct = wrong = blank = 0
    total = 0.0
    for question in simulation.get("questions", []):
        given = by_question.get(question["id"]) or {}
        points, negative = question_points(simulation, question)
        answer_id = given.get("answer_id")
        is_correct = False
        if not answer_id:
            blank += 1
            earned = simulation.get("blank_points", 0.0)
        elif answer_id == correct_answer_id(question):
            is_correct = True
            correct += 1
            earned = points
        else:
            wrong += 1
            earned = negative
        total += earned
        evaluated.append({
            "question_id": question["id"],
            "answer_id": answer_id or None,
            "answer_text": given.get("answer_text"),
            "is_correct": is_correct,
            "earned_points": earned,
            "time_spent": given.get("time_spent", 0),
        })

    total = round(total, 2)
    max_score = simulation.get("max_score")
    percentage = round(total / max_score * 100, 2) if max_score else 0
    return {
        "answers": evaluated,
        "total_score": total,
        "percentage_score": percentage,
        "correct_answers": correct,
        "wrong_answers": wrong,
        "blank_answers": blank,
        "passed": is_passed(simulation, total),
    }


def strip_correctness(simulation: Dict[str, Any]) -> Dict[str, Any]:
    sim = {**simulation}
    sim["questions"] = [
        {**q, "answers": [{"id": a["id"], "text": a["text"]} for a in q.get("answers", [])]}
        for q in simulation.get("questions", [])
    ]
    return sim


# -------------------- Section timer -------------------- #

def ordered_sections(simulation: Dict[str, Any]) -> List[Dict[str, Any]]:
    return sorted(simulation.get("sections", []), key=lambda s: s.get("order", 0))


def is_sectioned(simulation: Dict[str, Any]) -> bool:
    return bool(simulation.get("has_sections") and simulation.get("sections"))


def remaining_seconds(section: Dict[str, Any], started_at: Optional[datetime], now: datetime) -> int:
    total = section["duration_minutes"] * 60
    if started_at is None:
        return total
    elapsed = int((now - started_at).total_seconds())
    return max(0, total - elapsed)


def advance_expired_sections(simulation: Dict[str, Any], result: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Complete every section whose time ran out.

    Each following section starts the moment the previous one expired, so a
    student who comes back late may skip over several sections at once.
    Returns the fields that changed (empty when nothing expired).
    """
    sections = ordered_sections(simulation)
    index = result.get("current_section_index", 0)
    started_at = result.get("section_started_at") or result.get("started_at")
    completed = list(result.get("completed_sections", []))
    changed = False
    while index < len(sections) and remaining_seconds(sections[index], started_at, now) == 0:
        if index not in completed:
            completed.append(index)
        started_at = started_at + timedelta(minutes=sections[index]["duration_minutes"])
        index += 1
        changed = True
    if not changed:
        return {}
    return {
        "current_section_index": index,
        "section_started_at": started_at if index < len(sections) else None,
        "completed_sections": completed,
    }


def complete_section(simulation: Dict[str, Any], result: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    sections = ordered_sections(simulation)
    index = result.get("current_section_index", 0)
    completed = list(result.get("completed_sections", []))
    if index >= len(sections):
        return {}
    if index not in completed:
        completed.append(index)
    index += 1
    return {
        "current_section_index": index,
        "section_started_at": now if index < len(sections) else None,
        "completed_sections": completed,
    }


def section_state(simulation: Dict[str, Any], result: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    sections = ordered_sections(simulation)
    index = result.get("current_section_index", 0)
    started_at = result.get("section_started_at") or result.get("started_at")
    rows = []
    for i, section in enumerate(sections):
        if i < index:
            status = "completed"
        elif i == index:
            status = "current"
        else:
            status = "locked"
        rows.append({
            "index": i,
            "id": section["id"],
            "name": section["name"],
            "duration_minutes": section["duration_minutes"],
            "question_ids": section.get("question_ids", []),
            "status": status,
            "is_locked": status != "current",
        })
    current = sections[index] if index < len(sections) else None
    return {
        "current_section_index": index,
        "total_sections": len(sections),
        "sections": rows,
        "remaining_seconds": remaining_seconds(current, started_at, now) if current else 0,
        "section_started_at": started_at if current else None,
        "ready_to_submit": current is None,
    }


def answerable_question_ids(simulation: Dict[str, Any], result: Dict[str, Any]) -> Optional[set]:
    """Question ids open for answers right now, or None when every question is."""
    if not is_sectioned(simulation):
        return None
    sections = ordered_sections(simulation)
    index = result.get("current_section_index", 0)
    if index >= len(sections):
        return set()
    return set(sections[index].get("question_ids", []))


def uncovered_section_questions(simulation: Dict[str, Any]) -> List[str]:
    """Section question ids that are not questions of the simulation."""
    known = {q["id"] for q in simulation.get("questions", [])}
    missing = []
    for section in simulation.get("sections", []):
        missing.extend(qid for qid in section.get("question_ids", []) if qid not in known)
    return missing


# -------------------- Leaderboard & statistics -------------------- #

def rank_results(results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order by score desc then duration asc; equal scores share the rank of the first of them."""
    ordered = sorted(results, key=lambda r: (-(r.get("total_score") or 0), r.get("duration_seconds") or 0))
    ranked = []
    first_rank_for_score: Dict[float, int] = {}
    for position, result in enumerate(ordered, start=1):
        score = result.get("total_score") or 0
        rank = first_rank_for_score.setdefault(score, position)
        ranked.append({**result, "rank": rank})
    return ranked


def anonymous_name(position: int, rank: int) -> str:
    adjective = ANONYMOUS_ADJECTIVES[position % len(ANONYMOUS_ADJECTIVES)]
    return f"Partecipante {adjective} #{rank}"


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0


def simulation_statistics(simulation: Dict[str, Any], results: List[Dict[str, Any]]) -> Dict[str, Any]:
    completed = [r for r in results if r.get("completed_at")]
    scores = [r.get("total_score") or 0 for r in completed]
    pass_rate = None
    if simulation.get("passing_score") is not None and completed:
        passed = sum(1 for s in scores if s >= simulation["passing_score"])
        pass_rate = round(passed / len(completed) * 100, 2)
    return {
        "total_attempts": len(completed),
        "in_progress": len(results) - len(completed),
        "average_score": _avg(scores),
        "min_score": min(scores) if scores else 0,
        "max_score": max(scores) if scores else 0,
        "average_correct": _avg([r.get("correct_answers", 0) for r in completed]),
        "average_wrong": _avg([r.get("wrong_answers", 0) for r in completed]),
        "average_blank": _avg([r.get("blank_answers", 0) for r in completed]),
        "average_duration_seconds": _avg([r.get("duration_seconds", 0) for r in completed]),
        "pass_rate": pass_rate,
    }
