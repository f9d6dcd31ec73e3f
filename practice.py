import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import AppError
from gamification import XP_REWARDS

SESSION_QUESTION_COUNTS = {
    "targeted": 10,
    "mixed": 15,
    "exam_prep": 30,
    "quick": 5,
    "custom": 10,
}

SESSION_STATUSES = ("active", "paused", "completed", "abandoned")
OPEN_STATUSES = ("active", "paused")

QUESTION_TYPES = ("multiple_choice", "true_false", "fill_blank", "short_answer", "matching", "sequence")
GAP_ACCURACY = 0.5
GAP_MIN_ANSWERS = 2


@dataclass
class PracticeSession:
    session_type: str
    question_ids: List[str]
    status: str = "active"
    id: Optional[str] = None
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    current_question_index: int = 0
    questions_answered: int = 0
    questions_correct: int = 0
    started_at: Optional[datetime] = None
    target_concept_ids: List[str] = field(default_factory=list)

    @property
    def question_count(self) -> int:
        return len(self.question_ids)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


def default_question_count(session_type: str) -> int:
    if session_type not in SESSION_QUESTION_COUNTS:
        raise ValueError(f"Unknown practice session type: {session_type}")
    return SESSION_QUESTION_COUNTS[session_type]


def check_answer(question: Dict[str, Any], answer: str) -> bool:
    correct = str(question.get("correct_answer", "")).strip().lower()
    given = str(answer if answer is not None else "").strip().lower()
    qtype = question.get("question_type") or question.get("type") or "multiple_choice"

    if given == correct:
        return True
    if qtype in ("fill_blank", "short_answer"):
        return bool(given) and given in correct
    if qtype == "multiple_choice":
        options = question.get("options") or []
        # learners may answer with the option index
        if options and given.isdigit():
            idx = int(given)
            if 0 <= idx < len(options):
                return str(options[idx]).strip().lower() == correct or str(idx) == correct
    return False


def _require_open(session: PracticeSession) -> None:
    if not session.is_open:
        raise ValueError(f"Practice session is {session.status}")


def record_answer(session: PracticeSession, question: Dict[str, Any], answer: str,
                  is_correct: Optional[bool] = None) -> Dict[str, Any]:
    """Score one answer and advance the session.

    Pass ``is_correct`` when the answer was already marked elsewhere (free-text
    answers marked by the model).
    """
    _require_open(session)
    if session.questions_answered >= session.question_count:
        raise AppError("NS-VAL-003", details={"answered": session.questions_answered,
                                             "question_count": session.question_count})
    if is_correct is None:
        is_correct = check_answer(question, answer)
    session.questions_answered += 1
    session.questions_correct += 1 if is_correct else 0
    session.current_question_index = min(session.current_question_index + 1, session.question_count)
    return {
        "is_correct": is_correct,
        "correct_answer": question.get("correct_answer"),
        "explanation": question.get("explanation", ""),
        "session_progress": session_progress(session),
    }


def session_progress(session: PracticeSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    answered = session.questions_answered
    elapsed = 0
    if session.started_at is not None:
        now = now or datetime.now(timezone.utc)
        started = session.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        elapsed = max(0, int(math.floor((now - started).total_seconds())))
    return {
        "status": session.status,
        "answered": answered,
        "correct": session.questions_correct,
        "total": session.question_count,
        "accuracy": int(round(session.questions_correct / answered * 100)) if answered else 0,
        "current_index": session.current_question_index,
        "remaining": max(0, session.question_count - answered),
        "elapsed_seconds": elapsed,
    }


def pause_session(session: PracticeSession) -> PracticeSession:
    _require_open(session)
    session.status = "paused"
    return session


def resume_session(session: PracticeSession) -> PracticeSession:
    _require_open(session)
    session.status = "active"
    return session


def abandon_session(session: PracticeSession) -> PracticeSession:
    _require_open(session)
    session.status = "abandoned"
    return session


def complete_session(session: PracticeSession, answers: List[Dict[str, Any]],
                     now: Optional[datetime] = None) -> Dict[str, Any]:
    """Close a session and summarise it.

    ``answers`` rows carry ``concept_id``, ``is_correct`` and optionally
    ``response_time_ms``.
    """
    _require_open(session)
    now = now or datetime.now(timezone.utc)
    progress = session_progress(session, now)

    per_concept: Dict[str, Dict[str, int]] = {}
    for a in answers:
        cid = a.get("concept_id")
        if not cid:
            continue
        perf = per_concept.setdefault(cid, {"correct": 0, "total": 0})
        perf["total"] += 1
        perf["correct"] += 1 if a.get("is_correct") else 0

    gaps = [
        cid for cid, p in per_concept.items()
        if p["total"] >= GAP_MIN_ANSWERS and p["correct"] / p["total"] < GAP_ACCURACY
    ]

    times = [int(a["response_time_ms"]) for a in answers if a.get("response_time_ms")]
    avg_ms = int(round(sum(times) / len(times))) if times else None

    xp = XP_REWARDS["practice_complete"]
    perfect = session.questions_answered > 0 and session.questions_correct == session.questions_answered
    if perfect:
        xp += XP_REWARDS["practice_perfect"]

    session.status = "completed"
    return {
        "status": "completed",
        "completed_at": now,
        "session_type": session.session_type,
        "total_questions": session.question_count,
        "questions_correct": session.questions_correct,
        "accuracy": progress["accuracy"],
        "total_time_seconds": progress["elapsed_seconds"],
        "avg_response_time_ms": avg_ms,
        "concept_accuracy": {cid: p["correct"] / p["total"] for cid, p in per_concept.items()},
        "concepts_practiced": list(per_concept),
        "gaps_identified": gaps,
        "xp_awarded": xp,
    }


def practice_stats(sessions: List[Dict[str, Any]]) -> Dict[str, Any]:
    done = [s for s in sessions if s.get("status", "completed") == "completed"]
    questions = sum(int(s.get("questions_answered") or 0) for s in done)
    correct = sum(int(s.get("questions_correct") or 0) for s in done)
    dates = [s["completed_at"] for s in done if s.get("completed_at")]
    return {
        "total_sessions": len(done),
        "total_questions": questions,
        "total_correct": correct,
        "overall_accuracy": int(round(correct / questions * 100)) if questions else 0,
        "last_practice_date": max(dates) if dates else None,
    }
