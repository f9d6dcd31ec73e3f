"""Course payload shapes, validation and generation status.

The AI layer asks the model for JSON; these helpers decide whether a reply
is usable (returning the reasons when it is not, so they can be fed back in
a repair prompt) and tidy it into the shape the rest of the app stores.
"""

from typing import Any, Dict, List, Optional, Tuple

STEP_TYPES = ("explanation", "key_point", "question", "formula", "diagram", "example", "summary")
COGNITIVE_LEVELS = ("remember", "understand", "apply", "analyze", "evaluate", "create")
MIN_STEPS_PER_LESSON = 3


class GenerationStatus:
    GENERATING = "generating"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"

    ALL = (GENERATING, PARTIAL, COMPLETE, FAILED)


ALLOWED_TRANSITIONS = {
    GenerationStatus.GENERATING: {GenerationStatus.PARTIAL, GenerationStatus.COMPLETE, GenerationStatus.FAILED},
    GenerationStatus.PARTIAL: {GenerationStatus.PARTIAL, GenerationStatus.COMPLETE, GenerationStatus.FAILED},
    GenerationStatus.FAILED: {GenerationStatus.GENERATING},
    GenerationStatus.COMPLETE: {GenerationStatus.GENERATING},
}


def next_status(current: str, target: str) -> str:
    if current not in ALLOWED_TRANSITIONS or target not in GenerationStatus.ALL:
        raise ValueError(f"Unknown generation status: {current!r} -> {target!r}")
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValueError(f"Generation status cannot go from {current} to {target}")
    return target


def status_after_batch(lessons_ready: int, total_lessons: int) -> str:
    return GenerationStatus.COMPLETE if lessons_ready >= total_lessons else GenerationStatus.PARTIAL


def can_add_material(course: Dict[str, Any]) -> bool:
    """New notes can only be appended once every planned lesson is written."""
    return str(course.get("generation_status") or GenerationStatus.COMPLETE) == GenerationStatus.COMPLETE


def begin_add_material(current: str) -> str:
    # failed -> generating is a retry of the outline, not an append
    if current != GenerationStatus.COMPLETE:
        raise ValueError(f"Material can only be added to a complete course, not {current}")
    return next_status(current, GenerationStatus.GENERATING)


def generation_progress(course: Dict[str, Any]) -> Dict[str, Any]:
    ready = int(course.get("lessons_ready") or 0)
    total = int(course.get("total_lessons") or 0)
    status = str(course.get("generation_status") or GenerationStatus.COMPLETE)
    return {
        "status": status,
        "lessons_ready": ready,
        "total_lessons": total,
        "percent": int(ready * 100 / total) if total else (100 if status == GenerationStatus.COMPLETE else 0),
        "can_continue": status in (GenerationStatus.PARTIAL, GenerationStatus.FAILED) and ready < total,
    }


# ============================================================
# LESSONS
# ============================================================
def _text(v: Any) -> str:
    return str(v or "").strip()


def _correct_index(step: Dict[str, Any], options: List[str]) -> Optional[int]:
    raw = step.get("correct_answer")
    try:
        idx = int(raw)
    except (TypeError, ValueError):
        idx = options.index(_text(raw)) if _text(raw) in options else -1
    return idx if 0 <= idx < len(options) else None


def validate_lesson(lesson: Any, label: str = "Lesson") -> List[str]:
    if not isinstance(lesson, dict):
        return [f"{label} is not an object."]
    reasons: List[str] = []
    if not _text(lesson.get("title")):
        reasons.append(f"{label}: missing title.")
    steps = lesson.get("steps")
    if not isinstance(steps, list) or len(steps) < MIN_STEPS_PER_LESSON:
        reasons.append(f"{label}: needs at least {MIN_STEPS_PER_LESSON} steps.")
        return reasons
    for i, step in enumerate(steps, start=1):
        if not isinstance(step, dict):
            reasons.append(f"{label} step {i} is not an object.")
            continue
        stype = _text(step.get("type")).lower()
        if stype not in STEP_TYPES:
            reasons.append(f"{label} step {i}: type must be one of {', '.join(STEP_TYPES)}.")
        if not _text(step.get("content")):
            reasons.append(f"{label} step {i}: missing content.")
        if stype == "question":
            options = [_text(o) for o in (step.get("options") or []) if _text(o)]
            if len(options) < 2:
                reasons.append(f"{label} step {i}: questions need at least 2 options.")
            elif _correct_index(step, options) is None:
                reasons.append(f"{label} step {i}: correct_answer must be an option index.")
    return reasons


def normalize_lesson(lesson: Dict[str, Any]) -> Dict[str, Any]:
    steps = []
    for step in lesson.get("steps") or []:
        if not isinstance(step, dict):
            continue
        stype = _text(step.get("type")).lower()
        if stype not in STEP_TYPES:
            stype = "explanation"
        out = {"type": stype, "content": _text(step.get("content"))}
        if _text(step.get("title")):
            out["title"] = _text(step.get("title"))
        if stype == "question":
            options = [_text(o) for o in (step.get("options") or []) if _text(o)]
            out["options"] = options
            out["correct_answer"] = _correct_index(step, options) or 0
            out["explanation"] = _text(step.get("explanation"))
        if out["content"]:
            steps.append(out)
    return {"title": _text(lesson.get("title")) or "Untitled lesson", "steps": steps}


def validate_outline(outline: Any, expected: int) -> List[str]:
    if not isinstance(outline, list) or not outline:
        return ["lesson_outline must be a non-empty list."]
    reasons = []
    if len(outline) != expected:
        reasons.append(f"lesson_outline must list exactly {expected} lessons.")
    for i, item in enumerate(outline, start=1):
        if not isinstance(item, dict) or not _text(item.get("title")):
            reasons.append(f"lesson_outline item {i}: missing title.")
    return reasons


def validate_initial_course(d: Any, total_lessons: int, batch: int) -> Tuple[bool, List[str]]:
    if not isinstance(d, dict):
        return False, ["Output is not a JSON object."]
    reasons: List[str] = []
    if not _text(d.get("title")):
        reasons.append("Missing title.")
    if not _text(d.get("overview")):
        reasons.append("Missing overview.")
    if not _text(d.get("document_summary")):
        reasons.append("Missing document_summary.")
    reasons += validate_outline(d.get("lesson_outline"), total_lessons)
    lessons = d.get("lessons")
    want = min(batch, total_lessons)
    if not isinstance(lessons, list) or len(lessons) < 1:
        reasons.append(f"lessons must contain the first {want} lessons.")
    else:
        for i, lesson in enumerate(lessons[:want], start=1):
            reasons += validate_lesson(lesson, f"Lesson {i}")
    return not reasons, reasons


def validate_lesson_batch(d: Any, count: int) -> Tuple[bool, List[str]]:
    if not isinstance(d, dict):
        return False, ["Output is not a JSON object."]
    lessons = d.get("lessons")
    if not isinstance(lessons, list) or len(lessons) < count:
        return False, [f"lessons must contain {count} lessons."]
    reasons: List[str] = []
    for i, lesson in enumerate(lessons[:count], start=1):
        reasons += validate_lesson(lesson, f"Lesson {i}")
    return not reasons, reasons


def outline_from_lessons(lessons: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    return [{"title": _text(l.get("title")), "description": ""} for l in lessons]


# ============================================================
# PRACTICE QUESTIONS
# ============================================================
def validate_practice_question(q: Any, allowed_types: List[str], label: str = "Question") -> List[str]:
    if not isinstance(q, dict):
        return [f"{label} is not an object."]
    reasons = []
    qtype = _text(q.get("type")).lower()
    if qtype not in allowed_types:
        reasons.append(f"{label}: type must be one of {', '.join(allowed_types)}.")
    if not _text(q.get("question")):
        reasons.append(f"{label}: missing question.")
    if not _text(q.get("correct_answer")):
        reasons.append(f"{label}: missing correct_answer.")
    if qtype == "multiple_choice":
        options = [_text(o) for o in (q.get("options") or []) if _text(o)]
        if len(options) < 2:
            reasons.append(f"{label}: multiple_choice needs at least 2 options.")
        elif _text(q.get("correct_answer")) not in options:
            reasons.append(f"{label}: correct_answer must be one of the options.")
    try:
        diff = int(q.get("difficulty"))
    except (TypeError, ValueError):
        diff = 0
    if not 1 <= diff <= 5:
        reasons.append(f"{label}: difficulty must be 1-5.")
    if _text(q.get("cognitive_level")).lower() not in COGNITIVE_LEVELS:
        reasons.append(f"{label}: cognitive_level must be one of {', '.join(COGNITIVE_LEVELS)}.")
    return reasons


def validate_practice_questions(d: Any, count: int, allowed_types: List[str]) -> Tuple[bool, List[str]]:
    if not isinstance(d, dict):
        return False, ["Output is not a JSON object."]
    questions = d.get("questions")
    if not isinstance(questions, list) or len(questions) < count:
        return False, [f"questions must be a list of {count} items."]
    reasons: List[str] = []
    for i, q in enumerate(questions[:count], start=1):
        reasons += validate_practice_question(q, allowed_types, f"Question {i}")
    return not reasons, reasons


def normalize_practice_question(q: Dict[str, Any]) -> Dict[str, Any]:
    try:
        diff = max(1, min(5, int(q.get("difficulty"))))
    except (TypeError, ValueError):
        diff = 3
    level = _text(q.get("cognitive_level")).lower()
    return {
        "type": _text(q.get("type")).lower() or "short_answer",
        "question": _text(q.get("question")),
        "options": [_text(o) for o in (q.get("options") or []) if _text(o)],
        "correct_answer": _text(q.get("correct_answer")),
        "explanation": _text(q.get("explanation")),
        "difficulty": diff,
        "cognitive_level": level if level in COGNITIVE_LEVELS else "understand",
    }


def normalize_evaluation(d: Any) -> Dict[str, Any]:
    if not isinstance(d, dict):
        return {"is_correct": False, "score": 0.0, "feedback": ""}
    try:
        score = max(0.0, min(1.0, float(d.get("score"))))
    except (TypeError, ValueError):
        score = 1.0 if d.get("is_correct") else 0.0
    is_correct = d.get("is_correct")
    if not isinstance(is_correct, bool):
        is_correct = score >= 0.7
    return {"is_correct": is_correct, "score": score, "feedback": _text(d.get("feedback"))}
