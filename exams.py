"""Timed course exams: question mix, question screening and grading.

An exam moves pending -> in_progress -> completed. Questions are generated
once, screened for vague or title-only wording, and graded automatically on
submit. Matching earns partial credit; ordering is all or nothing.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from errors import AppError

LOGGER = logging.getLogger("notesnap")

QUESTION_TYPES = (
    "multiple_choice",
    "true_false",
    "fill_blank",
    "short_answer",
    "matching",
    "ordering",
    "passage_based",
)
TYPE_SHARES = {
    "multiple_choice": 0.35,
    "true_false": 0.15,
    "fill_blank": 0.15,
    "short_answer": 0.10,
    "matching": 0.10,
    "ordering": 0.10,
    "passage_based": 0.05,
}
TEXT_TYPES = ("fill_blank", "short_answer")
EXAM_STATUSES = ("pending", "in_progress", "completed")

MIN_QUESTIONS, MAX_QUESTIONS = 5, 50
MIN_MINUTES, MAX_MINUTES = 5, 180
LIST_LIMIT = 20
MATCHING_FULL_CREDIT = 0.75

_BAD_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"^explain[:\s]",
    r"^describe[:\s]",
    r"^summarize[:\s]",
    r"^what do you know about",
    r"^tell me about",
    r"^discuss[:\s]",
    r"^what are your thoughts on",
    r"^write about",
)]
_PUNCT = re.compile(r"[.,!?;:'\"()\[\]{}]")
_TITLE_PUNCT = re.compile(r"[?.:!]")


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def validate_exam_request(question_count: int, time_limit_minutes: int) -> None:
    if not MIN_QUESTIONS <= int(question_count) <= MAX_QUESTIONS:
        raise AppError("NS-EXM-002", details={"question_count": question_count})
    if not MIN_MINUTES <= int(time_limit_minutes) <= MAX_MINUTES:
        raise AppError("NS-EXM-003", details={"time_limit_minutes": time_limit_minutes})


def question_type_counts(question_count: int) -> Dict[str, int]:
    """Approximate mix requested from the model; at least one passage."""
    counts = {t: _round_half_up(question_count * share) for t, share in TYPE_SHARES.items()}
    counts["passage_based"] = max(1, counts["passage_based"])
    return counts


def question_points(q: Dict[str, Any]) -> int:
    qtype = q.get("question_type")
    if qtype in ("matching", "ordering"):
        return 2
    if qtype == "passage_based":
        subs = q.get("sub_questions")
        if isinstance(subs, list) and subs:
            return sum(int(sq.get("points") or 1) for sq in subs)
        return 2
    return 1


# ------------------------------------------------------------
# Screening
# ------------------------------------------------------------
def is_too_vague(text: str) -> bool:
    text = str(text or "").strip()
    if any(p.search(text) for p in _BAD_PATTERNS):
        return True
    if len(text.split()) < 5:
        if re.match(r"^what is \w+\??$", text, re.IGNORECASE) or re.match(r"^define \w+\.?$", text, re.IGNORECASE):
            return True
    return False


def is_just_title(text: str, title: Optional[str]) -> bool:
    if not title:
        return False
    q = _TITLE_PUNCT.sub("", str(text or "").lower()).strip()
    t = _TITLE_PUNCT.sub("", str(title).lower()).strip()
    if q in (t, f"explain {t}", f"describe {t}", f"what is {t}", f"summarize {t}"):
        return True
    t_words, q_words = t.split(), q.split()
    if len(t_words) >= 3 and q_words:
        shared = [w for w in t_words if w in q_words]
        if len(shared) / len(t_words) > 0.7 and len(shared) / len(q_words) > 0.5:
            return True
    return False


def is_auto_gradable(q: Dict[str, Any]) -> bool:
    qtype = q.get("question_type")
    if qtype in TEXT_TYPES:
        return bool(str(q.get("correct_answer") or "").strip())
    if qtype == "matching":
        return bool(q.get("matching_pairs"))
    if qtype == "ordering":
        return bool(q.get("ordering_items"))
    if qtype == "passage_based":
        return isinstance(q.get("sub_questions"), list) and bool(q.get("sub_questions"))
    return qtype in QUESTION_TYPES


def _str_list(v: Any) -> List[str]:
    return [str(x).strip() for x in v if str(x).strip()] if isinstance(v, list) else []


def normalize_exam_question(q: Dict[str, Any]) -> Dict[str, Any]:
    qtype = str(q.get("question_type", "") or "").strip().lower() or "multiple_choice"
    out: Dict[str, Any] = {
        "lesson_index": q.get("lesson_index") if isinstance(q.get("lesson_index"), int) else None,
        "lesson_title": str(q.get("lesson_title", "") or "").strip() or None,
        "question_type": qtype,
        "question_text": str(q.get("question_text", "") or "").strip(),
        "options": _str_list(q.get("options")),
        "correct_answer": str(q.get("correct_answer", "") or "").strip(),
        "acceptable_answers": _str_list(q.get("acceptable_answers")) or None,
        "explanation": str(q.get("explanation", "") or "").strip() or None,
        "passage": str(q.get("passage", "") or "").strip() or None,
        "matching_pairs": None,
        "ordering_items": _str_list(q.get("ordering_items")) or None,
        "sub_questions": None,
    }
    if qtype == "true_false" and not out["options"]:
        out["options"] = ["True", "False"]
    pairs = [p for p in (q.get("matching_pairs") or []) if isinstance(p, dict) and p.get("left") and p.get("right")]
    if pairs:
        out["matching_pairs"] = [{"left": str(p["left"]).strip(), "right": str(p["right"]).strip()} for p in pairs]
    subs = []
    for i, sq in enumerate(q.get("sub_questions") or []):
        if not isinstance(sq, dict) or not str(sq.get("question_text", "") or "").strip():
            continue
        subs.append({
            "id": str(sq.get("id") or f"sq{i + 1}"),
            "question_text": str(sq["question_text"]).strip(),
            "question_type": str(sq.get("question_type", "") or "short_answer"),
            "options": _str_list(sq.get("options")),
            "correct_answer": str(sq.get("correct_answer", "") or "").strip(),
            "acceptable_answers": _str_list(sq.get("acceptable_answers")) or None,
            "points": int(sq.get("points") or 1),
        })
    out["sub_questions"] = subs or None
    out["points"] = question_points(out)
    return out


def screen_questions(raw: Sequence[Any], lesson_titles: Sequence[str]) -> Tuple[List[Dict[str, Any]], int]:
    """Keep questions that ask something specific and can be graded automatically.

    Returns the kept questions and the number rejected.
    """
    kept = []
    rejected = 0
    titles = [t.lower() for t in lesson_titles if t]
    for item in raw:
        if not isinstance(item, dict):
            rejected += 1
            continue
        q = normalize_exam_question(item)
        text = q["question_text"]
        if (not text or is_too_vague(text) or is_just_title(text, q["lesson_title"])
                or any(is_just_title(text, t) for t in titles) or not is_auto_gradable(q)):
            rejected += 1
            continue
        kept.append(q)
    if rejected:
        LOGGER.info("Exam questions rejected",
                    extra={"ctx": {"component": "exams", "rejected": rejected, "kept": len(kept)}})
    return kept, rejected


def minimum_questions(question_count: int) -> int:
    return int(math.ceil(question_count * 0.5))


def validate_exam_reply(data: Any, question_count: int, lesson_titles: Sequence[str]) -> Tuple[bool, List[str]]:
    if not isinstance(data, dict) or not isinstance(data.get("questions"), list):
        return False, ["The reply must be a JSON object with a questions list."]
    kept, rejected = screen_questions(data["questions"], lesson_titles)
    if len(kept) < minimum_questions(question_count):
        return False, [
            f"Only {len(kept)} of {question_count} questions were usable ({rejected} rejected).",
            "Ask about specific facts from the lesson content, never just a lesson title.",
            "Every fill_blank and short_answer question needs a correct_answer.",
        ]
    return True, []


# ------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------
def start_exam(status: str) -> str:
    if status == "completed":
        raise AppError("NS-EXM-004")
    return "in_progress"


def check_can_submit(status: str) -> None:
    if status == "completed":
        raise AppError("NS-EXM-004")
    if status != "in_progress":
        raise AppError("NS-EXM-005", details={"status": status})


# ------------------------------------------------------------
# Grading
# ------------------------------------------------------------
def normalize_answer(text: Any) -> str:
    s = _PUNCT.sub("", str(text or "").lower().strip())
    return re.sub(r"\s+", " ", s)


def check_text_answer(user_answer: str, correct_answer: str, acceptable: Optional[Sequence[str]] = None) -> bool:
    given = normalize_answer(user_answer)
    if given == normalize_answer(correct_answer):
        return True
    return any(normalize_answer(alt) == given for alt in acceptable or [])


def grade_matching(user_pairs: Any, correct_pairs: Sequence[Dict[str, str]], points: int) -> int:
    """``user_pairs`` is ``{left: right}`` or a list of ``{"left", "right"}``."""
    if isinstance(user_pairs, list):
        user_pairs = {p.get("left"): p.get("right") for p in user_pairs if isinstance(p, dict)}
    if not user_pairs or not correct_pairs:
        return 0
    expected = {normalize_answer(p["left"]): normalize_answer(p["right"]) for p in correct_pairs}
    correct = sum(1 for left, right in user_pairs.items()
                  if expected.get(normalize_answer(left)) == normalize_answer(right))
    pct = correct / len(correct_pairs)
    if pct >= MATCHING_FULL_CREDIT:
        return points
    return int(math.floor(points * pct))


def grade_ordering(user_order: Any, correct_order: Sequence[str]) -> bool:
    if not isinstance(user_order, list) or len(user_order) != len(correct_order):
        return False
    return all(normalize_answer(a) == normalize_answer(b) for a, b in zip(correct_order, user_order))


def grade_passage(sub_answers: Any, sub_questions: Sequence[Dict[str, Any]]) -> Tuple[int, List[Dict[str, Any]]]:
    sub_answers = sub_answers if isinstance(sub_answers, dict) else {}
    points = 0
    graded = []
    for sq in sub_questions:
        given = sub_answers.get(sq["id"]) or None
        ok = bool(given) and check_text_answer(given, sq.get("correct_answer", ""), sq.get("acceptable_answers"))
        if ok:
            points += int(sq.get("points") or 1)
        graded.append({**sq, "user_answer": given, "is_correct": ok if given is not None else None})
    return points, graded


def grade_question(q: Dict[str, Any], answer: Any) -> Dict[str, Any]:
    """Score one question. ``is_correct`` stays None when nothing was answered."""
    qtype = q.get("question_type")
    points = int(q.get("points") or 1)
    earned = 0
    is_correct: Optional[bool] = None
    subs = None

    if qtype == "matching":
        earned = grade_matching(answer, q.get("matching_pairs") or [], points) if answer else 0
        is_correct = earned > 0 if answer else None
    elif qtype == "ordering":
        if answer:
            is_correct = grade_ordering(answer, q.get("ordering_items") or [])
            earned = points if is_correct else 0
    elif qtype == "passage_based":
        earned, subs = grade_passage(answer, q.get("sub_questions") or [])
        is_correct = earned > 0 if answer else None
    elif answer:
        if qtype in TEXT_TYPES:
            is_correct = check_text_answer(answer, q.get("correct_answer", ""), q.get("acceptable_answers"))
        else:
            is_correct = normalize_answer(answer) == normalize_answer(q.get("correct_answer", ""))
        earned = points if is_correct else 0

    return {"user_answer": answer or None, "is_correct": is_correct, "points_earned": earned,
            "sub_questions": subs}


def letter_grade(percentage: float) -> str:
    if percentage >= 90:
        return "A"
    if percentage >= 80:
        return "B"
    if percentage >= 70:
        return "C"
    if percentage >= 60:
        return "D"
    return "F"


def grade_exam(questions: Sequence[Dict[str, Any]], answers: Dict[int, Any]) -> Dict[str, Any]:
    """Grade every question; ``answers`` is keyed by ``question_index``."""
    results = []
    score = 0
    total = 0
    for q in questions:
        idx = int(q.get("question_index", len(results)))
        graded = grade_question(q, answers.get(idx))
        score += graded["points_earned"]
        total += int(q.get("points") or 1)
        results.append({"question_index": idx, **graded})
    percentage = round(score / total * 100, 2) if total > 0 else 0.0
    return {
        "score": score,
        "total_points": total,
        "percentage": percentage,
        "grade": letter_grade(percentage),
        "results": results,
    }
