"""Homework checker: grade a learner's answer from itemised feedback.

The model lists what the learner got right and what needs work. The grade
shown to the learner is recomputed from those items so it always agrees
with the feedback, whatever grade the model declared.
"""

import logging
import re
from typing import Any, Dict, List, Tuple

LOGGER = logging.getLogger("notesnap")

INPUT_MODES = ("text", "image")
GRADE_LEVELS = ("excellent", "good", "needs_improvement", "incomplete")
SEVERITIES = ("moderate", "major")

LETTER_GRADES = {
    "A+": 97, "A": 94, "A-": 90,
    "B+": 87, "B": 84, "B-": 80,
    "C+": 77, "C": 74, "C-": 70,
    "D+": 67, "D": 64, "D-": 60,
    "F": 50,
}
DEFAULT_GRADE = 70
DISCREPANCY_LIMIT = 15
MAJOR_PENALTY = 5
MODERATE_PENALTY = 2

_SLASH = re.compile(r"(\d+(?:\.\d+)?)\s*/\s*(\d+(?:\.\d+)?)")
_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_LETTER = re.compile(r"(?<![A-Za-z])([A-F][+-]?)(?![A-Za-z])")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def parse_grade_to_number(grade: Any) -> int:
    """Read "60/100", "85%", "B+" or a bare number as a 0-100 grade.

    Empty input reads as 0; anything else unreadable as ``DEFAULT_GRADE``.
    """
    s = str(grade or "").strip()
    if not s:
        return 0
    m = _SLASH.search(s)
    if m and float(m.group(2)) > 0:
        return int(round(float(m.group(1)) / float(m.group(2)) * 100))
    m = _PERCENT.search(s)
    if m:
        return int(round(float(m.group(1))))
    m = _LETTER.search(s)
    if m and m.group(1) in LETTER_GRADES:
        return LETTER_GRADES[m.group(1)]
    m = _NUMBER.search(s)
    if m:
        return min(100, int(round(float(m.group(0)))))
    return DEFAULT_GRADE


def grade_level(grade: int) -> str:
    if grade >= 90:
        return "excellent"
    if grade >= 75:
        return "good"
    if grade >= 50:
        return "needs_improvement"
    return "incomplete"


def grade_from_feedback(correct_points: List[Dict[str, Any]],
                        improvement_points: List[Dict[str, Any]]) -> Tuple[int, str]:
    correct = len(correct_points or [])
    wrong = list(improvement_points or [])
    total = correct + len(wrong)
    if total == 0:
        return DEFAULT_GRADE, "needs_improvement"
    major = sum(1 for p in wrong if p.get("severity") == "major")
    moderate = sum(1 for p in wrong if p.get("severity") == "moderate")
    grade = correct / total * 100 - major * MAJOR_PENALTY - moderate * MODERATE_PENALTY
    grade = max(0, min(100, int(round(grade))))
    return grade, grade_level(grade)


def ensure_grade_consistency(feedback: Dict[str, Any]) -> Dict[str, Any]:
    """Bring ``grade_estimate`` and ``grade_level`` in line with the listed items.

    Rules, applied in order: a declared grade more than 15 points away from
    the computed one is replaced; work with no major errors and at least one
    correct point is never graded below 80; all-correct work with nothing to
    improve is graded 95.
    """
    out = dict(feedback)
    correct = out.get("correct_points") or []
    wrong = out.get("improvement_points") or []
    declared = parse_grade_to_number(out.get("grade_estimate"))
    computed, level = grade_from_feedback(correct, wrong)

    if abs(declared - computed) > DISCREPANCY_LIMIT:
        LOGGER.info("Checker grade replaced",
                    extra={"ctx": {"component": "checker", "declared": declared, "computed": computed}})
        out["grade_estimate"] = f"{computed}/100"
        out["grade_level"] = level

    major = sum(1 for p in wrong if p.get("severity") == "major")
    if major == 0 and correct:
        current = parse_grade_to_number(out.get("grade_estimate"))
        if current < 75:
            out["grade_estimate"] = f"{max(current, 80)}/100"
            out["grade_level"] = "good"

    if correct and not wrong and parse_grade_to_number(out.get("grade_estimate")) < 90:
        out["grade_estimate"] = "95/100"
        out["grade_level"] = "excellent"
    return out


def _points(raw: Any, with_severity: bool) -> List[Dict[str, Any]]:
    out = []
    for p in raw if isinstance(raw, list) else []:
        if isinstance(p, str):
            p = {"title": p, "description": ""}
        if not isinstance(p, dict):
            continue
        title = str(p.get("title", "") or "").strip()
        desc = str(p.get("description", "") or "").strip()
        if not (title or desc):
            continue
        item = {"title": title or desc[:60], "description": desc}
        if with_severity:
            sev = str(p.get("severity", "") or "").strip().lower()
            item["severity"] = sev if sev in SEVERITIES else "moderate"
        out.append(item)
    return out


def normalize_feedback(data: Dict[str, Any]) -> Dict[str, Any]:
    fb = data.get("feedback") if isinstance(data.get("feedback"), dict) else data
    level = str(fb.get("grade_level", "") or "").strip().lower()
    return {
        "grade_level": level if level in GRADE_LEVELS else "needs_improvement",
        "grade_estimate": str(fb.get("grade_estimate", "") or "").strip(),
        "summary": str(fb.get("summary", "") or "").strip(),
        "correct_points": _points(fb.get("correct_points"), False),
        "improvement_points": _points(fb.get("improvement_points"), True),
        "suggestions": [str(s).strip() for s in (fb.get("suggestions") or []) if str(s).strip()][:10],
        "encouragement": str(fb.get("encouragement", "") or "").strip(),
    }


def validate_check_reply(data: Any) -> Tuple[bool, List[str]]:
    reasons: List[str] = []
    if not isinstance(data, dict) or not data:
        return False, ["The reply must be a JSON object."]
    fb = data.get("feedback")
    if not isinstance(fb, dict):
        return False, ["feedback must be an object."]
    if not str(fb.get("summary", "") or "").strip():
        reasons.append("feedback.summary is missing.")
    for key in ("correct_points", "improvement_points"):
        if not isinstance(fb.get(key), list):
            reasons.append(f"feedback.{key} must be a list.")
    if not (fb.get("correct_points") or fb.get("improvement_points")):
        reasons.append("List at least one correct point or one point to improve.")
    return not reasons, reasons


def build_check_result(data: Dict[str, Any], task_text: str, answer_text: str) -> Dict[str, Any]:
    """The stored checker result: normalized, consistent feedback plus context."""
    feedback = ensure_grade_consistency(normalize_feedback(data))
    return {
        "subject": str(data.get("subject", "") or "general").strip() or "general",
        "topic": str(data.get("topic", "") or "").strip(),
        "task_text": str(data.get("task_text", "") or task_text or "").strip(),
        "answer_text": str(data.get("answer_text", "") or answer_text or "").strip(),
        "feedback": feedback,
        "grade": parse_grade_to_number(feedback["grade_estimate"]),
    }
