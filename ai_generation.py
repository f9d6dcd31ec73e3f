import base64
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import openai
import streamlit as st
from openai import OpenAI

from config import (
    ADD_MATERIAL_LESSONS,
    CHECKER_SYSTEM_TPL,
    CHECKER_USER_TPL,
    CONCEPT_REPAIR_PREFIX_TPL,
    CONCEPT_SYSTEM_TPL,
    CONCEPT_USER_TPL,
    CONTINUE_LESSON_BATCH,
    COURSE_ADD_USER_TPL,
    COURSE_CONTINUE_USER_TPL,
    COURSE_INITIAL_USER_TPL,
    COURSE_REPAIR_PREFIX_TPL,
    COURSE_SYSTEM_TPL,
    EVAL_SYSTEM_TPL,
    EVAL_USER_TPL,
    EXAM_REPAIR_PREFIX_TPL,
    EXAM_SYSTEM_TPL,
    EXAM_USER_TPL,
    HINT_SYSTEM_TPL,
    INITIAL_LESSON_BATCH,
    INTENSITY_MODES,
    MAX_NOTES_CHARS,
    MODEL_NAME,
    OPENAI_API_KEY,
    PRACTICE_QUESTION_TYPES,
    PRACTICE_REPAIR_PREFIX_TPL,
    PRACTICE_SYSTEM_TPL,
    PRACTICE_USER_TPL,
)
from checker import build_check_result, validate_check_reply
from concepts import (
    MAX_CONCEPTS,
    MIN_CONCEPTS,
    ConceptExtraction,
    detect_subject,
    detect_topic,
    format_lessons_for_prompt,
    normalize_extraction,
    validate_extraction,
)
from course_content import (
    STEP_TYPES,
    GenerationStatus,
    begin_add_material,
    can_add_material,
    generation_progress,
    next_status,
    normalize_evaluation,
    normalize_lesson,
    normalize_practice_question,
    status_after_batch,
    validate_initial_course,
    validate_lesson,
    validate_lesson_batch,
    validate_practice_question,
    validate_practice_questions,
)
from errors import AppError, log_app_error, map_exception
from exams import question_type_counts, screen_questions, validate_exam_reply
from homework import build_hint_prompt, default_hint, parse_hint_reply
from practice import check_answer
from utils.json_utils import safe_parse_json

LOGGER = logging.getLogger("notesnap")


@st.cache_resource
def get_client():
    if not OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set")
    return OpenAI(api_key=OPENAI_API_KEY)


client: Optional[OpenAI] = None
try:
    client = get_client()
    AI_READY = True
except Exception as e:
    client = None
    st.error("⚠️ OpenAI API Key missing or invalid in Streamlit Secrets!")
    AI_READY = False
    LOGGER.error("OpenAI client init failed", extra={"ctx": {"component": "openai", "error": type(e).__name__}})


# ============================================================
# --- PROMPT / CALL UTILS ---
# ============================================================
def _render_template(tpl: str, mapping: Dict[str, Any]) -> str:
    # Tokens look like: <<TOKEN_NAME>>
    out = str(tpl or "")
    for k, v in (mapping or {}).items():
        out = out.replace(f"<<{k}>>", str(v))
    return out


def _bullets(reasons: Optional[List[str]]) -> str:
    return "\n".join([f"- {r}" for r in (reasons or [])]) or "- (unspecified)"


def _image_part(img_bytes: bytes, content_type: str) -> Dict[str, Any]:
    b64 = base64.b64encode(img_bytes).decode("utf-8")
    return {"type": "image_url", "image_url": {"url": f"data:{content_type or 'image/jpeg'};base64,{b64}"}}


def check_ai_quota(user_id: Optional[str]) -> None:
    """Count one AI request against the learner's hourly window.

    Raises NS-AI-003 once the window is used up. Admins are not limited.
    """
    if not user_id or (st.session_state.get("user") or {}).get("is_admin"):
        return
    from db import _check_rate_limit_db, increment_rate_limit

    try:
        allowed, remaining, reset_str = _check_rate_limit_db(user_id)
    except Exception as e:
        # the limiter must not take AI features down with it
        LOGGER.warning("Rate limit check failed", extra={"ctx": {"component": "db", "error": type(e).__name__}})
        return
    if not allowed:
        LOGGER.info("AI rate limit reached", extra={"ctx": {"component": "openai", "user": user_id}})
        msg = "You've reached the hourly AI limit."
        if reset_str:
            msg += f" It resets at {reset_str}."
        raise AppError("NS-AI-003", msg, details={"remaining": remaining, "reset": reset_str})
    increment_rate_limit(user_id)


def _chat(system: str, user: Any, max_tokens: int, component: str) -> str:
    if client is None:
        raise AppError("NS-AI-001")
    try:
        response = client.chat.completions.create(
            model=MODEL_NAME,
            messages=[
                {"role": "system", "content": (system or "").strip()},
                {"role": "user", "content": user},
            ],
            max_completion_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
    except openai.OpenAIError as e:
        err = map_exception(e)
        log_app_error(err, "openai", task=component)
        raise err from e

    choice = response.choices[0]
    if getattr(choice, "finish_reason", "") == "length":
        LOGGER.warning("AI reply truncated", extra={"ctx": {"component": "openai", "task": component}})
    return choice.message.content or ""


def _with_repair(
    call: Callable[[bool, Optional[List[str]]], Dict[str, Any]],
    validate: Callable[[Any], Tuple[bool, List[str]]],
    user_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Call the model, and once more with the reasons if the reply fails validation.

    The caller has already counted the first request; the repair call is
    counted here.
    """
    data = call(False, None)
    ok, reasons = validate(data)
    if ok:
        return data, True

    LOGGER.info("AI reply failed validation; repairing",
                extra={"ctx": {"component": "openai", "reasons": len(reasons)}})
    check_ai_quota(user_id)
    data2 = call(True, reasons)
    ok2, reasons2 = validate(data2)
    if ok2:
        return data2, True
    data = data2 if isinstance(data2, dict) and data2 else (data if isinstance(data, dict) else {})
    data["warnings"] = reasons2[:10]
    return data, False


def _valid_lessons(lessons: Any, limit: int) -> List[Dict[str, Any]]:
    out = []
    for lesson in (lessons if isinstance(lessons, list) else [])[:limit]:
        if not validate_lesson(lesson):
            out.append(normalize_lesson(lesson))
    return out


def _outline_text(outline: Sequence[Dict[str, Any]]) -> str:
    lines = []
    for i, item in enumerate(outline or [], start=1):
        desc = str(item.get("description", "") or "").strip()
        lines.append(f"{i}. {item.get('title', '')}" + (f": {desc}" if desc else ""))
    return "\n".join(lines) or "(none)"


# ============================================================
# COURSE GENERATION (progressive)
# ============================================================
def generate_initial_course(
    notes: str,
    title: str = "",
    intensity: str = "standard",
    images: Optional[List[Tuple[bytes, str]]] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """First pass over the notes: outline for every lesson plus the first batch.

    ``images`` are (bytes, content_type) pairs sent alongside the text. The
    returned course is ``partial`` when lessons remain to be generated.
    """
    notes = (notes or "").strip()[:MAX_NOTES_CHARS]
    if not notes and not images:
        raise AppError("NS-CRS-013")
    check_ai_quota(user_id)

    mode = INTENSITY_MODES.get(intensity) or INTENSITY_MODES["standard"]
    total = int(mode["target_lessons"])
    steps_n = int(mode["steps_per_lesson"])
    batch = min(INITIAL_LESSON_BATCH, total)

    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        system = _render_template(COURSE_SYSTEM_TPL, {"STEP_TYPES": ", ".join(STEP_TYPES)})
        base_user = _render_template(COURSE_INITIAL_USER_TPL, {
            "TITLE_HINT": (title or "").strip() or "(choose a short title)",
            "TOTAL_LESSONS": total,
            "BATCH": batch,
            "STEPS_PER_LESSON": steps_n,
            "INTENSITY": mode.get("label", intensity),
            "NOTES": notes or "(see the attached images)",
        }).strip()
        if repair:
            prefix = _render_template(COURSE_REPAIR_PREFIX_TPL, {"BULLET_REASONS": _bullets(reasons)})
            base_user = prefix.strip() + "\n\n" + base_user

        content: Any = base_user
        if images:
            content = [{"type": "text", "text": base_user}] + [_image_part(b, ct) for b, ct in images]
        return safe_parse_json(_chat(system, content, 12000, "course_initial")) or {}

    data, ok = _with_repair(_call_model, lambda d: validate_initial_course(d, total, batch), user_id)
    lessons = _valid_lessons(data.get("lessons"), batch)
    if not lessons:
        err = AppError("NS-CRS-010", details={"warnings": data.get("warnings", [])})
        log_app_error(err, "openai", task="course_initial")
        raise err

    outline = [
        {"title": str(o.get("title", "") or "").strip(), "description": str(o.get("description", "") or "").strip()}
        for o in (data.get("lesson_outline") or []) if isinstance(o, dict)
    ][:total]
    if len(outline) < total:
        # a short outline means fewer lessons overall, never a gap
        total = max(len(outline), len(lessons))
        outline = outline + [{"title": l["title"], "description": ""} for l in lessons[len(outline):]]

    status = status_after_batch(len(lessons), total)
    course = {
        "title": str(data.get("title", "") or title or "Untitled course").strip(),
        "overview": str(data.get("overview", "") or "").strip(),
        "document_summary": str(data.get("document_summary", "") or "").strip(),
        "lesson_outline": outline,
        "lessons": lessons,
        "lessons_ready": len(lessons),
        "total_lessons": total,
        "generation_status": next_status(GenerationStatus.GENERATING, status),
        "intensity_mode": intensity,
        "warnings": [] if ok else data.get("warnings", []),
    }
    LOGGER.info("Course generated",
                extra={"ctx": {"component": "openai", "ready": len(lessons), "total": total, "status": status}})
    return course


def _generate_lessons(system_tpl_map: Dict[str, Any], user_tpl: str, user_map: Dict[str, Any],
                      count: int, component: str, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        system = _render_template(COURSE_SYSTEM_TPL, system_tpl_map)
        user = _render_template(user_tpl, user_map).strip()
        if repair:
            user = _render_template(COURSE_REPAIR_PREFIX_TPL, {"BULLET_REASONS": _bullets(reasons)}).strip() + "\n\n" + user
        return safe_parse_json(_chat(system, user, 10000, component)) or {}

    data, _ok = _with_repair(_call_model, lambda d: validate_lesson_batch(d, count), user_id)
    lessons = _valid_lessons(data.get("lessons"), count)
    if not lessons:
        raise AppError("NS-AI-011", details={"warnings": data.get("warnings", [])})
    return lessons


def continue_course_generation(course: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, Any]:
    """Generate the next lesson batch of a partial (or failed) course and save it.

    ``course`` is a ``courses`` row. Returns the updated row fields. On any
    failure the course is marked failed with NS-CRS-050 and the error is
    re-raised.
    """
    from db import update_course_generation

    progress = generation_progress(course)
    if not progress["can_continue"]:
        return course

    course_id = str(course.get("id", ""))
    current = progress["status"]
    generated = dict(course.get("generated_course") or {})
    lessons = list(generated.get("lessons") or [])
    outline = list(course.get("lesson_outline") or generated.get("lesson_outline") or [])
    total = progress["total_lessons"]
    ready = len(lessons)

    check_ai_quota(user_id)
    try:
        if current == GenerationStatus.FAILED:
            current = next_status(current, GenerationStatus.GENERATING)
            update_course_generation(course_id, None, current)

        count = min(CONTINUE_LESSON_BATCH, total - ready)
        mode = INTENSITY_MODES.get(course.get("intensity_mode") or "standard") or INTENSITY_MODES["standard"]
        wanted = outline[ready:ready + count]
        new_lessons = _generate_lessons(
            {"STEP_TYPES": ", ".join(STEP_TYPES)},
            COURSE_CONTINUE_USER_TPL,
            {
                "COURSE_TITLE": course.get("title", ""),
                "DOCUMENT_SUMMARY": course.get("document_summary") or generated.get("document_summary") or "",
                "OUTLINE": _outline_text(outline),
                "START_NUMBER": ready + 1,
                "COUNT": count,
                "LESSON_TITLES": "\n".join(f"- {o.get('title', '')}" for o in wanted) or "(follow the outline)",
                "STEPS_PER_LESSON": int(mode["steps_per_lesson"]),
            },
            count,
            "course_continue",
            user_id,
        )
    except Exception as e:
        err = e if isinstance(e, AppError) else map_exception(e)
        update_course_generation(course_id, None, GenerationStatus.FAILED, error_code="NS-CRS-050")
        log_app_error(AppError("NS-CRS-050", details={"error": type(e).__name__}), "openai",
                      course=course_id, cause=err.code)
        raise AppError("NS-CRS-050", details={"cause": err.code}) from e

    lessons.extend(new_lessons)
    generated["lessons"] = lessons
    ready = len(lessons)
    status = next_status(current, status_after_batch(ready, total))
    update_course_generation(course_id, generated, status, lessons_ready=ready, total_lessons=total)
    LOGGER.info("Course batch generated",
                extra={"ctx": {"component": "openai", "course": course_id, "ready": ready, "total": total}})
    return {**course, "generated_course": generated, "lessons_ready": ready,
            "total_lessons": total, "generation_status": status, "generation_error": None}


def add_material_to_course(course: Dict[str, Any], notes: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Append lessons built from extra notes to a finished course."""
    from db import update_course_generation

    notes = (notes or "").strip()[:MAX_NOTES_CHARS]
    if not notes:
        raise AppError("NS-CRS-013")

    course_id = str(course.get("id", ""))
    current = str(course.get("generation_status") or GenerationStatus.COMPLETE)
    if not can_add_material(course):
        raise AppError("NS-CRS-055", details={"status": current})
    generated = dict(course.get("generated_course") or {})
    lessons = list(generated.get("lessons") or [])
    outline = list(course.get("lesson_outline") or generated.get("lesson_outline") or [])

    current = begin_add_material(current)
    check_ai_quota(user_id)
    update_course_generation(course_id, None, current)
    try:
        mode = INTENSITY_MODES.get(course.get("intensity_mode") or "standard") or INTENSITY_MODES["standard"]
        new_lessons = _generate_lessons(
            {"STEP_TYPES": ", ".join(STEP_TYPES)},
            COURSE_ADD_USER_TPL,
            {
                "COURSE_TITLE": course.get("title", ""),
                "OUTLINE": _outline_text(outline),
                "COUNT": ADD_MATERIAL_LESSONS,
                "STEPS_PER_LESSON": int(mode["steps_per_lesson"]),
                "NOTES": notes,
            },
            ADD_MATERIAL_LESSONS,
            "course_add_material",
            user_id,
        )
    except Exception as e:
        err = e if isinstance(e, AppError) else map_exception(e)
        update_course_generation(course_id, None, GenerationStatus.FAILED, error_code="NS-CRS-050")
        log_app_error(AppError("NS-CRS-050", details={"error": type(e).__name__}), "openai",
                      course=course_id, cause=err.code)
        raise AppError("NS-CRS-050", details={"cause": err.code}) from e

    lessons.extend(new_lessons)
    outline.extend({"title": l["title"], "description": ""} for l in new_lessons)
    generated["lessons"] = lessons
    generated["lesson_outline"] = outline
    status = next_status(current, GenerationStatus.COMPLETE)
    update_course_generation(course_id, generated, status, lessons_ready=len(lessons),
                             total_lessons=len(lessons), lesson_outline=outline)
    return {**course, "generated_course": generated, "lesson_outline": outline, "lessons_ready": len(lessons),
            "total_lessons": len(lessons), "generation_status": status}


# ============================================================
# PRACTICE QUESTIONS
# ============================================================
def _lesson_text(lesson: Dict[str, Any]) -> str:
    parts = [f"# {lesson.get('title', '')}"]
    for step in lesson.get("steps") or []:
        if isinstance(step, dict) and step.get("content"):
            parts.append(str(step["content"]))
    return "\n\n".join(parts)[:MAX_NOTES_CHARS]


def generate_practice_questions(
    lesson: Dict[str, Any],
    count: int = 5,
    types: Optional[List[str]] = None,
    target_difficulty: Optional[float] = None,
    user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    types = [t for t in (types or PRACTICE_QUESTION_TYPES) if t in PRACTICE_QUESTION_TYPES] or list(PRACTICE_QUESTION_TYPES)
    count = max(1, int(count))
    check_ai_quota(user_id)

    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        system = _render_template(PRACTICE_SYSTEM_TPL, {"QUESTION_TYPES": ", ".join(types)})
        user = _render_template(PRACTICE_USER_TPL, {
            "COUNT": count,
            "QUESTION_TYPES": ", ".join(types),
            "TARGET_DIFFICULTY": f"{target_difficulty:.1f}" if target_difficulty is not None else "mixed (1-5)",
            "LESSON": _lesson_text(lesson),
        }).strip()
        if repair:
            prefix = _render_template(PRACTICE_REPAIR_PREFIX_TPL, {"BULLET_REASONS": _bullets(reasons), "COUNT": count})
            user = prefix.strip() + "\n\n" + user
        return safe_parse_json(_chat(system, user, 6000, "practice_questions")) or {}

    data, _ok = _with_repair(_call_model, lambda d: validate_practice_questions(d, count, types), user_id)
    questions = [
        normalize_practice_question(q)
        for q in (data.get("questions") or [])[:count]
        if not validate_practice_question(q, types)
    ]
    if not questions:
        raise AppError("NS-PRC-010", details={"warnings": data.get("warnings", [])})
    LOGGER.info("Practice questions generated", extra={"ctx": {"component": "openai", "count": len(questions)}})
    return questions


# ============================================================
# HOMEWORK HINTS
# ============================================================
def generate_homework_hint(
    problem: str,
    level: int,
    previous_hints: Optional[List[Dict[str, Any]]] = None,
    topic: str = "",
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """One hint at the requested level. Falls back to the fixed hint text
    when the AI is unavailable or its reply is unusable."""
    user = build_hint_prompt(problem, level, previous_hints, topic=topic)
    if not AI_READY:
        return {**default_hint(level), "fallback": True}
    try:
        check_ai_quota(user_id)
        raw = _chat(HINT_SYSTEM_TPL, user, 1500, "homework_hint")
    except AppError as e:
        if e.code == "NS-AI-003":
            raise
        LOGGER.warning("Hint generation failed; using default",
                       extra={"ctx": {"component": "openai", "code": e.code, "level": level}})
        return {**default_hint(level), "fallback": True}
    hint = parse_hint_reply(raw, level)
    return {**hint, "fallback": False}


# ============================================================
# FREE-TEXT EVALUATION
# ============================================================
def evaluate_answer(question: str, expected: str, answer: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    if not (answer or "").strip():
        return {"is_correct": False, "score": 0.0, "feedback": "No answer given."}

    def _fallback() -> Dict[str, Any]:
        ok = check_answer({"type": "short_answer", "correct_answer": expected}, answer)
        return {"is_correct": ok, "score": 1.0 if ok else 0.0,
                "feedback": "" if ok else f"Expected answer: {expected}"}

    if not AI_READY:
        return _fallback()
    try:
        check_ai_quota(user_id)
        raw = _chat(EVAL_SYSTEM_TPL, _render_template(EVAL_USER_TPL, {
            "QUESTION": question or "",
            "EXPECTED": expected or "",
            "ANSWER": answer,
        }).strip(), 800, "evaluate_answer")
    except AppError as e:
        if e.code == "NS-AI-003":
            raise
        return _fallback()

    data = safe_parse_json(raw)
    if not isinstance(data, dict):
        return _fallback()
    return normalize_evaluation(data)


# ============================================================
# CONCEPT EXTRACTION
# ============================================================
def extract_concepts(course: Dict[str, Any], user_id: Optional[str] = None) -> ConceptExtraction:
    """Ask the model for the course's concepts, prerequisites and step mappings."""
    title = str(course.get("title", "") or "")
    lessons = list((course.get("generated_course") or {}).get("lessons") or [])
    if not lessons:
        raise AppError("NS-CRS-043", "This course has no lessons to extract concepts from.")
    subject = detect_subject(title, lessons)
    topic = detect_topic(title, lessons, subject)
    check_ai_quota(user_id)

    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        user = _render_template(CONCEPT_USER_TPL, {
            "COURSE_TITLE": title,
            "SUBJECT": subject,
            "TOPIC": topic,
            "LESSONS": format_lessons_for_prompt(lessons),
            "MIN_CONCEPTS": MIN_CONCEPTS,
            "MAX_CONCEPTS": MAX_CONCEPTS,
        }).strip()
        if repair:
            user = _render_template(CONCEPT_REPAIR_PREFIX_TPL, {"BULLET_REASONS": _bullets(reasons)}).strip() + "\n\n" + user
        return safe_parse_json(_chat(CONCEPT_SYSTEM_TPL, user, 4000, "concept_extraction")) or {}

    try:
        data, ok = _with_repair(_call_model, validate_extraction, user_id)
    except AppError as e:
        if e.code == "NS-AI-003":
            raise
        raise AppError("NS-CON-010", details={"cause": e.code}) from e
    result = normalize_extraction(data, subject, topic, len(lessons))
    if not result.concepts:
        raise AppError("NS-CON-010", details={"warnings": data.get("warnings", [])})
    LOGGER.info("Concepts extracted", extra={"ctx": {
        "component": "openai", "course": course.get("id"), "concepts": len(result.concepts),
        "mappings": len(result.mappings), "validated": ok,
    }})
    return result


# ============================================================
# EXAMS
# ============================================================
def generate_exam_questions(course: Dict[str, Any], question_count: int,
                            user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Screened exam questions for a course; raises NS-EXM-010 when too few survive."""
    lessons = list((course.get("generated_course") or {}).get("lessons") or [])
    if not lessons:
        raise AppError("NS-CRS-043", "This course has no lessons to build an exam from.")
    titles = [str(l.get("title", "") or "") for l in lessons]
    mix = question_type_counts(question_count)
    content = "\n\n".join(_lesson_text(l) for l in lessons)[:MAX_NOTES_CHARS]
    check_ai_quota(user_id)

    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        user = _render_template(EXAM_USER_TPL, {
            "COURSE_TITLE": course.get("title", ""),
            "CONTENT": content,
            "LESSON_LIST": "\n".join(f"- Lesson {i}: {t}" for i, t in enumerate(titles)),
            "COUNT": question_count,
            "TYPE_MIX": "\n".join(f"- {n} {t}" for t, n in mix.items() if n),
        }).strip()
        if repair:
            prefix = _render_template(EXAM_REPAIR_PREFIX_TPL, {"BULLET_REASONS": _bullets(reasons), "COUNT": question_count})
            user = prefix.strip() + "\n\n" + user
        return safe_parse_json(_chat(EXAM_SYSTEM_TPL, user, 8000, "exam_questions")) or {}

    try:
        data, ok = _with_repair(_call_model, lambda d: validate_exam_reply(d, question_count, titles), user_id)
    except AppError as e:
        if e.code == "NS-AI-003":
            raise
        raise AppError("NS-EXM-010", details={"cause": e.code}) from e
    if not ok:
        raise AppError("NS-EXM-010", details={"warnings": data.get("warnings", [])})
    questions, _rejected = screen_questions(data.get("questions") or [], titles)
    questions = questions[:question_count]
    LOGGER.info("Exam questions generated",
                extra={"ctx": {"component": "openai", "course": course.get("id"), "count": len(questions)}})
    return questions


# ============================================================
# HOMEWORK CHECKER
# ============================================================
def check_homework(
    task_text: str = "",
    answer_text: str = "",
    task_image: Optional[Tuple[bytes, str]] = None,
    answer_image: Optional[Tuple[bytes, str]] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Feedback and a grade for a learner's answer.

    Task and answer can each be typed or photographed; images are
    ``(bytes, content_type)`` pairs. The grade comes from the listed feedback
    items, not from the grade the model declares.
    """
    task_text = (task_text or "").strip()[:MAX_NOTES_CHARS]
    answer_text = (answer_text or "").strip()[:MAX_NOTES_CHARS]
    if not task_text and not task_image:
        raise AppError("NS-HW-030")
    if not answer_text and not answer_image:
        raise AppError("NS-VAL-001", "Add your answer, as text or a photo.")
    check_ai_quota(user_id)

    def _call_model(repair: bool, reasons: Optional[List[str]] = None) -> Dict[str, Any]:
        prompt = _render_template(CHECKER_USER_TPL, {
            "TASK": task_text or "(see the first image)",
            "ANSWER": answer_text or "(see the attached answer image)",
        }).strip()
        if repair:
            prompt = "Your previous reply could not be used because:\n" + _bullets(reasons) + "\n\n" + prompt
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for img in (task_image, answer_image):
            if img:
                content.append(_image_part(img[0], img[1]))
        return safe_parse_json(_chat(CHECKER_SYSTEM_TPL, content, 3000, "homework_check")) or {}

    try:
        data, ok = _with_repair(_call_model, validate_check_reply, user_id)
    except AppError as e:
        if e.code == "NS-AI-003":
            raise
        raise AppError("NS-HW-031", details={"cause": e.code}) from e
    if not ok:
        raise AppError("NS-HW-031", details={"warnings": data.get("warnings", [])})
    result = build_check_result(data, task_text, answer_text)
    result["input_mode"] = "image" if (task_image or answer_image) else "text"
    LOGGER.info("Homework checked", extra={"ctx": {
        "component": "openai", "grade": result["grade"], "mode": result["input_mode"],
    }})
    return result
