import hashlib
import logging
import math
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from achievements import (
    CATEGORY_LABELS,
    achievement_summary,
    all_progress,
    check_achievements,
    next_achievements,
    unlock_message,
)
from adaptive import (
    CandidateQuestion,
    calculate_target_difficulty,
    performance_summary,
    select_questions,
    update_performance_state,
    update_question_difficulty,
)
from ai_generation import (
    add_material_to_course,
    check_homework,
    continue_course_generation,
    evaluate_answer,
    extract_concepts,
    generate_exam_questions,
    generate_homework_hint,
    generate_initial_course,
    generate_practice_questions,
)
from analytics import track_error, track_event, track_funnel_step
from components.ui import (
    render_callout,
    render_empty_state,
    render_error,
    render_metric_row,
    render_page_header,
    render_status_pill,
)
from config import (
    INTENSITY_MODES,
    MAX_DOCUMENT_MB,
    MAX_NOTES_CHARS,
    MAX_UPLOAD_FILES,
    MAX_UPLOAD_MB,
    PRACTICE_QUESTION_TYPES,
)
from course_content import can_add_material, generation_progress
from db import (
    complete_review_session,
    count_reviewed_today,
    delete_course,
    insert_course,
    insert_exam,
    insert_practice_session,
    insert_review_cards,
    insert_review_session,
    load_achievement_stats,
    load_active_plan,
    load_concept_mastery,
    load_concepts,
    load_course,
    load_course_concept_map,
    load_courses_df,
    load_exam,
    load_exams,
    load_gamification,
    load_homework_checks,
    load_lesson_progress_df,
    load_open_gaps,
    load_performance_state,
    load_plan_tasks_df,
    load_practice_sessions,
    load_prerequisite_graph,
    load_question_difficulty,
    load_recent_concept_answers,
    load_review_cards,
    load_review_sessions,
    load_srs_settings,
    load_user_achievements,
    mark_exam_started,
    record_practice_answer,
    resolve_gap,
    save_course_concepts,
    save_exam_results,
    save_extracted_concepts,
    save_gamification,
    save_homework_check,
    save_homework_session,
    save_knowledge_gaps,
    save_performance_state,
    save_question_difficulty,
    save_review,
    save_srs_settings,
    save_study_plan,
    save_user_achievements,
    update_practice_session,
    update_task_status,
    upsert_concept_mastery,
    upsert_lesson_progress,
)
from documents import document_kind, extract_document
from errors import AppError
from exams import (
    MAX_MINUTES,
    MAX_QUESTIONS,
    MIN_MINUTES,
    MIN_QUESTIONS,
    check_can_submit,
    grade_exam,
    start_exam,
    validate_exam_request,
)
from export_utils import course_to_markdown, course_to_pdf
from gamification import (
    XP_REWARDS,
    award_xp,
    card_review_xp,
    next_milestone,
    streak_status,
    update_streak,
    xp_progress,
)
from gaps import ConceptState, detect_gaps
from homework import (
    HINT_LEVELS,
    HomeworkSession,
    hint_level_info,
    recommended_hint_level,
    should_encourage_attempt,
)
from image_utils import prepare_upload
from interleaving import generate_mixed_practice
from mastery import (
    LEVEL_LABELS,
    ConceptMastery,
    calculate_lesson_mastery,
    is_decayed,
    mastery_level,
    update_concept_mastery,
)
from practice import (
    SESSION_QUESTION_COUNTS,
    PracticeSession,
    abandon_session,
    complete_session as complete_practice_session,
    default_question_count,
    pause_session,
    practice_stats,
    record_answer,
    resume_session,
    session_progress,
)
from review_session import (
    complete_session as complete_review,
    compose_daily_session,
    mixed_session,
    session_stats,
)
from srs import RATING_LABELS, build_due_queue, generate_cards_from_course, get_interval_preview, process_review
from storage import note_image_path, supabase_ready, upload_to_storage
from study_plan import PlanLesson, PlanTask, generate_study_plan, lesson_key, plan_summary, recalculate_plan

LOGGER = logging.getLogger("notesnap")

GAP_RESOLVED_AT = 0.6
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
REVIEW_SESSION_LABELS = {
    "daily": "Daily review",
    "gap_fix": "Fix knowledge gaps",
    "targeted": "One course only",
    "mixed": "Mixed practice",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_date(v: Any) -> Optional[date]:
    if v is None or (isinstance(v, float) and math.isnan(v)):
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v)[:10])
    except ValueError:
        return None


def _lessons_of(course_row: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list((course_row.get("generated_course") or {}).get("lessons") or [])


def _question_id(concept_id: str, question: Dict[str, Any]) -> str:
    """Stable id so repeated questions share difficulty stats."""
    h = hashlib.sha1(f"{concept_id}|{question.get('question', '')}".encode("utf-8")).hexdigest()
    return h[:16]


# ============================================================
# XP / STREAK / MASTERY BOOKKEEPING
# ============================================================
def _award(user_id: str, amount: int, reason: str) -> Dict[str, Any]:
    """Add XP for an activity and advance the daily streak."""
    g = load_gamification(user_id)
    streak = update_streak(g.get("current_streak") or 0, g.get("longest_streak") or 0,
                           _as_date(g.get("last_activity_date")))
    res = award_xp(int(g.get("total_xp") or 0), int(amount) + int(streak["xp_awarded"]))
    save_gamification(user_id, res["total_xp"], streak["current_streak"], streak["longest_streak"],
                      streak["last_activity_date"])

    if res["xp_awarded"]:
        st.toast(f"+{res['xp_awarded']} XP · {reason}")
    if streak["milestone"]:
        st.toast(f"🔥 {streak['milestone']['label']}! +{streak['milestone']['bonus_xp']} XP")
    if res["leveled_up"]:
        info = xp_progress(res["total_xp"])
        st.toast(f"🎉 Level up! You're now level {info['level']} · {info['title']}")
        track_event(user_id, "level_up", {"level": info["level"]})
    _unlock_achievements(user_id, res["total_xp"], streak)
    return res


def _unlock_achievements(user_id: str, total_xp: int, streak: Dict[str, Any]) -> int:
    """Grant newly earned achievements and their XP. Returns the XP added."""
    stats = {
        **load_achievement_stats(user_id),
        "current_streak": streak["current_streak"],
        "longest_streak": streak["longest_streak"],
        "level": xp_progress(total_xp)["level"],
    }
    unlocked = check_achievements(stats, load_user_achievements(user_id))
    if not unlocked or not save_user_achievements(user_id, [a.code for a in unlocked]):
        return 0
    bonus = sum(a.xp_reward for a in unlocked)
    save_gamification(user_id, total_xp + bonus, streak["current_streak"], streak["longest_streak"],
                      streak["last_activity_date"])
    for a in unlocked:
        st.toast(unlock_message(a))
        track_event(user_id, "achievement_unlocked", {"code": a.code})
    return bonus


def _record_concept_answer(user_id: str, concept_ids: List[str], is_correct: bool) -> None:
    if not concept_ids:
        return
    current = load_concept_mastery(user_id, concept_ids)
    for cid in concept_ids:
        rec = update_concept_mastery(current.get(cid) or ConceptMastery(concept_id=cid), is_correct)
        upsert_concept_mastery(user_id, rec)
        if is_correct and rec.mastery_level >= GAP_RESOLVED_AT:
            resolve_gap(user_id, cid)


def _detect_and_save_gaps(user_id: str, concept_ids: List[str]) -> Dict[str, Any]:
    if not concept_ids:
        return {"gaps": [], "has_blocking_gaps": False, "recommended_action": "continue"}
    prereqs = load_prerequisite_graph()
    records = load_concept_mastery(user_id)
    wanted = set(concept_ids) | set(records)
    for cid in concept_ids:
        wanted.update(prereqs.get(cid, []))
    names = load_concepts(sorted(wanted))
    states = {}
    for cid in wanted:
        rec = records.get(cid)
        states[cid] = ConceptState(
            concept_id=cid,
            name=names.get(cid, cid),
            mastery_level=rec.mastery_level if rec else 0.0,
            peak_mastery=rec.peak_mastery if rec else 0.0,
            last_reviewed_at=rec.last_reviewed_at if rec else None,
        )
    result = detect_gaps(concept_ids, states, prereqs, load_recent_concept_answers(user_id), _now())
    if result["gaps"]:
        save_knowledge_gaps(user_id, [g.to_row(user_id) for g in result["gaps"]])
        LOGGER.info("Knowledge gaps detected",
                    extra={"ctx": {"component": "gaps", "user": user_id, "count": len(result["gaps"])}})
    return result


def _sync_course_learning_items(user_id: str, course_id: str, generated: Dict[str, Any]) -> int:
    """Concepts and review cards for every lesson generated so far."""
    save_course_concepts(course_id, generated.get("lessons") or [])
    return insert_review_cards(user_id, generate_cards_from_course(generated, course_id))


# ============================================================
# DASHBOARD
# ============================================================
def _render_dashboard(helpers: dict):
    user = helpers["user"]
    uid = user["id"]

    render_page_header(f"Welcome back, {user.get('display_name') or 'learner'}",
                       "Here's what's waiting for you today.")

    g = load_gamification(uid)
    xp = xp_progress(int(g.get("total_xp") or 0))
    streak = streak_status(int(g.get("current_streak") or 0), _as_date(g.get("last_activity_date")))
    due = load_review_cards(uid, due_before=_now(), state="not_new")
    courses = load_courses_df(uid)

    render_metric_row([
        ("Level", f"{xp['level']} · {xp['title']}"),
        ("Total XP", int(g.get("total_xp") or 0)),
        ("Streak", f"🔥 {streak['streak']} days"),
        ("Cards due", len(due)),
        ("Courses", len(courses)),
    ])
    if xp["needed"]:
        st.progress(xp["percent"], text=f"{xp['current']} / {xp['needed']} XP to level {xp['level'] + 1}")

    if streak["at_risk"]:
        render_callout("Keep your streak alive", "Review a few cards or finish a lesson today.", kind="warning")
    elif streak["broken"] and int(g.get("current_streak") or 0) > 0:
        render_callout("Streak reset", "Your streak ended. Any activity today starts a new one.", kind="info")

    gaps = load_open_gaps(uid)
    if gaps:
        names = load_concepts([x["concept_id"] for x in gaps])
        worst = gaps[0]
        render_callout(
            f"{len(gaps)} knowledge gap(s) found",
            f"Start with {names.get(worst['concept_id'], worst['concept_id'])} ({worst['severity']}). "
            "The Review page has a gap-fix session.",
            kind="warning" if worst["severity"] == "critical" else "info",
        )

    st.subheader("Today's plan")
    plan = load_active_plan(uid)
    if not plan:
        st.caption("No study plan yet. Create one on the Study Plan page.")
    else:
        tasks = load_plan_tasks_df(str(plan["id"]))
        if tasks.empty:
            st.caption("Nothing scheduled.")
        else:
            today_tasks = tasks[pd.to_datetime(tasks["scheduled_date"]).dt.date == date.today()]
            if today_tasks.empty:
                st.caption("Nothing scheduled for today.")
            for _, t in today_tasks.iterrows():
                done = t["status"] == "completed"
                st.markdown(f"{'✅' if done else '⬜'} {t['description']} · {int(t['estimated_minutes'])} min")

    if courses.empty:
        render_empty_state("No courses yet", "Snap or paste your notes on the Courses page to get started.",
                           icon="📸")


# ============================================================
# COURSES
# ============================================================
def _render_new_course_form(helpers: dict):
    user = helpers["user"]
    uid = user["id"]
    _run_ai_with_progress = helpers["_run_ai_with_progress"]

    if not st.session_state.get("_upload_click_tracked"):
        track_funnel_step(uid, "course_creation", "upload_click")
        st.session_state["_upload_click_tracked"] = True

    mode_keys = list(INTENSITY_MODES.keys())
    with st.form("new_course_form"):
        title = st.text_input("Course title (optional)")
        intensity = st.radio(
            "Intensity",
            mode_keys,
            index=mode_keys.index("standard") if "standard" in mode_keys else 0,
            format_func=lambda k: f"{INTENSITY_MODES[k].get('label', k)} · {INTENSITY_MODES[k].get('target_lessons')} lessons",
            horizontal=True,
        )
        notes = st.text_area("Paste your notes", height=240, max_chars=MAX_NOTES_CHARS)
        uploads = st.file_uploader(
            f"…or add photos, Word or PowerPoint files (up to {MAX_UPLOAD_FILES})",
            type=["png", "jpg", "jpeg", "heic", "heif", "docx", "pptx"],
            accept_multiple_files=True,
        )
        submitted = st.form_submit_button("Create course", type="primary")

    if not submitted:
        return

    uploads = list(uploads or [])[:MAX_UPLOAD_FILES]
    if uploads:
        track_funnel_step(uid, "course_creation", "file_selected")
    if not (notes or "").strip() and not uploads:
        render_error(AppError("NS-CRS-013"))
        return

    track_funnel_step(uid, "course_creation", "upload_started")
    images, paths, doc_texts = [], [], []
    for i, f in enumerate(uploads):
        if document_kind(f.name):
            data = f.getvalue()
            if len(data) > MAX_DOCUMENT_MB * 1024 * 1024:
                st.warning(f"{f.name}: {AppError('NS-UPL-001').message}")
                continue
            try:
                doc = extract_document(f.name, data)
            except AppError as e:
                st.warning(f"{f.name}: {e.message}")
                continue
            title = title or doc.title
            doc_texts.append(doc.text)
            continue
        ok, data, content_type, err = prepare_upload(f.name, f.getvalue(), MAX_UPLOAD_MB, purpose="notes")
        if not ok:
            st.warning(f"{f.name}: {err}")
            continue
        images.append((data, content_type))
        if supabase_ready():
            path = note_image_path(uid, f.name, i, content_type)
            if upload_to_storage(path, data, content_type):
                paths.append(path)
    typed = (notes or "").strip()
    notes = "\n\n---\n\n".join([t for t in [typed] + doc_texts if t])[:MAX_NOTES_CHARS]
    if not notes and not images:
        render_error(AppError("NS-CRS-013"))
        return

    track_funnel_step(uid, "course_creation", "processing")
    try:
        course = _run_ai_with_progress(
            task_fn=lambda: generate_initial_course(notes, title, intensity, images or None, user_id=uid),
            ctx={"user": uid, "intensity": intensity, "images": len(images)},
            typical_range="30-60 seconds",
            est_seconds=45.0,
        )
    except AppError as e:
        track_error(uid, e.code, "courses")
        render_error(e)
        return

    generated = {k: course[k] for k in ("title", "overview", "document_summary", "lesson_outline", "lessons")}
    kinds = [k for k, present in (("text", typed), ("document", doc_texts), ("image", images)) if present]
    source = kinds[0] if len(kinds) == 1 else "mixed"
    first_course = load_courses_df(uid).empty
    course_id = insert_course(
        uid, course["title"], source, notes, generated, course["generation_status"],
        course["lessons_ready"], course["total_lessons"],
        document_summary=course["document_summary"], lesson_outline=course["lesson_outline"],
        intensity_mode=intensity, image_paths=paths,
    )
    if not course_id:
        st.error("The course was generated but couldn't be saved. Check the database connection.")
        return

    n_cards = _sync_course_learning_items(uid, course_id, generated)
    track_funnel_step(uid, "course_creation", "course_created")
    track_event(uid, "course_created", {"intensity": intensity, "source": source, "lessons": course["total_lessons"]})
    _award(uid, XP_REWARDS["course_created"] + (XP_REWARDS["first_course"] if first_course else 0), "course created")

    for w in course.get("warnings") or []:
        st.caption(f"⚠️ {w}")
    st.success(f"Created “{course['title']}” with {course['lessons_ready']} lesson(s) and {n_cards} review card(s).")
    st.session_state["selected_course_id"] = course_id
    st.session_state["_upload_click_tracked"] = False


def _render_lesson(uid: str, course_row: Dict[str, Any], lesson_index: int, lesson: Dict[str, Any]):
    course_id = str(course_row["id"])
    steps = lesson.get("steps") or []
    if not steps:
        st.info("This lesson has no steps.")
        return

    step_key = f"lesson_step_{course_id}_{lesson_index}"
    answers_key = f"lesson_answers_{course_id}_{lesson_index}"
    st.session_state.setdefault(step_key, 0)
    st.session_state.setdefault(answers_key, {})
    i = min(int(st.session_state[step_key]), len(steps) - 1)
    answers: Dict[int, bool] = st.session_state[answers_key]

    if i == 0 and not st.session_state.get(f"_{step_key}_started"):
        track_funnel_step(uid, "lesson_completion", "lesson_started")
        st.session_state[f"_{step_key}_started"] = True

    st.progress(int((i + 1) * 100 / len(steps)), text=f"Step {i + 1} of {len(steps)}")
    step = steps[i]
    stype = step.get("type", "explanation")
    icon = {"key_point": "📌", "formula": "🧮", "question": "❓", "example": "🧪", "summary": "📝",
            "diagram": "🗺️"}.get(stype, "📖")
    if step.get("title"):
        st.markdown(f"#### {icon} {step['title']}")

    if stype == "formula":
        st.code(step.get("content", ""), language=None)
    elif stype == "question":
        st.markdown(step.get("content", ""))
        options = step.get("options") or []
        choice = st.radio("Your answer", list(range(len(options))), format_func=lambda k: options[k],
                          index=None, key=f"q_{course_id}_{lesson_index}_{i}")
        if st.button("Check", key=f"check_{course_id}_{lesson_index}_{i}", disabled=choice is None):
            answers[i] = int(choice) == int(step.get("correct_answer") or 0)
        if i in answers:
            if answers[i]:
                st.success("Correct!")
            else:
                st.error(f"Not quite. The answer is: {options[int(step.get('correct_answer') or 0)]}")
            if step.get("explanation"):
                st.caption(step["explanation"])
    elif stype == "key_point":
        st.info(step.get("content", ""))
    else:
        st.markdown(step.get("content", ""))

    c1, c2, c3 = st.columns([1, 1, 2])
    if c1.button("◀ Back", disabled=i == 0, key=f"prev_{step_key}", use_container_width=True):
        st.session_state[step_key] = i - 1
        st.rerun()
    if i < len(steps) - 1:
        if c2.button("Next ▶", key=f"next_{step_key}", use_container_width=True, type="primary"):
            st.session_state[step_key] = i + 1
            if i == 0:
                track_funnel_step(uid, "lesson_completion", "first_step")
            if i + 1 == len(steps) // 2:
                track_funnel_step(uid, "lesson_completion", "midpoint")
            if i + 1 == len(steps) - 1:
                track_funnel_step(uid, "lesson_completion", "last_step")
            st.rerun()
    elif c2.button("Finish lesson ✓", key=f"finish_{step_key}", use_container_width=True, type="primary"):
        total = sum(1 for s in steps if s.get("type") == "question")
        correct = sum(1 for k, ok in answers.items() if ok)
        now = _now()
        score = calculate_lesson_mastery(correct, total, now, now) if total else 1.0
        first_lesson = load_lesson_progress_df(uid).empty
        upsert_lesson_progress(uid, course_id, lesson_index, True, len(answers), correct, score)
        concept = lesson_key(course_id, lesson_index)
        for k, ok in answers.items():
            _record_concept_answer(uid, [concept], ok)

        xp = XP_REWARDS["lesson_complete"]
        if total and correct == total:
            xp += XP_REWARDS["lesson_perfect"]
        if first_lesson:
            xp += XP_REWARDS["first_lesson"]
        track_funnel_step(uid, "lesson_completion", "lesson_completed")
        track_event(uid, "lesson_completed", {"course_id": course_id, "lesson": lesson_index, "score": score})
        _award(uid, xp, "lesson complete")
        st.session_state[step_key] = 0
        st.session_state[answers_key] = {}
        st.session_state.pop(f"_{step_key}_started", None)
        st.success(f"Lesson complete! Mastery: {LEVEL_LABELS[mastery_level(score)]} ({int(score * 100)}%)")


def _render_course_detail(helpers: dict, course_row: Dict[str, Any]):
    uid = helpers["user"]["id"]
    _run_ai_with_progress = helpers["_run_ai_with_progress"]
    course_id = str(course_row["id"])
    generated = course_row.get("generated_course") or {}
    prog = generation_progress(course_row)

    head = st.columns([4, 1])
    with head[0]:
        st.markdown(f"### {course_row.get('title', 'Untitled course')}")
        if generated.get("overview"):
            st.caption(generated["overview"])
    with head[1]:
        render_status_pill(prog["status"])

    if prog["status"] != "complete" or prog["total_lessons"] > prog["lessons_ready"]:
        st.progress(prog["percent"], text=f"{prog['lessons_ready']} of {prog['total_lessons']} lessons ready")
    if prog["status"] == "failed":
        render_callout("Generation stopped",
                       "Something went wrong while writing the remaining lessons. You can try again.", kind="error")

    if prog["can_continue"]:
        if st.button("Generate remaining lessons", type="primary", key=f"continue_{course_id}"):
            def task():
                row = course_row
                while generation_progress(row)["can_continue"]:
                    row = continue_course_generation(row, user_id=uid)
                return row
            try:
                row = _run_ai_with_progress(
                    task_fn=task,
                    ctx={"user": uid, "course": course_id},
                    typical_range="20-60 seconds",
                    est_seconds=30.0 * max(1, prog["total_lessons"] - prog["lessons_ready"]) / 2,
                )
                _sync_course_learning_items(uid, course_id, row.get("generated_course") or {})
                track_event(uid, "course_continued", {"course_id": course_id})
                st.rerun()
            except AppError as e:
                track_error(uid, e.code, "courses", course_id=course_id)
                render_error(e)

    lessons = _lessons_of(course_row)
    outline = course_row.get("lesson_outline") or generated.get("lesson_outline") or []
    if not lessons:
        st.info("No lessons are ready yet.")
        return

    progress_df = load_lesson_progress_df(uid)
    done = set()
    if not progress_df.empty:
        mine = progress_df[(progress_df["course_id"] == course_id) & (progress_df["completed"])]
        done = set(int(x) for x in mine["lesson_index"])

    labels = []
    for idx in range(max(len(lessons), len(outline))):
        title = lessons[idx]["title"] if idx < len(lessons) else (outline[idx].get("title") or f"Lesson {idx + 1}")
        mark = "✅" if idx in done else ("⏳" if idx >= len(lessons) else "📘")
        labels.append(f"{mark} {idx + 1}. {title}")
    pick = st.selectbox("Lesson", list(range(len(labels))), format_func=lambda k: labels[k],
                        key=f"lesson_pick_{course_id}")
    if pick >= len(lessons):
        st.info("This lesson hasn't been written yet. Use “Generate remaining lessons” above.")
    else:
        _render_lesson(uid, course_row, int(pick), lessons[int(pick)])

    st.divider()
    with st.expander("Add more notes to this course"):
        extra = st.text_area("New notes", key=f"add_notes_{course_id}", height=160, max_chars=MAX_NOTES_CHARS)
        can_add = can_add_material(course_row)
        if not can_add:
            st.caption("Finish generating the current lessons first.")
        if st.button("Add lessons", key=f"add_btn_{course_id}", disabled=not can_add):
            try:
                row = _run_ai_with_progress(
                    task_fn=lambda: add_material_to_course(course_row, extra, user_id=uid),
                    ctx={"user": uid, "course": course_id},
                    typical_range="20-40 seconds",
                    est_seconds=30.0,
                )
                _sync_course_learning_items(uid, course_id, row.get("generated_course") or {})
                track_event(uid, "course_material_added", {"course_id": course_id})
                st.rerun()
            except AppError as e:
                track_error(uid, e.code, "courses", course_id=course_id)
                render_error(e)

    with st.expander("Concepts"):
        concept_map = load_course_concept_map(course_id)
        if concept_map:
            df = pd.DataFrame(concept_map)
            df["lesson"] = df["lesson_index"].astype(int) + 1
            st.dataframe(df[["lesson", "name", "relationship", "difficulty", "description"]],
                         width='stretch', hide_index=True)
        else:
            st.caption("Pull out the key ideas of this course and how the lessons connect them.")
        if st.button("Extract concepts", key=f"concepts_{course_id}"):
            try:
                extraction = _run_ai_with_progress(
                    task_fn=lambda: extract_concepts(course_row, user_id=uid),
                    ctx={"user": uid, "course": course_id},
                    typical_range="15-30 seconds",
                    est_seconds=20.0,
                )
                if save_extracted_concepts(course_id, extraction):
                    track_event(uid, "concepts_extracted", {"course_id": course_id,
                                                            "concepts": len(extraction.concepts)})
                    st.rerun()
                else:
                    st.error("Couldn't save the concepts.")
            except AppError as e:
                track_error(uid, e.code, "concepts", course_id=course_id)
                render_error(e)

    with st.expander("Export"):
        export = {**generated, "title": course_row.get("title") or generated.get("title")}
        fname = (course_row.get("title") or "course").strip().replace(" ", "_")[:60] or "course"
        c1, c2 = st.columns(2)
        c1.download_button("⬇️ Markdown", data=course_to_markdown(export).encode("utf-8"),
                           file_name=f"{fname}.md", mime="text/markdown", use_container_width=True)
        try:
            pdf = course_to_pdf(export)
            c2.download_button("⬇️ PDF", data=pdf, file_name=f"{fname}.pdf", mime="application/pdf",
                               use_container_width=True)
        except Exception as e:
            LOGGER.error("PDF export failed", extra={"ctx": {"component": "export", "error": type(e).__name__}})
            c2.caption("PDF export is unavailable for this course.")

    with st.expander("Delete course"):
        st.caption("Removes the course, its progress and its review cards.")
        confirm = st.checkbox("I understand", key=f"del_confirm_{course_id}")
        if st.button("Delete", key=f"del_{course_id}", disabled=not confirm):
            if delete_course(course_id, uid):
                track_event(uid, "course_deleted", {"course_id": course_id})
                st.session_state["selected_course_id"] = None
                st.rerun()
            else:
                st.error("Couldn't delete the course.")


def _render_courses(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Courses", "Turn notes into short interactive lessons.")

    tab_mine, tab_new = st.tabs(["My courses", "New course"])
    with tab_new:
        _render_new_course_form(helpers)

    with tab_mine:
        df = load_courses_df(uid)
        if df.empty:
            render_empty_state("No courses yet", "Create your first course in the “New course” tab.", icon="📚")
            return
        ids = [str(x) for x in df["id"]]
        titles = {str(r["id"]): f"{r['title']} · {r['generation_status']}" for _, r in df.iterrows()}
        current = st.session_state.get("selected_course_id")
        idx = ids.index(current) if current in ids else 0
        course_id = st.selectbox("Course", ids, index=idx, format_func=lambda k: titles.get(k, k))
        st.session_state["selected_course_id"] = course_id

        row = load_course(course_id, uid)
        if not row:
            st.error("Couldn't load this course.")
            return
        _render_course_detail(helpers, row)


# ============================================================
# REVIEW
# ============================================================
def _build_review_session(uid: str, session_type: str, course_id: Optional[str]):
    now = _now()
    if session_type == "mixed":
        return _build_mixed_session(uid, now)
    settings = load_srs_settings(uid)
    today = count_reviewed_today(uid)

    due_pool = load_review_cards(uid, due_before=now, state="not_new", course_id=course_id)
    new_pool = load_review_cards(uid, state="new", course_id=course_id, limit=100)
    queue = build_due_queue(due_pool + new_pool, settings, today["reviews"], now)
    due = [c for c in queue if c.state != "new"]
    new = [c for c in queue if c.state == "new"]

    gaps = load_open_gaps(uid)
    gap_ids = [g["concept_id"] for g in gaps]
    gap_cards = load_review_cards(uid, concept_ids=gap_ids, state="not_new", course_id=course_id, limit=50) if gap_ids else []

    decayed = [cid for cid, rec in load_concept_mastery(uid).items() if is_decayed(rec)]
    reinforcement = load_review_cards(uid, concept_ids=decayed, state="not_new", course_id=course_id, limit=20) if decayed else []

    new_limit = max(0, int(settings.get("max_new_cards_per_day") or 0) - today["new_cards"])
    max_cards = max(1, int(settings.get("max_reviews_per_day") or 1) - today["reviews"])
    if session_type == "gap_fix":
        due, new, reinforcement = [], [], []

    return compose_daily_session(
        due, gap_cards, reinforcement, new,
        session_type=session_type,
        max_cards=min(50, max_cards),
        new_card_limit=new_limit,
        target_concept_ids=gap_ids,
    )


def _build_mixed_session(uid: str, now: datetime):
    """Cards from every course, weighted toward weak lessons and interleaved by lesson."""
    progress_df = load_lesson_progress_df(uid)
    lesson_mastery = {}
    if not progress_df.empty:
        lesson_mastery = {f"{r['course_id']}:{int(r['lesson_index'])}": float(r["mastery_level"] or 0)
                          for _, r in progress_df.iterrows()}
    cards = load_review_cards(uid, limit=500)
    mixed = generate_mixed_practice(cards, lesson_mastery, now=now)
    return mixed_session(m.card for m in mixed["cards"])


def _finish_review(uid: str, review: Dict[str, Any]):
    summary = complete_review(review["completed"], review["correct"], review["started_at"],
                              gaps_addressed=sorted(review["gaps"]))
    if review.get("id"):
        complete_review_session(review["id"], review["completed"], review["correct"], summary)
    track_funnel_step(uid, "review_session", "review_completed")
    track_event(uid, "review_completed", {"cards": review["completed"], "accuracy": summary["accuracy"]})
    st.session_state["review_summary"] = {**summary, "cards_completed": review["completed"]}
    st.session_state["review"] = None


def _render_review(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Review", "Spaced repetition keeps what you learned from fading.")

    summary = st.session_state.get("review_summary")
    if summary:
        st.success("Session complete!")
        render_metric_row([
            ("Cards", summary.get("cards_completed", 0)),
            ("Accuracy", f"{summary['accuracy']}%"),
            ("Time", f"{int(summary['total_time_seconds'] // 60)} min"),
            ("Gaps addressed", len(summary.get("gaps_addressed") or [])),
        ])
        if st.button("Done"):
            st.session_state["review_summary"] = None
            st.rerun()
        return

    review = st.session_state.get("review")
    if not review:
        with st.expander("Review settings"):
            s = load_srs_settings(uid)
            with st.form("srs_settings_form"):
                max_new = st.number_input("New cards per day", 0, 200, int(s.get("max_new_cards_per_day") or 20))
                max_rev = st.number_input("Reviews per day", 1, 1000, int(s.get("max_reviews_per_day") or 100))
                inter = st.checkbox("Mix cards from different lessons", bool(s.get("interleave_reviews", True)))
                if st.form_submit_button("Save"):
                    if save_srs_settings(uid, max_new, max_rev, inter):
                        st.success("Saved.")

        session_type = st.radio("Session", list(REVIEW_SESSION_LABELS), horizontal=True,
                                format_func=lambda k: REVIEW_SESSION_LABELS[k])
        course_id = None
        if session_type == "targeted":
            df = load_courses_df(uid)
            if df.empty:
                st.info("No courses yet.")
                return
            titles = {str(r["id"]): r["title"] for _, r in df.iterrows()}
            course_id = st.selectbox("Course", list(titles), format_func=lambda k: titles[k])

        plan = _build_review_session(uid, session_type, course_id)
        render_metric_row([
            ("Cards", len(plan.cards)),
            ("Due", plan.due_cards),
            ("Gap fixes", plan.gap_cards),
            ("Reinforce", plan.reinforcement_cards),
            ("New", plan.new_cards),
            ("≈ Minutes", plan.estimated_minutes),
        ])
        if not plan.cards:
            render_empty_state("All caught up", "No cards are due right now. Come back later!", icon="🎉")
            return
        if st.button("Start review", type="primary"):
            sid = insert_review_session(uid, session_type, len(plan.cards))
            st.session_state["review"] = {
                "id": sid, "cards": plan.cards, "index": 0, "show_back": False,
                "started_at": _now(), "completed": 0, "correct": 0, "gaps": set(),
            }
            track_funnel_step(uid, "review_session", "review_started")
            st.rerun()
        return

    cards = review["cards"]
    i = review["index"]
    if i >= len(cards):
        _finish_review(uid, review)
        st.rerun()
        return

    sc = cards[i]
    card = sc.card
    st.progress(int(i * 100 / len(cards)), text=f"Card {i + 1} of {len(cards)}")
    tag = {"due": "Due", "gap": "Gap fix", "reinforcement": "Reinforce", "new": "New"}[sc.source]
    st.caption(f"{tag} · {card.card_type.replace('_', ' ')}")
    with st.container(border=True):
        st.markdown(f"### {card.front}")
        if review["show_back"]:
            st.divider()
            st.markdown(card.back)

    if not review["show_back"]:
        c1, c2 = st.columns([1, 1])
        if c1.button("Show answer", type="primary", use_container_width=True):
            review["show_back"] = True
            st.rerun()
        if c2.button("End session", use_container_width=True):
            _finish_review(uid, review)
            st.rerun()
        return

    preview = get_interval_preview(card)
    cols = st.columns(4)
    for col, rating in zip(cols, (1, 2, 3, 4)):
        if col.button(f"{RATING_LABELS[rating]}\n\n{preview[rating]}", key=f"rate_{i}_{rating}",
                      use_container_width=True):
            updated, log_row = process_review(card, rating)
            save_review(updated, log_row)
            ok = rating >= 3
            _record_concept_answer(uid, list(card.concept_ids), ok)
            review["completed"] += 1
            review["correct"] += 1 if ok else 0
            if sc.source == "gap" and ok:
                review["gaps"].update(sc.target_concept_ids or card.concept_ids)
            if review["completed"] == 1:
                track_funnel_step(uid, "review_session", "first_card")
            if review["completed"] == max(1, len(cards) // 2):
                track_funnel_step(uid, "review_session", "halfway")
            _award(uid, card_review_xp(rating), "card reviewed")
            review["index"] = i + 1
            review["show_back"] = False
            st.rerun()


# ============================================================
# PRACTICE
# ============================================================
def _start_practice(helpers: dict, course_row: Dict[str, Any], lesson_idxs: List[int],
                    session_type: str, count: int, types: List[str]):
    uid = helpers["user"]["id"]
    _run_ai_with_progress = helpers["_run_ai_with_progress"]
    course_id = str(course_row["id"])
    lessons = _lessons_of(course_row)

    state = load_performance_state(uid, course_id)
    target = calculate_target_difficulty(state)["target_difficulty"]
    per_lesson = max(1, math.ceil(count / max(1, len(lesson_idxs))))

    def task():
        out = []
        for li in lesson_idxs:
            concept = lesson_key(course_id, li)
            for q in generate_practice_questions(lessons[li], per_lesson, types, target, user_id=uid):
                out.append({**q, "concept_id": concept, "lesson_index": li, "id": _question_id(concept, q)})
        return out

    try:
        pool = _run_ai_with_progress(task_fn=task, ctx={"user": uid, "course": course_id, "count": count},
                                     typical_range="10-30 seconds", est_seconds=8.0 * len(lesson_idxs))
    except AppError as e:
        track_error(uid, e.code, "practice")
        render_error(e)
        return

    by_id = {q["id"]: q for q in pool}
    mastery = load_concept_mastery(uid, [lesson_key(course_id, li) for li in lesson_idxs])
    weak = {cid: m.mastery_level for cid, m in mastery.items() if m.mastery_level < GAP_RESOLVED_AT}
    cands = []
    for q in by_id.values():
        stats = load_question_difficulty(q["id"]) or {}
        cands.append(CandidateQuestion(
            id=q["id"], difficulty=float(q.get("difficulty") or 3), concept_id=q["concept_id"],
            empirical_difficulty=stats.get("empirical_difficulty"), cognitive_level=q.get("cognitive_level"),
            times_shown=int(stats.get("times_shown") or 0),
        ))
    picked = select_questions(cands, target, weak, state.last_cognitive_level, count=max(2, count))[:count]
    questions = [by_id[c.id] for c, _ in picked]
    if not questions:
        render_error(AppError("NS-PRC-010"))
        return

    sid = insert_practice_session(uid, course_id, session_type, questions)
    session = PracticeSession(
        session_type=session_type, question_ids=[q["id"] for q in questions], id=sid, user_id=uid,
        course_id=course_id, started_at=_now(),
        target_concept_ids=sorted({q["concept_id"] for q in questions}),
    )
    st.session_state["practice"] = {
        "session": session, "questions": questions, "answers": [], "state": state,
        "shown_at": time.monotonic(), "last": None,
    }
    track_funnel_step(uid, "practice_session", "practice_started")
    track_event(uid, "practice_started", {"type": session_type, "questions": len(questions)})
    st.rerun()


def _answer_practice(uid: str, p: Dict[str, Any], answer: str):
    session: PracticeSession = p["session"]
    q = p["questions"][session.current_question_index]
    ms = int((time.monotonic() - p["shown_at"]) * 1000)

    verdict = None
    feedback_text = ""
    if q.get("type") == "short_answer":
        try:
            ev = evaluate_answer(q.get("question", ""), q.get("correct_answer", ""), answer, user_id=uid)
            verdict, feedback_text = bool(ev["is_correct"]), ev.get("feedback", "")
        except AppError as e:
            render_error(e)
    idx = session.current_question_index
    result = record_answer(session, q, answer, is_correct=verdict)
    ok = bool(result["is_correct"])
    record_practice_answer(session.id, idx, answer, ok, ms, {
        "status": session.status, "current_question_index": session.current_question_index,
        "questions_answered": session.questions_answered, "questions_correct": session.questions_correct,
    })

    new_state, fb = update_performance_state(p["state"], ok, float(q.get("difficulty") or 3), ms,
                                             q.get("cognitive_level"))
    save_performance_state(new_state)
    p["state"] = new_state
    save_question_difficulty(q["id"], update_question_difficulty(load_question_difficulty(q["id"]), ok, ms))
    _record_concept_answer(uid, [q["concept_id"]], ok)

    p["answers"].append({"concept_id": q["concept_id"], "is_correct": ok, "response_time_ms": ms})
    p["last"] = {**result, "message": fb["message"], "kind": fb["type"], "ai_feedback": feedback_text,
                 "question": q.get("question", "")}
    p["shown_at"] = time.monotonic()

    answered = session.questions_answered
    if answered == 1:
        track_funnel_step(uid, "practice_session", "first_question")
    if answered == max(1, session.question_count // 2):
        track_funnel_step(uid, "practice_session", "midpoint")


def _finish_practice(uid: str, p: Dict[str, Any]):
    session: PracticeSession = p["session"]
    summary = complete_practice_session(session, p["answers"])
    if session.id:
        update_practice_session(session.id, {
            "status": "completed", "accuracy": summary["accuracy"],
            "avg_response_time_ms": summary["avg_response_time_ms"],
            "total_time_seconds": summary["total_time_seconds"],
            "concepts_practiced": summary["concepts_practiced"],
            "gaps_identified": summary["gaps_identified"], "completed_at": summary["completed_at"],
        })
    gaps = _detect_and_save_gaps(uid, summary["concepts_practiced"])
    summary["recommended_action"] = gaps["recommended_action"]
    summary["gap_names"] = [g.concept_name for g in gaps["gaps"]]
    track_funnel_step(uid, "practice_session", "practice_completed")
    track_event(uid, "practice_completed", {"type": session.session_type, "accuracy": summary["accuracy"]})
    _award(uid, summary["xp_awarded"], "practice complete")
    st.session_state["practice_summary"] = summary
    st.session_state["practice"] = None


def _render_practice_question(q: Dict[str, Any], key: str) -> str:
    st.markdown(f"### {q.get('question', '')}")
    qtype = q.get("type")
    if qtype in ("multiple_choice", "true_false"):
        options = q.get("options") or (["True", "False"] if qtype == "true_false" else [])
        choice = st.radio("Your answer", options, index=None, key=key)
        return choice or ""
    if qtype == "fill_blank":
        return st.text_input("Fill in the blank", key=key)
    return st.text_area("Your answer", key=key, height=100)


def _render_practice(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Practice", "Questions pitched at the edge of what you know.")

    summary = st.session_state.get("practice_summary")
    if summary:
        st.success("Practice complete!")
        render_metric_row([
            ("Score", f"{summary['questions_correct']} / {summary['total_questions']}"),
            ("Accuracy", f"{summary['accuracy']}%"),
            ("Time", f"{int(summary['total_time_seconds'] // 60)} min"),
            ("XP", f"+{summary['xp_awarded']}"),
        ])
        if summary.get("gap_names"):
            render_callout("Gaps to work on", ", ".join(summary["gap_names"]), kind="warning")
        action = summary.get("recommended_action")
        if action == "review":
            st.info("Next: review the earlier lessons these build on.")
        elif action == "practice":
            st.info("Next: a bit more practice on the weak spots.")
        if st.button("Done"):
            st.session_state["practice_summary"] = None
            st.rerun()
        return

    p = st.session_state.get("practice")
    if not p:
        df = load_courses_df(uid)
        if df.empty:
            render_empty_state("Nothing to practise yet", "Create a course first.", icon="🎯")
            return
        titles = {str(r["id"]): r["title"] for _, r in df.iterrows()}
        course_id = st.selectbox("Course", list(titles), format_func=lambda k: titles[k], key="practice_course")
        row = load_course(course_id, uid)
        lessons = _lessons_of(row)
        if not lessons:
            st.info("This course has no lessons yet.")
            return

        perf = performance_summary(load_performance_state(uid, course_id))
        st.caption(f"Your level here: difficulty {perf['difficulty']} · accuracy {perf['accuracy']}%")

        with st.form("practice_setup"):
            session_type = st.selectbox("Session type", list(SESSION_QUESTION_COUNTS),
                                        format_func=lambda k: k.replace("_", " ").title())
            lesson_idxs = st.multiselect("Lessons", list(range(len(lessons))), default=list(range(len(lessons))),
                                         format_func=lambda k: f"{k + 1}. {lessons[k].get('title', '')}")
            count = st.number_input("Questions (leave 0 for the default)", 0, 50, 0)
            types = st.multiselect("Question types", PRACTICE_QUESTION_TYPES, default=PRACTICE_QUESTION_TYPES,
                                   format_func=lambda k: k.replace("_", " "))
            go = st.form_submit_button("Start practice", type="primary")
        if go:
            if not lesson_idxs:
                st.warning("Pick at least one lesson.")
                return
            n = int(count) or default_question_count(session_type)
            _start_practice(helpers, row, [int(x) for x in lesson_idxs], session_type, n, types)

        sessions = load_practice_sessions(uid)
        if sessions:
            stats = practice_stats(sessions)
            st.caption(f"{stats['total_sessions']} sessions · {stats['total_questions']} questions · "
                       f"{stats['overall_accuracy']}% accuracy")
        return

    session: PracticeSession = p["session"]
    prog = session_progress(session)
    st.progress(int(prog["answered"] * 100 / max(1, prog["total"])),
                text=f"{prog['answered']} of {prog['total']} · {prog['accuracy']}% correct")

    last = p.get("last")
    if last:
        if last["is_correct"]:
            st.success(f"✓ Correct. {last['message']}")
        else:
            st.error(f"✗ The answer was: {last['correct_answer']}")
        if last.get("ai_feedback"):
            st.caption(last["ai_feedback"])
        elif last.get("explanation"):
            st.caption(last["explanation"])

    controls = st.columns(3)
    if session.status == "paused":
        st.info("Paused.")
        if controls[0].button("Resume", type="primary"):
            resume_session(session)
            update_practice_session(session.id, {"status": "active"})
            p["shown_at"] = time.monotonic()
            st.rerun()
        return

    if prog["remaining"] == 0:
        if st.button("See results", type="primary"):
            _finish_practice(uid, p)
            st.rerun()
        return

    q = p["questions"][session.current_question_index]
    answer = _render_practice_question(q, key=f"pa_{session.id}_{session.current_question_index}")
    if controls[0].button("Submit", type="primary", disabled=not (answer or "").strip(), use_container_width=True):
        _answer_practice(uid, p, answer)
        st.rerun()
    if controls[1].button("Pause", use_container_width=True):
        pause_session(session)
        update_practice_session(session.id, {"status": "paused"})
        st.rerun()
    if controls[2].button("Quit", use_container_width=True):
        abandon_session(session)
        update_practice_session(session.id, {"status": "abandoned"})
        track_event(uid, "practice_abandoned", {"answered": session.questions_answered})
        st.session_state["practice"] = None
        st.rerun()


# ============================================================
# STUDY PLAN
# ============================================================
def _plan_inputs(uid: str):
    """Lessons across all courses plus per-lesson mastery from lesson progress."""
    df = load_courses_df(uid)
    lessons: List[PlanLesson] = []
    for _, r in df.iterrows():
        row = load_course(str(r["id"]), uid)
        gen = row.get("generated_course") or {}
        outline = row.get("lesson_outline") or gen.get("lesson_outline") or []
        titles = [l.get("title", "") for l in gen.get("lessons") or []]
        titles += [o.get("title", "") for o in outline[len(titles):]]
        for i, t in enumerate(titles):
            lessons.append(PlanLesson(str(r["id"]), i, t or f"Lesson {i + 1}", str(r["title"])))

    mastery: Dict[str, float] = {}
    prog = load_lesson_progress_df(uid)
    for _, r in prog.iterrows():
        mastery[lesson_key(str(r["course_id"]), int(r["lesson_index"]))] = float(r["mastery_level"] or 0)
    return lessons, mastery


def _tasks_from_df(df: pd.DataFrame) -> List[PlanTask]:
    out = []
    for _, r in df.iterrows():
        out.append(PlanTask(
            scheduled_date=_as_date(r["scheduled_date"]), task_type=r["task_type"], description=r["description"],
            estimated_minutes=int(r["estimated_minutes"]), sort_order=int(r["sort_order"]),
            course_id=str(r["course_id"]) if pd.notna(r["course_id"]) and r["course_id"] else None,
            lesson_index=None if pd.isna(r["lesson_index"]) else int(r["lesson_index"]),
            lesson_title=r["lesson_title"], status=r["status"],
        ))
    return out


def _parse_dates(raw: str) -> List[date]:
    out = []
    for part in (raw or "").replace(";", ",").split(","):
        d = _as_date(part.strip())
        if d:
            out.append(d)
    return out


def _render_study_plan(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Study plan", "A day-by-day schedule up to your exam.")

    lessons, mastery = _plan_inputs(uid)
    plan = load_active_plan(uid)

    if plan:
        tasks_df = load_plan_tasks_df(str(plan["id"]))
        tasks = _tasks_from_df(tasks_df)
        s = plan_summary(tasks)
        done = sum(1 for t in tasks if t.status == "completed")
        exam = _as_date(plan["exam_date"])
        render_metric_row([
            ("Exam", exam.strftime("%d %b") if exam else "-"),
            ("Days left", max(0, (exam - date.today()).days) if exam else "-"),
            ("Tasks done", f"{done} / {s['total_tasks']}"),
            ("Study time", f"{round(s['total_minutes'] / 60, 1)} h"),
        ])
        if s["total_tasks"]:
            st.progress(int(done * 100 / s["total_tasks"]))

        show_past = st.checkbox("Show past days", False)
        days = pd.to_datetime(tasks_df["scheduled_date"]).dt.date if not tasks_df.empty else []
        for day, group in (tasks_df.groupby(days, sort=True) if len(days) else []):
            if day < date.today() and not show_past:
                continue
            label = "Today" if day == date.today() else day.strftime("%a %d %b")
            with st.expander(f"{label} · {int(group['estimated_minutes'].sum())} min", expanded=day == date.today()):
                for _, t in group.iterrows():
                    c1, c2 = st.columns([5, 1])
                    c1.markdown(f"{t['description']} · {int(t['estimated_minutes'])} min")
                    with c2:
                        render_status_pill(t["status"])
                    if t["status"] == "pending":
                        b1, b2, _ = st.columns([1, 1, 4])
                        if b1.button("Done", key=f"task_done_{t['id']}"):
                            update_task_status(int(t["id"]), "completed")
                            track_event(uid, "plan_task_completed", {"type": t["task_type"]})
                            _award(uid, 0, "plan task")
                            st.rerun()
                        if b2.button("Skip", key=f"task_skip_{t['id']}"):
                            update_task_status(int(t["id"]), "skipped")
                            st.rerun()

        cfg = plan.get("config") or {}
        if st.button("Recalculate from today"):
            completed = [t for t in tasks if t.status == "completed"]
            try:
                new_tasks = recalculate_plan(
                    completed, exam, int(plan["daily_minutes"]), lessons, mastery,
                    skip_weekdays=cfg.get("skip_weekdays") or [],
                    skip_dates=[_as_date(x) for x in cfg.get("skip_dates") or []],
                )
            except ValueError as e:
                st.error(str(e))
                return
            rows = [t.to_row() for t in completed] + [t.to_row() for t in new_tasks]
            if save_study_plan(uid, exam, int(plan["daily_minutes"]), rows, cfg, plan.get("title") or "Exam plan"):
                track_event(uid, "plan_recalculated", {"tasks": len(new_tasks)})
                st.rerun()
        st.divider()
        st.caption("Creating a new plan archives this one.")

    if not lessons:
        render_empty_state("No lessons to plan", "Create a course first.", icon="🗓️")
        return

    with st.form("plan_form"):
        title = st.text_input("Plan name", value="Exam plan")
        exam_date = st.date_input("Exam date", value=date.today() + timedelta(days=28), min_value=date.today())
        daily = st.slider("Minutes per day", 10, 240, 45, step=5)
        skip_days = st.multiselect("Days off", list(range(7)), format_func=lambda k: WEEKDAYS[k])
        skip_dates_raw = st.text_input("Other days off (YYYY-MM-DD, comma separated)")
        label = {l.key: f"{l.course_title} · {l.lesson_index + 1}. {l.lesson_title}" for l in lessons}
        skipped = st.multiselect("Leave out lessons", list(label), format_func=lambda k: label[k])
        go = st.form_submit_button("Build plan", type="primary")

    if go:
        skip_dates = _parse_dates(skip_dates_raw)
        skipped_pairs = [(k.rsplit(":", 1)[0], int(k.rsplit(":", 1)[1])) for k in skipped]
        try:
            tasks = generate_study_plan(exam_date, daily, lessons, mastery=mastery, skipped_lessons=skipped_pairs,
                                        skip_dates=skip_dates, skip_weekdays=skip_days)
        except ValueError as e:
            st.error(str(e))
            return
        if not tasks:
            st.warning("No study days fit before the exam with those days off.")
            return
        cfg = {"skip_weekdays": list(skip_days), "skip_dates": [d.isoformat() for d in skip_dates],
               "skipped_lessons": list(skipped)}
        if save_study_plan(uid, exam_date, daily, [t.to_row() for t in tasks], cfg, title or "Exam plan"):
            track_event(uid, "plan_created", {"tasks": len(tasks), "days": plan_summary(tasks)["days"]})
            st.rerun()
        else:
            st.error("Couldn't save the plan.")


# ============================================================
# EXAMS
# ============================================================
def _exam_choice_or_text(q: Dict[str, Any], prev: Any, key: str) -> str:
    options = list(q.get("options") or [])
    if options and q.get("question_type") not in ("fill_blank", "short_answer"):
        pick = st.radio("Answer", options, index=options.index(prev) if prev in options else None,
                        key=key, label_visibility="collapsed")
        return pick or ""
    return st.text_input("Answer", value=prev or "", key=key, label_visibility="collapsed")


def _exam_answer_input(q: Dict[str, Any], prev: Any, key: str) -> Any:
    qtype = q["question_type"]
    if qtype == "matching":
        pairs = q.get("matching_pairs") or []
        choices = [""] + sorted(p["right"] for p in pairs)
        prev = prev if isinstance(prev, dict) else {}
        picked = {}
        for j, p in enumerate(pairs):
            cur = prev.get(p["left"], "")
            pick = st.selectbox(p["left"], choices, index=choices.index(cur) if cur in choices else 0,
                                key=f"{key}_m{j}")
            if pick:
                picked[p["left"]] = pick
        return picked
    if qtype == "ordering":
        items = sorted(q.get("ordering_items") or [])
        return st.multiselect("Pick the items in order, first to last", items,
                              default=[x for x in (prev or []) if x in items], key=f"{key}_o")
    if qtype == "passage_based":
        with st.container(border=True):
            st.markdown(q.get("passage") or "")
        prev = prev if isinstance(prev, dict) else {}
        subs = {}
        for sq in q.get("sub_questions") or []:
            st.markdown(f"**{sq['question_text']}**")
            subs[sq["id"]] = _exam_choice_or_text(sq, prev.get(sq["id"]), f"{key}_{sq['id']}")
        return subs
    return _exam_choice_or_text(q, prev, key)


def _format_exam_answer(answer: Any) -> str:
    if isinstance(answer, dict):
        return "; ".join(f"{k} → {v}" for k, v in answer.items() if v) or "(no answer)"
    if isinstance(answer, list):
        return " → ".join(str(x) for x in answer) or "(no answer)"
    return str(answer) if answer else "(no answer)"


def _correct_exam_answer(q: Dict[str, Any]) -> str:
    if q["question_type"] == "matching":
        return "; ".join(f"{p['left']} → {p['right']}" for p in q.get("matching_pairs") or [])
    if q["question_type"] == "ordering":
        return " → ".join(q.get("ordering_items") or [])
    if q["question_type"] == "passage_based":
        return "; ".join(f"{sq['question_text']} {sq.get('correct_answer', '')}" for sq in q.get("sub_questions") or [])
    return q.get("correct_answer") or ""


def _render_new_exam_form(helpers: dict):
    uid = helpers["user"]["id"]
    df = load_courses_df(uid)
    if df.empty:
        st.info("Create a course first.")
        return
    ready = df[df["lessons_ready"] > 0]
    titles = {str(r["id"]): r["title"] for _, r in ready.iterrows()}
    if not titles:
        st.info("None of your courses has lessons yet.")
        return

    with st.form("new_exam_form"):
        course_id = st.selectbox("Course", list(titles), format_func=lambda k: titles[k])
        count = st.number_input("Questions", MIN_QUESTIONS, MAX_QUESTIONS, 20)
        minutes = st.number_input("Time limit (minutes)", MIN_MINUTES, MAX_MINUTES, 30)
        go = st.form_submit_button("Create exam", type="primary")
    if not go:
        return
    try:
        validate_exam_request(int(count), int(minutes))
    except AppError as e:
        render_error(e)
        return

    course_row = load_course(course_id, uid)
    try:
        questions = helpers["_run_ai_with_progress"](
            task_fn=lambda: generate_exam_questions(course_row, int(count), user_id=uid),
            ctx={"user": uid, "course": course_id, "count": int(count)},
            typical_range="30-90 seconds",
            est_seconds=60.0,
        )
    except AppError as e:
        track_error(uid, e.code, "exams", course_id=course_id)
        render_error(e)
        return
    exam_id = insert_exam(uid, course_id, f"{titles[course_id]} exam", len(questions), int(minutes), questions)
    if not exam_id:
        st.error("The exam was generated but couldn't be saved. Check the database connection.")
        return
    track_event(uid, "exam_created", {"course_id": course_id, "questions": len(questions)})
    st.session_state["exam_id"] = exam_id
    st.rerun()


def _submit_exam(uid: str, exam: Dict[str, Any], answers: Dict[int, Any]) -> None:
    try:
        check_can_submit(exam["status"])
    except AppError as e:
        render_error(e)
        return
    graded = grade_exam(exam["questions"], answers)
    if not save_exam_results(str(exam["id"]), graded):
        st.error("Couldn't save your answers. Check the database connection.")
        return
    track_funnel_step(uid, "exam_session", "exam_submitted")
    track_event(uid, "exam_completed", {"percentage": graded["percentage"], "grade": graded["grade"]})
    perfect = graded["total_points"] > 0 and graded["score"] == graded["total_points"]
    _award(uid, XP_REWARDS["exam_complete"] + (XP_REWARDS["exam_perfect"] if perfect else 0), "exam completed")
    st.rerun()


def _render_exam_results(uid: str, exam: Dict[str, Any]) -> None:
    render_metric_row([
        ("Score", f"{exam.get('score') or 0}/{exam.get('total_points') or 0}"),
        ("Percentage", f"{float(exam.get('percentage') or 0):.0f}%"),
        ("Grade", exam.get("grade") or "-"),
    ])
    for q in exam["questions"]:
        ok = q.get("is_correct")
        mark = "➖" if ok is None else ("✅" if ok else "❌")
        with st.expander(f"{mark} {int(q['question_index']) + 1}. {q['question_text']}"):
            st.caption(f"{q.get('points_earned') or 0} of {q.get('points') or 1} points")
            st.markdown(f"**Your answer:** {_format_exam_answer(q.get('user_answer'))}")
            st.markdown(f"**Correct answer:** {_correct_exam_answer(q)}")
            if q.get("explanation"):
                st.info(q["explanation"])

    fired = st.session_state.setdefault(f"exam_steps_{exam['id']}", set())
    if "results_viewed" not in fired:
        fired.add("results_viewed")
        track_funnel_step(uid, "exam_session", "results_viewed")


def _render_exam(helpers: dict, exam_id: str):
    uid = helpers["user"]["id"]
    exam = load_exam(exam_id, uid)
    if not exam:
        st.error("Couldn't load this exam.")
        st.session_state["exam_id"] = None
        return
    if st.button("← All exams"):
        st.session_state["exam_id"] = None
        st.rerun()

    questions = exam["questions"]
    st.markdown(f"### {exam['title']}")
    if exam["status"] == "completed":
        _render_exam_results(uid, exam)
        return

    if exam["status"] == "pending":
        st.caption(f"{len(questions)} questions · {exam['time_limit_minutes']} minutes")
        if st.button("Start exam", type="primary"):
            try:
                start_exam(exam["status"])
            except AppError as e:
                render_error(e)
                return
            mark_exam_started(exam_id)
            track_funnel_step(uid, "exam_session", "exam_started")
            st.rerun()
        return

    started = exam.get("started_at")
    if isinstance(started, datetime):
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        left = int(exam["time_limit_minutes"]) * 60 - int((_now() - started).total_seconds())
        if left > 0:
            st.caption(f"⏱️ About {math.ceil(left / 60)} minute(s) left")
        else:
            render_callout("Time is up", "Submit now to see your results.", kind="warning")

    answers = st.session_state.setdefault(f"exam_answers_{exam_id}", {})
    pos_key = f"exam_pos_{exam_id}"
    pos = min(int(st.session_state.get(pos_key, 0)), len(questions) - 1)
    fired = st.session_state.setdefault(f"exam_steps_{exam_id}", set())
    if pos == 0 and "first_question" not in fired:
        fired.add("first_question")
        track_funnel_step(uid, "exam_session", "first_question")
    if pos >= len(questions) // 2 and "halfway" not in fired:
        fired.add("halfway")
        track_funnel_step(uid, "exam_session", "halfway")
    if pos == len(questions) - 1 and "last_question" not in fired:
        fired.add("last_question")
        track_funnel_step(uid, "exam_session", "last_question")

    q = questions[pos]
    idx = int(q["question_index"])
    st.progress(int(pos * 100 / len(questions)), text=f"Question {pos + 1} of {len(questions)}")
    st.caption(f"{q['question_type'].replace('_', ' ')} · {q.get('points') or 1} point(s)")
    st.markdown(f"#### {q['question_text']}")
    answers[idx] = _exam_answer_input(q, answers.get(idx), f"exam_{exam_id}_{idx}")

    c1, c2, c3 = st.columns(3)
    if c1.button("Previous", disabled=pos == 0, use_container_width=True):
        st.session_state[pos_key] = pos - 1
        st.rerun()
    if c2.button("Next", disabled=pos >= len(questions) - 1, use_container_width=True):
        st.session_state[pos_key] = pos + 1
        st.rerun()
    answered = sum(1 for v in answers.values() if v)
    with c3.popover("Submit", use_container_width=True):
        st.caption(f"{answered} of {len(questions)} answered. You can't change answers after submitting.")
        if st.button("Submit exam", type="primary", key=f"exam_submit_{exam_id}"):
            _submit_exam(uid, exam, answers)


def _render_exams(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Exams", "Timed tests built from your courses, marked on the spot.")

    exam_id = st.session_state.get("exam_id")
    if exam_id:
        _render_exam(helpers, exam_id)
        return

    tab_mine, tab_new = st.tabs(["My exams", "New exam"])
    with tab_new:
        _render_new_exam_form(helpers)
    with tab_mine:
        exams = load_exams(uid)
        if not exams:
            render_empty_state("No exams yet", "Create one in the “New exam” tab.", icon="📝")
            return
        for e in exams:
            c1, c2, c3 = st.columns([4, 2, 1])
            c1.markdown(f"**{e['title']}**  \n{e.get('course_title') or ''}")
            if e["status"] == "completed":
                c2.markdown(f"{e.get('grade')} · {float(e.get('percentage') or 0):.0f}%")
            else:
                c2.caption(e["status"].replace("_", " "))
            label = {"completed": "Results", "in_progress": "Continue"}.get(e["status"], "Start")
            if c3.button(label, key=f"exam_open_{e['id']}"):
                st.session_state["exam_id"] = e["id"]
                st.rerun()


# ============================================================
# HOMEWORK HELP
# ============================================================
def _render_homework(helpers: dict):
    render_page_header("Homework help", "Hints that get you unstuck, and feedback on finished work.")
    tab_hints, tab_check = st.tabs(["Hints", "Check my work"])
    with tab_hints:
        _render_hint_helper(helpers)
    with tab_check:
        _render_checker(helpers)


def _render_hint_helper(helpers: dict):
    uid = helpers["user"]["id"]

    hw: Optional[HomeworkSession] = st.session_state.get("homework")
    if hw is None:
        with st.form("homework_form"):
            problem = st.text_area("Paste the problem", height=160)
            topic = st.text_input("Topic (optional)")
            go = st.form_submit_button("Start", type="primary")
        if go:
            if not (problem or "").strip():
                st.warning("Paste the problem first.")
                return
            hw = HomeworkSession(problem=problem.strip(), user_id=uid, topic=topic.strip())
            hw.id = save_homework_session(hw.to_row())
            st.session_state["homework"] = hw
            track_event(uid, "homework_started", {"topic": hw.topic})
            st.rerun()
        return

    with st.container(border=True):
        st.markdown(f"**Problem**  \n{hw.problem}")
        if hw.topic:
            st.caption(hw.topic)

    for h in hw.hints_given:
        info = hint_level_info(int(h["hint_level"]))
        with st.chat_message("assistant", avatar=info["icon"]):
            st.markdown(f"**{info['name']}**")
            st.markdown(h.get("content", ""))
            if h.get("worked_example"):
                st.markdown(h["worked_example"])

    if hw.status != "active":
        st.success("Session finished.")
        if st.button("New problem"):
            st.session_state["homework"] = None
            st.rerun()
        return

    progress = st.slider("How far have you got?", 0, 100, 0, step=10, key=f"hw_progress_{hw.id}")
    understood = st.checkbox("The last hint made sense", key=f"hw_understood_{hw.id}")
    rec = recommended_hint_level(hw.hints_used, progress, understood)
    encourage, msg = should_encourage_attempt(hw.hints_used, hw.seconds_since_last_hint())
    if encourage:
        render_callout("Give it a go first", msg, kind="info")

    levels = [k for k in HINT_LEVELS if k != 5]
    level = st.radio("Hint type", levels, index=levels.index(rec), horizontal=True,
                     format_func=lambda k: f"{hint_level_info(k)['icon']} {hint_level_info(k)['name']}")
    st.caption(hint_level_info(level)["description"])

    def _give(level: int):
        try:
            hint = generate_homework_hint(hw.problem, level, hw.hints_given, topic=hw.topic, user_id=uid)
        except AppError as e:
            render_error(e)
            return
        hw.record_hint(hint)
        save_homework_session(hw.to_row(), hw.id)
        track_event(uid, "hint_requested", {"level": level, "fallback": bool(hint.get("fallback"))})
        st.rerun()

    c1, c2, c3 = st.columns(3)
    if c1.button("Get hint", type="primary", use_container_width=True):
        _give(level)
    with c2.popover("Show answer", use_container_width=True):
        st.caption("This reveals the full solution.")
        if st.button("Yes, show me", key="hw_show_answer"):
            _give(5)
    if c3.button("I've solved it", use_container_width=True):
        hw.status = "completed"
        save_homework_session(hw.to_row(), hw.id)
        track_event(uid, "homework_completed", {"hints": hw.hints_used, "show_answer": hw.used_show_answer})
        st.rerun()


def _checker_image(upload) -> Optional[tuple]:
    if upload is None:
        return None
    ok, data, content_type, err = prepare_upload(upload.name, upload.getvalue(), MAX_UPLOAD_MB, purpose="photo")
    if not ok:
        st.warning(f"{upload.name}: {err}")
        return None
    return data, content_type


def _render_checker(helpers: dict):
    uid = helpers["user"]["id"]
    if not st.session_state.get("_checker_opened"):
        st.session_state["_checker_opened"] = True
        track_funnel_step(uid, "homework_checker", "checker_opened")

    result = st.session_state.get("homework_check")
    if result:
        _render_check_result(uid, result)
        return

    photo_types = ["png", "jpg", "jpeg", "heic", "heif"]
    with st.form("checker_form"):
        task = st.text_area("The task", height=120, max_chars=MAX_NOTES_CHARS)
        task_photo = st.file_uploader("…or a photo of the task", type=photo_types)
        answer = st.text_area("Your answer", height=160, max_chars=MAX_NOTES_CHARS)
        answer_photo = st.file_uploader("…or a photo of your answer", type=photo_types)
        go = st.form_submit_button("Check my work", type="primary")
    if not go:
        return

    task_image = _checker_image(task_photo)
    answer_image = _checker_image(answer_photo)
    if (task_photo and task_image is None) or (answer_photo and answer_image is None):
        return
    if (task or "").strip() or task_image:
        track_funnel_step(uid, "homework_checker", "task_uploaded")
    if (answer or "").strip() or answer_image:
        track_funnel_step(uid, "homework_checker", "answer_uploaded")

    track_funnel_step(uid, "homework_checker", "check_submitted")
    try:
        result = helpers["_run_ai_with_progress"](
            task_fn=lambda: check_homework(task, answer, task_image, answer_image, user_id=uid),
            ctx={"user": uid, "images": int(bool(task_image)) + int(bool(answer_image))},
            typical_range="15-40 seconds",
            est_seconds=25.0,
        )
    except AppError as e:
        track_error(uid, e.code, "homework")
        render_error(e)
        return
    result["id"] = save_homework_check(uid, result)
    track_funnel_step(uid, "homework_checker", "feedback_received")
    track_event(uid, "homework_checked", {"grade": result["grade"], "mode": result["input_mode"]})
    st.session_state["homework_check"] = result
    st.session_state["_checker_reviewed"] = False
    st.rerun()


def _render_check_result(uid: str, result: Dict[str, Any]):
    fb = result["feedback"]
    render_metric_row([
        ("Grade", fb.get("grade_estimate") or f"{result['grade']}/100"),
        ("Level", fb.get("grade_level", "").replace("_", " ").capitalize()),
        ("Subject", result.get("subject") or "general"),
    ])
    if fb.get("summary"):
        st.markdown(fb["summary"])
    if fb.get("correct_points"):
        st.markdown("**What you got right**")
        for p in fb["correct_points"]:
            st.markdown(f"- ✅ **{p['title']}** {p['description']}")
    if fb.get("improvement_points"):
        st.markdown("**What to fix**")
        for p in fb["improvement_points"]:
            icon = "🔴" if p.get("severity") == "major" else "🟠"
            st.markdown(f"- {icon} **{p['title']}** {p['description']}")
    if fb.get("suggestions"):
        st.markdown("**Next steps**")
        for s in fb["suggestions"]:
            st.markdown(f"- {s}")
    if fb.get("encouragement"):
        render_callout("Keep going", fb["encouragement"], kind="info")

    if not st.session_state.get("_checker_reviewed"):
        st.session_state["_checker_reviewed"] = True
        track_funnel_step(uid, "homework_checker", "feedback_reviewed")

    if st.button("Check another answer"):
        st.session_state["homework_check"] = None
        st.rerun()

    history = load_homework_checks(uid)
    if len(history) > 1:
        with st.expander("Earlier checks"):
            df = pd.DataFrame(history)[["created_at", "subject", "topic", "grade", "input_mode"]]
            st.dataframe(df, width='stretch', hide_index=True)


# ============================================================
# PROGRESS
# ============================================================
def _render_progress(helpers: dict):
    uid = helpers["user"]["id"]
    render_page_header("Progress", "Mastery, streaks and where to focus next.")

    g = load_gamification(uid)
    xp = xp_progress(int(g.get("total_xp") or 0))
    cur = int(g.get("current_streak") or 0)
    nm = next_milestone(cur)
    render_metric_row([
        ("Level", f"{xp['level']} · {xp['title']}"),
        ("Current streak", f"{cur} days"),
        ("Longest streak", f"{int(g.get('longest_streak') or 0)} days"),
        ("Next milestone", f"{nm['label']} in {nm['days_remaining']}d" if nm else "All done"),
    ])

    st.subheader("Achievements")
    earned = load_user_achievements(uid)
    stats = {**load_achievement_stats(uid), "current_streak": cur,
             "longest_streak": int(g.get("longest_streak") or 0), "level": xp["level"]}
    summary = achievement_summary(earned)
    render_metric_row([("Unlocked", f"{summary['earned']} of {summary['total']}")] + [
        (CATEGORY_LABELS[c], f"{v['earned']}/{v['total']}") for c, v in summary["by_category"].items()
    ])
    for p in next_achievements(stats, earned):
        a = p["achievement"]
        st.progress(p["percent"], text=f"{a.icon} {a.name} · {a.description} ({p['current']}/{p['target']})")
    with st.expander("All achievements"):
        for p in all_progress(stats, earned):
            a = p["achievement"]
            got = a.code in earned
            st.markdown(f"{'✅' if got else '⬜'} {a.icon} **{a.name}** · {a.description} · +{a.xp_reward} XP")

    rs = session_stats(load_review_sessions(uid))
    ps = practice_stats(load_practice_sessions(uid))
    st.subheader("Activity")
    render_metric_row([
        ("Review sessions", rs["total_sessions"]),
        ("Cards reviewed", rs["total_cards"]),
        ("Review accuracy", f"{rs['average_accuracy']}%"),
        ("Practice questions", ps["total_questions"]),
        ("Practice accuracy", f"{ps['overall_accuracy']}%"),
    ])

    st.subheader("Lessons")
    prog = load_lesson_progress_df(uid)
    if prog.empty:
        st.caption("No lessons completed yet.")
    else:
        view = prog.copy()
        view["level"] = view["mastery_level"].apply(lambda x: LEVEL_LABELS[mastery_level(float(x or 0))])
        view["lesson"] = view["lesson_index"].astype(int) + 1
        st.dataframe(
            view[["course_title", "lesson", "completed", "level", "mastery_level", "questions_answered",
                  "questions_correct", "last_studied_at"]],
            width='stretch',
            hide_index=True,
            column_config={"mastery_level": st.column_config.ProgressColumn("mastery", min_value=0, max_value=1)},
        )

    st.subheader("Concepts")
    records = load_concept_mastery(uid)
    if records:
        names = load_concepts(list(records))
        df = pd.DataFrame([{
            "concept": names.get(cid, cid),
            "mastery": m.mastery_level,
            "peak": m.peak_mastery,
            "seen": m.total_exposures,
            "fading": is_decayed(m),
        } for cid, m in records.items()]).sort_values("mastery")
        st.dataframe(df, width='stretch', hide_index=True,
                     column_config={"mastery": st.column_config.ProgressColumn("mastery", min_value=0, max_value=1)})

    st.subheader("Knowledge gaps")
    gaps = load_open_gaps(uid)
    if not gaps:
        st.caption("No open gaps. Nice work.")
    names = load_concepts([x["concept_id"] for x in gaps])
    for gp in gaps:
        c1, c2 = st.columns([5, 1])
        c1.markdown(f"**{names.get(gp['concept_id'], gp['concept_id'])}** · "
                    f"{gp['gap_type'].replace('_', ' ')} · {gp['severity']}")
        if c2.button("Resolved", key=f"resolve_{gp['concept_id']}"):
            resolve_gap(uid, gp["concept_id"])
            st.rerun()


LEARNER_PAGES = {
    "Dashboard": _render_dashboard,
    "Courses": _render_courses,
    "Review": _render_review,
    "Practice": _render_practice,
    "Study Plan": _render_study_plan,
    "Exams": _render_exams,
    "Homework Help": _render_homework,
    "Progress": _render_progress,
}


def render_learner_page(nav_label: str, helpers: dict):
    page = LEARNER_PAGES.get(nav_label, _render_dashboard)
    page(helpers)
