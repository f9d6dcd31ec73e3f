import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import pandas as pd
import streamlit as st
from sqlalchemy import create_engine, text

from adaptive import PerformanceState
from config import AI_RATE_LIMIT, AI_RATE_WINDOW_SECONDS, _safe_secret
from mastery import ConceptMastery
from srs import ReviewCard
from study_plan import lesson_key

LOGGER = logging.getLogger("notesnap")

# ============================================================
#  ROBUST DATABASE LAYER
# ============================================================

def get_db_driver_type():
    try:
        import psycopg  # noqa: F401
        return "psycopg"
    except ImportError:
        try:
            import psycopg2  # noqa: F401
            return "psycopg2"
        except ImportError:
            return None


def _normalize_db_url(db_url: str) -> str:
    u = (db_url or "").strip()
    if not u:
        return ""
    if u.startswith("postgres://"):
        u = u.replace("postgres://", "postgresql://", 1)

    driver = get_db_driver_type()
    if driver and u.startswith("postgresql://"):
        u = u.replace("postgresql://", f"postgresql+{driver}://", 1)
    return u


@st.cache_resource
def _cached_engine(url: str):
    return create_engine(url, pool_pre_ping=True)


def get_db_engine():
    url = _normalize_db_url(_safe_secret("DATABASE_URL", "") or "")
    if not url or not get_db_driver_type():
        return None
    try:
        return _cached_engine(url)
    except Exception as e:
        st.session_state["db_last_error"] = f"DB Engine Error: {type(e).__name__}: {e}"
        LOGGER.error("DB engine creation failed", extra={"ctx": {"component": "db", "error": type(e).__name__}})
        return None


def db_ready() -> bool:
    return get_db_engine() is not None


def _fp() -> str:
    return (_safe_secret("DATABASE_URL", "") or "")[:40]


def _record_error(op: str, e: Exception) -> None:
    st.session_state["db_last_error"] = f"{op} Error: {type(e).__name__}: {e}"
    LOGGER.error(f"{op} failed", extra={"ctx": {"component": "db", "op": op, "error": type(e).__name__}})


def _split_sql_statements(sql_blob: str) -> List[str]:
    """Split a DDL blob on semicolons that sit outside quotes.

    Enough for the blobs below (no $$ bodies).
    """
    out: List[str] = []
    buf: List[str] = []
    in_sq = in_dq = esc = False

    for ch in sql_blob or "":
        if esc:
            buf.append(ch)
            esc = False
            continue
        if ch == "\\" and in_sq:
            esc = True
        elif ch == "'" and not in_dq:
            in_sq = not in_sq
        elif ch == '"' and not in_sq:
            in_dq = not in_dq
        elif ch == ";" and not in_sq and not in_dq:
            stmt = "".join(buf).strip()
            if stmt:
                out.append(stmt)
            buf = []
            continue
        buf.append(ch)

    tail = "".join(buf).strip()
    if tail:
        out.append(tail)
    return out


def _exec_sql_many(conn, sql_blob: str):
    for stmt in _split_sql_statements(sql_blob):
        conn.execute(text(stmt))


# ============================================================
# DATABASE DDLs
#   Keep these free of $$ blocks; _split_sql_statements is deliberately simple.
# ============================================================
COURSES_DDL = """
create table if not exists public.courses (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  title text not null,
  source_type text not null default 'text',
  extracted_content text,
  generated_course jsonb not null default '{}'::jsonb,
  generation_status text not null default 'generating'
    check (generation_status in ('generating','partial','complete','failed')),
  generation_error text,
  lessons_ready int not null default 0,
  total_lessons int not null default 0,
  document_summary text,
  lesson_outline jsonb,
  intensity_mode text not null default 'standard',
  image_paths jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);
create index if not exists idx_courses_user on public.courses (user_id, created_at desc);

create table if not exists public.lesson_progress (
  user_id text not null,
  course_id uuid not null references public.courses(id) on delete cascade,
  lesson_index int not null,
  completed boolean not null default false,
  mastery_level double precision not null default 0,
  questions_answered int not null default 0,
  questions_correct int not null default 0,
  last_studied_at timestamptz,
  primary key (user_id, course_id, lesson_index)
);
""".strip()

SRS_DDL = """
create table if not exists public.review_cards (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  course_id uuid not null references public.courses(id) on delete cascade,
  lesson_index int not null,
  step_index int not null,
  card_type text not null default 'flashcard',
  front text not null,
  back text not null,
  concept_ids jsonb not null default '[]'::jsonb,
  state text not null default 'new' check (state in ('new','learning','review','relearning')),
  stability double precision not null default 0,
  difficulty double precision not null default 0,
  reps int not null default 0,
  lapses int not null default 0,
  scheduled_days int not null default 0,
  elapsed_days int not null default 0,
  due_date timestamptz not null default now(),
  last_review timestamptz,
  created_at timestamptz not null default now(),
  unique (user_id, course_id, lesson_index, step_index)
);
create index if not exists idx_review_cards_due on public.review_cards (user_id, due_date);

create table if not exists public.review_logs (
  id bigserial primary key,
  card_id uuid not null references public.review_cards(id) on delete cascade,
  user_id text not null,
  rating int not null check (rating between 1 and 4),
  state_before text,
  state_after text,
  stability double precision,
  difficulty double precision,
  elapsed_days int,
  scheduled_days int,
  reviewed_at timestamptz not null default now()
);
create index if not exists idx_review_logs_user_time on public.review_logs (user_id, reviewed_at desc);

create table if not exists public.srs_settings (
  user_id text primary key,
  max_new_cards_per_day int not null default 20,
  max_reviews_per_day int not null default 100,
  interleave_reviews boolean not null default true,
  updated_at timestamptz not null default now()
);

create table if not exists public.review_sessions (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  session_type text not null default 'daily',
  status text not null default 'in_progress',
  total_cards int not null default 0,
  cards_completed int not null default 0,
  cards_correct int not null default 0,
  average_rating double precision,
  total_time_seconds int,
  gaps_addressed jsonb not null default '[]'::jsonb,
  started_at timestamptz not null default now(),
  completed_at timestamptz
);
""".strip()

LEARNING_DDL = """
create table if not exists public.concepts (
  id text primary key,
  course_id uuid references public.courses(id) on delete cascade,
  name text not null,
  created_at timestamptz not null default now()
);

alter table public.concepts add column if not exists description text;
alter table public.concepts add column if not exists subject text;
alter table public.concepts add column if not exists topic text;
alter table public.concepts add column if not exists difficulty int;

create table if not exists public.content_concepts (
  id bigserial primary key,
  course_id uuid not null references public.courses(id) on delete cascade,
  lesson_index int not null,
  step_index int,
  concept_id text not null,
  relationship text not null check (relationship in ('teaches','requires','reinforces'))
);
create index if not exists idx_content_concepts_course on public.content_concepts (course_id, lesson_index);

create table if not exists public.concept_prerequisites (
  concept_id text not null,
  prerequisite_id text not null,
  primary key (concept_id, prerequisite_id)
);

create table if not exists public.user_concept_mastery (
  user_id text not null,
  concept_id text not null,
  mastery_level double precision not null default 0,
  confidence_score double precision not null default 0,
  peak_mastery double precision not null default 0,
  total_exposures int not null default 0,
  successful_recalls int not null default 0,
  failed_recalls int not null default 0,
  stability double precision not null default 1,
  next_review_date timestamptz,
  last_reviewed_at timestamptz,
  primary key (user_id, concept_id)
);

create table if not exists public.user_performance_state (
  user_id text not null,
  course_id text not null default '',
  session_difficulty_level double precision not null default 2.5,
  target_difficulty double precision not null default 3.0,
  rolling_accuracy double precision not null default 0.5,
  rolling_response_time_ms int not null default 0,
  estimated_ability double precision not null default 2.5,
  correct_streak int not null default 0,
  wrong_streak int not null default 0,
  last_cognitive_level text,
  questions_answered int not null default 0,
  difficulty_floor double precision not null default 1.0,
  updated_at timestamptz not null default now(),
  primary key (user_id, course_id)
);

create table if not exists public.question_difficulty (
  question_id text primary key,
  times_shown int not null default 0,
  times_correct int not null default 0,
  empirical_difficulty double precision,
  avg_response_time_ms int,
  updated_at timestamptz not null default now()
);

create table if not exists public.knowledge_gaps (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  concept_id text not null,
  gap_type text not null,
  severity text not null,
  confidence double precision not null,
  blocked_concepts jsonb not null default '[]'::jsonb,
  evidence jsonb not null default '{}'::jsonb,
  resolved boolean not null default false,
  detected_at timestamptz not null default now(),
  resolved_at timestamptz
);
create unique index if not exists uq_knowledge_gaps_open
  on public.knowledge_gaps (user_id, concept_id) where resolved = false;
""".strip()

PRACTICE_DDL = """
create table if not exists public.practice_sessions (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  course_id uuid references public.courses(id) on delete set null,
  session_type text not null,
  status text not null default 'active' check (status in ('active','paused','completed','abandoned')),
  question_count int not null default 0,
  current_question_index int not null default 0,
  questions_answered int not null default 0,
  questions_correct int not null default 0,
  accuracy double precision,
  avg_response_time_ms int,
  total_time_seconds int,
  concepts_practiced jsonb,
  gaps_identified jsonb,
  started_at timestamptz not null default now(),
  completed_at timestamptz
);

create table if not exists public.practice_session_questions (
  id bigserial primary key,
  session_id uuid not null references public.practice_sessions(id) on delete cascade,
  question_index int not null,
  question jsonb not null,
  concept_id text,
  user_answer text,
  is_correct boolean,
  response_time_ms int,
  answered_at timestamptz,
  unique (session_id, question_index)
);
""".strip()

PLAN_DDL = """
create table if not exists public.study_plans (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  title text not null default 'Exam plan',
  exam_date date not null,
  daily_minutes int not null,
  status text not null default 'active' check (status in ('active','archived')),
  config jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now()
);

create table if not exists public.study_plan_tasks (
  id bigserial primary key,
  plan_id uuid not null references public.study_plans(id) on delete cascade,
  scheduled_date date not null,
  task_type text not null,
  course_id text,
  lesson_index int,
  lesson_title text,
  description text not null,
  estimated_minutes int not null,
  status text not null default 'pending' check (status in ('pending','completed','skipped')),
  sort_order int not null default 0,
  metadata jsonb not null default '{}'::jsonb,
  completed_at timestamptz
);
create index if not exists idx_plan_tasks_plan_date on public.study_plan_tasks (plan_id, scheduled_date);
""".strip()

EXAM_DDL = """
create table if not exists public.exams (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  course_id uuid references public.courses(id) on delete cascade,
  title text not null,
  question_count int not null,
  time_limit_minutes int not null,
  status text not null default 'pending' check (status in ('pending','in_progress','completed')),
  score int,
  total_points int not null default 0,
  percentage double precision,
  grade text,
  started_at timestamptz,
  completed_at timestamptz,
  created_at timestamptz not null default now()
);
create index if not exists idx_exams_user on public.exams (user_id, created_at desc);

create table if not exists public.exam_questions (
  id bigserial primary key,
  exam_id uuid not null references public.exams(id) on delete cascade,
  question_index int not null,
  lesson_index int,
  lesson_title text,
  question_type text not null,
  question_text text not null,
  options jsonb not null default '[]'::jsonb,
  correct_answer text not null default '',
  acceptable_answers jsonb,
  explanation text,
  points int not null default 1,
  passage text,
  matching_pairs jsonb,
  ordering_items jsonb,
  sub_questions jsonb,
  user_answer jsonb,
  is_correct boolean,
  points_earned int,
  unique (exam_id, question_index)
);
""".strip()

ENGAGEMENT_DDL = """
create table if not exists public.homework_sessions (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  problem text not null,
  topic text,
  status text not null default 'active',
  hints_given jsonb not null default '[]'::jsonb,
  hint_level_history jsonb not null default '[]'::jsonb,
  used_show_answer boolean not null default false,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists public.homework_checks (
  id uuid primary key default gen_random_uuid(),
  user_id text not null,
  input_mode text not null default 'text',
  subject text,
  topic text,
  task_text text,
  answer_text text,
  feedback jsonb not null default '{}'::jsonb,
  grade int,
  created_at timestamptz not null default now()
);

create table if not exists public.user_achievements (
  user_id text not null,
  achievement_code text not null,
  earned_at timestamptz not null default now(),
  primary key (user_id, achievement_code)
);

create table if not exists public.gamification (
  user_id text primary key,
  total_xp int not null default 0,
  current_streak int not null default 0,
  longest_streak int not null default 0,
  last_activity_date date,
  updated_at timestamptz not null default now()
);

create table if not exists public.analytics_events (
  id bigserial primary key,
  user_id text,
  event_name text not null,
  event_category text not null,
  page_path text,
  properties jsonb not null default '{}'::jsonb,
  event_time timestamptz not null default now()
);
create index if not exists idx_analytics_events_time on public.analytics_events (event_time desc);

create table if not exists public.rate_limits (
  user_id text primary key,
  request_count int not null default 0,
  window_start_time timestamptz not null default now()
);
""".strip()

SCHEMA_BLOBS = {
    "courses": COURSES_DDL,
    "srs": SRS_DDL,
    "learning": LEARNING_DDL,
    "practice": PRACTICE_DDL,
    "plan": PLAN_DDL,
    "exams": EXAM_DDL,
    "engagement": ENGAGEMENT_DDL,
}


@st.cache_resource
def _ensure_tables_cached(_fp: str, name: str) -> None:
    eng = get_db_engine()
    if eng is None:
        raise RuntimeError("Database engine not configured.")
    with eng.begin() as conn:
        _exec_sql_many(conn, SCHEMA_BLOBS[name])
    LOGGER.info("Tables ready", extra={"ctx": {"component": "db", "schema": name}})


def ensure_tables(name: str) -> bool:
    flag = f"tables_ready_{name}"
    if st.session_state.get(flag, False):
        return True
    try:
        _ensure_tables_cached(_fp(), name)
        st.session_state[flag] = True
        return True
    except Exception as e:
        _record_error(f"{name.title()} Table", e)
        st.session_state[flag] = False
        return False


def ensure_all_tables() -> bool:
    # courses first: other blobs reference it
    return all(ensure_tables(name) for name in SCHEMA_BLOBS)


def _write(op: str, schema: str, query: str, params: Dict[str, Any]) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables(schema):
        return False
    try:
        with eng.begin() as conn:
            conn.execute(text(query), params)
        return True
    except Exception as e:
        _record_error(op, e)
        return False


def _fetch_one(op: str, schema: str, query: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    eng = get_db_engine()
    if eng is None or not ensure_tables(schema):
        return None
    try:
        with eng.connect() as conn:
            row = conn.execute(text(query), params).mappings().first()
        return dict(row) if row else None
    except Exception as e:
        _record_error(op, e)
        return None


def _fetch_all(op: str, schema: str, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
    eng = get_db_engine()
    if eng is None or not ensure_tables(schema):
        return []
    try:
        with eng.connect() as conn:
            rows = conn.execute(text(query), params).mappings().all()
        return [dict(r) for r in rows]
    except Exception as e:
        _record_error(op, e)
        return []


def _json(v: Any) -> str:
    return json.dumps(v if v is not None else None, default=str)


# ============================================================
# COURSES
# ============================================================
def insert_course(user_id: str, title: str, source_type: str, extracted_content: str,
                  generated_course: Dict[str, Any], generation_status: str, lessons_ready: int,
                  total_lessons: int, document_summary: str = "", lesson_outline: Optional[list] = None,
                  intensity_mode: str = "standard", image_paths: Optional[List[str]] = None) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("courses"):
        return None
    try:
        with eng.begin() as conn:
            row = conn.execute(text("""
                insert into public.courses
                  (user_id, title, source_type, extracted_content, generated_course, generation_status,
                   lessons_ready, total_lessons, document_summary, lesson_outline, intensity_mode, image_paths)
                values
                  (:user_id, :title, :source_type, :extracted_content, CAST(:generated_course AS jsonb),
                   :generation_status, :lessons_ready, :total_lessons, :document_summary,
                   CAST(:lesson_outline AS jsonb), :intensity_mode, CAST(:image_paths AS jsonb))
                returning id
            """), {
                "user_id": user_id,
                "title": (title or "Untitled course").strip()[:300],
                "source_type": source_type,
                "extracted_content": (extracted_content or "")[:200000] or None,
                "generated_course": _json(generated_course or {}),
                "generation_status": generation_status,
                "lessons_ready": int(lessons_ready),
                "total_lessons": int(total_lessons),
                "document_summary": document_summary or None,
                "lesson_outline": _json(lesson_outline or []),
                "intensity_mode": intensity_mode,
                "image_paths": _json(image_paths or []),
            }).mappings().first()
        load_courses_df_cached.clear()
        return str(row["id"]) if row else None
    except Exception as e:
        _record_error("Insert Course", e)
        return None


def update_course_generation(course_id: str, generated_course: Optional[Dict[str, Any]], status: str,
                             lessons_ready: Optional[int] = None, total_lessons: Optional[int] = None,
                             lesson_outline: Optional[list] = None, error_code: Optional[str] = None) -> bool:
    ok = _write("Update Course", "courses", """
        update public.courses set
          generated_course = coalesce(CAST(:generated_course AS jsonb), generated_course),
          generation_status = :status,
          lessons_ready = coalesce(:lessons_ready, lessons_ready),
          total_lessons = coalesce(:total_lessons, total_lessons),
          lesson_outline = coalesce(CAST(:lesson_outline AS jsonb), lesson_outline),
          generation_error = :error_code,
          updated_at = now()
        where id = :id
    """, {
        "id": course_id,
        "generated_course": _json(generated_course) if generated_course is not None else None,
        "status": status,
        "lessons_ready": lessons_ready,
        "total_lessons": total_lessons,
        "lesson_outline": _json(lesson_outline) if lesson_outline is not None else None,
        "error_code": error_code,
    })
    if ok:
        load_courses_df_cached.clear()
    return ok


@st.cache_data(ttl=20)
def load_courses_df_cached(_fp: str, user_id: str, limit: int = 200) -> pd.DataFrame:
    eng = get_db_engine()
    if eng is None or not ensure_tables("courses"):
        return pd.DataFrame()
    with eng.connect() as conn:
        df = pd.read_sql(
            text("""
                select id, title, source_type, generation_status, lessons_ready, total_lessons,
                       intensity_mode, created_at, updated_at
                from public.courses
                where user_id = :user_id
                order by created_at desc
                limit :limit
            """),
            conn,
            params={"user_id": user_id, "limit": int(limit)},
        )
    return df


def load_courses_df(user_id: str, limit: int = 200) -> pd.DataFrame:
    try:
        return load_courses_df_cached(_fp(), user_id, limit=limit)
    except Exception as e:
        _record_error("Load Courses", e)
        return pd.DataFrame()


def load_course(course_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    q = "select * from public.courses where id = :id"
    params: Dict[str, Any] = {"id": course_id}
    if user_id:
        q += " and user_id = :user_id"
        params["user_id"] = user_id
    return _fetch_one("Load Course", "courses", q, params) or {}


def delete_course(course_id: str, user_id: str) -> bool:
    ok = _write("Delete Course", "courses",
                "delete from public.courses where id = :id and user_id = :user_id",
                {"id": course_id, "user_id": user_id})
    if ok:
        load_courses_df_cached.clear()
    return ok


# ============================================================
# LESSON PROGRESS
# ============================================================
def upsert_lesson_progress(user_id: str, course_id: str, lesson_index: int, completed: bool,
                           questions_answered: int, questions_correct: int, mastery_level: float) -> bool:
    ok = _write("Save Lesson Progress", "courses", """
        insert into public.lesson_progress
          (user_id, course_id, lesson_index, completed, mastery_level,
           questions_answered, questions_correct, last_studied_at)
        values (:user_id, :course_id, :lesson_index, :completed, :mastery_level,
                :questions_answered, :questions_correct, now())
        on conflict (user_id, course_id, lesson_index) do update set
          completed = lesson_progress.completed or excluded.completed,
          mastery_level = excluded.mastery_level,
          questions_answered = excluded.questions_answered,
          questions_correct = excluded.questions_correct,
          last_studied_at = now()
    """, {
        "user_id": user_id, "course_id": course_id, "lesson_index": int(lesson_index),
        "completed": bool(completed), "mastery_level": float(mastery_level),
        "questions_answered": int(questions_answered), "questions_correct": int(questions_correct),
    })
    if ok:
        load_lesson_progress_df_cached.clear()
    return ok


@st.cache_data(ttl=20)
def load_lesson_progress_df_cached(_fp: str, user_id: str) -> pd.DataFrame:
    eng = get_db_engine()
    if eng is None or not ensure_tables("courses"):
        return pd.DataFrame()
    with eng.connect() as conn:
        return pd.read_sql(
            text("""
                select lp.course_id::text as course_id, lp.lesson_index, lp.completed, lp.mastery_level,
                       lp.questions_answered, lp.questions_correct, lp.last_studied_at, c.title as course_title
                from public.lesson_progress lp
                join public.courses c on c.id = lp.course_id
                where lp.user_id = :user_id
            """),
            conn,
            params={"user_id": user_id},
        )


def load_lesson_progress_df(user_id: str) -> pd.DataFrame:
    try:
        return load_lesson_progress_df_cached(_fp(), user_id)
    except Exception as e:
        _record_error("Load Lesson Progress", e)
        return pd.DataFrame()


# ============================================================
# SPACED REPETITION
# ============================================================
def insert_review_cards(user_id: str, cards: List[ReviewCard]) -> int:
    eng = get_db_engine()
    if eng is None or not cards or not ensure_tables("srs"):
        return 0
    query = """
        insert into public.review_cards
          (user_id, course_id, lesson_index, step_index, card_type, front, back, concept_ids, due_date)
        values (:user_id, :course_id, :lesson_index, :step_index, :card_type, :front, :back,
                CAST(:concept_ids AS jsonb), now())
        on conflict (user_id, course_id, lesson_index, step_index) do nothing
    """
    try:
        inserted = 0
        with eng.begin() as conn:
            for c in cards:
                res = conn.execute(text(query), {
                    "user_id": user_id, "course_id": c.course_id, "lesson_index": c.lesson_index,
                    "step_index": c.step_index, "card_type": c.card_type, "front": c.front,
                    "back": c.back, "concept_ids": _json(c.concept_ids),
                })
                inserted += int(getattr(res, "rowcount", 0) or 0)
        LOGGER.info("Review cards created", extra={"ctx": {"component": "srs", "count": inserted}})
        return inserted
    except Exception as e:
        _record_error("Insert Review Cards", e)
        return 0


def load_review_cards(user_id: str, due_before: Optional[datetime] = None,
                      state: Optional[str] = None, course_id: Optional[str] = None,
                      concept_ids: Optional[List[str]] = None, limit: int = 500) -> List[ReviewCard]:
    clauses = ["user_id = :user_id"]
    params: Dict[str, Any] = {"user_id": user_id, "limit": int(limit)}
    if due_before is not None:
        clauses.append("due_date <= :due_before")
        params["due_before"] = due_before
    if state == "not_new":
        clauses.append("state <> 'new'")
    elif state:
        clauses.append("state = :state")
        params["state"] = state
    if course_id:
        clauses.append("course_id = :course_id")
        params["course_id"] = course_id
    if concept_ids:
        clauses.append("concept_ids ?| CAST(:concept_ids AS text[])")
        params["concept_ids"] = list(concept_ids)
    order = "created_at asc" if state == "new" else "due_date asc"
    rows = _fetch_all("Load Review Cards", "srs", f"""
        select * from public.review_cards
        where {' and '.join(clauses)}
        order by {order}
        limit :limit
    """, params)
    return [ReviewCard.from_row(r) for r in rows]


def save_review(card: ReviewCard, log_row: Dict[str, Any]) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables("srs"):
        return False
    try:
        with eng.begin() as conn:
            conn.execute(text("""
                update public.review_cards set
                  state = :state, stability = :stability, difficulty = :difficulty, reps = :reps,
                  lapses = :lapses, scheduled_days = :scheduled_days, elapsed_days = :elapsed_days,
                  due_date = :due_date, last_review = :last_review
                where id = :id and user_id = :user_id
            """), card.to_row())
            conn.execute(text("""
                insert into public.review_logs
                  (card_id, user_id, rating, state_before, state_after, stability, difficulty,
                   elapsed_days, scheduled_days, reviewed_at)
                values (:card_id, :user_id, :rating, :state_before, :state_after, :stability,
                        :difficulty, :elapsed_days, :scheduled_days, :reviewed_at)
            """), log_row)
        return True
    except Exception as e:
        _record_error("Save Review", e)
        return False


def count_reviewed_today(user_id: str, tz_name: str = "UTC") -> Dict[str, int]:
    start = datetime.now(ZoneInfo(tz_name)).replace(hour=0, minute=0, second=0, microsecond=0)
    row = _fetch_one("Count Reviews", "srs", """
        select count(*) as reviews,
               count(*) filter (where state_before = 'new') as new_cards
        from public.review_logs
        where user_id = :user_id and reviewed_at >= :start
    """, {"user_id": user_id, "start": start.astimezone(timezone.utc)})
    row = row or {}
    return {"reviews": int(row.get("reviews") or 0), "new_cards": int(row.get("new_cards") or 0)}


def load_srs_settings(user_id: str) -> Dict[str, Any]:
    row = _fetch_one("Load SRS Settings", "srs",
                     "select * from public.srs_settings where user_id = :user_id", {"user_id": user_id})
    return row or {"max_new_cards_per_day": 20, "max_reviews_per_day": 100, "interleave_reviews": True}


def save_srs_settings(user_id: str, max_new: int, max_reviews: int, interleave: bool) -> bool:
    return _write("Save SRS Settings", "srs", """
        insert into public.srs_settings (user_id, max_new_cards_per_day, max_reviews_per_day, interleave_reviews)
        values (:user_id, :max_new, :max_reviews, :interleave)
        on conflict (user_id) do update set
          max_new_cards_per_day = excluded.max_new_cards_per_day,
          max_reviews_per_day = excluded.max_reviews_per_day,
          interleave_reviews = excluded.interleave_reviews,
          updated_at = now()
    """, {"user_id": user_id, "max_new": int(max_new), "max_reviews": int(max_reviews), "interleave": bool(interleave)})


def insert_review_session(user_id: str, session_type: str, total_cards: int) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("srs"):
        return None
    try:
        with eng.begin() as conn:
            row = conn.execute(text("""
                insert into public.review_sessions (user_id, session_type, total_cards)
                values (:user_id, :session_type, :total_cards)
                returning id
            """), {"user_id": user_id, "session_type": session_type, "total_cards": int(total_cards)}).mappings().first()
        return str(row["id"]) if row else None
    except Exception as e:
        _record_error("Insert Review Session", e)
        return None


def complete_review_session(session_id: str, cards_completed: int, cards_correct: int,
                            summary: Dict[str, Any]) -> bool:
    return _write("Complete Review Session", "srs", """
        update public.review_sessions set
          status = 'completed', cards_completed = :cards_completed, cards_correct = :cards_correct,
          average_rating = :average_rating, total_time_seconds = :total_time_seconds,
          gaps_addressed = CAST(:gaps_addressed AS jsonb), completed_at = :completed_at
        where id = :id
    """, {
        "id": session_id, "cards_completed": int(cards_completed), "cards_correct": int(cards_correct),
        "average_rating": summary.get("average_rating"), "total_time_seconds": summary.get("total_time_seconds"),
        "gaps_addressed": _json(summary.get("gaps_addressed") or []), "completed_at": summary.get("completed_at"),
    })


def load_review_sessions(user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    return _fetch_all("Load Review Sessions", "srs", """
        select * from public.review_sessions
        where user_id = :user_id and status = 'completed'
        order by completed_at desc
        limit :limit
    """, {"user_id": user_id, "limit": int(limit)})


# ============================================================
# MASTERY / ADAPTIVE / GAPS
# ============================================================
def load_concept_mastery(user_id: str, concept_ids: Optional[List[str]] = None) -> Dict[str, ConceptMastery]:
    q = "select * from public.user_concept_mastery where user_id = :user_id"
    params: Dict[str, Any] = {"user_id": user_id}
    if concept_ids:
        q += " and concept_id = any(:concept_ids)"
        params["concept_ids"] = list(concept_ids)
    rows = _fetch_all("Load Concept Mastery", "learning", q, params)
    return {r["concept_id"]: ConceptMastery.from_row(r) for r in rows}


def upsert_concept_mastery(user_id: str, record: ConceptMastery) -> bool:
    return _write("Save Concept Mastery", "learning", """
        insert into public.user_concept_mastery
          (user_id, concept_id, mastery_level, confidence_score, peak_mastery, total_exposures,
           successful_recalls, failed_recalls, stability, next_review_date, last_reviewed_at)
        values (:user_id, :concept_id, :mastery_level, :confidence_score, :peak_mastery, :total_exposures,
                :successful_recalls, :failed_recalls, :stability, :next_review_date, :last_reviewed_at)
        on conflict (user_id, concept_id) do update set
          mastery_level = excluded.mastery_level,
          confidence_score = excluded.confidence_score,
          peak_mastery = greatest(user_concept_mastery.peak_mastery, excluded.peak_mastery),
          total_exposures = excluded.total_exposures,
          successful_recalls = excluded.successful_recalls,
          failed_recalls = excluded.failed_recalls,
          stability = excluded.stability,
          next_review_date = excluded.next_review_date,
          last_reviewed_at = excluded.last_reviewed_at
    """, {"user_id": user_id, **record.__dict__})


def save_course_concepts(course_id: str, lessons: List[Dict[str, Any]]) -> bool:
    """One concept per lesson; each lesson depends on the one before it."""
    eng = get_db_engine()
    if eng is None or not lessons or not ensure_tables("learning"):
        return False
    try:
        with eng.begin() as conn:
            prev = None
            for i, lesson in enumerate(lessons):
                cid = lesson_key(course_id, i)
                conn.execute(text("""
                    insert into public.concepts (id, course_id, name)
                    values (:id, :course_id, :name)
                    on conflict (id) do update set name = excluded.name
                """), {"id": cid, "course_id": course_id,
                       "name": str(lesson.get("title", "") or f"Lesson {i + 1}")[:200]})
                if prev:
                    conn.execute(text("""
                        insert into public.concept_prerequisites (concept_id, prerequisite_id)
                        values (:cid, :pid)
                        on conflict do nothing
                    """), {"cid": cid, "pid": prev})
                prev = cid
        return True
    except Exception as e:
        _record_error("Save Concepts", e)
        return False


def load_concepts(concept_ids: List[str]) -> Dict[str, str]:
    if not concept_ids:
        return {}
    rows = _fetch_all("Load Concepts", "learning",
                      "select id, name from public.concepts where id = any(:ids)", {"ids": list(concept_ids)})
    return {r["id"]: r["name"] for r in rows}


def load_prerequisite_graph() -> Dict[str, List[str]]:
    rows = _fetch_all("Load Prerequisites", "learning",
                      "select concept_id, prerequisite_id from public.concept_prerequisites", {})
    graph: Dict[str, List[str]] = {}
    for r in rows:
        graph.setdefault(r["concept_id"], []).append(r["prerequisite_id"])
    return graph


def save_extracted_concepts(course_id: str, extraction: Any) -> bool:
    """Store a ``ConceptExtraction``; the course's old step mappings are replaced."""
    eng = get_db_engine()
    if eng is None or not extraction.concepts or not ensure_tables("learning"):
        return False
    try:
        with eng.begin() as conn:
            for c in extraction.concepts:
                conn.execute(text("""
                    insert into public.concepts (id, course_id, name, description, subject, topic, difficulty)
                    values (:id, :course_id, :name, :description, :subject, :topic, :difficulty)
                    on conflict (id) do update set
                      description = coalesce(nullif(excluded.description, ''), concepts.description),
                      difficulty = excluded.difficulty
                """), {"id": c.id, "course_id": course_id, "name": c.name, "description": c.description,
                       "subject": c.subject, "topic": c.topic, "difficulty": int(c.difficulty)})
            for cid, pid in extraction.edges():
                conn.execute(text("""
                    insert into public.concept_prerequisites (concept_id, prerequisite_id)
                    values (:cid, :pid)
                    on conflict do nothing
                """), {"cid": cid, "pid": pid})
            conn.execute(text("delete from public.content_concepts where course_id = :c"), {"c": course_id})
            for m in extraction.mappings:
                conn.execute(text("""
                    insert into public.content_concepts (course_id, lesson_index, step_index, concept_id, relationship)
                    values (:c, :lesson_index, :step_index, :concept_id, :relationship)
                """), {"c": course_id, **m.__dict__})
        LOGGER.info("Concepts saved", extra={"ctx": {"component": "db", "course": course_id,
                                                     "concepts": len(extraction.concepts)}})
        return True
    except Exception as e:
        _record_error("Save Extracted Concepts", e)
        return False


def load_course_concept_map(course_id: str) -> List[Dict[str, Any]]:
    return _fetch_all("Load Concept Map", "learning", """
        select cc.lesson_index, cc.step_index, cc.relationship, c.id as concept_id, c.name,
               c.description, c.difficulty
        from public.content_concepts cc
        join public.concepts c on c.id = cc.concept_id
        where cc.course_id = :c
        order by cc.lesson_index, cc.step_index nulls first, c.name
    """, {"c": course_id})


def load_recent_concept_answers(user_id: str, days: int = 30) -> List[Dict[str, Any]]:
    return _fetch_all("Load Recent Answers", "practice", """
        select q.concept_id, q.is_correct, q.answered_at
        from public.practice_session_questions q
        join public.practice_sessions s on s.id = q.session_id
        where s.user_id = :user_id and q.answered_at >= now() - make_interval(days => :days)
          and q.concept_id is not null
        order by q.answered_at
    """, {"user_id": user_id, "days": int(days)})


def load_performance_state(user_id: str, course_id: Optional[str] = None) -> PerformanceState:
    row = _fetch_one("Load Performance State", "learning", """
        select * from public.user_performance_state where user_id = :user_id and course_id = :course_id
    """, {"user_id": user_id, "course_id": course_id or ""})
    if not row:
        return PerformanceState(user_id=user_id, course_id=course_id)
    return PerformanceState.from_row(row)


def save_performance_state(state: PerformanceState) -> bool:
    row = state.to_row()
    row["course_id"] = row.get("course_id") or ""
    cols = [k for k in row if k not in ("user_id", "course_id")]
    return _write("Save Performance State", "learning", f"""
        insert into public.user_performance_state (user_id, course_id, {', '.join(cols)})
        values (:user_id, :course_id, {', '.join(':' + c for c in cols)})
        on conflict (user_id, course_id) do update set
          {', '.join(f'{c} = excluded.{c}' for c in cols)}, updated_at = now()
    """, row)


def load_question_difficulty(question_id: str) -> Optional[Dict[str, Any]]:
    return _fetch_one("Load Question Difficulty", "learning",
                      "select * from public.question_difficulty where question_id = :id", {"id": question_id})


def save_question_difficulty(question_id: str, stats: Dict[str, Any]) -> bool:
    return _write("Save Question Difficulty", "learning", """
        insert into public.question_difficulty
          (question_id, times_shown, times_correct, empirical_difficulty, avg_response_time_ms)
        values (:id, :times_shown, :times_correct, :empirical_difficulty, :avg_response_time_ms)
        on conflict (question_id) do update set
          times_shown = excluded.times_shown,
          times_correct = excluded.times_correct,
          empirical_difficulty = excluded.empirical_difficulty,
          avg_response_time_ms = excluded.avg_response_time_ms,
          updated_at = now()
    """, {"id": question_id, **stats})


def save_knowledge_gaps(user_id: str, gap_rows: List[Dict[str, Any]]) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables("learning"):
        return False
    try:
        with eng.begin() as conn:
            for g in gap_rows:
                conn.execute(text("""
                    insert into public.knowledge_gaps
                      (user_id, concept_id, gap_type, severity, confidence, blocked_concepts, evidence)
                    values (:user_id, :concept_id, :gap_type, :severity, :confidence,
                            CAST(:blocked_concepts AS jsonb), CAST(:evidence AS jsonb))
                    on conflict (user_id, concept_id) where resolved = false do update set
                      gap_type = excluded.gap_type, severity = excluded.severity,
                      confidence = excluded.confidence, blocked_concepts = excluded.blocked_concepts,
                      evidence = excluded.evidence, detected_at = now()
                """), {**g, "user_id": user_id, "blocked_concepts": _json(g.get("blocked_concepts") or []),
                       "evidence": _json(g.get("evidence") or {})})
        return True
    except Exception as e:
        _record_error("Save Knowledge Gaps", e)
        return False


def load_open_gaps(user_id: str) -> List[Dict[str, Any]]:
    return _fetch_all("Load Knowledge Gaps", "learning", """
        select * from public.knowledge_gaps
        where user_id = :user_id and resolved = false
        order by case severity when 'critical' then 0 when 'moderate' then 1 else 2 end, confidence desc
    """, {"user_id": user_id})


def resolve_gap(user_id: str, concept_id: str) -> bool:
    return _write("Resolve Gap", "learning", """
        update public.knowledge_gaps set resolved = true, resolved_at = now()
        where user_id = :user_id and concept_id = :concept_id and resolved = false
    """, {"user_id": user_id, "concept_id": concept_id})


# ============================================================
# PRACTICE
# ============================================================
def insert_practice_session(user_id: str, course_id: Optional[str], session_type: str,
                            questions: List[Dict[str, Any]]) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("practice"):
        return None
    try:
        with eng.begin() as conn:
            row = conn.execute(text("""
                insert into public.practice_sessions (user_id, course_id, session_type, question_count)
                values (:user_id, :course_id, :session_type, :n)
                returning id
            """), {"user_id": user_id, "course_id": course_id, "session_type": session_type,
                   "n": len(questions)}).mappings().first()
            sid = str(row["id"])
            for i, q in enumerate(questions):
                conn.execute(text("""
                    insert into public.practice_session_questions (session_id, question_index, question, concept_id)
                    values (:sid, :i, CAST(:q AS jsonb), :concept_id)
                """), {"sid": sid, "i": i, "q": _json(q), "concept_id": q.get("concept_id")})
        return sid
    except Exception as e:
        _record_error("Insert Practice Session", e)
        return None


def record_practice_answer(session_id: str, question_index: int, user_answer: str, is_correct: bool,
                           response_time_ms: Optional[int], session_row: Dict[str, Any]) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables("practice"):
        return False
    try:
        with eng.begin() as conn:
            conn.execute(text("""
                update public.practice_session_questions set
                  user_answer = :answer, is_correct = :ok, response_time_ms = :ms, answered_at = now()
                where session_id = :sid and question_index = :i
            """), {"sid": session_id, "i": int(question_index), "answer": user_answer,
                   "ok": bool(is_correct), "ms": response_time_ms})
            conn.execute(text("""
                update public.practice_sessions set
                  status = :status, current_question_index = :current_question_index,
                  questions_answered = :questions_answered, questions_correct = :questions_correct
                where id = :sid
            """), {"sid": session_id, **session_row})
        return True
    except Exception as e:
        _record_error("Record Practice Answer", e)
        return False


def update_practice_session(session_id: str, fields: Dict[str, Any]) -> bool:
    allowed = ("status", "accuracy", "avg_response_time_ms", "total_time_seconds",
               "concepts_practiced", "gaps_identified", "completed_at")
    sets, params = [], {"sid": session_id}
    for k in allowed:
        if k in fields:
            if k in ("concepts_practiced", "gaps_identified"):
                sets.append(f"{k} = CAST(:{k} AS jsonb)")
                params[k] = _json(fields[k])
            else:
                sets.append(f"{k} = :{k}")
                params[k] = fields[k]
    if not sets:
        return True
    return _write("Update Practice Session", "practice",
                  f"update public.practice_sessions set {', '.join(sets)} where id = :sid", params)


def load_practice_answers(session_id: str) -> List[Dict[str, Any]]:
    return _fetch_all("Load Practice Answers", "practice", """
        select question_index, concept_id, user_answer, is_correct, response_time_ms, answered_at
        from public.practice_session_questions
        where session_id = :sid and answered_at is not null
        order by question_index
    """, {"sid": session_id})


def load_practice_sessions(user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    return _fetch_all("Load Practice Sessions", "practice", """
        select * from public.practice_sessions where user_id = :user_id
        order by started_at desc limit :limit
    """, {"user_id": user_id, "limit": int(limit)})


# ============================================================
# STUDY PLANS
# ============================================================
def save_study_plan(user_id: str, exam_date: date, daily_minutes: int, task_rows: List[Dict[str, Any]],
                    config: Dict[str, Any], title: str = "Exam plan") -> Optional[str]:
    """Archive the current plan and store a new one with its tasks."""
    eng = get_db_engine()
    if eng is None or not ensure_tables("plan"):
        return None
    try:
        with eng.begin() as conn:
            conn.execute(text("update public.study_plans set status = 'archived' where user_id = :u and status = 'active'"),
                         {"u": user_id})
            row = conn.execute(text("""
                insert into public.study_plans (user_id, title, exam_date, daily_minutes, config)
                values (:u, :title, :exam_date, :daily, CAST(:config AS jsonb))
                returning id
            """), {"u": user_id, "title": title, "exam_date": exam_date, "daily": int(daily_minutes),
                   "config": _json(config)}).mappings().first()
            plan_id = str(row["id"])
            for t in task_rows:
                conn.execute(text("""
                    insert into public.study_plan_tasks
                      (plan_id, scheduled_date, task_type, course_id, lesson_index, lesson_title,
                       description, estimated_minutes, status, sort_order, metadata)
                    values (:plan_id, :scheduled_date, :task_type, :course_id, :lesson_index, :lesson_title,
                            :description, :estimated_minutes, :status, :sort_order, CAST(:metadata AS jsonb))
                """), {**t, "plan_id": plan_id, "metadata": _json(t.get("metadata") or {})})
        load_plan_tasks_df_cached.clear()
        LOGGER.info("Study plan saved", extra={"ctx": {"component": "study_plan", "tasks": len(task_rows)}})
        return plan_id
    except Exception as e:
        _record_error("Save Study Plan", e)
        return None


def load_active_plan(user_id: str) -> Optional[Dict[str, Any]]:
    return _fetch_one("Load Study Plan", "plan", """
        select * from public.study_plans where user_id = :u and status = 'active'
        order by created_at desc limit 1
    """, {"u": user_id})


@st.cache_data(ttl=20)
def load_plan_tasks_df_cached(_fp: str, plan_id: str) -> pd.DataFrame:
    eng = get_db_engine()
    if eng is None or not ensure_tables("plan"):
        return pd.DataFrame()
    with eng.connect() as conn:
        return pd.read_sql(
            text("""
                select id, scheduled_date, task_type, course_id, lesson_index, lesson_title, description,
                       estimated_minutes, status, sort_order, metadata, completed_at
                from public.study_plan_tasks
                where plan_id = :plan_id
                order by scheduled_date, sort_order
            """),
            conn,
            params={"plan_id": plan_id},
        )


def load_plan_tasks_df(plan_id: str) -> pd.DataFrame:
    try:
        return load_plan_tasks_df_cached(_fp(), plan_id)
    except Exception as e:
        _record_error("Load Plan Tasks", e)
        return pd.DataFrame()


def update_task_status(task_id: int, status: str) -> bool:
    ok = _write("Update Plan Task", "plan", """
        update public.study_plan_tasks set
          status = :status,
          completed_at = case when :status = 'completed' then now() else null end
        where id = :id
    """, {"id": int(task_id), "status": status})
    if ok:
        load_plan_tasks_df_cached.clear()
    return ok


# ============================================================
# EXAMS
# ============================================================
def insert_exam(user_id: str, course_id: str, title: str, question_count: int, time_limit_minutes: int,
                questions: List[Dict[str, Any]]) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not questions or not ensure_tables("exams"):
        return None
    try:
        with eng.begin() as conn:
            row = conn.execute(text("""
                insert into public.exams (user_id, course_id, title, question_count, time_limit_minutes, total_points)
                values (:u, :c, :title, :n, :minutes, :total)
                returning id
            """), {"u": user_id, "c": course_id, "title": title[:200], "n": int(question_count),
                   "minutes": int(time_limit_minutes),
                   "total": sum(int(q.get("points") or 1) for q in questions)}).mappings().first()
            exam_id = str(row["id"])
            for i, q in enumerate(questions):
                conn.execute(text("""
                    insert into public.exam_questions
                      (exam_id, question_index, lesson_index, lesson_title, question_type, question_text, options,
                       correct_answer, acceptable_answers, explanation, points, passage, matching_pairs,
                       ordering_items, sub_questions)
                    values (:exam_id, :i, :lesson_index, :lesson_title, :question_type, :question_text,
                            CAST(:options AS jsonb), :correct_answer, CAST(:acceptable_answers AS jsonb),
                            :explanation, :points, :passage, CAST(:matching_pairs AS jsonb),
                            CAST(:ordering_items AS jsonb), CAST(:sub_questions AS jsonb))
                """), {
                    "exam_id": exam_id, "i": i, "lesson_index": q.get("lesson_index"),
                    "lesson_title": q.get("lesson_title"), "question_type": q["question_type"],
                    "question_text": q["question_text"], "options": _json(q.get("options") or []),
                    "correct_answer": q.get("correct_answer") or "",
                    "acceptable_answers": _json(q.get("acceptable_answers")),
                    "explanation": q.get("explanation"), "points": int(q.get("points") or 1),
                    "passage": q.get("passage"), "matching_pairs": _json(q.get("matching_pairs")),
                    "ordering_items": _json(q.get("ordering_items")), "sub_questions": _json(q.get("sub_questions")),
                })
        return exam_id
    except Exception as e:
        _record_error("Insert Exam", e)
        return None


def load_exams(user_id: str, course_id: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    q = """
        select e.id::text as id, e.course_id::text as course_id, e.title, e.question_count, e.time_limit_minutes,
               e.status, e.score, e.total_points, e.percentage, e.grade, e.created_at, c.title as course_title
        from public.exams e
        left join public.courses c on c.id = e.course_id
        where e.user_id = :u
    """
    params: Dict[str, Any] = {"u": user_id, "limit": int(limit)}
    if course_id:
        q += " and e.course_id = :c"
        params["c"] = course_id
    return _fetch_all("Load Exams", "exams", q + " order by e.created_at desc limit :limit", params)


def load_exam(exam_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    exam = _fetch_one("Load Exam", "exams",
                      "select * from public.exams where id = :id and user_id = :u", {"id": exam_id, "u": user_id})
    if not exam:
        return None
    exam["questions"] = _fetch_all("Load Exam Questions", "exams", """
        select * from public.exam_questions where exam_id = :id order by question_index
    """, {"id": exam_id})
    return exam


def mark_exam_started(exam_id: str) -> bool:
    return _write("Start Exam", "exams", """
        update public.exams set status = 'in_progress', started_at = coalesce(started_at, now())
        where id = :id and status <> 'completed'
    """, {"id": exam_id})


def save_exam_results(exam_id: str, graded: Dict[str, Any]) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables("exams"):
        return False
    try:
        with eng.begin() as conn:
            for r in graded["results"]:
                conn.execute(text("""
                    update public.exam_questions set
                      user_answer = CAST(:user_answer AS jsonb), is_correct = :is_correct,
                      points_earned = :points_earned,
                      sub_questions = coalesce(CAST(:sub_questions AS jsonb), sub_questions)
                    where exam_id = :exam_id and question_index = :question_index
                """), {"exam_id": exam_id, "question_index": r["question_index"],
                       "user_answer": _json(r["user_answer"]), "is_correct": r["is_correct"],
                       "points_earned": int(r["points_earned"]),
                       "sub_questions": _json(r["sub_questions"]) if r["sub_questions"] is not None else None})
            conn.execute(text("""
                update public.exams set status = 'completed', completed_at = now(), score = :score,
                  total_points = :total_points, percentage = :percentage, grade = :grade
                where id = :id
            """), {"id": exam_id, "score": int(graded["score"]), "total_points": int(graded["total_points"]),
                   "percentage": float(graded["percentage"]), "grade": graded["grade"]})
        return True
    except Exception as e:
        _record_error("Save Exam Results", e)
        return False


# ============================================================
# HOMEWORK
# ============================================================
def save_homework_session(row: Dict[str, Any], session_id: Optional[str] = None) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return None
    params = {**row, "hints_given": _json(row.get("hints_given") or []),
              "hint_level_history": _json(row.get("hint_level_history") or [])}
    try:
        with eng.begin() as conn:
            if session_id:
                conn.execute(text("""
                    update public.homework_sessions set
                      status = :status, hints_given = CAST(:hints_given AS jsonb),
                      hint_level_history = CAST(:hint_level_history AS jsonb),
                      used_show_answer = :used_show_answer, updated_at = now()
                    where id = :id
                """), {**params, "id": session_id})
                return session_id
            res = conn.execute(text("""
                insert into public.homework_sessions
                  (user_id, problem, topic, status, hints_given, hint_level_history, used_show_answer)
                values (:user_id, :problem, :topic, :status, CAST(:hints_given AS jsonb),
                        CAST(:hint_level_history AS jsonb), :used_show_answer)
                returning id
            """), params).mappings().first()
        return str(res["id"]) if res else None
    except Exception as e:
        _record_error("Save Homework Session", e)
        return None


def save_homework_check(user_id: str, result: Dict[str, Any]) -> Optional[str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return None
    try:
        with eng.begin() as conn:
            res = conn.execute(text("""
                insert into public.homework_checks
                  (user_id, input_mode, subject, topic, task_text, answer_text, feedback, grade)
                values (:u, :mode, :subject, :topic, :task_text, :answer_text, CAST(:feedback AS jsonb), :grade)
                returning id
            """), {"u": user_id, "mode": result.get("input_mode", "text"), "subject": result.get("subject"),
                   "topic": result.get("topic"), "task_text": result.get("task_text"),
                   "answer_text": result.get("answer_text"), "feedback": _json(result.get("feedback") or {}),
                   "grade": result.get("grade")}).mappings().first()
        return str(res["id"]) if res else None
    except Exception as e:
        _record_error("Save Homework Check", e)
        return None


def load_homework_checks(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    return _fetch_all("Load Homework Checks", "engagement", """
        select id::text as id, input_mode, subject, topic, task_text, grade, feedback, created_at
        from public.homework_checks where user_id = :u
        order by created_at desc limit :limit
    """, {"u": user_id, "limit": int(limit)})


# ============================================================
# GAMIFICATION
# ============================================================
def load_gamification(user_id: str) -> Dict[str, Any]:
    row = _fetch_one("Load Gamification", "engagement",
                     "select * from public.gamification where user_id = :u", {"u": user_id})
    return row or {"user_id": user_id, "total_xp": 0, "current_streak": 0, "longest_streak": 0,
                   "last_activity_date": None}


def save_gamification(user_id: str, total_xp: int, current_streak: int, longest_streak: int,
                      last_activity_date: Optional[date]) -> bool:
    return _write("Save Gamification", "engagement", """
        insert into public.gamification (user_id, total_xp, current_streak, longest_streak, last_activity_date)
        values (:u, :xp, :cur, :longest, :last)
        on conflict (user_id) do update set
          total_xp = excluded.total_xp, current_streak = excluded.current_streak,
          longest_streak = excluded.longest_streak, last_activity_date = excluded.last_activity_date,
          updated_at = now()
    """, {"u": user_id, "xp": int(total_xp), "cur": int(current_streak), "longest": int(longest_streak),
          "last": last_activity_date})


def load_user_achievements(user_id: str) -> Dict[str, Any]:
    rows = _fetch_all("Load Achievements", "engagement",
                      "select achievement_code, earned_at from public.user_achievements where user_id = :u",
                      {"u": user_id})
    return {r["achievement_code"]: r["earned_at"] for r in rows}


def save_user_achievements(user_id: str, codes: List[str]) -> bool:
    if not codes:
        return True
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return False
    try:
        with eng.begin() as conn:
            for code in codes:
                conn.execute(text("""
                    insert into public.user_achievements (user_id, achievement_code)
                    values (:u, :code)
                    on conflict do nothing
                """), {"u": user_id, "code": code})
        return True
    except Exception as e:
        _record_error("Save Achievements", e)
        return False


def load_achievement_stats(user_id: str) -> Dict[str, int]:
    """Counts the badge thresholds are checked against.

    A course is completed when every lesson is, and mastered when every
    lesson also reaches 0.8 mastery.
    """
    if not ensure_tables("srs"):
        return {}
    row = _fetch_one("Load Achievement Stats", "courses", """
        with per_course as (
          select c.id, c.total_lessons,
                 count(*) filter (where lp.completed) as done,
                 count(*) filter (where lp.completed and lp.mastery_level >= 0.8) as mastered
          from public.courses c
          left join public.lesson_progress lp on lp.course_id = c.id and lp.user_id = :u
          where c.user_id = :u
          group by c.id, c.total_lessons
        )
        select
          (select count(*) from public.lesson_progress where user_id = :u and completed) as lessons_completed,
          (select count(*) from public.lesson_progress
            where user_id = :u and completed and questions_answered > 0
              and questions_correct = questions_answered) as perfect_lessons,
          (select count(*) from per_course where total_lessons > 0 and done >= total_lessons) as courses_completed,
          (select count(*) from per_course where total_lessons > 0 and mastered >= total_lessons) as courses_mastered,
          (select count(*) from public.review_logs where user_id = :u) as cards_reviewed
    """, {"u": user_id})
    return {k: int(v or 0) for k, v in (row or {}).items()}


# ============================================================
# ANALYTICS
# ============================================================
def insert_analytics_event(user_id: Optional[str], event_name: str, category: str,
                           properties: Dict[str, Any], page_path: Optional[str] = None) -> bool:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return False
    try:
        with eng.begin() as conn:
            conn.execute(text("""
                insert into public.analytics_events (user_id, event_name, event_category, page_path, properties)
                values (:u, :name, :cat, :path, CAST(:props AS jsonb))
            """), {"u": user_id, "name": event_name[:120], "cat": category, "path": page_path,
                   "props": _json(properties)})
        return True
    except Exception as e:
        # tracking must never surface to the learner
        LOGGER.warning("Analytics insert failed", extra={"ctx": {"component": "analytics", "error": type(e).__name__}})
        return False


def analytics_event_exists(user_id: str, event_name: str) -> bool:
    row = _fetch_one("Check Analytics Event", "engagement", """
        select 1 as found from public.analytics_events where user_id = :u and event_name = :name limit 1
    """, {"u": user_id, "name": event_name})
    return bool(row)


@st.cache_data(ttl=60)
def load_analytics_events_df_cached(_fp: str, days: int = 30, limit: int = 100000) -> pd.DataFrame:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return pd.DataFrame()
    with eng.connect() as conn:
        return pd.read_sql(
            text("""
                select user_id, event_name, event_category, page_path, properties, event_time
                from public.analytics_events
                where event_time >= now() - make_interval(days => :days)
                order by event_time desc
                limit :limit
            """),
            conn,
            params={"days": int(days), "limit": int(limit)},
        )


def load_analytics_events_df(days: int = 30) -> pd.DataFrame:
    try:
        return load_analytics_events_df_cached(_fp(), days=days)
    except Exception as e:
        _record_error("Load Analytics", e)
        return pd.DataFrame()


def load_table_counts() -> Dict[str, int]:
    """Row counts for the monitoring page."""
    tables = ("courses", "review_cards", "review_logs", "practice_sessions", "study_plans",
              "homework_sessions", "homework_checks", "exams", "analytics_events")
    if not ensure_tables("exams"):
        return {}
    row = _fetch_one("Load Table Counts", "engagement",
                     "select " + ", ".join(f"(select count(*) from public.{t}) as {t}" for t in tables), {})
    return {k: int(v or 0) for k, v in (row or {}).items()}


# ============================================================
# RATE LIMITING (per learner, stored in Postgres)
# ============================================================
def _format_reset_time(dt_utc: datetime) -> str:
    return dt_utc.strftime("%H:%M UTC on %d %b %Y")


def _check_rate_limit_db(user_id: str) -> Tuple[bool, int, str]:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return True, AI_RATE_LIMIT, ""

    now_utc = datetime.now(timezone.utc)
    with eng.begin() as conn:
        row = conn.execute(text("""
            select request_count, window_start_time from public.rate_limits
            where user_id = :u
            for update
        """), {"u": user_id}).mappings().first()

        if not row:
            count, window_start = 0, now_utc
        else:
            count = int(row["request_count"] or 0)
            window_start = row["window_start_time"] or now_utc
            if window_start.tzinfo is None:
                window_start = window_start.replace(tzinfo=timezone.utc)

        if (now_utc - window_start).total_seconds() >= AI_RATE_WINDOW_SECONDS:
            conn.execute(text("""
                update public.rate_limits set request_count = 0, window_start_time = now()
                where user_id = :u
            """), {"u": user_id})
            count, window_start = 0, now_utc

    reset = window_start + timedelta(seconds=AI_RATE_WINDOW_SECONDS)
    return count < AI_RATE_LIMIT, max(0, AI_RATE_LIMIT - count), _format_reset_time(reset)


def increment_rate_limit(user_id: str) -> None:
    eng = get_db_engine()
    if eng is None or not ensure_tables("engagement"):
        return
    try:
        with eng.begin() as conn:
            conn.execute(text("""
                insert into public.rate_limits (user_id, request_count, window_start_time)
                values (:u, 1, now())
                on conflict (user_id) do update set request_count = rate_limits.request_count + 1
            """), {"u": user_id})
    except Exception as e:
        _record_error("Rate Limit", e)
