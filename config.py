import json
import os
from pathlib import Path
from typing import Any, Dict, List

import streamlit as st


def _safe_secret(key: str, default: str | None = None) -> str | None:
    try:
        val = st.secrets.get(key, None)
    except Exception:
        val = None
    if val in (None, ""):
        val = os.getenv(key, default)
    return val


# ============================================================
# SECRETS
# ============================================================
OPENAI_API_KEY = _safe_secret("OPENAI_API_KEY")
DATABASE_URL = (_safe_secret("DATABASE_URL", "") or "").strip()
SUPABASE_URL = (_safe_secret("SUPABASE_URL", "") or "").strip()
SUPABASE_ANON_KEY = (_safe_secret("SUPABASE_ANON_KEY", "") or "").strip()
SUPABASE_SERVICE_ROLE_KEY = (_safe_secret("SUPABASE_SERVICE_ROLE_KEY", "") or "").strip()
STORAGE_BUCKET = (_safe_secret("STORAGE_BUCKET", "notes") or "notes").strip()
MODEL_NAME = (_safe_secret("NOTESNAP_MODEL", "gpt-5-mini") or "gpt-5-mini").strip()

ADMIN_EMAILS = {
    e.strip().lower()
    for e in str(_safe_secret("ADMIN_EMAILS", "") or "").split(",")
    if e.strip()
}


# ============================================================
# CONTENT PACK (prompts + settings)
# ============================================================
# Prompt wording and UI option lists live in content/ so they can be tuned
# without touching code. Templates use <<TOKEN>> placeholders.
@st.cache_data(show_spinner=False)
def _load_content_pack() -> dict:
    base = Path(__file__).resolve().parent / "content"
    prompts_path = base / "prompts.json"
    settings_path = base / "settings.json"

    if not prompts_path.exists():
        raise FileNotFoundError(f"Missing prompts file: {prompts_path}")

    prompts = json.loads(prompts_path.read_text(encoding="utf-8"))
    settings = json.loads(settings_path.read_text(encoding="utf-8")) if settings_path.exists() else {}
    return {"prompts": prompts, "settings": settings}


try:
    CONTENT_PACK = _load_content_pack()
except Exception as _e:
    st.error(f"❌ Content pack failed to load.\n\n{type(_e).__name__}: {_e}")
    st.stop()

PROMPTS: Dict[str, Any] = CONTENT_PACK.get("prompts", {}) or {}
SETTINGS: Dict[str, Any] = CONTENT_PACK.get("settings", {}) or {}


def _prompt(key: str) -> str:
    val = PROMPTS.get(key, "")
    if isinstance(val, list):
        return "\n".join(str(x) for x in val)
    return str(val or "")


# Prompt templates
COURSE_SYSTEM_TPL = _prompt("course_system")
COURSE_INITIAL_USER_TPL = _prompt("course_initial_user")
COURSE_CONTINUE_USER_TPL = _prompt("course_continue_user")
COURSE_ADD_USER_TPL = _prompt("course_add_material_user")
COURSE_REPAIR_PREFIX_TPL = _prompt("course_repair_prefix")

PRACTICE_SYSTEM_TPL = _prompt("practice_system")
PRACTICE_USER_TPL = _prompt("practice_user")
PRACTICE_REPAIR_PREFIX_TPL = _prompt("practice_repair_prefix")

HINT_SYSTEM_TPL = _prompt("hint_system")

EVAL_SYSTEM_TPL = _prompt("eval_system")
EVAL_USER_TPL = _prompt("eval_user")

CONCEPT_SYSTEM_TPL = _prompt("concept_system")
CONCEPT_USER_TPL = _prompt("concept_user")
CONCEPT_REPAIR_PREFIX_TPL = _prompt("concept_repair_prefix")

EXAM_SYSTEM_TPL = _prompt("exam_system")
EXAM_USER_TPL = _prompt("exam_user")
EXAM_REPAIR_PREFIX_TPL = _prompt("exam_repair_prefix")

CHECKER_SYSTEM_TPL = _prompt("checker_system")
CHECKER_USER_TPL = _prompt("checker_user")


# ============================================================
# SETTINGS
# ============================================================
DEFAULT_INTENSITY_MODES: Dict[str, Dict[str, Any]] = {
    "quick": {"label": "Quick", "target_lessons": 3, "steps_per_lesson": 5},
    "standard": {"label": "Standard", "target_lessons": 5, "steps_per_lesson": 8},
    "deep_practice": {"label": "Deep practice", "target_lessons": 7, "steps_per_lesson": 12},
}
INTENSITY_MODES: Dict[str, Dict[str, Any]] = SETTINGS.get("intensity_modes") or DEFAULT_INTENSITY_MODES

PRACTICE_QUESTION_TYPES: List[str] = SETTINGS.get("question_types") or [
    "multiple_choice", "true_false", "fill_blank", "short_answer",
]

_limits = SETTINGS.get("upload_limits") or {}
MAX_UPLOAD_MB = float(_limits.get("max_image_mb", 5))
MAX_UPLOAD_FILES = int(_limits.get("max_files", 10))
MAX_DOCUMENT_MB = float(_limits.get("max_document_mb", 20))
MAX_NOTES_CHARS = int(_limits.get("max_notes_chars", 60000))

INITIAL_LESSON_BATCH = 2
CONTINUE_LESSON_BATCH = 2
ADD_MATERIAL_LESSONS = int(SETTINGS.get("add_material_lessons", 2))

# AI usage limits per learner
AI_RATE_LIMIT = int(SETTINGS.get("ai_rate_limit_per_hour", 30))
AI_RATE_WINDOW_SECONDS = 60 * 60
