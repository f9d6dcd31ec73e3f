import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler

import streamlit as st
from streamlit.runtime.scriptrunner import add_script_run_ctx, get_script_run_ctx

from ai_generation import AI_READY
from analytics import track_event
from auth import current_user, render_auth_page, sign_out
from components.ui import inject_styles, render_error
from config import MODEL_NAME
from db import db_ready
from errors import AppError
from ui_admin import ADMIN_PAGES, render_admin_page
from ui_learner import LEARNER_PAGES, render_learner_page


# ============================================================
# LOGGING
# ============================================================
class KVFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        ctx = getattr(record, "ctx", None)
        if isinstance(ctx, dict) and ctx:
            keys = sorted(ctx.keys())
            kv = " ".join([f"[{k}={ctx[k]}]" for k in keys if ctx[k] is not None and ctx[k] != ""])
            if kv:
                return f"{base} {kv}"
        return base


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("notesnap")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = KVFormatter("%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    log_path = os.environ.get("NOTESNAP_LOG_FILE", "notesnap_app.log")
    try:
        fh = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
        fh.setLevel(logging.INFO)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError as e:
        logger.warning("File logging disabled", extra={"ctx": {"component": "startup", "path": log_path,
                                                               "error": type(e).__name__}})

    logger.propagate = False
    logger.info("Logging configured", extra={"ctx": {"component": "startup"}})
    return logger


LOGGER = setup_logging()

# =========================
# --- PAGE CONFIG ---
# =========================
st.set_page_config(
    page_title="NoteSnap",
    page_icon="📸",
    layout="wide"
)


# =========================
# --- SESSION STATE ---
# =========================
def _ss_init(k: str, v):
    if k not in st.session_state:
        st.session_state[k] = v


_ss_init("db_last_error", "")
_ss_init("user", None)
_ss_init("auth_view", "login")
_ss_init("selected_course_id", None)
_ss_init("review", None)
_ss_init("review_summary", None)
_ss_init("practice", None)
_ss_init("practice_summary", None)
_ss_init("homework", None)
_ss_init("last_tracked_page", None)

inject_styles()


# ============================================================
# AI PROGRESS WRAPPER
# ============================================================
def _run_ai_with_progress(task_fn, ctx: dict, typical_range: str, est_seconds: float):
    """Run a slow AI call in a worker thread while a progress bar ticks.

    Exceptions raised by ``task_fn`` propagate to the caller.
    """
    script_ctx = get_script_run_ctx()

    def _runner():
        # the task touches st.session_state / st.cache_* through the db layer
        add_script_run_ctx(threading.current_thread(), script_ctx)
        return task_fn()

    LOGGER.info("AI task started", extra={"ctx": {"component": "openai", **(ctx or {})}})
    with st.status(f"Processing… (typically {typical_range})", expanded=True) as status:
        progress = st.progress(0)
        start = time.monotonic()

        with ThreadPoolExecutor(max_workers=1) as ex:
            fut = ex.submit(_runner)
            while not fut.done():
                elapsed = time.monotonic() - start
                frac = min(0.95, max(0.02, elapsed / max(1e-6, est_seconds)))
                progress.progress(int(frac * 100))
                time.sleep(0.12)

            try:
                result = fut.result()
            except Exception:
                status.update(label="Something went wrong", state="error", expanded=False)
                raise

        progress.progress(100)
        status.update(label="✓ Done", state="complete", expanded=False)

    LOGGER.info("AI task finished",
                extra={"ctx": {"component": "openai", "seconds": round(time.monotonic() - start, 1), **(ctx or {})}})
    return result


# ============================================================
# AUTH GATE
# ============================================================
user = current_user()
if not user:
    render_auth_page()
    st.stop()


# ============================================================
# NAVIGATION
# ============================================================
pages = list(LEARNER_PAGES)
if user.get("is_admin"):
    pages += list(ADMIN_PAGES)

st.sidebar.title("📸 NoteSnap")
nav = st.sidebar.radio(
    "Navigate",
    pages,
    index=0,
    key="nav_page",
)
st.sidebar.divider()
st.sidebar.caption(f"Signed in as {user.get('email', '')}")
if st.sidebar.button("Sign out", use_container_width=True):
    track_event(user["id"], "logout")
    sign_out()
    st.rerun()

header_left, header_mid, header_right = st.columns([3, 2, 1])
with header_left:
    st.caption(f"Model: {MODEL_NAME}")
with header_right:
    issues = []
    if not AI_READY:
        issues.append("AI model not connected.")
    if not db_ready():
        issues.append("Database not connected.")
    if issues:
        st.caption("⚠️ System status")
        for msg in issues:
            st.caption(msg)

if st.session_state.get("last_tracked_page") != nav:
    track_event(user["id"], "page_view", {"page": nav}, category="page_view", page_path=nav)
    st.session_state["last_tracked_page"] = nav

helpers = {
    "user": user,
    "db_ready": db_ready,
    "_run_ai_with_progress": _run_ai_with_progress,
}

# ============================================================
# PAGES
# ============================================================
try:
    if nav in ADMIN_PAGES:
        render_admin_page(nav, helpers)
    else:
        render_learner_page(nav, helpers)
except AppError as e:
    LOGGER.warning("Page error", extra={"ctx": {"component": "ui", "page": nav, "code": e.code}})
    render_error(e, where=nav)
