import logging
import re
from typing import Any, Dict, Optional

import streamlit as st

from analytics import track_event, track_funnel_step
from config import ADMIN_EMAILS, SUPABASE_ANON_KEY, SUPABASE_URL, _safe_secret
from errors import AppError, map_auth_error

LOGGER = logging.getLogger("notesnap")

MIN_PASSWORD_LENGTH = 8
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

AUTH_VIEWS = ("login", "signup", "forgot_password")


# ============================================================
# CLIENT
# ============================================================
def _auth_client():
    """One anon-key client per browser session.

    The auth client keeps the signed-in session on the instance, so it must
    not be shared between learners through st.cache_resource.
    """
    sb = st.session_state.get("_auth_client")
    if sb is not None:
        return sb
    if not SUPABASE_URL or not SUPABASE_ANON_KEY:
        raise AppError("NS-AUTH-099", "Sign-in is not configured.")
    from supabase import create_client
    sb = create_client(SUPABASE_URL, SUPABASE_ANON_KEY)
    st.session_state["_auth_client"] = sb
    return sb


def auth_ready() -> bool:
    return bool(SUPABASE_URL and SUPABASE_ANON_KEY)


def _check_email(email: str) -> str:
    e = (email or "").strip().lower()
    if not _EMAIL_RE.match(e):
        raise AppError("NS-AUTH-012")
    return e


def _check_password(password: str) -> str:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise AppError("NS-AUTH-011")
    return password


def _user_dict(user: Any) -> Dict[str, Any]:
    email = (getattr(user, "email", "") or "").strip().lower()
    meta = getattr(user, "user_metadata", None) or {}
    return {
        "id": str(getattr(user, "id", "") or ""),
        "email": email,
        "display_name": meta.get("display_name") or email.split("@")[0],
        "is_admin": is_admin(email),
        "email_confirmed": bool(getattr(user, "email_confirmed_at", None) or getattr(user, "confirmed_at", None)),
    }


def _remember(user: Any) -> Dict[str, Any]:
    u = _user_dict(user)
    st.session_state["user"] = u
    return u


# ============================================================
# OPERATIONS
# ============================================================
def sign_in(email: str, password: str) -> Dict[str, Any]:
    email = _check_email(email)
    try:
        res = _auth_client().auth.sign_in_with_password({"email": email, "password": password or ""})
    except AppError:
        raise
    except Exception as e:
        err = map_auth_error(e)
        LOGGER.warning("Sign-in failed", extra={"ctx": {"component": "auth", "code": err.code, "error": type(e).__name__}})
        raise err from e
    if getattr(res, "user", None) is None:
        raise AppError("NS-AUTH-001")
    u = _remember(res.user)
    LOGGER.info("Signed in", extra={"ctx": {"component": "auth", "user": u["id"]}})
    return u


def sign_up(email: str, password: str, display_name: str = "") -> Dict[str, Any]:
    """Create an account.

    Returns ``{"user": ..., "needs_confirmation": bool}``. When the project
    requires email confirmation there is no session yet, so the learner is
    not signed in.
    """
    email = _check_email(email)
    _check_password(password)
    options = {"data": {"display_name": display_name.strip()}} if (display_name or "").strip() else {}
    try:
        res = _auth_client().auth.sign_up({"email": email, "password": password, "options": options})
    except AppError:
        raise
    except Exception as e:
        err = map_auth_error(e)
        LOGGER.warning("Sign-up failed", extra={"ctx": {"component": "auth", "code": err.code, "error": type(e).__name__}})
        raise err from e

    user = getattr(res, "user", None)
    if user is None:
        raise AppError("NS-AUTH-099")
    needs_confirmation = getattr(res, "session", None) is None
    u = _user_dict(user) if needs_confirmation else _remember(user)
    LOGGER.info("Account created", extra={"ctx": {"component": "auth", "user": u["id"], "confirm": needs_confirmation}})
    return {"user": u, "needs_confirmation": needs_confirmation}


def request_password_reset(email: str) -> bool:
    email = _check_email(email)
    redirect = _safe_secret("PASSWORD_RESET_REDIRECT_URL", "") or ""
    try:
        if redirect:
            _auth_client().auth.reset_password_for_email(email, {"redirect_to": redirect})
        else:
            _auth_client().auth.reset_password_for_email(email)
    except AppError:
        raise
    except Exception as e:
        err = map_auth_error(e)
        # unknown emails are not reported back to the browser
        if err.code in ("NS-AUTH-020", "NS-AUTH-012"):
            raise err from e
        LOGGER.warning("Password reset failed", extra={"ctx": {"component": "auth", "error": type(e).__name__}})
    return True


def update_password(new_password: str) -> bool:
    _check_password(new_password)
    try:
        _auth_client().auth.update_user({"password": new_password})
    except AppError:
        raise
    except Exception as e:
        raise map_auth_error(e) from e
    LOGGER.info("Password updated", extra={"ctx": {"component": "auth"}})
    return True


def sign_out() -> None:
    sb = st.session_state.get("_auth_client")
    if sb is not None:
        try:
            sb.auth.sign_out()
        except Exception as e:
            LOGGER.warning("Sign-out call failed", extra={"ctx": {"component": "auth", "error": type(e).__name__}})
    for k in ("user", "_auth_client"):
        st.session_state.pop(k, None)


def current_user() -> Optional[Dict[str, Any]]:
    return st.session_state.get("user")


def is_admin(email: str) -> bool:
    return (email or "").strip().lower() in ADMIN_EMAILS


def require_login() -> Dict[str, Any]:
    user = current_user()
    if not user:
        raise AppError("NS-AUTH-090")
    return user


def require_admin() -> Dict[str, Any]:
    user = require_login()
    if not user.get("is_admin"):
        raise AppError("NS-AUTH-091")
    return user


def track_first_login(u: Dict[str, Any]) -> bool:
    """Close the signup funnel the first time an account signs in.

    Returns True when the steps were recorded on this call.
    """
    from db import analytics_event_exists

    if not u.get("id") or analytics_event_exists(u["id"], "first_login"):
        return False
    if u.get("email_confirmed"):
        track_funnel_step(u["id"], "signup", "email_verified")
    track_funnel_step(u["id"], "signup", "first_login")
    return True


# ============================================================
# AUTH PAGES
# ============================================================
def render_auth_page() -> None:
    """Login / signup / forgot-password forms shown before the app."""
    view = st.session_state.get("auth_view", "login")
    if view not in AUTH_VIEWS:
        view = "login"

    st.title("📸 NoteSnap")
    st.caption("Turn your notes into lessons, flashcards and a study plan.")
    if not auth_ready():
        st.error("Sign-in is not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY.")
        return

    _, mid, _ = st.columns([1, 2, 1])
    with mid:
        if view == "login":
            with st.form("login_form"):
                email = st.text_input("Email")
                password = st.text_input("Password", type="password")
                submitted = st.form_submit_button("Sign in", type="primary", use_container_width=True)
            if submitted:
                try:
                    u = sign_in(email, password)
                    track_event(u["id"], "login", {"method": "password"})
                    track_first_login(u)
                    st.rerun()
                except AppError as e:
                    st.error(f"{e.message} ({e.code})")
            c1, c2 = st.columns(2)
            if c1.button("Create an account", use_container_width=True):
                st.session_state["auth_view"] = "signup"
                st.rerun()
            if c2.button("Forgot password?", use_container_width=True):
                st.session_state["auth_view"] = "forgot_password"
                st.rerun()

        elif view == "signup":
            if not st.session_state.get("_signup_page_tracked"):
                track_funnel_step(None, "signup", "signup_page")
                st.session_state["_signup_page_tracked"] = True
            with st.form("signup_form"):
                name = st.text_input("Display name (optional)")
                email = st.text_input("Email")
                password = st.text_input("Password", type="password",
                                         help=f"At least {MIN_PASSWORD_LENGTH} characters.")
                submitted = st.form_submit_button("Create account", type="primary", use_container_width=True)
            if submitted:
                try:
                    out = sign_up(email, password, name)
                    track_funnel_step(out["user"]["id"], "signup", "form_submitted")
                    if out["needs_confirmation"]:
                        st.success("Check your inbox to confirm your email, then sign in.")
                        st.session_state["auth_view"] = "login"
                    else:
                        track_first_login(out["user"])
                        st.rerun()
                except AppError as e:
                    st.error(f"{e.message} ({e.code})")
            if st.button("Back to sign in", use_container_width=True):
                st.session_state["auth_view"] = "login"
                st.rerun()

        else:
            with st.form("forgot_form"):
                email = st.text_input("Email")
                submitted = st.form_submit_button("Send reset link", type="primary", use_container_width=True)
            if submitted:
                try:
                    request_password_reset(email)
                    st.success("If that email has an account, a reset link is on its way.")
                except AppError as e:
                    st.error(f"{e.message} ({e.code})")
            if st.button("Back to sign in", use_container_width=True):
                st.session_state["auth_view"] = "login"
                st.rerun()
