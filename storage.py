import logging
import re
import time
from typing import Optional

import streamlit as st

from config import STORAGE_BUCKET, SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

LOGGER = logging.getLogger("notesnap")


# =========================
# --- SUPABASE STORAGE CLIENT (CACHED) ---
# =========================
@st.cache_resource
def get_supabase_client():
    if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
        return None
    try:
        from supabase import create_client
        return create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        LOGGER.error("Supabase client init failed", extra={"ctx": {"component": "supabase", "error": type(e).__name__}})
        return None


def supabase_ready() -> bool:
    return get_supabase_client() is not None


# ============================================================
# PATHS
# ============================================================
def slugify(s: str) -> str:
    s = (s or "").strip().lower()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = re.sub(r"-{2,}", "-", s).strip("-")
    return s or "untitled"


def _clean_storage_path(path: str) -> str:
    if not isinstance(path, str):
        return ""
    p = path.strip().lstrip("/")
    p = p.replace("\\", "/")
    p = re.sub(r"/{2,}", "/", p)
    # no climbing out of the learner's folder
    parts = [seg for seg in p.split("/") if seg not in ("", ".", "..")]
    return "/".join(parts)


def note_image_path(user_id: str, filename: str, index: int, content_type: str,
                    stamp: Optional[int] = None) -> str:
    """Uploads live under <user>/<timestamp>_<n>_<slug>.<ext>."""
    ext = "png" if content_type == "image/png" else "jpg"
    stem = slugify((filename or "note").rsplit(".", 1)[0])[:40]
    stamp = int(stamp if stamp is not None else time.time() * 1000)
    return _clean_storage_path(f"{slugify(user_id)}/{stamp}_{int(index)}_{stem}.{ext}")


# ============================================================
# UPLOAD / DOWNLOAD
# ============================================================
def upload_to_storage(path: str, file_bytes: bytes, content_type: str) -> bool:
    sb = get_supabase_client()
    if sb is None:
        st.session_state["db_last_error"] = "Supabase Storage not configured."
        return False

    p = _clean_storage_path(path)
    if not p:
        st.session_state["db_last_error"] = "Storage Upload Error: empty path."
        return False

    # header values must be strings
    file_options = {
        "contentType": str(content_type),
        "content-type": str(content_type),
        "cacheControl": "3600",
        "upsert": "true",
    }

    try:
        try:
            res = sb.storage.from_(STORAGE_BUCKET).upload(p, file_bytes, file_options)
        except TypeError:
            res = sb.storage.from_(STORAGE_BUCKET).upload(path=p, file=file_bytes, file_options=file_options)

        err = getattr(res, "error", None) if not isinstance(res, dict) else res.get("error")
        if err:
            raise RuntimeError(str(err))
        LOGGER.info("Note image stored", extra={"ctx": {"component": "storage", "path": p, "bytes": len(file_bytes)}})
        return True
    except Exception as e:
        st.session_state["db_last_error"] = f"Storage Upload Error: {type(e).__name__}: {e}"
        LOGGER.error(
            "Storage upload failed",
            extra={"ctx": {"component": "storage", "op": "upload", "path": p, "error": type(e).__name__}},
        )
        return False


def download_from_storage(path: str) -> bytes:
    sb = get_supabase_client()
    if sb is None:
        return b""

    p = _clean_storage_path(path)
    if not p:
        return b""

    try:
        res = sb.storage.from_(STORAGE_BUCKET).download(p)
        if isinstance(res, (bytes, bytearray)):
            return bytes(res)
        for attr in ("data", "content"):
            val = getattr(res, attr, None)
            if isinstance(val, (bytes, bytearray)):
                return bytes(val)
        if hasattr(res, "read"):
            out = res.read()
            if isinstance(out, (bytes, bytearray)):
                return bytes(out)
        return b""
    except Exception as e:
        st.session_state["db_last_error"] = f"Storage Download Error: {type(e).__name__}: {e}"
        LOGGER.error(
            "Storage download failed",
            extra={"ctx": {"component": "storage", "op": "download", "path": p, "error": type(e).__name__}},
        )
        return b""


@st.cache_data(ttl=300)
def cached_download_from_storage(path: str, _fp: str = "") -> bytes:
    return download_from_storage(path)


def delete_from_storage(paths) -> bool:
    sb = get_supabase_client()
    cleaned = [p for p in (_clean_storage_path(x) for x in (paths or [])) if p]
    if sb is None or not cleaned:
        return False
    try:
        sb.storage.from_(STORAGE_BUCKET).remove(cleaned)
        return True
    except Exception as e:
        st.session_state["db_last_error"] = f"Storage Delete Error: {type(e).__name__}: {e}"
        LOGGER.error("Storage delete failed", extra={"ctx": {"component": "storage", "error": type(e).__name__}})
        return False
