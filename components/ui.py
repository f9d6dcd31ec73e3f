from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Iterable, Optional, Sequence, Tuple

import streamlit as st


@dataclass(frozen=True)
class StatusTone:
    name: str
    icon: str
    color: str


STATUS_TONES = {
    "info": StatusTone("info", "ℹ️", "#2563eb"),
    "success": StatusTone("success", "✅", "#16a34a"),
    "warning": StatusTone("warning", "⚠️", "#d97706"),
    "error": StatusTone("error", "🚨", "#dc2626"),
}

# generation status / task status -> tone
PILL_TONES = {
    "generating": "info",
    "partial": "warning",
    "complete": "success",
    "completed": "success",
    "failed": "error",
    "pending": "info",
    "skipped": "warning",
    "active": "info",
    "paused": "warning",
    "abandoned": "error",
}

_CSS = """
<style>
.ns-hero h1 { margin-bottom: 0.1rem; }
.ns-subtitle { color: #6b7280; margin-top: 0; }
.ns-pill { display: inline-block; padding: 0.1rem 0.6rem; border-radius: 999px; font-size: 0.8rem;
           font-weight: 600; color: #fff; vertical-align: middle; }
.ns-callout { border-left: 4px solid; border-radius: 6px; padding: 0.6rem 0.9rem; margin: 0.4rem 0 0.8rem 0;
              background: rgba(127, 127, 127, 0.06); }
.ns-callout p { margin: 0.2rem 0 0 0; }
.ns-empty { text-align: center; padding: 1.6rem 1rem; border: 1px dashed #d1d5db; border-radius: 10px; }
.ns-empty-icon { font-size: 2rem; }
</style>
"""


def _tone(kind: str) -> StatusTone:
    return STATUS_TONES.get(kind, STATUS_TONES["info"])


def inject_styles() -> None:
    st.markdown(_CSS, unsafe_allow_html=True)


def status_pill_html(status: str, label: Optional[str] = None) -> str:
    tone = _tone(PILL_TONES.get((status or "").lower(), "info"))
    text = escape(label or (status or "").replace("_", " ").title())
    return f"<span class='ns-pill' style='background:{tone.color}'>{text}</span>"


def render_status_pill(status: str, label: Optional[str] = None) -> None:
    st.markdown(status_pill_html(status, label), unsafe_allow_html=True)


def render_page_header(title: str, subtitle: str | None = None, tag: str | None = None) -> None:
    tag_html = status_pill_html(tag) if tag else ""
    subtitle_html = f"<p class='ns-subtitle'>{escape(subtitle)}</p>" if subtitle else ""
    st.markdown(
        f"""
        <div class="ns-hero">
          <h1>{escape(title)} {tag_html}</h1>
          {subtitle_html}
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_callout(title: str, body: str, *, kind: str = "info") -> None:
    tone = _tone(kind)
    st.markdown(
        f"""
        <div class="ns-callout" style="border-color:{tone.color}">
          <strong>{tone.icon} {escape(title)}</strong>
          <p>{escape(body)}</p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_empty_state(title: str, body: str, *, icon: str = "🧭") -> None:
    st.markdown(
        f"""
        <div class="ns-empty">
          <div class="ns-empty-icon">{icon}</div>
          <h3>{escape(title)}</h3>
          <p>{escape(body)}</p>
        </div>
        """,
        unsafe_allow_html=True,
    )


def render_metric_row(metrics: Sequence[Tuple[str, object]] | Iterable[Tuple[str, object, Optional[str]]]) -> None:
    """One st.metric per (label, value[, delta]) in equal columns."""
    items = list(metrics)
    if not items:
        return
    cols = st.columns(len(items))
    for col, item in zip(cols, items):
        label, value = item[0], item[1]
        delta = item[2] if len(item) > 2 else None
        col.metric(label, value, delta)


def render_error(err, *, where: str = "") -> None:
    """Learner-facing box for an AppError: message plus the code to quote."""
    msg = getattr(err, "message", str(err))
    code = getattr(err, "code", "")
    retry = " You can try again." if getattr(err, "retryable", False) else ""
    st.error(f"{msg}{retry}" + (f"  \n`{code}`" if code else ""))
    if where:
        st.caption(where)
