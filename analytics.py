"""Event tracking and the aggregations behind the admin dashboards.

Events live in one table (``analytics_events``). Every aggregation takes a
DataFrame with at least ``user_id``, ``event_name``, ``event_category`` and
``event_time``; funnel and error events carry their funnel name / error
code inside ``properties``.
"""

import logging
from typing import Any, Dict, List, Optional

import pandas as pd

LOGGER = logging.getLogger("notesnap")

EVENT_CATEGORIES = ("page_view", "feature", "error", "funnel")

FUNNELS: Dict[str, List[str]] = {
    "course_creation": ["upload_click", "file_selected", "upload_started", "processing", "course_created"],
    "lesson_completion": ["lesson_started", "first_step", "midpoint", "last_step", "lesson_completed"],
    "practice_session": ["practice_started", "first_question", "midpoint", "practice_completed"],
    "exam_session": [
        "exam_started", "first_question", "halfway", "last_question", "exam_submitted", "results_viewed",
    ],
    "review_session": ["review_started", "first_card", "halfway", "review_completed"],
    "signup": ["signup_page", "form_submitted", "email_verified", "first_login"],
    "homework_checker": [
        "checker_opened", "task_uploaded", "answer_uploaded", "check_submitted",
        "feedback_received", "feedback_reviewed",
    ],
}

WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


# ============================================================
# TRACKING
# ============================================================
def track_event(user_id: Optional[str], event_name: str, properties: Optional[Dict[str, Any]] = None,
                category: str = "feature", page_path: Optional[str] = None) -> bool:
    """Best effort: analytics never breaks the page that fired it."""
    if category not in EVENT_CATEGORIES:
        raise ValueError(f"Unknown event category: {category}")
    from db import insert_analytics_event

    return insert_analytics_event(user_id, event_name, category, properties or {}, page_path)


def track_funnel_step(user_id: Optional[str], funnel: str, step: str) -> bool:
    steps = FUNNELS.get(funnel)
    if steps is None or step not in steps:
        raise ValueError(f"Unknown funnel step: {funnel}/{step}")
    return track_event(
        user_id, step, {"funnel": funnel, "step_order": steps.index(step) + 1}, category="funnel"
    )


def track_error(user_id: Optional[str], code: str, page_path: Optional[str] = None, **extra: Any) -> bool:
    return track_event(user_id, "error", {"code": code, **extra}, category="error", page_path=page_path)


# ============================================================
# AGGREGATIONS
# ============================================================
def _prop(events: pd.DataFrame, key: str) -> pd.Series:
    if "properties" not in events.columns:
        return pd.Series([None] * len(events), index=events.index, dtype=object)
    return events["properties"].map(lambda p: p.get(key) if isinstance(p, dict) else None)


def normalize_events(events: pd.DataFrame) -> pd.DataFrame:
    df = events.copy()
    if df.empty:
        return df
    df["event_time"] = pd.to_datetime(df["event_time"], utc=True)
    if "event_category" not in df.columns:
        df["event_category"] = "feature"
    return df


def daily_active_users(events: pd.DataFrame) -> pd.DataFrame:
    df = normalize_events(events)
    if df.empty:
        return pd.DataFrame(columns=["date", "active_users"])
    df = df.dropna(subset=["user_id"])
    df["date"] = df["event_time"].dt.date
    out = df.groupby("date")["user_id"].nunique().reset_index(name="active_users")
    return out.sort_values("date").reset_index(drop=True)


def funnel_conversion(events: pd.DataFrame, funnel: str) -> pd.DataFrame:
    """Distinct users per funnel step with step-to-step and overall conversion (%)."""
    if funnel not in FUNNELS:
        raise ValueError(f"Unknown funnel: {funnel}")
    steps = FUNNELS[funnel]
    df = normalize_events(events)
    if df.empty:
        counts = pd.Series(0, index=steps)
    else:
        mask = (df["event_category"] == "funnel") & (_prop(df, "funnel") == funnel)
        hits = df[mask & df["event_name"].isin(steps)]
        counts = hits.groupby("event_name")["user_id"].nunique().reindex(steps, fill_value=0)

    users = [int(c) for c in counts.tolist()]
    first = users[0] if users else 0
    rows = []
    for i, (step, n) in enumerate(zip(steps, users)):
        prev = users[i - 1] if i > 0 else n
        rows.append({
            "step": step,
            "step_order": i + 1,
            "users": n,
            "conversion_from_previous": round(n / prev * 100, 1) if prev else 0.0,
            "overall_conversion": round(n / first * 100, 1) if first else 0.0,
        })
    return pd.DataFrame(rows)


def activity_heatmap(events: pd.DataFrame) -> pd.DataFrame:
    """Event counts as a 7 x 24 grid (weekday rows, hour columns)."""
    grid = pd.DataFrame(0, index=range(7), columns=range(24))
    df = normalize_events(events)
    if not df.empty:
        weekday = df["event_time"].dt.weekday.rename("weekday")
        hour = df["event_time"].dt.hour.rename("hour")
        counts = df.groupby([weekday, hour]).size()
        grid = counts.unstack(fill_value=0).reindex(index=range(7), columns=range(24), fill_value=0)
    grid.index = WEEKDAY_LABELS
    grid.index.name = "weekday"
    grid.columns.name = "hour"
    return grid.astype(int)


def feature_usage(events: pd.DataFrame) -> pd.DataFrame:
    df = normalize_events(events)
    if df.empty:
        return pd.DataFrame(columns=["feature", "events", "users"])
    df = df[df["event_category"] == "feature"]
    out = (
        df.groupby("event_name")
        .agg(events=("user_id", "size"), users=("user_id", "nunique"))
        .reset_index()
        .rename(columns={"event_name": "feature"})
    )
    return out.sort_values(["events", "feature"], ascending=[False, True]).reset_index(drop=True)


def retention_cohorts(events: pd.DataFrame, as_percent: bool = False) -> pd.DataFrame:
    """Weekly signup cohorts (first seen week) by weeks since joining."""
    df = normalize_events(events)
    if df.empty:
        return pd.DataFrame()
    df = df.dropna(subset=["user_id"])
    day = df["event_time"].dt.tz_convert(None).dt.normalize()
    df["week"] = day - pd.to_timedelta(day.dt.weekday, unit="D")
    df["cohort"] = df.groupby("user_id")["week"].transform("min")
    df["week_offset"] = ((df["week"] - df["cohort"]).dt.days // 7).astype(int)
    table = df.groupby(["cohort", "week_offset"])["user_id"].nunique().unstack(fill_value=0)
    table.index = [d.date() for d in table.index]
    table.index.name = "cohort"
    if as_percent:
        table = (table.div(table[0], axis=0) * 100).round(1)
    return table


def error_summary(events: pd.DataFrame) -> pd.DataFrame:
    df = normalize_events(events)
    if df.empty:
        return pd.DataFrame(columns=["code", "count", "users", "last_seen"])
    df = df[df["event_category"] == "error"].copy()
    df["code"] = _prop(df, "code").fillna("unknown")
    out = (
        df.groupby("code")
        .agg(count=("event_time", "size"), users=("user_id", "nunique"), last_seen=("event_time", "max"))
        .reset_index()
    )
    return out.sort_values(["count", "code"], ascending=[False, True]).reset_index(drop=True)


def overview_metrics(events: pd.DataFrame) -> Dict[str, int]:
    df = normalize_events(events)
    if df.empty:
        return {"events": 0, "users": 0, "page_views": 0, "errors": 0}
    return {
        "events": int(len(df)),
        "users": int(df["user_id"].nunique()),
        "page_views": int((df["event_category"] == "page_view").sum()),
        "errors": int((df["event_category"] == "error").sum()),
    }


def export_csv(df: pd.DataFrame) -> bytes:
    out = df.copy()
    if "properties" in out.columns:
        out["properties"] = out["properties"].map(lambda p: "" if p is None else str(p))
    LOGGER.info("Analytics export", extra={"ctx": {"component": "analytics", "rows": len(out)}})
    return out.to_csv(index=False).encode("utf-8")
