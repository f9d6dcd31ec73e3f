import streamlit as st

from ai_generation import AI_READY
from analytics import (
    FUNNELS,
    activity_heatmap,
    daily_active_users,
    error_summary,
    export_csv,
    feature_usage,
    funnel_conversion,
    overview_metrics,
    retention_cohorts,
)
from auth import auth_ready
from components.ui import render_callout, render_metric_row, render_page_header, render_status_pill
from config import DATABASE_URL, MODEL_NAME
from db import ensure_all_tables, get_db_driver_type, load_analytics_events_df, load_table_counts
from errors import AppError
from storage import supabase_ready


def _render_analytics(helpers: dict):
    render_page_header("Admin analytics", "Usage across all learners.", tag="active")

    days = st.selectbox("Window", [7, 14, 30, 90], index=2, format_func=lambda d: f"Last {d} days")
    events = load_analytics_events_df(days=days)
    if st.session_state.get("db_last_error"):
        st.error(f"Database Error: {st.session_state['db_last_error']}")
    if events.empty:
        st.info("No analytics events logged yet.")
        return

    m = overview_metrics(events)
    render_metric_row([
        ("Events", m["events"]),
        ("Users", m["users"]),
        ("Page views", m["page_views"]),
        ("Errors", m["errors"]),
    ])

    st.write("### Daily active users")
    dau = daily_active_users(events)
    if not dau.empty:
        st.line_chart(dau.set_index("date")["active_users"])

    st.write("### Funnels")
    funnel = st.selectbox("Funnel", list(FUNNELS), format_func=lambda k: k.replace("_", " ").title())
    fdf = funnel_conversion(events, funnel)
    st.bar_chart(fdf.set_index("step")["users"])
    st.dataframe(fdf, width='stretch', hide_index=True)

    c1, c2 = st.columns(2)
    with c1:
        st.write("### Feature usage")
        st.dataframe(feature_usage(events), width='stretch', hide_index=True)
    with c2:
        st.write("### Errors")
        st.dataframe(error_summary(events), width='stretch', hide_index=True)

    st.write("### Activity by weekday and hour (UTC)")
    st.dataframe(activity_heatmap(events), width='stretch')

    st.write("### Weekly retention")
    as_pct = st.toggle("Show as %", value=True)
    cohorts = retention_cohorts(events, as_percent=as_pct)
    if cohorts.empty:
        st.caption("Not enough data yet.")
    else:
        st.dataframe(cohorts, width='stretch')

    st.download_button(
        "⬇️ Export events (CSV)",
        data=export_csv(events),
        file_name=f"notesnap_events_{days}d.csv",
        mime="text/csv",
    )


def _render_monitoring(helpers: dict):
    db_ready = helpers["db_ready"]
    render_page_header("Monitoring", "Service status and storage.")

    rows = [
        ("Database", db_ready(), "Set DATABASE_URL." if not DATABASE_URL else "Check drivers and URL."),
        ("AI", AI_READY, "Set OPENAI_API_KEY."),
        ("Auth", auth_ready(), "Set SUPABASE_URL and SUPABASE_ANON_KEY."),
        ("Storage", supabase_ready(), "Set SUPABASE_SERVICE_ROLE_KEY."),
    ]
    for name, ok, hint in rows:
        c1, c2, c3 = st.columns([2, 1, 4])
        c1.markdown(f"**{name}**")
        with c2:
            render_status_pill("complete" if ok else "failed", "OK" if ok else "Down")
        if not ok:
            c3.caption(hint)
    st.caption(f"Model: {MODEL_NAME}")

    if DATABASE_URL and not get_db_driver_type():
        st.caption("No Postgres driver found. Add 'psycopg[binary]' (or psycopg2-binary) to the install.")

    if st.session_state.get("db_last_error"):
        render_callout("Last database error", st.session_state["db_last_error"], kind="error")
        if st.button("Clear error"):
            st.session_state["db_last_error"] = ""
            st.rerun()

    if not db_ready():
        return

    if st.button("Create / upgrade tables"):
        if ensure_all_tables():
            st.success("Tables are in place.")
        else:
            st.error("Some tables could not be created.")

    st.write("### Row counts")
    counts = load_table_counts()
    if counts:
        render_metric_row(list(counts.items())[:4])
        render_metric_row(list(counts.items())[4:])


ADMIN_PAGES = {
    "Admin Analytics": _render_analytics,
    "Monitoring": _render_monitoring,
}


def render_admin_page(nav_label: str, helpers: dict):
    if not helpers["user"].get("is_admin"):
        raise AppError("NS-AUTH-091")
    ADMIN_PAGES[nav_label](helpers)
