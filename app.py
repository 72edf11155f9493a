import altair as alt
import pandas as pd
import streamlit as st
from contextlib import contextmanager
from typing import Dict, Optional

from analytics.cache import DatasetCache
from analytics.charts import (
    TOP_TYPES,
    distribution_bar,
    distribution_donut,
    geo_scatter,
    monthly_line,
    stacked_status_bar,
    state_bar,
)
from analytics.config import get_settings
from analytics.datasets import DATASETS, DatasetSpec
from analytics.filters import ALL, QUICK_RANGES, FilterConvention, FilterState, end_of_day, start_of_day
from analytics.logging_utils import configure_logging
from analytics.metrics_approval import compute_approval_report
from analytics.session import DashboardSession, LoadStatus
from analytics.store import AnalyticalStore
from analytics.url_filters import from_query_params, has_url_filters, to_query_params

alt.data_transformers.disable_max_rows()

STAGE_LABELS = {
    "initializing": "Initializing",
    "checking": "Checking cache",
    "downloading": "Downloading data",
    "loading-db": "Loading into database",
    "indexing": "Building index",
    "ready": "Ready",
}


# ---------- UI / layout helpers ----------
def inject_base_styles():
    if st.session_state.get("_base_css_injected"):
        return
    st.markdown(
        """
        <style>
        .app-top-bar {padding: 6px 0 4px;border-bottom: 1px solid #e5e7eb;margin-bottom: 10px;}
        .app-top-bar .breadcrumb {color: #6b7280;font-size: 0.9rem;margin-bottom: 2px;}
        .app-top-bar .page-title {font-size: 1.4rem;font-weight: 700;color: #111827;}
        .card {border: 1px solid #e5e7eb;border-radius: 12px;padding: 16px;background: #ffffff;
               box-shadow: 0 1px 2px rgba(0,0,0,0.04); margin-bottom: 12px;}
        .card-title {font-weight: 600;font-size: 1.0rem;color: #111827;margin-bottom: 8px;}
        .chip-row {display: flex;flex-wrap: wrap;gap: 6px;margin-top: 6px;}
        .chip {background: #f3f4f6;border: 1px solid #e5e7eb;border-radius: 14px;padding: 4px 10px;font-size: 0.85rem;color: #374151;}
        </style>
        """,
        unsafe_allow_html=True,
    )
    st.session_state["_base_css_injected"] = True


@contextmanager
def card(title: str):
    container = st.container()
    container.markdown(f"<div class='card'><div class='card-title'>{title}</div>", unsafe_allow_html=True)
    body = container.container()
    with body:
        yield body
    container.markdown("</div>", unsafe_allow_html=True)


def format_filter_summary(spec: DatasetSpec, state: FilterState) -> str:
    chips = []
    for dim in spec.dimensions:
        values = state.accepted_values(dim.name)
        if values:
            chips.append(f"{dim.label}: {', '.join(sorted(values))}")
    rng = state.date_range
    if rng.is_set:
        start = rng.start.strftime("%Y-%m-%d") if rng.start else "…"
        end = rng.end.strftime("%Y-%m-%d") if rng.end else "…"
        chips.append(f"Dates: {start} to {end}")
    if not chips:
        chips.append("No filters")
    return "".join(f"<span class='chip'>{txt}</span>" for txt in chips)


def render_page_header(spec: DatasetSpec, session: DashboardSession, export_df: Optional[pd.DataFrame] = None):
    inject_base_styles()
    status = session.status
    c1, c2, c3 = st.columns([6, 2, 2])
    with c1:
        refreshed = status.last_refresh.strftime("%Y-%m-%d %H:%M") if status.last_refresh else "never"
        st.markdown(
            f"<div class='app-top-bar'><div class='breadcrumb'>NES Analytics / source: {status.source or 'n/a'}"
            f" / refreshed {refreshed}</div><div class='page-title'>{spec.title}</div></div>",
            unsafe_allow_html=True,
        )
    with c2:
        btn_cols = st.columns(2)
        if btn_cols[0].button("Refresh", key=f"refresh_{spec.name}"):
            run_load(session, force_refresh=True)
            st.rerun()
        if export_df is not None and not export_df.empty:
            btn_cols[1].download_button(
                "Export CSV",
                data=export_df.to_csv(index=False).encode("utf-8"),
                file_name=f"{spec.name}_data.csv",
                mime="text/csv",
            )
    with c3:
        if st.button("Clear cache", key=f"clear_{spec.name}"):
            session.clear_cache()
            st.rerun()
    st.markdown(
        f"<div class='chip-row'>{format_filter_summary(spec, session.filters)}</div>",
        unsafe_allow_html=True,
    )


# ---------- runtime ----------
@st.cache_resource
def get_runtime() -> Dict[str, DashboardSession]:
    settings = get_settings()
    configure_logging(settings.log_level)
    store = AnalyticalStore(settings.duckdb_path, load_timeout_seconds=settings.load_timeout_seconds)
    store.initialize()
    cache = DatasetCache(settings.cache_path)
    return {name: DashboardSession(spec, store, settings=settings, cache=cache) for name, spec in DATASETS.items()}


def run_load(session: DashboardSession, *, force_refresh: bool = False) -> LoadStatus:
    bar = st.progress(0, text=STAGE_LABELS["initializing"])

    def on_stage(status: LoadStatus) -> None:
        bar.progress(min(status.progress, 100), text=STAGE_LABELS.get(status.stage, status.stage))

    session.on_stage = on_stage
    try:
        status = session.load(force_refresh=force_refresh)
    finally:
        session.on_stage = None
    bar.empty()
    return status


def render_error(spec: DatasetSpec, session: DashboardSession):
    st.error(f"Could not load {spec.title}: {session.status.error}")
    if st.button("Retry", key=f"retry_{spec.name}"):
        run_load(session, force_refresh=True)
        st.rerun()


# ---------- filters ----------
def render_source_picker(spec: DatasetSpec, session: DashboardSession, state: FilterState) -> Optional[str]:
    """Sidebar selectbox scoping the whole page to one SSO; None means every source."""
    sources = session.sso_sources()
    current = sorted(state.accepted_values(spec.source_dimension))
    choices = [ALL] + sources
    index = choices.index(current[0]) if len(current) == 1 and current[0] in choices else 0
    picked = st.selectbox("SSO source", choices, index=index, key=f"{spec.name}_source")
    return None if picked == ALL else picked


def render_filters(spec: DatasetSpec, session: DashboardSession) -> FilterState:
    state = session.filters
    with st.sidebar:
        st.markdown("### Filters")
        st.caption(f"{state.active_filter_count} active")
        source = None
        if spec.source_dimension is not None:
            source = render_source_picker(spec, session, state)
            state = state.set_values(spec.source_dimension, [source] if source else [])
        options = session.filter_options(source)
        for dim in spec.dimensions:
            if dim.name == spec.source_dimension:
                continue
            choices = options.get(dim.name, [])
            if not choices:
                continue
            current = sorted(state.accepted_values(dim.name))
            if spec.convention == FilterConvention.SENTINEL:
                choices = [ALL] + choices
                current = current or [ALL]
            selected = st.multiselect(dim.label, options=choices, default=[c for c in current if c in choices], key=f"{spec.name}_{dim.name}")
            state = state.set_values(dim.name, selected)

        st.markdown("---")
        if spec.date_column is None:
            return _reset_button(spec, state)
        quick = st.selectbox("Quick date range", ["Custom"] + list(QUICK_RANGES), key=f"{spec.name}_quick")
        if quick != "Custom":
            state = state.set_quick_date_range(quick)
        else:
            start = st.date_input("Start date", value=state.date_range.start.date() if state.date_range.start else None, key=f"{spec.name}_start")
            end = st.date_input("End date", value=state.date_range.end.date() if state.date_range.end else None, key=f"{spec.name}_end")
            state = state.set_date_range(start_of_day(start) if start else None, end_of_day(end) if end else None)
        return _reset_button(spec, state)


def _reset_button(spec: DatasetSpec, state: FilterState) -> FilterState:
    if st.button("Reset filters", key=f"{spec.name}_reset"):
        for dim in spec.dimensions:
            st.session_state.pop(f"{spec.name}_{dim.name}", None)
        for suffix in ("source", "quick", "start", "end"):
            st.session_state.pop(f"{spec.name}_{suffix}", None)
        return state.reset()
    return state


# ---------- pages ----------
def render_kpis(kpis: Dict[str, object]):
    cols = st.columns(len(kpis))
    for col, (name, value) in zip(cols, kpis.items()):
        label = name.replace("_", " ").title()
        col.metric(label, f"{value:,.1f}" if isinstance(value, float) else f"{value:,}")


def render_tickets(session: DashboardSession, state: FilterState):
    with card("Status & Priority"):
        c1, c2 = st.columns(2)
        c1.altair_chart(distribution_donut(session.distribution("status", state), title="Status"), use_container_width=True)
        c2.altair_chart(distribution_bar(session.distribution("priority", state), title="Priority"), use_container_width=True)
    with card("Types & Trend"):
        c1, c2 = st.columns(2)
        c1.altair_chart(
            distribution_bar(session.distribution("type", state, limit=TOP_TYPES), title="Top Maintenance Types"),
            use_container_width=True,
        )
        c2.altair_chart(monthly_line(session.time_series(state), title="Tickets per Month"), use_container_width=True)
    latest = session.latest_data_date()
    if latest is not None:
        st.caption(f"Latest data: {latest:%Y-%m-%d}")


def render_participation(session: DashboardSession, state: FilterState):
    with card("Trend & Membership"):
        c1, c2 = st.columns(2)
        c1.altair_chart(monthly_line(session.time_series(state), title="Participation per Month"), use_container_width=True)
        c2.altair_chart(
            distribution_donut(session.distribution("membership_status", state), title="Membership Status"),
            use_container_width=True,
        )
    if session.dataset.name == "nes":
        with card("States & Sites"):
            c1, c2 = st.columns(2)
            c1.altair_chart(state_bar(session.state_metrics(state)), use_container_width=True)
            c2.altair_chart(geo_scatter(session.geo_points(state)), use_container_width=True)
    else:
        with card("Regions"):
            st.altair_chart(
                distribution_bar(session.distribution("region", state), title="Participants by Region"),
                use_container_width=True,
            )
        with card("Program Report"):
            report = session.program_report(state)
            if report:
                st.dataframe(pd.DataFrame(report), use_container_width=True, hide_index=True)
                st.caption(f"Showing {len(report)} events")
            else:
                st.info("No programs match the current filters.")


def render_approval(session: DashboardSession, state: FilterState):
    report = compute_approval_report(session, state)
    statuses = report["statuses"]
    with card("Event Status"):
        st.altair_chart(distribution_donut(report["status"], title="Event Status"), use_container_width=True)
    for key, total_key, title in (("by_site", "site", "By Site Profile"), ("by_sso", "sso", "By SSO")):
        with card(title):
            rows = report[key]
            c1, c2 = st.columns([3, 2])
            c1.altair_chart(stacked_status_bar(rows, statuses, title=title), use_container_width=True)
            table = pd.DataFrame(rows, columns=["name"] + statuses)
            totals = report["totals"][total_key]
            table.loc[len(table)] = ["Total"] + [totals[s] for s in statuses]
            c2.dataframe(table, use_container_width=True, hide_index=True)


# ---------- UI setup ----------
st.set_page_config(page_title="NES Analytics Dashboard", layout="wide")
inject_base_styles()

sessions = get_runtime()
with st.sidebar:
    st.markdown("### Navigate")
    labels = {spec.title: name for name, spec in DATASETS.items()}
    dataset_name = labels[st.radio("Dashboard", list(labels), index=0)]

spec = DATASETS[dataset_name]
session = sessions[dataset_name]

if not session.status.is_ready:
    if session.status.stage != "error":
        run_load(session)
    if session.status.stage == "error":
        render_error(spec, session)
        st.stop()

# URL parameters seed the filters once per dataset, and only when they carry any
seeded_key = f"_seeded_{spec.name}"
if not st.session_state.get(seeded_key):
    params = st.query_params.to_dict()
    if has_url_filters(params, spec):
        session.set_filters(from_query_params(params, spec))
    st.session_state[seeded_key] = True

if session.status.error:
    st.warning(f"Showing {session.status.source} data: {session.status.error}")

state = render_filters(spec, session)
session.set_filters(state)
view = session.apply_now()
st.query_params.from_dict(to_query_params(state, spec))

# the table view is capped; the export covers every matching row
export_df = pd.DataFrame(session.export_rows(state))
render_page_header(spec, session, export_df)

render_kpis(session.kpis(state))
if view is not None:
    st.caption(f"{view.filtered_count:,} of {view.total_count:,} records")

if spec.name == "tickets":
    render_tickets(session, state)
elif spec.name == "approval":
    render_approval(session, state)
else:
    render_participation(session, state)

with card("Records"):
    if view is None or view.rows.empty:
        st.info("No records match the current filters.")
    else:
        st.dataframe(view.rows, use_container_width=True, hide_index=True)
