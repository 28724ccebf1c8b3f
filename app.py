import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, List, Optional

import altair as alt
import pandas as pd
import streamlit as st

from incidents.charts import category_chart, jurisdiction_chart, points_chart, radar_chart, time_series_chart
from incidents.classify import institution_type_label, severity_label
from incidents.config import Settings, load_settings
from incidents.data import compute_lookups, load_dashboard_data, prepare_context
from incidents.filters import FilterSpecification, normalize_filters
from incidents.metrics_analytics import compute_analytics
from incidents.metrics_comparison import available_group_keys, compute_comparison
from incidents.metrics_debug import compute_debug
from incidents.metrics_map import compute_map
from incidents.metrics_table import SORT_KEYS, export_csv, export_filename, export_json, query_table, search_records, sort_records
from incidents.source import CachedIncidentSource

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("incidents.app")

alt.data_transformers.disable_max_rows()


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


def format_filter_summary(spec: FilterSpecification) -> str:
    chips: List[str] = []
    if spec.date_from or spec.date_to:
        chips.append(f"Dates: {spec.date_from or '…'} to {spec.date_to or '…'}")
    if spec.states:
        chips.append(f"States: {', '.join(spec.states)}")
    if spec.school_types:
        chips.append(f"School type: {', '.join(spec.school_types)}")
    if spec.shooting_types:
        chips.append(f"Incident type: {', '.join(spec.shooting_types)}")
    if spec.district_ids:
        chips.append(f"Districts: {len(spec.district_ids)}")
    for label, low, high in (("Killed", spec.min_killed, spec.max_killed), ("Injured", spec.min_injured, spec.max_injured)):
        if low is not None or high is not None:
            chips.append(f"{label}: {low if low is not None else 0}–{high if high is not None else '∞'}")
    if spec.has_resource_officer is not None:
        chips.append("Resource officer: " + ("yes" if spec.has_resource_officer else "no"))
    if not chips:
        chips.append("All incidents")
    return "".join(f"<span class='chip'>{txt}</span>" for txt in chips)


def render_page_header(title: str, breadcrumb: str, filter_summary_html: str):
    inject_base_styles()
    c1, c2 = st.columns([8, 2])
    with c1:
        st.markdown(
            f"<div class='app-top-bar'><div class='breadcrumb'>{breadcrumb}</div><div class='page-title'>{title}</div></div>",
            unsafe_allow_html=True,
        )
    with c2:
        if st.button("Refresh"):
            if source is not None:
                source.clear()
            st.rerun()
    st.markdown(f"<div class='chip-row'>{filter_summary_html}</div>", unsafe_allow_html=True)


# ---------- UI setup ----------
st.set_page_config(page_title="School Incident Dashboard", layout="wide")
inject_base_styles()
st.title("School Incident Dashboard")
st.caption("Browse, filter and compare safety incidents at educational institutions.")

@st.cache_resource
def get_source(api_url: Optional[str], timeout: float, _settings: Settings) -> Optional[CachedIncidentSource]:
    # one TTL-cached client per upstream, shared across reruns
    return CachedIncidentSource.from_settings(_settings)


settings = load_settings()
source = get_source(settings.api_url, settings.api_timeout, settings)
data_ctx = load_dashboard_data(settings, source)
if not data_ctx.get("available"):
    st.error("No incident data available. Set INCIDENTS_DATA_PATH to a CSV/JSON/XLSX export or INCIDENTS_API_URL to the incident API.")
    st.stop()

lookups: Optional[Dict[str, Any]] = source.fetch_lookups() if source is not None else None
if lookups is None:
    lookups = compute_lookups(data_ctx["raw"])

# ----- Sidebar: navigation + filters -----
with st.sidebar:
    st.markdown("### Navigate")
    current_page = st.radio("Navigate", ["Map", "Analytics", "Table", "Comparison", "Report incident", "Data Quality"], index=0)

    st.markdown("---")
    st.markdown("### Filters")
    use_dates = st.checkbox("Limit date range", value=False)
    date_from = date_to = None
    if use_dates:
        date_from = st.date_input("From", value=date(2000, 1, 1))
        date_to = st.date_input("To", value=date.today())
    states = st.multiselect("States", options=lookups.get("states", []))
    school_types = st.multiselect("School types", options=lookups.get("school_types", []))
    shooting_types = st.multiselect("Incident types", options=lookups.get("shooting_types", []))
    district_names = {d["id"]: f"{d['name']} ({d['state']})" if d.get("state") else d["name"] for d in lookups.get("districts", [])}
    district_ids = st.multiselect("Districts", options=list(district_names), format_func=lambda i: district_names.get(i, i))
    with st.expander("Casualties and security", expanded=False):
        # blank inputs mean no bound
        k1, k2 = st.columns(2)
        min_killed = k1.number_input("Min killed", min_value=0, value=None, step=1, placeholder="Any")
        max_killed = k2.number_input("Max killed", min_value=0, value=None, step=1, placeholder="Any")
        i1, i2 = st.columns(2)
        min_injured = i1.number_input("Min injured", min_value=0, value=None, step=1, placeholder="Any")
        max_injured = i2.number_input("Max injured", min_value=0, value=None, step=1, placeholder="Any")
        officer_choice = st.selectbox("Resource officer present", ["Any", "Yes", "No"])

spec = normalize_filters(
    {
        "date_from": date_from,
        "date_to": date_to,
        "states": states,
        "district_ids": district_ids,
        "school_types": school_types,
        "shooting_types": shooting_types,
        "min_killed": min_killed,
        "max_killed": max_killed,
        "min_injured": min_injured,
        "max_injured": max_injured,
        "has_resource_officer": {"Yes": True, "No": False}.get(officer_choice),
    }
)
ctx = prepare_context(spec, data_ctx)
if source is not None:
    ctx["precomputed"] = source.precomputed(spec)
filter_summary_html = format_filter_summary(spec)


# ---------- Pages ----------
def render_map_page():
    render_page_header("Incident Map", "Home / Map", filter_summary_html)
    payload = compute_map(spec, ctx)
    with card("Incident locations"):
        points = pd.DataFrame(payload["points"])
        if points.empty:
            st.info("No mappable incidents for the current filters.")
        else:
            points["severity_label"] = points["severity"].map(severity_label)
            st.altair_chart(points_chart(points), use_container_width=True)
        if payload["unmapped_count"]:
            st.caption(f"{payload['unmapped_count']} incidents have no usable coordinates and are not shown.")
    with card("Hotspots"):
        heat = pd.DataFrame(payload["heat"])
        if heat.empty:
            st.info("No hotspot data.")
        else:
            st.dataframe(heat.head(20), use_container_width=True, hide_index=True)


def render_analytics_page():
    render_page_header("Analytics", "Home / Analytics", filter_summary_html)
    payload = compute_analytics(spec, ctx, top_n=settings.top_n)
    kpis = payload["kpis"]
    with card("Key metrics"):
        cols = st.columns(4)
        cols[0].metric("Total incidents", f"{kpis['total_incidents']:,}", f"{kpis['incident_trend_pct']:+.1f}% vs prior month")
        cols[1].metric("People affected", f"{kpis['total_affected']:,}")
        cols[2].metric("Critical incidents", f"{kpis['critical_incidents']:,}")
        cols[3].metric("Average affected", kpis["average_affected"])
        if kpis["peak_period"]:
            st.caption(f"Peak month: {kpis['peak_period']}")

    series = pd.DataFrame(payload["time_series"])
    states_df = pd.DataFrame(payload["by_state"])
    types_df = pd.DataFrame(payload["by_institution_type"])
    severity_df = pd.DataFrame(payload["by_severity"])
    with card("Incidents over time"):
        if series.empty:
            st.info("No dated incidents.")
        else:
            st.altair_chart(time_series_chart(series), use_container_width=True)
    c1, c2 = st.columns(2)
    with c1:
        with card(f"Top {settings.top_n} states"):
            if not states_df.empty:
                st.altair_chart(jurisdiction_chart(states_df), use_container_width=True)
    with c2:
        with card("By institution type"):
            if not types_df.empty:
                st.altair_chart(category_chart(types_df), use_container_width=True)
        with card("By severity"):
            if not severity_df.empty:
                st.altair_chart(category_chart(severity_df), use_container_width=True)


def render_table_page():
    render_page_header("Incident Table", "Home / Table", filter_summary_html)
    with card("Controls"):
        c1, c2, c3, c4 = st.columns([4, 2, 2, 2])
        search = c1.text_input("Search", "")
        sort_key = c2.selectbox("Sort by", SORT_KEYS, index=SORT_KEYS.index("date"))
        sort_direction = c3.selectbox("Direction", ["desc", "asc"])
        page_size = c4.selectbox("Rows per page", [10, 25, 50, 100], index=1)
    first = query_table(ctx["filtered"], search, sort_key, sort_direction, 1, page_size)
    page = st.number_input("Page", min_value=1, max_value=first.total_pages, value=1, step=1)
    result = query_table(ctx["filtered"], search, sort_key, sort_direction, int(page), page_size)

    with card(f"{result.total_count:,} incidents"):
        display = result.rows.drop(columns=["raw"], errors="ignore").copy()
        display["institution_type"] = display["institution_type"].map(institution_type_label)
        display["severity"] = display["severity"].map(severity_label)
        st.dataframe(display, use_container_width=True, hide_index=True)
        st.caption(f"Page {result.page} of {result.total_pages}")

        rows = sort_records(search_records(ctx["filtered"], search), sort_key, sort_direction)
        b1, b2 = st.columns(2)
        b1.download_button("Export CSV", data=export_csv(rows).encode("utf-8"), file_name=export_filename("csv"), mime="text/csv")
        b2.download_button("Export JSON", data=export_json(rows).encode("utf-8"), file_name=export_filename("json"), mime="application/json")

    if not result.rows.empty:
        with card("Incident detail"):
            selected = st.selectbox("Incident", result.rows["id"].astype(str).tolist())
            record = result.rows[result.rows["id"].astype(str) == selected].iloc[0]
            st.markdown(f"**{record['institution_name']}** · {record['city']}, {record['state']}")
            st.write(record["description"])
            st.json(record["raw"], expanded=False)


def render_comparison_page():
    render_page_header("Comparison", "Home / Comparison", filter_summary_html)
    with card("Select groups"):
        group_by = st.radio("Compare", ["state", "period"], horizontal=True, format_func=lambda v: "States" if v == "state" else "Months")
        options = available_group_keys(ctx["filtered"], group_by)
        keys = st.multiselect(f"Pick up to {settings.max_compare}", options=options, max_selections=settings.max_compare)
    if not keys:
        st.info("Select at least one group to compare.")
        return
    payload = compute_comparison(spec, ctx, keys, group_by=group_by, max_groups=settings.max_compare)
    with card("Side by side"):
        st.dataframe(pd.DataFrame(payload["groups"]), use_container_width=True, hide_index=True)
    with card("Relative profile"):
        radar = pd.DataFrame(payload["radar"])
        if not radar.empty:
            st.altair_chart(radar_chart(radar), use_container_width=False)


def render_report_page():
    render_page_header("Report an Incident", "Home / Report", filter_summary_html)
    with st.form("report"):
        c1, c2 = st.columns(2)
        with c1:
            title = st.text_input("Title")
            description = st.text_area("Description")
            incident_date = st.date_input("Date", value=date.today())
            category = st.text_input("Category")
            severity = st.selectbox("Severity", ["low", "medium", "high", "critical"], format_func=severity_label)
        with c2:
            institution_name = st.text_input("Institution")
            institution_type = st.selectbox(
                "Institution type", ["elementary", "middle", "high", "university"], format_func=institution_type_label
            )
            state = st.text_input("State")
            city = st.text_input("City")
            location = st.text_input("Location")
            reporter_name = st.text_input("Your name")
            reporter_email = st.text_input("Email")
            reporter_role = st.text_input("Role")
        submitted = st.form_submit_button("Submit report")
    if submitted:
        draft = {
            "title": title,
            "description": description,
            "date": incident_date.isoformat(),
            "category": category,
            "severity": severity,
            "institution_name": institution_name,
            "institution_type": institution_type,
            "state": state,
            "city": city,
            "location": location,
            "reporter_name": reporter_name,
            "reporter_email": reporter_email,
            "reporter_role": reporter_role,
        }
        logger.info("Incident report received: %s", draft)
        st.success("Report received. Thank you.")


def render_debug_page():
    render_page_header("Data Quality", "Home / Data Quality", filter_summary_html)
    payload = compute_debug(spec, ctx)
    with card("Data Quality"):
        st.markdown("**Row counts**")
        st.write(payload["row_counts"])
        st.markdown("**Cleaning checks**")
        st.write(payload["cleaning_checks"])
        if payload["date_coverage"]:
            st.markdown("**Date coverage**")
            st.write(payload["date_coverage"])
        for name, ids in payload["samples"].items():
            if ids:
                st.markdown(f"**Sample ids: {name.replace('_', ' ')}**")
                st.write(ids)
    st.caption(f"Sources: {', '.join(data_ctx.get('files') or ['incident API'])}")


if current_page == "Map":
    render_map_page()
elif current_page == "Analytics":
    render_analytics_page()
elif current_page == "Table":
    render_table_page()
elif current_page == "Comparison":
    render_comparison_page()
elif current_page == "Report incident":
    render_report_page()
else:
    render_debug_page()
