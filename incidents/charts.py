from __future__ import annotations

from typing import Any, Dict

import altair as alt
import pandas as pd

from incidents.classify import SEVERITY_LABELS

alt.data_transformers.disable_max_rows()

SEVERITY_COLORS = {
    "Critical": "#dc2626",
    "High": "#ea580c",
    "Medium": "#ca8a04",
    "Low": "#16a34a",
}


def to_vega_spec(chart: alt.Chart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()


def has_severity_breakdown(series: pd.DataFrame) -> bool:
    levels = list(SEVERITY_LABELS.keys())
    if not set(levels).issubset(series.columns):
        return False
    return bool(series[levels].to_numpy().sum() > 0)


def time_series_chart(series: pd.DataFrame) -> alt.Chart:
    """Monthly incidents stacked by severity, or a single area when the series has no severity split."""
    if not has_severity_breakdown(series):
        return (
            alt.Chart(series[["period", "incidents"]])
            .mark_area(opacity=0.8, color="#2563eb")
            .encode(
                x=alt.X("period:O", title="Month", axis=alt.Axis(grid=False, labelAngle=-45)),
                y=alt.Y("incidents:Q", title="Incidents", axis=alt.Axis(gridDash=[4, 4], domain=False, ticks=False)),
                tooltip=["period", alt.Tooltip("incidents:Q", format=",")],
            )
            .properties(height=260)
        )
    long = series.melt(
        id_vars=["period"],
        value_vars=list(SEVERITY_LABELS.keys()),
        var_name="severity",
        value_name="count",
    )
    long["severity"] = long["severity"].map(SEVERITY_LABELS)
    hover = alt.selection_point(fields=["severity"], on="mouseover", empty="all")
    return (
        alt.Chart(long)
        .mark_area(opacity=0.8)
        .encode(
            x=alt.X("period:O", title="Month", axis=alt.Axis(grid=False, labelAngle=-45)),
            y=alt.Y("count:Q", stack="zero", title="Incidents", axis=alt.Axis(gridDash=[4, 4], domain=False, ticks=False)),
            color=alt.Color(
                "severity:N",
                scale=alt.Scale(domain=list(SEVERITY_COLORS.keys()), range=list(SEVERITY_COLORS.values())),
            ),
            opacity=alt.condition(hover, alt.value(0.9), alt.value(0.3)),
            tooltip=["period", "severity", alt.Tooltip("count:Q", format=",")],
        )
        .add_params(hover)
        .properties(height=260)
    )


def jurisdiction_chart(agg: pd.DataFrame) -> alt.Chart:
    return (
        alt.Chart(agg)
        .mark_bar(cornerRadiusEnd=3)
        .encode(
            x=alt.X("incidents:Q", title="Incidents"),
            y=alt.Y("state:N", sort="-x", title=None),
            tooltip=["state", "incidents", "affected", "killed", "injured"],
        )
        .properties(height=280)
    )


def category_chart(cat: pd.DataFrame) -> alt.Chart:
    return (
        alt.Chart(cat)
        .mark_arc(innerRadius=50)
        .encode(
            theta=alt.Theta("incidents:Q"),
            color=alt.Color("category:N", sort=None, title=None),
            tooltip=["category", "incidents", "affected"],
        )
        .properties(height=260)
    )


def radar_chart(radar: pd.DataFrame) -> alt.Chart:
    """Normalized comparison metrics as grouped bars (one group per metric)."""
    return (
        alt.Chart(radar)
        .mark_bar()
        .encode(
            x=alt.X("group_key:N", title=None, axis=alt.Axis(labels=False, ticks=False)),
            y=alt.Y("value:Q", title="Relative (0-100)", scale=alt.Scale(domain=[0, 100])),
            color=alt.Color("group_key:N", title="Group"),
            column=alt.Column("metric:N", title=None),
            tooltip=["metric", "group_key", alt.Tooltip("value:Q", format=".1f")],
        )
        .properties(width=90, height=220)
    )


def points_chart(points: pd.DataFrame) -> alt.Chart:
    return (
        alt.Chart(points)
        .mark_circle(opacity=0.7)
        .encode(
            longitude="longitude:Q",
            latitude="latitude:Q",
            size=alt.Size("affected_count:Q", title="Affected", scale=alt.Scale(range=[20, 400])),
            color=alt.Color(
                "severity_label:N",
                title="Severity",
                scale=alt.Scale(domain=list(SEVERITY_COLORS.keys()), range=list(SEVERITY_COLORS.values())),
            ),
            tooltip=["institution_name", "city", "state", "date", "description"],
        )
        .project(type="albersUsa")
        .properties(height=420)
    )
