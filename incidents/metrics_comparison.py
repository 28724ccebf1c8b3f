from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from incidents.charts import radar_chart, to_vega_spec
from incidents.classify import SEVERITY_LEVELS
from incidents.data import round_half_up
from incidents.filters import FilterSpecification
from incidents.metrics_analytics import period_keys

logger = logging.getLogger(__name__)

GROUP_BY = ("state", "period")
DEFAULT_MAX_GROUPS = 4

COMPARISON_COLUMNS = [
    "group_key",
    "incidents",
    "affected",
    "killed",
    "injured",
    "resource_officer_count",
    "resource_officer_rate",
    "average_affected",
    "critical",
    "high",
    "medium",
    "low",
    "critical_rate",
    "high_rate",
    "medium_rate",
    "low_rate",
    "elementary",
    "middle",
    "high_school",
    "university",
]

RADAR_METRICS = ("incidents", "affected", "critical_rate", "high_rate")
RADAR_LABELS = {
    "incidents": "Total incidents",
    "affected": "Total affected",
    "critical_rate": "% critical",
    "high_rate": "% high",
}

# institution_type value -> comparison column
_TYPE_COLUMNS = {"elementary": "elementary", "middle": "middle", "high": "high_school", "university": "university"}


def _check_group_by(group_by: str) -> None:
    if group_by not in GROUP_BY:
        raise ValueError(f"Unknown group_by: {group_by!r} (expected 'state' or 'period')")


def _group_series(df: pd.DataFrame, group_by: str) -> pd.Series:
    if group_by == "state":
        return df["state"].astype("string")
    return period_keys(df["date"]).astype("string")


def _pct(part: int, whole: int) -> float:
    return float(part) / whole * 100 if whole else 0.0


def _dedupe(keys: Sequence[str]) -> List[str]:
    out: List[str] = []
    for k in keys:
        k = str(k)
        if k not in out:
            out.append(k)
    return out


def _summarize(key: str, group: pd.DataFrame) -> Dict[str, Any]:
    n = int(len(group))
    affected = int(group["affected_count"].sum()) if n else 0
    officers = int(group["resource_officer"].astype(bool).sum()) if n else 0
    severity = group["severity"].value_counts()
    types = group["institution_type"].value_counts()

    row: Dict[str, Any] = {
        "group_key": key,
        "incidents": n,
        "affected": affected,
        "killed": int(group["killed"].sum()) if n else 0,
        "injured": int(group["injured"].sum()) if n else 0,
        "resource_officer_count": officers,
        "resource_officer_rate": _pct(officers, n),
        "average_affected": int(round_half_up(affected / n) or 0) if n else 0,
    }
    for level in SEVERITY_LEVELS:
        row[level] = int(severity.get(level, 0))
    for level in SEVERITY_LEVELS:
        row[f"{level}_rate"] = _pct(row[level], n)
    for value, col in _TYPE_COLUMNS.items():
        row[col] = int(types.get(value, 0))
    return row


def compare_groups(
    df: pd.DataFrame,
    group_keys: Sequence[str],
    group_by: str = "state",
    max_groups: Optional[int] = DEFAULT_MAX_GROUPS,
) -> pd.DataFrame:
    """One summary row per requested group key, in request order.

    Keys with no matching records still get a row (all zeros).
    """
    _check_group_by(group_by)
    keys = _dedupe(group_keys)
    if max_groups is not None and len(keys) > max_groups:
        logger.warning("Comparing at most %d groups; ignoring %s", max_groups, ", ".join(keys[max_groups:]))
        keys = keys[:max_groups]

    rows = []
    groups = _group_series(df, group_by) if not df.empty else None
    for key in keys:
        members = df if groups is None else df.loc[(groups == key).fillna(False).astype(bool)]
        rows.append(_summarize(key, members))
    if not rows:
        return pd.DataFrame(columns=COMPARISON_COLUMNS)
    return pd.DataFrame(rows, columns=COMPARISON_COLUMNS)


def radar_view(rows: pd.DataFrame, metrics: Sequence[str] = RADAR_METRICS) -> pd.DataFrame:
    """Scale each metric to 0-100 relative to the largest value among the groups."""
    records: List[Dict[str, Any]] = []
    if rows.empty:
        return pd.DataFrame(columns=["metric", "label", "group_key", "value"])
    for metric in metrics:
        if metric not in rows.columns:
            raise ValueError(f"Unknown comparison metric: {metric!r}")
        values = rows[metric].astype(float)
        peak = float(values.max())
        for key, value in zip(rows["group_key"], values):
            records.append(
                {
                    "metric": metric,
                    "label": RADAR_LABELS.get(metric, metric),
                    "group_key": key,
                    "value": value / peak * 100 if peak > 0 else 0.0,
                }
            )
    return pd.DataFrame(records, columns=["metric", "label", "group_key", "value"])


def available_group_keys(df: pd.DataFrame, group_by: str = "state") -> List[str]:
    _check_group_by(group_by)
    if df.empty:
        return []
    keys = _group_series(df, group_by).dropna()
    return sorted(k for k in keys.unique() if k)


def compute_comparison(
    filters: FilterSpecification,
    ctx: Dict[str, Any],
    group_keys: Sequence[str],
    group_by: str = "state",
    max_groups: Optional[int] = DEFAULT_MAX_GROUPS,
) -> Dict[str, Any]:
    df: pd.DataFrame = ctx.get("filtered", pd.DataFrame())
    rows = compare_groups(df, group_keys, group_by=group_by, max_groups=max_groups)
    radar = radar_view(rows)

    charts: Dict[str, Any] = {}
    if not radar.empty:
        charts["radar"] = to_vega_spec(radar_chart(radar))

    return {
        "filters": asdict(filters),
        "group_by": group_by,
        "available_keys": available_group_keys(df, group_by),
        "groups": rows.to_dict(orient="records"),
        "radar": radar.to_dict(orient="records"),
        "charts": charts,
    }
