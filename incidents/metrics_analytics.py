from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from incidents.charts import category_chart, jurisdiction_chart, time_series_chart, to_vega_spec
from incidents.classify import INSTITUTION_TYPE_LABELS, SEVERITY_LABELS, SEVERITY_LEVELS
from incidents.data import round_half_up
from incidents.filters import (
    BY_STATE_PARAMS,
    SERIES_PARAMS,
    FilterSpecification,
    active_params,
    expressible_with,
)

logger = logging.getLogger(__name__)

STRATEGIES = ("local", "precomputed")

TIME_SERIES_COLUMNS = ["period", "incidents", "killed", "injured", "affected", "critical", "high", "medium", "low"]
JURISDICTION_COLUMNS = ["state", "incidents", "affected", "killed", "injured"]
CATEGORY_COLUMNS = ["category", "incidents", "affected"]

CATEGORY_LABELS: Dict[str, Mapping[str, str]] = {
    "institution_type": INSTITUTION_TYPE_LABELS,
    "severity": SEVERITY_LABELS,
}


def _empty(columns: List[str]) -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=object if c in ("period", "state", "category") else int) for c in columns})


def period_keys(dates: pd.Series) -> pd.Series:
    """Calendar-month bucket key (YYYY-MM); NaT stays missing."""
    return dates.dt.strftime("%Y-%m")


def check_strategy(strategy: str) -> None:
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown strategy: {strategy!r} (expected one of {', '.join(STRATEGIES)})")


# ---------------- Local aggregates ----------------
def time_series(df: pd.DataFrame) -> pd.DataFrame:
    """Incidents per calendar month, ascending; undated records are skipped."""
    if df.empty:
        return _empty(TIME_SERIES_COLUMNS)
    dated = df[df["date"].notna()]
    if dated.empty:
        return _empty(TIME_SERIES_COLUMNS)

    work = pd.DataFrame(
        {
            "period": period_keys(dated["date"]),
            "killed": dated["killed"].astype(int),
            "injured": dated["injured"].astype(int),
            "affected": dated["affected_count"].astype(int),
        }
    )
    for level in SEVERITY_LEVELS:
        work[level] = (dated["severity"] == level).astype(int)

    out = (
        work.groupby("period", sort=True)
        .agg(
            incidents=("killed", "size"),
            killed=("killed", "sum"),
            injured=("injured", "sum"),
            affected=("affected", "sum"),
            critical=("critical", "sum"),
            high=("high", "sum"),
            medium=("medium", "sum"),
            low=("low", "sum"),
        )
        .reset_index()
    )
    return out[TIME_SERIES_COLUMNS]


def _sort_by_incidents(agg: pd.DataFrame, top_n: Optional[int]) -> pd.DataFrame:
    # mergesort keeps first-seen order among ties
    agg = agg.sort_values("incidents", ascending=False, kind="mergesort").reset_index(drop=True)
    if top_n is not None:
        agg = agg.head(max(0, int(top_n)))
    return agg


def jurisdiction_aggregate(df: pd.DataFrame, top_n: Optional[int] = None) -> pd.DataFrame:
    """Incidents per state, most incidents first."""
    if df.empty:
        return _empty(JURISDICTION_COLUMNS)
    out = (
        df.assign(state=df["state"].astype(str))
        .groupby("state", sort=False)
        .agg(
            incidents=("affected_count", "size"),
            affected=("affected_count", "sum"),
            killed=("killed", "sum"),
            injured=("injured", "sum"),
        )
        .reset_index()
    )
    return _sort_by_incidents(out[JURISDICTION_COLUMNS], top_n)


def category_aggregate(
    df: pd.DataFrame,
    by: str = "institution_type",
    labels: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    if by not in CATEGORY_LABELS:
        raise ValueError(f"Unknown category: {by!r}")
    if df.empty:
        return _empty(CATEGORY_COLUMNS)
    labels = labels if labels is not None else CATEGORY_LABELS[by]
    category = df[by].astype(str).map(lambda v: labels.get(v, v))
    out = (
        pd.DataFrame({"category": category, "affected": df["affected_count"].astype(int)})
        .groupby("category", sort=False)
        .agg(incidents=("affected", "size"), affected=("affected", "sum"))
        .reset_index()
    )
    return out[CATEGORY_COLUMNS]


# ---------------- Precomputed (upstream) aggregates ----------------
def _upstream_frame(points: Sequence[Mapping[str, Any]], key: str) -> pd.DataFrame:
    df = pd.DataFrame.from_records(list(points))
    for col in ("incidents", "killed", "injured"):
        if col not in df.columns:
            df[col] = 0
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).astype(int)
    df[key] = df[key].astype(str)
    # upstream shapes carry no casualty total
    df["affected"] = df["killed"] + df["injured"]
    return df


def time_series_from_upstream(points: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    if not points:
        return _empty(TIME_SERIES_COLUMNS)
    df = _upstream_frame(points, "period")
    for level in SEVERITY_LEVELS:
        df[level] = 0
    return df.sort_values("period", kind="mergesort").reset_index(drop=True)[TIME_SERIES_COLUMNS]


def jurisdiction_from_upstream(points: Sequence[Mapping[str, Any]], top_n: Optional[int] = None) -> pd.DataFrame:
    if not points:
        return _empty(JURISDICTION_COLUMNS)
    df = _upstream_frame(points, "state")
    return _sort_by_incidents(df[JURISDICTION_COLUMNS], top_n)


def use_precomputed(
    name: str,
    precomputed: Optional[Sequence[Mapping[str, Any]]],
    strategy: str,
    spec: Optional[FilterSpecification],
    params: Sequence[str],
) -> bool:
    """Whether the upstream aggregate can stand in for a local one under `spec`."""
    check_strategy(strategy)
    if strategy != "precomputed":
        return False
    if precomputed is None:
        logger.info("Precomputed %s unavailable; aggregating locally", name)
        return False
    if not expressible_with(spec, params):
        unsent = [p for p in active_params(spec) if p not in params]
        logger.info("Precomputed %s ignores filters %s; aggregating locally", name, ", ".join(unsent))
        return False
    return True


def resolve_time_series(
    df: pd.DataFrame,
    precomputed: Optional[Sequence[Mapping[str, Any]]] = None,
    strategy: str = "precomputed",
    spec: Optional[FilterSpecification] = None,
) -> pd.DataFrame:
    """Pick the upstream monthly series when asked for, present and filtered like `df`; else recompute locally."""
    if use_precomputed("time series", precomputed, strategy, spec, SERIES_PARAMS):
        return time_series_from_upstream(precomputed)
    return time_series(df)


def resolve_jurisdiction_aggregate(
    df: pd.DataFrame,
    precomputed: Optional[Sequence[Mapping[str, Any]]] = None,
    strategy: str = "precomputed",
    top_n: Optional[int] = None,
    spec: Optional[FilterSpecification] = None,
) -> pd.DataFrame:
    if use_precomputed("state aggregate", precomputed, strategy, spec, BY_STATE_PARAMS):
        return jurisdiction_from_upstream(precomputed, top_n)
    return jurisdiction_aggregate(df, top_n)


# ---------------- Page payload ----------------
def month_over_month(series: pd.DataFrame) -> float:
    """Incident change (%) between the last two buckets; 0 when not computable."""
    if len(series) < 2:
        return 0.0
    prev, last = series["incidents"].iloc[-2], series["incidents"].iloc[-1]
    if not prev:
        return 0.0
    return float((last - prev) / prev * 100)


def compute_kpis(df: pd.DataFrame, series: pd.DataFrame) -> Dict[str, Any]:
    total = int(len(df))
    affected = int(df["affected_count"].sum()) if total else 0
    critical = int((df["severity"] == "critical").sum()) if total else 0
    average = round_half_up(affected / total) if total else 0.0
    peak = None
    if not series.empty:
        # idxmax returns the first maximum
        peak = str(series.loc[series["incidents"].idxmax(), "period"])
    return {
        "total_incidents": total,
        "total_affected": affected,
        "critical_incidents": critical,
        "average_affected": int(average or 0),
        "incident_trend_pct": month_over_month(series),
        "peak_period": peak,
    }


def compute_analytics(
    filters: FilterSpecification,
    ctx: Dict[str, Any],
    strategy: str = "precomputed",
    top_n: int = 10,
) -> Dict[str, Any]:
    df: pd.DataFrame = ctx.get("filtered", pd.DataFrame())
    precomputed: Dict[str, Any] = ctx.get("precomputed") or {}

    series = resolve_time_series(df, precomputed.get("series"), strategy, spec=filters)
    states = resolve_jurisdiction_aggregate(df, precomputed.get("by_state"), strategy, top_n=top_n, spec=filters)
    by_type = category_aggregate(df, "institution_type")
    by_severity = category_aggregate(df, "severity")

    charts: Dict[str, Any] = {}
    if not series.empty:
        charts["time_series"] = to_vega_spec(time_series_chart(series))
    if not states.empty:
        charts["by_state"] = to_vega_spec(jurisdiction_chart(states))
    if not by_type.empty:
        charts["by_institution_type"] = to_vega_spec(category_chart(by_type))
        charts["by_severity"] = to_vega_spec(category_chart(by_severity))

    return {
        "filters": asdict(filters),
        "available": bool(ctx.get("available", True)),
        "strategy": strategy,
        "kpis": compute_kpis(df, series),
        "time_series": series.to_dict(orient="records"),
        "by_state": states.to_dict(orient="records"),
        "by_institution_type": by_type.to_dict(orient="records"),
        "by_severity": by_severity.to_dict(orient="records"),
        "charts": charts,
    }
