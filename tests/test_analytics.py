import logging

import pandas as pd
import pytest

from incidents.data import empty_canonical_frame
from incidents.filters import FilterSpecification, apply_filters
from incidents.metrics_analytics import (
    CATEGORY_COLUMNS,
    JURISDICTION_COLUMNS,
    TIME_SERIES_COLUMNS,
    category_aggregate,
    compute_analytics,
    jurisdiction_aggregate,
    month_over_month,
    resolve_jurisdiction_aggregate,
    resolve_time_series,
    time_series,
)


def test_time_series_three_months_sorted(records):
    series = time_series(records)
    assert list(series.columns) == TIME_SERIES_COLUMNS
    assert series["period"].tolist() == ["2024-01", "2024-02", "2024-03"]
    assert series["incidents"].tolist() == [2, 1, 2]
    assert series["killed"].tolist() == [1, 0, 2]
    assert series["injured"].tolist() == [2, 4, 22]
    assert series["affected"].tolist() == [3, 4, 24]
    jan = series.iloc[0]
    assert (jan["critical"], jan["high"], jan["medium"], jan["low"]) == (1, 0, 0, 1)


def test_time_series_ignores_input_order(records):
    reversed_series = time_series(records.iloc[::-1])
    assert reversed_series["period"].tolist() == ["2024-01", "2024-02", "2024-03"]


def test_time_series_skips_undated_records(records):
    assert time_series(records)["incidents"].sum() == 5


def test_jurisdiction_aggregate_sorted_descending(records):
    agg = jurisdiction_aggregate(records)
    assert list(agg.columns) == JURISDICTION_COLUMNS
    assert agg["state"].tolist() == ["TX", "CA", "NY"]
    assert agg["incidents"].tolist() == [3, 2, 1]
    assert agg["affected"].tolist() == [15, 16, 1]
    assert agg["killed"].tolist() == [3, 0, 0]


def test_jurisdiction_ties_keep_first_seen_order(records):
    agg = jurisdiction_aggregate(records[records["id"].isin(["5", "3", "1"])].iloc[[2, 1, 0]])
    assert agg["state"].tolist() == ["NY", "CA", "TX"]


def test_jurisdiction_top_n(records):
    assert jurisdiction_aggregate(records, top_n=2)["state"].tolist() == ["TX", "CA"]


def test_category_aggregate_by_institution_type(records):
    cat = category_aggregate(records)
    assert list(cat.columns) == CATEGORY_COLUMNS
    assert cat.to_dict(orient="records") == [
        {"category": "High School", "incidents": 3, "affected": 16},
        {"category": "Elementary School", "incidents": 1, "affected": 0},
        {"category": "Middle School", "incidents": 1, "affected": 4},
        {"category": "University", "incidents": 1, "affected": 12},
    ]


def test_category_aggregate_by_severity_with_custom_labels(records):
    cat = category_aggregate(records, "severity", labels={"critical": "Crit"})
    assert cat["category"].tolist() == ["Crit", "low", "medium", "high"]


def test_category_aggregate_rejects_unknown_dimension(records):
    with pytest.raises(ValueError):
        category_aggregate(records, "city")


@pytest.mark.parametrize(
    "fn,columns",
    [(time_series, TIME_SERIES_COLUMNS), (jurisdiction_aggregate, JURISDICTION_COLUMNS), (category_aggregate, CATEGORY_COLUMNS)],
)
def test_empty_input_gives_empty_result(fn, columns):
    out = fn(empty_canonical_frame())
    assert out.empty
    assert list(out.columns) == columns


UPSTREAM_SERIES = [
    {"period": "2024-02", "incidents": 4, "killed": 1, "injured": 5},
    {"period": "2024-01", "incidents": 2, "killed": 0, "injured": 1},
]
UPSTREAM_STATES = [
    {"state": "CA", "incidents": 2, "killed": 0, "injured": 3},
    {"state": "TX", "incidents": 7, "killed": 2, "injured": 2},
]


def test_precomputed_series_is_reshaped(records):
    series = resolve_time_series(records, UPSTREAM_SERIES, "precomputed")
    assert list(series.columns) == TIME_SERIES_COLUMNS
    assert series["period"].tolist() == ["2024-01", "2024-02"]
    # upstream shape has no casualty total
    assert series["affected"].tolist() == [1, 6]


def test_precomputed_falls_back_to_local(records):
    assert resolve_time_series(records, None, "precomputed").equals(time_series(records))
    assert resolve_jurisdiction_aggregate(records, None, "precomputed").equals(jurisdiction_aggregate(records))


def test_local_strategy_ignores_precomputed(records):
    agg = resolve_jurisdiction_aggregate(records, UPSTREAM_STATES, "local")
    assert agg["state"].tolist() == ["TX", "CA", "NY"]


def test_precomputed_states_sorted_and_truncated(records):
    agg = resolve_jurisdiction_aggregate(records, UPSTREAM_STATES, "precomputed", top_n=1)
    assert agg.to_dict(orient="records") == [{"state": "TX", "incidents": 7, "affected": 4, "killed": 2, "injured": 2}]


def test_unknown_strategy_raises(records):
    with pytest.raises(ValueError):
        resolve_time_series(records, None, "cloud")


def test_month_over_month():
    series = pd.DataFrame({"period": ["2024-01", "2024-02"], "incidents": [4, 5]})
    assert month_over_month(series) == pytest.approx(25.0)
    assert month_over_month(series.head(1)) == 0.0
    assert month_over_month(pd.DataFrame({"period": ["a", "b"], "incidents": [0, 3]})) == 0.0


def test_compute_analytics_payload(records):
    ctx = {"filtered": records, "available": True}
    payload = compute_analytics(FilterSpecification(), ctx, strategy="local")
    kpis = payload["kpis"]
    assert kpis["total_incidents"] == 6
    assert kpis["total_affected"] == 32
    assert kpis["critical_incidents"] == 2
    assert kpis["average_affected"] == 5
    assert kpis["incident_trend_pct"] == pytest.approx(100.0)
    assert kpis["peak_period"] == "2024-01"
    assert [p["period"] for p in payload["time_series"]] == ["2024-01", "2024-02", "2024-03"]
    assert payload["by_state"][0]["state"] == "TX"
    assert set(payload["charts"]) == {"time_series", "by_state", "by_institution_type", "by_severity"}
    assert payload["charts"]["by_state"]["mark"]["type"] == "bar"


def test_compute_analytics_empty(records):
    ctx = {"filtered": records.iloc[0:0], "available": True}
    payload = compute_analytics(FilterSpecification(states=("ZZ",)), ctx, strategy="local")
    assert payload["kpis"]["total_incidents"] == 0
    assert payload["kpis"]["average_affected"] == 0
    assert payload["kpis"]["incident_trend_pct"] == 0.0
    assert payload["time_series"] == []
    assert payload["charts"] == {}


def test_precomputed_series_skipped_when_filter_is_not_sent_upstream(records, caplog):
    spec = FilterSpecification(shooting_types=("indiscriminate",))
    filtered = apply_filters(records, spec)
    with caplog.at_level(logging.INFO, logger="incidents.metrics_analytics"):
        series = resolve_time_series(filtered, UPSTREAM_SERIES, "precomputed", spec=spec)
    assert series.equals(time_series(filtered))
    assert "shooting_type" in caplog.text


def test_precomputed_series_kept_for_filters_sent_upstream(records):
    spec = FilterSpecification(states=("TX",), school_types=("public",))
    series = resolve_time_series(apply_filters(records, spec), UPSTREAM_SERIES, "precomputed", spec=spec)
    assert series["incidents"].tolist() == [2, 4]


def test_precomputed_states_skipped_when_state_filter_active(records):
    spec = FilterSpecification(states=("TX",))
    filtered = apply_filters(records, spec)
    agg = resolve_jurisdiction_aggregate(filtered, UPSTREAM_STATES, "precomputed", spec=spec)
    assert agg["state"].tolist() == ["TX"]
    assert agg.iloc[0]["incidents"] == 3


def test_precomputed_states_skipped_for_casualty_bounds(records):
    spec = FilterSpecification(min_killed=1)
    filtered = apply_filters(records, spec)
    agg = resolve_jurisdiction_aggregate(filtered, UPSTREAM_STATES, "precomputed", spec=spec)
    assert agg.equals(jurisdiction_aggregate(filtered))


def test_analytics_page_agrees_with_its_filters(records):
    spec = FilterSpecification(shooting_types=("indiscriminate",))
    ctx = {"filtered": apply_filters(records, spec), "precomputed": {"series": UPSTREAM_SERIES, "by_state": UPSTREAM_STATES}}
    payload = compute_analytics(spec, ctx)
    total = payload["kpis"]["total_incidents"]
    assert total == 1
    assert sum(p["incidents"] for p in payload["time_series"]) == total
    assert sum(s["incidents"] for s in payload["by_state"]) == total


def _chart_rows(chart: dict) -> list:
    return [row for rows in chart["datasets"].values() for row in rows]


def test_upstream_series_chart_plots_incident_counts(records):
    payload = compute_analytics(FilterSpecification(), {"filtered": records, "precomputed": {"series": UPSTREAM_SERIES}})
    chart = payload["charts"]["time_series"]
    assert chart["encoding"]["y"]["field"] == "incidents"
    assert "color" not in chart["encoding"]
    assert sorted(row["incidents"] for row in _chart_rows(chart)) == [2, 4]


def test_local_series_chart_stacks_severity(records):
    payload = compute_analytics(FilterSpecification(), {"filtered": records}, strategy="local")
    chart = payload["charts"]["time_series"]
    assert chart["encoding"]["color"]["field"] == "severity"
    assert sum(row["count"] for row in _chart_rows(chart)) == 5
