from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Mapping, Optional, Sequence

import pandas as pd

from incidents.charts import points_chart, to_vega_spec
from incidents.classify import severity_label
from incidents.filters import HEAT_PARAMS, FilterSpecification
from incidents.metrics_analytics import use_precomputed

GRID_COLUMNS = ["cell", "incidents", "lat", "lng"]
POINT_COLUMNS = [
    "id",
    "date",
    "institution_name",
    "city",
    "state",
    "latitude",
    "longitude",
    "affected_count",
    "severity",
    "institution_type",
    "description",
]


def valid_coordinates(df: pd.DataFrame) -> pd.Series:
    """Rows with both coordinates present, in range, and not the (0, 0) placeholder."""
    lat = pd.to_numeric(df["latitude"], errors="coerce")
    lng = pd.to_numeric(df["longitude"], errors="coerce")
    return (
        lat.notna()
        & lng.notna()
        & lat.between(-90, 90)
        & lng.between(-180, 180)
        & ~((lat == 0) & (lng == 0))
    )


def map_points(df: pd.DataFrame) -> pd.DataFrame:
    if df.empty:
        return df.reindex(columns=POINT_COLUMNS)
    return df.loc[valid_coordinates(df), POINT_COLUMNS]


def map_bounds(points: pd.DataFrame) -> Optional[Dict[str, float]]:
    if points.empty:
        return None
    return {
        "min_lat": float(points["latitude"].min()),
        "max_lat": float(points["latitude"].max()),
        "min_lng": float(points["longitude"].min()),
        "max_lng": float(points["longitude"].max()),
    }


def heat_grid(df: pd.DataFrame, precision: int = 1) -> pd.DataFrame:
    """Count mappable incidents per rounded lat/lng cell, busiest cells first."""
    points = map_points(df)
    if points.empty:
        return pd.DataFrame(columns=GRID_COLUMNS)
    work = pd.DataFrame(
        {
            "lat_key": points["latitude"].round(precision),
            "lng_key": points["longitude"].round(precision),
            "latitude": points["latitude"],
            "longitude": points["longitude"],
        }
    )
    grid = (
        work.groupby(["lat_key", "lng_key"], sort=False)
        .agg(incidents=("latitude", "size"), lat=("latitude", "mean"), lng=("longitude", "mean"))
        .reset_index()
    )
    grid["cell"] = [f"{a:.{precision}f},{b:.{precision}f}" for a, b in zip(grid["lat_key"], grid["lng_key"])]
    grid = grid.sort_values("incidents", ascending=False, kind="mergesort").reset_index(drop=True)
    return grid[GRID_COLUMNS]


def grid_from_upstream(cells: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    if not cells:
        return pd.DataFrame(columns=GRID_COLUMNS)
    df = pd.DataFrame.from_records(list(cells)).rename(columns={"geohash6": "cell"})
    for col in GRID_COLUMNS:
        if col not in df.columns:
            df[col] = pd.NA
    df["incidents"] = pd.to_numeric(df["incidents"], errors="coerce").fillna(0).astype(int)
    for col in ("lat", "lng"):
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["lat", "lng"])
    return df.sort_values("incidents", ascending=False, kind="mergesort").reset_index(drop=True)[GRID_COLUMNS]


def resolve_heat_grid(
    df: pd.DataFrame,
    precomputed: Optional[Sequence[Mapping[str, Any]]] = None,
    strategy: str = "precomputed",
    precision: int = 1,
    spec: Optional[FilterSpecification] = None,
) -> pd.DataFrame:
    if use_precomputed("heat grid", precomputed, strategy, spec, HEAT_PARAMS):
        return grid_from_upstream(precomputed)
    return heat_grid(df, precision)


def compute_map(filters: FilterSpecification, ctx: Dict[str, Any], strategy: str = "precomputed") -> Dict[str, Any]:
    df: pd.DataFrame = ctx.get("filtered", pd.DataFrame())
    precomputed: Dict[str, Any] = ctx.get("precomputed") or {}

    points = map_points(df)
    grid = resolve_heat_grid(df, precomputed.get("heat"), strategy, spec=filters)
    unmapped = int(len(df) - len(points))

    charts: Dict[str, Any] = {}
    if not points.empty:
        chart_df = points.assign(
            severity_label=points["severity"].map(severity_label),
            date=points["date"].dt.strftime("%Y-%m-%d"),
        )
        charts["points"] = to_vega_spec(points_chart(chart_df))

    return {
        "filters": asdict(filters),
        "strategy": strategy,
        "points": points.assign(date=points["date"].dt.strftime("%Y-%m-%d")).to_dict(orient="records") if not points.empty else [],
        "bounds": map_bounds(points),
        "unmapped_count": unmapped,
        "heat": grid.to_dict(orient="records"),
        "charts": charts,
    }
