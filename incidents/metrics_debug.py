from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List

import pandas as pd

from incidents.data import PERPETRATOR1_COLUMNS, PERPETRATOR2_COLUMNS
from incidents.filters import FilterSpecification
from incidents.metrics_map import valid_coordinates

SAMPLE_SIZE = 10


def _sample_ids(df: pd.DataFrame, mask: pd.Series) -> List[str]:
    return [str(v) for v in df.loc[mask, "id"].head(SAMPLE_SIZE).tolist()]


def _any_present(raw: pd.DataFrame, cols: List[str]) -> pd.Series:
    present = pd.Series(False, index=raw.index)
    for col in cols:
        if col in raw.columns:
            present |= raw[col].notna()
    return present


def compute_debug(filters: FilterSpecification, ctx: Dict[str, Any]) -> Dict[str, Any]:
    records: pd.DataFrame = ctx.get("records", pd.DataFrame())
    raw: pd.DataFrame = ctx.get("raw", pd.DataFrame())
    payload: Dict[str, Any] = {
        "filters": asdict(filters),
        "available": bool(ctx.get("available", True)),
        "row_counts": {
            "raw_rows": int(len(raw)),
            "records": int(len(records)),
            "filtered_records": int(len(ctx.get("filtered", pd.DataFrame()))),
        },
        "cleaning_checks": {
            "negative_counts_clipped": int(ctx.get("negatives_clipped", 0) or 0),
            "invalid_dates": 0,
            "unmappable_coordinates": 0,
            "casualty_mismatches": 0,
            "perpetrator2_without_perpetrator1": 0,
        },
        "samples": {},
        "date_coverage": None,
    }
    if records.empty:
        return payload

    checks = payload["cleaning_checks"]
    samples = payload["samples"]

    bad_dates = records["date"].isna()
    checks["invalid_dates"] = int(bad_dates.sum())
    samples["invalid_dates"] = _sample_ids(records, bad_dates)

    unmappable = ~valid_coordinates(records)
    checks["unmappable_coordinates"] = int(unmappable.sum())
    samples["unmappable_coordinates"] = _sample_ids(records, unmappable)

    mismatch = records["affected_count"] != (records["killed"] + records["injured"])
    checks["casualty_mismatches"] = int(mismatch.sum())
    samples["casualty_mismatches"] = _sample_ids(records, mismatch)

    if not raw.empty and len(raw) == len(records):
        orphan = (_any_present(raw, PERPETRATOR2_COLUMNS) & ~_any_present(raw, PERPETRATOR1_COLUMNS)).to_numpy()
        orphan_mask = pd.Series(orphan, index=records.index)
        checks["perpetrator2_without_perpetrator1"] = int(orphan_mask.sum())
        samples["perpetrator2_without_perpetrator1"] = _sample_ids(records, orphan_mask)

    dated = records["date"].dropna()
    if not dated.empty:
        payload["date_coverage"] = {
            "first": dated.min().strftime("%Y-%m-%d"),
            "last": dated.max().strftime("%Y-%m-%d"),
            "months": int(dated.dt.strftime("%Y-%m").nunique()),
        }
    return payload
