from __future__ import annotations

import csv
import json
import math
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from incidents.classify import institution_type_label, severity_label
from incidents.data import json_safe
from incidents.filters import FilterSpecification

SEARCH_COLUMNS = ["institution_name", "city", "state", "source", "description"]

SORT_KEYS = [
    "id",
    "date",
    "institution_name",
    "city",
    "state",
    "affected_count",
    "latitude",
    "longitude",
    "source",
    "institution_type",
    "severity",
    "description",
    "killed",
    "injured",
]
SORT_DIRECTIONS = ("asc", "desc")

EXPORT_COLUMNS = [
    "id",
    "date",
    "institution_name",
    "city",
    "state",
    "institution_type",
    "severity",
    "affected_count",
    "latitude",
    "longitude",
    "source",
    "description",
]

EXPORT_KINDS = ("csv", "json")


@dataclass(frozen=True)
class TablePage:
    rows: pd.DataFrame
    total_count: int
    total_pages: int
    page: int
    page_size: int


def search_records(df: pd.DataFrame, term: str) -> pd.DataFrame:
    """Case-insensitive substring match over the searchable text columns."""
    term = (term or "").strip()
    if not term or df.empty:
        return df
    needle = term.lower()
    mask = pd.Series(False, index=df.index)
    for col in SEARCH_COLUMNS:
        mask |= df[col].astype("string").str.lower().str.contains(needle, regex=False).fillna(False).astype(bool)
    return df.loc[mask]


def sort_records(df: pd.DataFrame, sort_key: str = "date", sort_direction: str = "desc") -> pd.DataFrame:
    if sort_key not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_key!r}")
    if sort_direction not in SORT_DIRECTIONS:
        raise ValueError(f"Unknown sort direction: {sort_direction!r} (expected 'asc' or 'desc')")
    if df.empty:
        return df

    column = df[sort_key]
    if pd.api.types.is_numeric_dtype(column) or pd.api.types.is_datetime64_any_dtype(column):
        key = column
    else:
        key = column.astype("string").str.lower()
    order = key.sort_values(ascending=sort_direction == "asc", kind="mergesort", na_position="last").index
    return df.loc[order]


def query_table(
    df: pd.DataFrame,
    search: str = "",
    sort_key: str = "date",
    sort_direction: str = "desc",
    page: int = 1,
    page_size: int = 25,
) -> TablePage:
    """Search, sort and paginate canonical records (pages are 1-indexed)."""
    if page < 1:
        raise ValueError(f"page must be >= 1, got {page}")
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")

    matched = sort_records(search_records(df, search), sort_key, sort_direction)
    total = int(len(matched))
    total_pages = max(1, math.ceil(total / page_size))
    start = (page - 1) * page_size
    rows = matched.iloc[start : start + page_size]
    return TablePage(rows=rows, total_count=total, total_pages=total_pages, page=page, page_size=page_size)


# ---------------- Export ----------------
def _export_frame(df: pd.DataFrame) -> pd.DataFrame:
    out = df.reindex(columns=EXPORT_COLUMNS).copy()
    out["date"] = out["date"].dt.strftime("%Y-%m-%d") if not out.empty else out["date"]
    out["institution_type"] = out["institution_type"].map(institution_type_label)
    out["severity"] = out["severity"].map(severity_label)
    return out


def export_csv(df: pd.DataFrame) -> str:
    """CSV of every given row in the fixed export column order."""
    # minimal quoting: only fields containing the delimiter, quotes or newlines
    return _export_frame(df).to_csv(index=False, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")


def records_for_json(df: pd.DataFrame, include_raw: bool = False) -> List[Dict[str, Any]]:
    columns = [c for c in df.columns if c != "raw" or include_raw]
    out: List[Dict[str, Any]] = []
    for record in df[columns].to_dict(orient="records"):
        row = {}
        for k, v in record.items():
            if k == "date":
                row[k] = None if pd.isna(v) else v.strftime("%Y-%m-%d")
            elif k == "raw":
                row[k] = v
            else:
                row[k] = json_safe(v)
        out.append(row)
    return out


def export_json(df: pd.DataFrame, include_raw: bool = False) -> str:
    return json.dumps(records_for_json(df, include_raw=include_raw), indent=2, ensure_ascii=False)


def export_filename(kind: str, today: Optional[date] = None) -> str:
    if kind not in EXPORT_KINDS:
        raise ValueError(f"Unknown export format: {kind!r} (expected 'csv' or 'json')")
    today = today or date.today()
    return f"school_incidents_{today.isoformat()}.{kind}"


def compute_table(
    filters: FilterSpecification,
    ctx: Dict[str, Any],
    search: str = "",
    sort_key: str = "date",
    sort_direction: str = "desc",
    page: int = 1,
    page_size: int = 25,
) -> Dict[str, Any]:
    df: pd.DataFrame = ctx.get("filtered", pd.DataFrame())
    result = query_table(df, search, sort_key, sort_direction, page, page_size)
    return {
        "filters": asdict(filters),
        "search": search,
        "sort_key": sort_key,
        "sort_direction": sort_direction,
        "page": result.page,
        "page_size": result.page_size,
        "total_count": result.total_count,
        "total_pages": result.total_pages,
        "rows": records_for_json(result.rows),
    }
