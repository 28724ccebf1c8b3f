from __future__ import annotations

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from incidents.classify import classify_institution_type, classify_severity, grade_span
from incidents.config import Settings, load_settings
from incidents.filters import FilterSpecification, apply_filters, normalize_filters

logger = logging.getLogger(__name__)

SOURCE_LABEL = "School Incident Database"

RAW_COLUMNS: List[str] = [
    "uid",
    "nces_school_id",
    "school_name",
    "nces_district_id",
    "district_name",
    "date",
    "school_year",
    "year",
    "time",
    "day_of_week",
    "city",
    "state",
    "school_type",
    "enrollment",
    "killed",
    "injured",
    "casualties",
    "shooting_type",
    "age_shooter1",
    "gender_shooter1",
    "race_ethnicity_shooter1",
    "shooter_relationship1",
    "shooter_deceased1",
    "deceased_notes1",
    "age_shooter2",
    "gender_shooter2",
    "race_ethnicity_shooter2",
    "shooter_relationship2",
    "shooter_deceased2",
    "deceased_notes2",
    "white",
    "black",
    "hispanic",
    "asian",
    "american_indian_alaska_native",
    "hawaiian_native_pacific_islander",
    "two_or_more",
    "resource_officer",
    "weapon",
    "weapon_source",
    "lat",
    "long",
    "staffing",
    "low_grade",
    "high_grade",
    "lunch",
    "county",
    "state_fips",
    "county_fips",
    "ulocale",
]

# Header variants seen in exports, applied after snake-casing the header.
RAW_ALIASES: Dict[str, str] = {
    "id": "uid",
    "incident_id": "uid",
    "school": "school_name",
    "institution_name": "school_name",
    "district_id": "nces_district_id",
    "district": "district_name",
    "incident_date": "date",
    "latitude": "lat",
    "longitude": "long",
    "lng": "long",
    "lon": "long",
    "sro": "resource_officer",
    "has_resource_officer": "resource_officer",
    "affected_count": "casualties",
}

COUNT_COLUMNS = ["killed", "injured", "casualties"]

INT_COLUMNS = [
    "year",
    "enrollment",
    "age_shooter1",
    "age_shooter2",
    "white",
    "black",
    "hispanic",
    "asian",
    "american_indian_alaska_native",
    "hawaiian_native_pacific_islander",
    "two_or_more",
    "staffing",
]

BOOL_COLUMNS = ["resource_officer", "shooter_deceased1", "shooter_deceased2"]

STRING_COLUMNS = [
    c
    for c in RAW_COLUMNS
    if c not in COUNT_COLUMNS + INT_COLUMNS + BOOL_COLUMNS + ["lat", "long"]
]

PERPETRATOR1_COLUMNS = [
    "age_shooter1",
    "gender_shooter1",
    "race_ethnicity_shooter1",
    "shooter_relationship1",
    "deceased_notes1",
]
PERPETRATOR2_COLUMNS = [
    "age_shooter2",
    "gender_shooter2",
    "race_ethnicity_shooter2",
    "shooter_relationship2",
    "deceased_notes2",
]

CANONICAL_COLUMNS: List[str] = [
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
    "resource_officer",
    "district_id",
    "school_type",
    "shooting_type",
    "grade_span",
    "raw",
]

_TRUE_TOKENS = {"true", "t", "yes", "y", "1", "1.0"}
_FALSE_TOKENS = {"false", "f", "no", "n", "0", "0.0"}


# ---------------- Helpers ----------------
def snake_header(name: object) -> str:
    return str(name).strip().lower().replace(" ", "_").replace("-", "_")


def drop_duplicate_columns(df: pd.DataFrame) -> pd.DataFrame:
    return df.loc[:, ~df.columns.duplicated()]


def coerce_str_safe(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            series = df[col].astype("string").str.strip()
            series = series.replace({"nan": pd.NA, "None": pd.NA, "null": pd.NA, "": pd.NA})
            df[col] = series
    return df


def numericize(df: pd.DataFrame, cols: Iterable[str]) -> pd.DataFrame:
    for col in cols:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def to_bool(value: object) -> Optional[bool]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    token = str(value).strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def round_half_up(value: object, ndigits: int = 0) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    q = Decimal(10) ** -ndigits
    return float(Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP))


def parse_dates(series: pd.Series) -> pd.Series:
    """Parse calendar dates; anything that is not a real date becomes NaT."""
    if pd.api.types.is_datetime64_any_dtype(series):
        parsed = series
    else:
        text = series.astype("string").str.strip()
        parsed = pd.to_datetime(text, errors="coerce", format="ISO8601")
        retry = parsed.isna() & text.notna() & (text != "")
        if retry.any():
            parsed.loc[retry] = pd.to_datetime(text[retry], errors="coerce", format="mixed")
    if getattr(parsed.dt, "tz", None) is not None:
        parsed = parsed.dt.tz_convert(None)
    return parsed.dt.normalize()


def _is_blank(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def json_safe(value: Any) -> Any:
    if isinstance(value, (pd.Timestamp,)):
        return None if pd.isna(value) else value.isoformat()
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        value = float(value)
    if isinstance(value, float) and (np.isnan(value) or np.isinf(value)):
        return None
    if isinstance(value, np.bool_):
        return bool(value)
    if value is pd.NA or value is pd.NaT:
        return None
    return value


# ---------------- Raw records ----------------
def prepare_raw_frame(df: pd.DataFrame) -> Tuple[pd.DataFrame, int]:
    """Conform an incoming frame to the raw record vocabulary.

    Returns the frame and the number of negative counts that were clipped to 0.
    """
    df = df.copy()
    df.columns = [snake_header(c) for c in df.columns]
    df = df.rename(columns={k: v for k, v in RAW_ALIASES.items() if v not in df.columns})
    df = drop_duplicate_columns(df)
    for col in RAW_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
    df = df[RAW_COLUMNS + [c for c in df.columns if c not in RAW_COLUMNS]].reset_index(drop=True)

    df = coerce_str_safe(df, STRING_COLUMNS)
    df = numericize(df, COUNT_COLUMNS + INT_COLUMNS + ["lat", "long"])

    negatives = 0
    for col in COUNT_COLUMNS:
        values = df[col].fillna(0)
        negatives += int((values < 0).sum())
        df[col] = values.clip(lower=0).astype(int)
    for col in INT_COLUMNS:
        df[col] = df[col].round().astype("Int64")
    for col in BOOL_COLUMNS:
        df[col] = df[col].map(to_bool).astype("boolean")
    df["lat"] = df["lat"].astype(float)
    df["long"] = df["long"].astype(float)

    if negatives:
        logger.warning("Clipped %d negative casualty counts to 0", negatives)
    return df, negatives


def raw_frame_from_records(records: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    if not records:
        return prepare_raw_frame(pd.DataFrame(columns=RAW_COLUMNS))[0]
    return prepare_raw_frame(pd.DataFrame.from_records(list(records)))[0]


def load_raw_records(path: Path | str) -> Tuple[pd.DataFrame, int]:
    """Read raw incident records from a CSV, JSON or Excel export."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pd.read_csv(path, dtype=str, keep_default_na=True)
    elif suffix == ".json":
        payload = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("incidents") or payload.get("data") or []
        df = pd.DataFrame.from_records(payload)
    elif suffix == ".xlsx":
        df = pd.read_excel(path, dtype=str, engine="openpyxl")
    else:
        raise ValueError(f"Unsupported incident file type: {path.suffix}")
    return prepare_raw_frame(df)


# ---------------- Normalizer ----------------
def empty_canonical_frame() -> pd.DataFrame:
    df = pd.DataFrame({c: pd.Series(dtype=object) for c in CANONICAL_COLUMNS})
    df["date"] = pd.Series(dtype="datetime64[ns]")
    for col in ["affected_count", "killed", "injured"]:
        df[col] = pd.Series(dtype=int)
    for col in ["latitude", "longitude"]:
        df[col] = pd.Series(dtype=float)
    return df


def normalize_records(raw: pd.DataFrame) -> pd.DataFrame:
    """Derive the canonical display frame from a prepared raw frame (one row per record)."""
    if raw.empty:
        return empty_canonical_frame()

    killed = raw["killed"].astype(int)
    injured = raw["injured"].astype(int)
    casualties = raw["casualties"].astype(int)
    shooting_type = raw["shooting_type"].astype(object).where(raw["shooting_type"].notna(), None)

    out = pd.DataFrame(index=raw.index)
    out["id"] = raw["uid"].astype("string")
    out["date"] = parse_dates(raw["date"])
    out["institution_name"] = raw["school_name"].astype("string").fillna("")
    out["city"] = raw["city"].astype("string").fillna("")
    out["state"] = raw["state"].astype("string").fillna("")
    out["affected_count"] = casualties
    out["latitude"] = raw["lat"].astype(float)
    out["longitude"] = raw["long"].astype(float)
    out["source"] = SOURCE_LABEL
    out["institution_type"] = [
        classify_institution_type(_text(st), _text(lo), _text(hi))
        for st, lo, hi in zip(raw["school_type"], raw["low_grade"], raw["high_grade"])
    ]
    out["severity"] = [classify_severity(c, k, i) for c, k, i in zip(casualties, killed, injured)]
    out["description"] = [
        f"{st or 'Unknown'} - {k} killed, {i} injured" for st, k, i in zip(shooting_type, killed, injured)
    ]
    out["killed"] = killed
    out["injured"] = injured
    out["resource_officer"] = raw["resource_officer"].fillna(False).astype(bool)
    out["district_id"] = raw["nces_district_id"].astype("string")
    out["school_type"] = raw["school_type"].astype("string")
    out["shooting_type"] = raw["shooting_type"].astype("string")
    out["grade_span"] = [grade_span(_text(lo), _text(hi)) for lo, hi in zip(raw["low_grade"], raw["high_grade"])]
    out["raw"] = [{k: json_safe(v) for k, v in row.items()} for row in raw[RAW_COLUMNS].to_dict(orient="records")]

    invalid_dates = int(out["date"].isna().sum())
    if invalid_dates:
        logger.warning("%d incident records have no parseable date; excluded from date-based views", invalid_dates)
    return out.reset_index(drop=True)


def normalize_record(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Normalize a single raw record (mapping) into a canonical record dict."""
    frame = normalize_records(raw_frame_from_records([raw]))
    return frame.to_dict(orient="records")[0]


def _text(value: object) -> Optional[str]:
    return None if _is_blank(value) else str(value)


# ---------------- Lookups ----------------
def compute_lookups(raw: pd.DataFrame) -> Dict[str, Any]:
    """Distinct filter values: the local stand-in for the upstream lookups endpoint."""
    if raw.empty:
        return {"states": [], "school_types": [], "shooting_types": [], "districts": []}

    def distinct(col: str) -> List[str]:
        return sorted(str(v) for v in raw[col].dropna().unique() if str(v).strip())

    districts_df = (
        raw.dropna(subset=["nces_district_id"])
        .drop_duplicates(subset=["nces_district_id"])
        .sort_values(["district_name", "nces_district_id"], na_position="last")
    )
    districts = [
        {
            "id": str(r["nces_district_id"]),
            "name": _text(r["district_name"]) or str(r["nces_district_id"]),
            "state": _text(r["state"]),
            "county": _text(r["county"]),
        }
        for r in districts_df[["nces_district_id", "district_name", "state", "county"]].to_dict(orient="records")
    ]
    return {
        "states": distinct("state"),
        "school_types": distinct("school_type"),
        "shooting_types": distinct("shooting_type"),
        "districts": districts,
    }


# ---------------- Data context ----------------
def build_data_context(raw: pd.DataFrame, *, files: Optional[List[str]] = None, negatives_clipped: int = 0) -> Dict[str, Any]:
    return {
        "available": True,
        "files": files or [],
        "raw": raw,
        "records": normalize_records(raw),
        "negatives_clipped": negatives_clipped,
    }


def unavailable_context() -> Dict[str, Any]:
    """No data could be obtained (distinct from a source that returned zero records)."""
    return {
        "available": False,
        "files": [],
        "raw": raw_frame_from_records([]),
        "records": empty_canonical_frame(),
        "negatives_clipped": 0,
    }


def file_signature(path: Path) -> Tuple[str, float]:
    return str(path), path.stat().st_mtime


@lru_cache(maxsize=4)
def _load_dashboard_data_cached(files_sig: Tuple[str, float]) -> Dict[str, Any]:
    path = Path(files_sig[0])
    raw, negatives = load_raw_records(path)
    logger.info("Loaded %d incident records from %s", len(raw), path.name)
    return build_data_context(raw, files=[path.name], negatives_clipped=negatives)


def load_dashboard_data(settings: Optional[Settings] = None, source: Any = None) -> Dict[str, Any]:
    """Load the record snapshot the dashboard works on.

    A configured local file wins; otherwise records come from the upstream API
    through `source` (a CachedIncidentSource). With neither, the context is
    marked unavailable.
    """
    settings = settings or load_settings()
    path = settings.data_path
    if path is not None and path.exists():
        return _load_dashboard_data_cached(file_signature(path))
    if path is not None:
        logger.warning("Incident data file not found: %s", path)

    if source is not None:
        records = source.fetch_incidents()
        if records is None:
            return unavailable_context()
        raw, negatives = prepare_raw_frame(pd.DataFrame.from_records(records)) if records else (raw_frame_from_records([]), 0)
        return build_data_context(raw, negatives_clipped=negatives)
    return unavailable_context()


def prepare_context(filters: dict | FilterSpecification | None, data_ctx: Dict[str, Any]) -> Dict[str, Any]:
    records: pd.DataFrame = data_ctx.get("records", empty_canonical_frame())
    spec = filters if isinstance(filters, FilterSpecification) else normalize_filters(filters or {})
    filtered = apply_filters(records, spec)
    return {
        "filters": spec,
        "available": bool(data_ctx.get("available", True)),
        "records": records,
        "filtered": filtered,
        "raw": data_ctx.get("raw", pd.DataFrame()),
        "negatives_clipped": int(data_ctx.get("negatives_clipped", 0) or 0),
    }
