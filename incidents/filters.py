from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from datetime import date
from typing import Dict, Iterable, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterSpecification:
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    states: Tuple[str, ...] = ()
    district_ids: Tuple[str, ...] = ()
    school_types: Tuple[str, ...] = ()
    shooting_types: Tuple[str, ...] = ()
    min_killed: Optional[int] = None
    max_killed: Optional[int] = None
    min_injured: Optional[int] = None
    max_injured: Optional[int] = None
    has_resource_officer: Optional[bool] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) in (None, ()) for f in fields(self))


# Wire names used by the upstream query string -> spec field.
QUERY_PARAM_FIELDS: Dict[str, str] = {
    "from": "date_from",
    "to": "date_to",
    "state": "states",
    "district_id": "district_ids",
    "school_type": "school_types",
    "shooting_type": "shooting_types",
    "min_killed": "min_killed",
    "max_killed": "max_killed",
    "min_injured": "min_injured",
    "max_injured": "max_injured",
    "has_resource_officer": "has_resource_officer",
}

# The upstream stats endpoints only understand a subset of the filters.
SERIES_PARAMS = ("from", "to", "state", "school_type")
BY_STATE_PARAMS = ("from", "to", "school_type")
HEAT_PARAMS = ("from", "to", "state", "school_type")


def active_params(spec: FilterSpecification) -> Tuple[str, ...]:
    """Wire names of the predicates the spec actually sets."""
    return tuple(param for param, name in QUERY_PARAM_FIELDS.items() if getattr(spec, name) not in (None, ()))


def expressible_with(spec: Optional[FilterSpecification], params: Sequence[str]) -> bool:
    """True when every active predicate can be sent to an endpoint accepting `params`."""
    if spec is None:
        return True
    return all(p in params for p in active_params(spec))


# ---------------- Parsing ----------------
def _as_str_tuple(values: object) -> Tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        values = values.split(",")
    out = []
    for v in values:  # type: ignore[union-attr]
        if v is None:
            continue
        s = str(v).strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


def _as_int(name: str, value: object) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        logger.warning("Ignoring filter %s=%r (not a number)", name, value)
        return None


def _as_date(name: str, value: object) -> Optional[date]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, date):
        return value
    ts = pd.to_datetime(str(value), errors="coerce")
    if pd.isna(ts):
        logger.warning("Ignoring filter %s=%r (not a date)", name, value)
        return None
    return ts.date()


def _as_bool(name: str, value: object) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"true", "1", "yes", "y"}:
        return True
    if token in {"false", "0", "no", "n"}:
        return False
    if token:
        logger.warning("Ignoring filter %s=%r (not a boolean)", name, value)
    return None


def normalize_filters(raw: dict) -> FilterSpecification:
    """Build a FilterSpecification from a loose dict.

    Accepts the field names of FilterSpecification or the upstream query-string
    names (`from`, `state`, ...). Lists may be given as comma-separated strings.
    """
    raw = dict(raw or {})
    for param, name in QUERY_PARAM_FIELDS.items():
        if param != name and param in raw and name not in raw:
            raw[name] = raw[param]

    return FilterSpecification(
        date_from=_as_date("date_from", raw.get("date_from")),
        date_to=_as_date("date_to", raw.get("date_to")),
        states=_as_str_tuple(raw.get("states")),
        district_ids=_as_str_tuple(raw.get("district_ids")),
        school_types=_as_str_tuple(raw.get("school_types")),
        shooting_types=_as_str_tuple(raw.get("shooting_types")),
        min_killed=_as_int("min_killed", raw.get("min_killed")),
        max_killed=_as_int("max_killed", raw.get("max_killed")),
        min_injured=_as_int("min_injured", raw.get("min_injured")),
        max_injured=_as_int("max_injured", raw.get("max_injured")),
        has_resource_officer=_as_bool("has_resource_officer", raw.get("has_resource_officer")),
    )


def to_query_params(spec: FilterSpecification, only: Optional[Sequence[str]] = None) -> Dict[str, str]:
    """Encode a spec as upstream query parameters, omitting unset predicates."""
    params: Dict[str, str] = {}
    for param, name in QUERY_PARAM_FIELDS.items():
        if only is not None and param not in only:
            continue
        value = getattr(spec, name)
        if value is None or value == ():
            continue
        if isinstance(value, tuple):
            params[param] = ",".join(value)
        elif isinstance(value, bool):
            params[param] = "true" if value else "false"
        elif isinstance(value, date):
            params[param] = value.isoformat()
        else:
            params[param] = str(value)
    return params


# ---------------- Filter engine ----------------
def _first_column(df: pd.DataFrame, candidates: Iterable[str]) -> Optional[str]:
    for col in candidates:
        if col in df.columns:
            return col
    return None


def _dates(series: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(series):
        return series.dt.normalize()
    return pd.to_datetime(series.astype("string"), errors="coerce", format="mixed").dt.normalize()


def _membership(df: pd.DataFrame, columns: Iterable[str], values: Tuple[str, ...]) -> pd.Series:
    mask = pd.Series(False, index=df.index)
    for col in columns:
        if col in df.columns:
            mask |= df[col].astype("string").isin(values).fillna(False).astype(bool)
    return mask


def apply_filters(df: pd.DataFrame, spec: Optional[FilterSpecification]) -> pd.DataFrame:
    """Return the rows satisfying every predicate of `spec`, in input order.

    Accepts canonical frames and raw frames alike.
    """
    if spec is None or spec.is_empty() or df.empty:
        return df

    mask = pd.Series(True, index=df.index)

    if spec.date_from is not None or spec.date_to is not None:
        dates = _dates(df["date"])
        mask &= dates.notna()
        if spec.date_from is not None:
            mask &= dates >= pd.Timestamp(spec.date_from)
        if spec.date_to is not None:
            mask &= dates <= pd.Timestamp(spec.date_to)

    if spec.states:
        mask &= _membership(df, ["state"], spec.states)
    if spec.district_ids:
        col = _first_column(df, ["district_id", "nces_district_id"])
        mask &= _membership(df, [col] if col else [], spec.district_ids)
    if spec.school_types:
        mask &= _membership(df, ["school_type", "institution_type"], spec.school_types)
    if spec.shooting_types:
        mask &= _membership(df, ["shooting_type"], spec.shooting_types)

    for col, lo, hi in (
        ("killed", spec.min_killed, spec.max_killed),
        ("injured", spec.min_injured, spec.max_injured),
    ):
        if lo is None and hi is None:
            continue
        values = pd.to_numeric(df[col], errors="coerce").fillna(0)
        if lo is not None:
            mask &= values >= lo
        if hi is not None:
            mask &= values <= hi

    if spec.has_resource_officer is not None:
        officer = df["resource_officer"].astype("boolean").fillna(False).astype(bool)
        mask &= officer == spec.has_resource_officer

    return df.loc[mask]
