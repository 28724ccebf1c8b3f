from __future__ import annotations

import logging
import math
from datetime import date
from functools import lru_cache
from typing import Any, Dict, Literal, Optional, Tuple

import numpy as np
import pandas as pd
from fastapi import FastAPI, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.schemas import IncidentFiltersModel, IncidentReportDraftModel, ReportReceiptResponse
from incidents.config import Settings, load_settings
from incidents.data import compute_lookups, load_dashboard_data, normalize_record, prepare_context
from incidents.filters import FilterSpecification, normalize_filters
from incidents.metrics_analytics import compute_analytics
from incidents.metrics_comparison import compute_comparison
from incidents.metrics_debug import compute_debug
from incidents.metrics_map import compute_map
from incidents.metrics_table import (
    compute_table,
    export_csv,
    export_filename,
    export_json,
    records_for_json,
    search_records,
    sort_records,
)
from incidents.source import CachedIncidentSource

app = FastAPI(title="School Incident Dashboard API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(load_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=4)
def get_source(settings: Settings) -> Optional[CachedIncidentSource]:
    return CachedIncidentSource.from_settings(settings)


def _load(filters: Optional[IncidentFiltersModel]) -> Tuple[Settings, Optional[CachedIncidentSource], FilterSpecification, Dict[str, Any]]:
    settings = load_settings()
    source = get_source(settings)
    data_ctx = load_dashboard_data(settings, source)
    f = normalize_filters(filters.model_dump() if filters is not None else {})
    return settings, source, f, prepare_context(f, data_ctx)


def _json(data: object) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                type(pd.NaT): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        )
    )


def _error(exc: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": str(exc), "type": type(exc).__name__})


@app.get("/health")
def health():
    settings = load_settings()
    return _json(
        {
            "status": "ok",
            "data_path": settings.data_path.name if settings.data_path else None,
            "upstream": bool(settings.api_url),
        }
    )


@app.get("/meta/lookups")
def meta_lookups():
    try:
        _, source, _, ctx = _load(None)
        lookups = source.fetch_lookups() if source is not None else None
        if lookups is None:
            lookups = compute_lookups(ctx["raw"])
        return _json(lookups)
    except Exception as exc:
        logger.exception("meta_lookups failed")
        return _error(exc)


@app.post("/incidents")
def incidents(filters: IncidentFiltersModel):
    try:
        _, _, f, ctx = _load(filters)
        records = records_for_json(ctx["filtered"])
        return _json({"available": ctx["available"], "count": len(records), "incidents": records})
    except ValueError as exc:
        return _error(exc, 400)
    except Exception as exc:
        logger.exception("incidents failed")
        return _error(exc)


@app.get("/incidents/{uid}")
def incident_detail(uid: str):
    try:
        _, source, _, ctx = _load(None)
        records: pd.DataFrame = ctx["records"]
        match = records[records["id"].eq(uid).fillna(False).astype(bool)] if not records.empty else records
        if not match.empty:
            return _json(records_for_json(match.head(1), include_raw=True)[0])
        raw = source.fetch_incident(uid) if source is not None else None
        if raw is None:
            return JSONResponse(status_code=404, content={"error": f"Incident {uid} not found", "type": "NotFound"})
        record = normalize_record(raw)
        return _json(records_for_json(pd.DataFrame([record]), include_raw=True)[0])
    except Exception as exc:
        logger.exception("incident_detail failed")
        return _error(exc)


@app.post("/analytics")
def analytics(
    filters: IncidentFiltersModel,
    strategy: Literal["local", "precomputed"] = Query(default="precomputed"),
):
    try:
        settings, source, f, ctx = _load(filters)
        if strategy == "precomputed" and source is not None:
            ctx["precomputed"] = source.precomputed(f)
        return _json(compute_analytics(f, ctx, strategy=strategy, top_n=settings.top_n))
    except ValueError as exc:
        return _error(exc, 400)
    except Exception as exc:
        logger.exception("analytics failed")
        return _error(exc)


@app.post("/comparison")
def comparison(
    filters: IncidentFiltersModel,
    group_by: str = Query(default="state"),
    keys: str = Query(default=""),
):
    try:
        settings, _, f, ctx = _load(filters)
        group_keys = [k.strip() for k in keys.split(",") if k.strip()]
        return _json(compute_comparison(f, ctx, group_keys, group_by=group_by, max_groups=settings.max_compare))
    except ValueError as exc:
        return _error(exc, 400)
    except Exception as exc:
        logger.exception("comparison failed")
        return _error(exc)


@app.post("/table")
def table(
    filters: IncidentFiltersModel,
    search: str = Query(default=""),
    sort_key: str = Query(default="date"),
    sort_direction: str = Query(default="desc"),
    page: int = Query(default=1),
    page_size: Optional[int] = Query(default=None),
):
    try:
        settings, _, f, ctx = _load(filters)
        size = page_size if page_size is not None else settings.page_size
        return _json(compute_table(f, ctx, search, sort_key, sort_direction, page, size))
    except ValueError as exc:
        return _error(exc, 400)
    except Exception as exc:
        logger.exception("table failed")
        return _error(exc)


@app.post("/map")
def map_view(
    filters: IncidentFiltersModel,
    strategy: Literal["local", "precomputed"] = Query(default="precomputed"),
):
    try:
        _, source, f, ctx = _load(filters)
        if strategy == "precomputed" and source is not None:
            ctx["precomputed"] = source.precomputed(f)
        return _json(compute_map(f, ctx, strategy=strategy))
    except ValueError as exc:
        return _error(exc, 400)
    except Exception as exc:
        logger.exception("map failed")
        return _error(exc)


@app.post("/debug")
def debug(filters: IncidentFiltersModel):
    try:
        _, _, f, ctx = _load(filters)
        return _json(compute_debug(f, ctx))
    except Exception as exc:
        logger.exception("debug failed")
        return _error(exc)


@app.post("/export/{fmt}")
def export(
    fmt: str,
    filters: IncidentFiltersModel,
    search: str = Query(default=""),
    sort_key: str = Query(default="date"),
    sort_direction: str = Query(default="desc"),
    include_raw: bool = Query(default=False),
):
    try:
        filename = export_filename(fmt, date.today())
        _, _, _, ctx = _load(filters)
        rows = sort_records(search_records(ctx["filtered"], search), sort_key, sort_direction)
    except ValueError as exc:
        return _error(exc, 400)

    if fmt == "csv":
        body, media_type = export_csv(rows), "text/csv"
    else:
        body, media_type = export_json(rows, include_raw=include_raw), "application/json"
    return Response(
        content=body.encode("utf-8"),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.post("/reports", response_model=ReportReceiptResponse)
def submit_report(draft: IncidentReportDraftModel):
    logger.info("Incident report received: %s", draft.model_dump())
    return ReportReceiptResponse(status="received", title=draft.title)
