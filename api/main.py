from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np
import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from analytics.cache import DatasetCache
from analytics.config import Settings, get_settings
from analytics.datasets import DATASETS, DatasetSpec, get_dataset
from analytics.export import export_frame
from analytics.filters import FilterState, normalize_filters, quick_date_range
from analytics.logging_utils import configure_logging
from analytics.metrics_participation import compute_participation_overview
from analytics.metrics_approval import compute_approval_report
from analytics.metrics_tickets import compute_ticket_overview
from analytics.query import build_predicate
from analytics.records import actions_from_json
from analytics.session import DashboardSession
from analytics.store import AnalyticalStore
from api.schemas import CrosstabRequestModel, FilterRequestModel, RowsRequestModel

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: AnalyticalStore
    cache: DatasetCache
    sessions: Dict[str, DashboardSession]

    def close(self) -> None:
        for session in self.sessions.values():
            session.close()
        self.cache.close()
        self.store.close()


def build_runtime(settings: Settings) -> Runtime:
    store = AnalyticalStore(settings.duckdb_path, load_timeout_seconds=settings.load_timeout_seconds)
    store.initialize()
    cache = DatasetCache(settings.cache_path)
    sessions = {name: DashboardSession(spec, store, settings=settings, cache=cache) for name, spec in DATASETS.items()}
    return Runtime(settings=settings, store=store, cache=cache, sessions=sessions)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the shared store for the process lifetime; datasets load on first use."""
    settings = get_settings()
    configure_logging(settings.log_level)
    runtime = build_runtime(settings)
    app.state.runtime = runtime
    try:
        yield
    finally:
        runtime.close()


app = FastAPI(title="NES Analytics API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:8501"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


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


def _error(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


def _dataset(name: str) -> DatasetSpec:
    try:
        return get_dataset(name)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from None


def _session(request: Request, spec: DatasetSpec) -> DashboardSession:
    """Session for ``spec``, loading the dataset on first use."""
    session: DashboardSession = request.app.state.runtime.sessions[spec.name]
    if not session.store.table_exists(spec.table):
        session.load()
    return session


def _filters_from_model(model: FilterRequestModel, spec: DatasetSpec) -> FilterState:
    raw = model.model_dump()
    try:
        state = normalize_filters(
            raw,
            dimension_names=spec.dimension_names,
            convention=spec.convention,
            source_dimension=spec.source_dimension,
        )
        build_predicate(state, spec)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return state


def _frame_records(df: pd.DataFrame) -> list:
    if df.empty:
        return []
    out = df.copy()
    if "maintenance_actions" in out.columns:
        out["maintenance_actions"] = out["maintenance_actions"].map(
            lambda v: None if v is None or (isinstance(v, float) and math.isnan(v)) or v is pd.NA else actions_from_json(v)
        )
    return out.to_dict(orient="records")


@app.get("/health")
def health(request: Request):
    runtime: Runtime = request.app.state.runtime
    return _json(
        {
            "status": "ok",
            "datasets": {name: s.status.to_dict() for name, s in runtime.sessions.items()},
        }
    )


@app.get("/{dataset}/meta/options")
def meta_options(dataset: str, request: Request, source: Optional[str] = Query(default=None)):
    spec = _dataset(dataset)
    if source and spec.source_dimension is None:
        raise HTTPException(status_code=400, detail=f"{spec.title} cannot be scoped to a source.")
    try:
        session = _session(request, spec)
        return _json({"source": source, "options": session.filter_options(source)})
    except Exception as exc:
        logger.exception("meta_options failed")
        return _error(exc)


@app.post("/{dataset}/load")
def load(dataset: str, request: Request, force_refresh: bool = Query(default=False)):
    spec = _dataset(dataset)
    try:
        session: DashboardSession = request.app.state.runtime.sessions[spec.name]
        status = session.load(force_refresh=force_refresh)
        return _json(status.to_dict())
    except Exception as exc:
        logger.exception("load failed")
        return _error(exc)


@app.post("/{dataset}/rows")
def rows(dataset: str, body: RowsRequestModel, request: Request):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        session = _session(request, spec)
        view = session.view(state, limit=body.limit, offset=body.offset)
        return _json(
            {
                "rows": _frame_records(view.rows),
                "filtered_count": view.filtered_count,
                "total_count": view.total_count,
                "active_filter_count": view.active_filter_count,
            }
        )
    except Exception as exc:
        logger.exception("rows failed")
        return _error(exc)


@app.post("/{dataset}/kpis")
def kpis(dataset: str, body: FilterRequestModel, request: Request):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        return _json(_session(request, spec).kpis(state))
    except Exception as exc:
        logger.exception("kpis failed")
        return _error(exc)


@app.post("/{dataset}/overview")
def overview(dataset: str, body: FilterRequestModel, request: Request):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        session = _session(request, spec)
        if spec.name == "tickets":
            return _json(compute_ticket_overview(session, state))
        if spec.name == "approval":
            return _json(compute_approval_report(session, state))
        return _json(compute_participation_overview(session, state))
    except Exception as exc:
        logger.exception("overview failed")
        return _error(exc)


@app.post("/{dataset}/distribution/{dimension}")
def distribution(
    dataset: str,
    dimension: str,
    body: FilterRequestModel,
    request: Request,
    limit: Optional[int] = Query(default=None, ge=1),
):
    spec = _dataset(dataset)
    if dimension not in spec.dimension_names:
        raise HTTPException(status_code=404, detail=f"Unknown dimension {dimension!r} for dataset {spec.name!r}")
    state = _filters_from_model(body, spec)
    try:
        values = _session(request, spec).distribution(dimension, state, limit=limit)
        return _json({"dimension": dimension, "values": values})
    except Exception as exc:
        logger.exception("distribution failed")
        return _error(exc)


@app.post("/{dataset}/timeseries")
def timeseries(
    dataset: str,
    body: FilterRequestModel,
    request: Request,
    buckets: int = Query(default=12, ge=1, le=240),
):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        return _json({"series": _session(request, spec).time_series(state, buckets=buckets)})
    except Exception as exc:
        logger.exception("timeseries failed")
        return _error(exc)


@app.post("/{dataset}/crosstab")
def crosstab(dataset: str, body: CrosstabRequestModel, request: Request):
    spec = _dataset(dataset)
    for name in (body.row_dimension, body.column_dimension):
        if name not in spec.dimension_names:
            raise HTTPException(status_code=404, detail=f"Unknown dimension {name!r} for dataset {spec.name!r}")
    state = _filters_from_model(body, spec)
    try:
        table = _session(request, spec).crosstab(
            body.row_dimension,
            body.column_dimension,
            state,
            columns=body.columns or None,
        )
        return _json(
            {
                "row_dimension": body.row_dimension,
                "column_dimension": body.column_dimension,
                "columns": [c for c in table.columns],
                "rows": table.reset_index().rename(columns={table.index.name: "row"}).to_dict(orient="records"),
            }
        )
    except Exception as exc:
        logger.exception("crosstab failed")
        return _error(exc)


@app.get("/{dataset}/sources")
def sources(dataset: str, request: Request):
    spec = _dataset(dataset)
    try:
        return _json({"sources": _session(request, spec).sso_sources()})
    except Exception as exc:
        logger.exception("sources failed")
        return _error(exc)


@app.post("/{dataset}/program-report")
def program_report(
    dataset: str,
    body: FilterRequestModel,
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        return _json({"rows": _session(request, spec).program_report(state, limit=limit)})
    except Exception as exc:
        logger.exception("program_report failed")
        return _error(exc)


@app.post("/{dataset}/geo")
def geo(dataset: str, body: FilterRequestModel, request: Request, limit: int = Query(default=500, ge=1, le=5000)):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    try:
        return _json({"points": _session(request, spec).geo_points(state, limit=limit)})
    except Exception as exc:
        logger.exception("geo failed")
        return _error(exc)


@app.post("/{dataset}/export")
def export(dataset: str, body: FilterRequestModel, request: Request):
    spec = _dataset(dataset)
    state = _filters_from_model(body, spec)
    session = _session(request, spec)
    frame = session.store.query(spec.table, session.predicate(state), order_by=spec.order_by)
    csv_bytes = export_frame(frame, spec).to_csv(index=False).encode("utf-8")
    filename = f"{spec.name}_data.csv"
    return Response(content=csv_bytes, media_type="text/csv", headers={"Content-Disposition": f"attachment; filename={filename}"})


@app.get("/{dataset}/quick-range/{period}")
def quick_range(dataset: str, period: str):
    _dataset(dataset)
    try:
        bounds = quick_date_range(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    return _json({"period": period, "start": bounds.start, "end": bounds.end})
