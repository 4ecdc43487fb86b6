from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import APP_VERSION, CORS_ORIGINS, LOG_LEVEL, ROOT_PATH, VIZ_SURFACE_HEIGHT, VIZ_SURFACE_WIDTH
from observability import configure_json_logging, get_logger, log_event
from runtime_metrics import get_runtime_metrics_snapshot, record_request_metric
from visualize.models import (
    ColorScheme,
    IdentifierKind,
    RepresentationStyle,
    StyleOptions,
    SurfaceKind,
    VisualizationRequest,
)
from visualize.service import cache_overview, invalidate, render_visualization
from visualize.surface import HtmlSurface

APP_LOGGER = get_logger("molviz.api")

ERROR_STATUS_CODES = {
    "INVALID_IDENTIFIER": 422,
    "REMOTE_FETCH_ERROR": 502,
    "DEPENDENCY_LOAD_TIMEOUT": 503,
    "DEPENDENCY_LOAD_FAILED": 503,
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_json_logging(level=LOG_LEVEL)
    log_event(APP_LOGGER, logging.INFO, "app.started", version=APP_VERSION)
    yield


app = FastAPI(title="Molecule Visualization Service", version=APP_VERSION, root_path=ROOT_PATH, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Trace-Id"],
    expose_headers=["X-Trace-Id"],
)


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    record_request_metric(path=request.url.path, status_code=response.status_code, duration_ms=duration_ms)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


class RegionSelection(BaseModel):
    region: str = Field(..., description="chain X, resi N, resi N-M, ligand, or a JSON atom selection.")
    style: RepresentationStyle = RepresentationStyle.STICK
    color: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class VisualizationCreateRequest(BaseModel):
    kind: IdentifierKind
    identifier: str = Field(..., description="SMILES, InChI, PubChem CID/name/InChIKey or PDB accession.")
    representation_style: RepresentationStyle = RepresentationStyle.STICK
    color_scheme: ColorScheme = ColorScheme.ELEMENT
    selections: List[RegionSelection] = Field(default_factory=list)
    show_surface: bool = False
    surface_kind: SurfaceKind = SurfaceKind.VDW
    surface_opacity: float = 0.7
    show_labels: bool = False
    background_color: str = "white"
    title: Optional[str] = None
    description: Optional[str] = None
    width: int = Field(VIZ_SURFACE_WIDTH, ge=1, le=4096)
    height: int = Field(VIZ_SURFACE_HEIGHT, ge=1, le=4096)
    force: bool = Field(False, description="Evict the render cache entry before running.")
    refresh_payload: bool = Field(False, description="Also evict the cached structure payload.")

    model_config = ConfigDict(extra="ignore")

    def to_visualization_request(self) -> VisualizationRequest:
        style = StyleOptions.build(
            representation=self.representation_style,
            color_scheme=self.color_scheme,
            overrides=[item.model_dump() for item in self.selections],
            show_surface=self.show_surface,
            surface_kind=self.surface_kind,
            surface_opacity=self.surface_opacity,
            show_labels=self.show_labels,
            background_color=self.background_color,
        )
        return VisualizationRequest(
            kind=self.kind,
            identifier=self.identifier,
            style=style,
            title=self.title,
            description=self.description,
        )


class InvalidateRequest(BaseModel):
    kind: Optional[IdentifierKind] = None
    identifier: Optional[str] = None
    fingerprint: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": APP_VERSION, "dependencies": cache_overview()["dependencies"]}


@app.get("/metrics/runtime")
async def runtime_metrics() -> dict:
    return get_runtime_metrics_snapshot()


@app.post("/visualizations")
async def create_visualization(payload: VisualizationCreateRequest, request: Request) -> JSONResponse:
    visualization = payload.to_visualization_request()
    surface = HtmlSurface(width=payload.width, height=payload.height)
    outcome = await render_visualization(
        visualization,
        surface,
        force=payload.force,
        refresh_payload=payload.refresh_payload,
    )
    body: Dict[str, Any] = {
        "fingerprint": outcome.fingerprint,
        "status": outcome.state.status.value,
        "cache_hit": outcome.cache_hit,
        "title": visualization.title,
        "description": visualization.description,
    }
    if outcome.ok:
        body["html"] = surface.render_html(visualization.title)
        return JSONResponse(status_code=200, content=body)
    detail = outcome.error_detail() or {}
    body.update(detail)
    body["trace_id"] = _request_trace_id(request)
    status_code = ERROR_STATUS_CODES.get(detail.get("error_code", ""), 500)
    return JSONResponse(status_code=status_code, content=body)


@app.post("/visualizations/invalidate")
async def invalidate_visualization(payload: InvalidateRequest) -> dict:
    removed = invalidate(payload.kind, payload.identifier, fingerprint=payload.fingerprint)
    return {"removed": removed}


@app.get("/visualizations/cache")
async def visualization_cache() -> dict:
    return cache_overview()

