from __future__ import annotations
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, Field

from sportsfeed.client.executor import RequestExecutor
from sportsfeed.config import EngineConfig
from sportsfeed.descriptors.catalog import DescriptorCatalog
from sportsfeed.descriptors.models import EndpointDescriptor
from sportsfeed.engine.endpoint_engine import EndpointEngine
from sportsfeed.errors import (
    CatalogLoadError,
    EndpointNotFound,
    ParameterValidationError,
    RateLimited,
    RemoteError,
    SportsFeedError,
    TransportError,
)

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
REQUEST_COUNT = Counter(
    "sportsfeed_gateway_requests_total",
    "Row requests handled by the gateway",
    ["status", "endpoint_id"],
)
REQUEST_LATENCY = Histogram(
    "sportsfeed_gateway_latency_seconds",
    "Row request latency",
    ["endpoint_id"],
    buckets=[0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Shared process-level resources (populated in lifespan)
# ---------------------------------------------------------------------------
_engine: Optional[EndpointEngine] = None


def _span_exporter(endpoint: str):
    """OTLP over HTTP when an endpoint is configured and the exporter is installed, console otherwise."""
    if endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP endpoint %s set but the otlp extra is not installed", endpoint)
        else:
            return OTLPSpanExporter(endpoint=endpoint)
    return ConsoleSpanExporter()


def _init_tracing() -> None:
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    provider = TracerProvider(resource=Resource.create({"service.name": "sportsfeed-gateway"}))
    provider.add_span_processor(BatchSpanProcessor(_span_exporter(endpoint)))
    trace.set_tracer_provider(provider)
    logger.info("Tracing enabled (exporter=%s)", "otlp" if endpoint else "console")


# ---------------------------------------------------------------------------
# App lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    global _engine

    _init_tracing()

    config = EngineConfig.from_env()
    catalog = DescriptorCatalog()
    try:
        catalog.load_file(config.descriptor_path)
    except CatalogLoadError as exc:
        logger.warning("Descriptor catalog unavailable (%s); no endpoints loaded", exc)

    _engine = EndpointEngine(catalog, RequestExecutor(config))
    logger.info(
        "sportsfeed gateway started. namespace=%s endpoints=%d",
        config.namespace, catalog.count(),
    )

    yield

    await _engine.close()
    logger.info("sportsfeed gateway shut down.")


app = FastAPI(title="sportsfeed gateway", version="1.0.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class RowsRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None


def _require_engine() -> EndpointEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="engine not initialised")
    return _engine


def _describe(d: EndpointDescriptor, full: bool = False) -> Dict[str, Any]:
    summary = {
        "id": d.id,
        "path": d.path,
        "category": d.category,
        "subcategory": d.subcategory,
        "description": d.description,
        "display_name": d.display_name,
    }
    if full:
        summary["descriptor"] = d.model_dump(mode="json", by_alias=True)
    return summary


def _error_response(exc: SportsFeedError, trace_id: str) -> JSONResponse:
    """Map engine errors to HTTP statuses."""
    content: Dict[str, Any] = {
        "error": exc.code,
        "details": str(exc),
        "endpoint_id": exc.endpoint_id,
        "trace_id": trace_id,
    }
    headers: Dict[str, str] = {}
    if isinstance(exc, EndpointNotFound):
        status = 404
    elif isinstance(exc, ParameterValidationError):
        status = 400
        content["param"] = exc.param
    elif isinstance(exc, RateLimited):
        status = 429
        headers["Retry-After"] = str(exc.retry_after_s)
        content["retry_after_seconds"] = exc.retry_after_s
    elif isinstance(exc, TransportError):
        status = 504
    elif isinstance(exc, RemoteError):
        status = 502
        content["upstream_status"] = exc.status_code
    else:
        status = 500
    return JSONResponse(status_code=status, content=content, headers=headers)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/v1/endpoints")
async def list_endpoints(
    q: Optional[str] = Query(default=None, description="Free-text search"),
    category: Optional[str] = Query(default=None),
):
    engine = _require_engine()
    found = engine.catalog.search(q)
    if category:
        matched = {d.id for d in found}
        found = [d for d in engine.catalog.list_by_category(category) if d.id in matched]
    return {
        "endpoints": [_describe(d) for d in found],
        "categories": engine.catalog.categories(),
    }


@app.get("/v1/endpoints/{endpoint_id}")
async def get_endpoint(endpoint_id: str):
    engine = _require_engine()
    descriptor = engine.catalog.find(endpoint_id)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"unknown endpoint '{endpoint_id}'")
    return _describe(descriptor, full=True)


@app.post("/v1/endpoints/{endpoint_id}/rows")
async def fetch_rows(endpoint_id: str, request: RowsRequest):
    """
    Execute one endpoint call and return flattened rows.

    Returns 400 for invalid parameters, 404 for unknown endpoints, 429 with
    Retry-After when a quota is exhausted, 502 for upstream errors and 504
    when the API could not be reached.
    """
    engine = _require_engine()
    trace_id = (request.metadata or {}).get("trace_id", str(uuid.uuid4()))

    start_time = time.time()
    try:
        result = await engine.fetch_rows(endpoint_id, request.params)
    except SportsFeedError as exc:
        response = _error_response(exc, trace_id)
        REQUEST_COUNT.labels(status=str(response.status_code), endpoint_id=endpoint_id).inc()
        return response

    REQUEST_LATENCY.labels(endpoint_id=endpoint_id).observe(time.time() - start_time)
    REQUEST_COUNT.labels(status="200", endpoint_id=endpoint_id).inc()

    body: Dict[str, Any] = {
        "columns": result.columns,
        "rows": result.rows,
        "skipped": result.skipped,
        "trace_id": trace_id,
    }
    if result.warnings:
        body["warnings"] = result.warnings
    return body


@app.post("/v1/catalog/reload")
async def reload_catalog():
    engine = _require_engine()
    try:
        engine.catalog.reload()
    except CatalogLoadError as exc:
        return _error_response(exc, str(uuid.uuid4()))
    return {"endpoints": engine.catalog.count(), "version": engine.catalog.version}


@app.get("/v1/stats")
async def stats():
    return _require_engine().stats()


@app.get("/health")
async def health():
    """Liveness/readiness probe."""
    checks: Dict[str, str] = {}
    checks["engine"] = "ok" if _engine is not None else "not initialised"
    checks["endpoints"] = str(_engine.catalog.count()) if _engine else "0"

    all_ok = _engine is not None and _engine.catalog.count() > 0
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
