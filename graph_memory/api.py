"""FastAPI HTTP API for the graph memory engine.

Endpoints:
    POST   /v1/ingest                    -- Apply one extraction event
    POST   /v1/retrieve                  -- Tiered retrieval (context payload)
    POST   /v1/cascade/invalidate        -- Hide everything derived from a source
    POST   /v1/cascade/restore           -- Undo a cascade invalidation
    GET    /v1/facts                     -- Facts valid at a point in time
    GET    /v1/facts/history             -- Version chain for (entity, predicate)
    POST   /v1/facts/{fact_id}/correct   -- Manual fact invalidation
    GET    /v1/entities/{entity_id}      -- Entity with facts, neighbours, behaviors
    DELETE /v1/entities/{entity_id}      -- Explicit erasure
    POST   /v1/maintenance/{job}         -- decay | consolidation | archival | expiry | reindex
    GET    /v1/merge-candidates          -- Consolidation review queue
    GET    /v1/stats                     -- Per-user counts
    GET    /v1/health                    -- Health probe
    GET    /metrics                      -- Prometheus text exposition

Every data endpoint is scoped by ``user_id``; each user has its own database.

Run: ``python -m graph_memory.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, PlainTextResponse

from .config import Config, load_config
from .embeddings import OpenRouterEmbeddings
from .engine import MAINTENANCE_JOBS, MemoryEngine
from .errors import (
    ConflictError,
    DependencyUnavailable,
    GraphMemoryError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .llm import OpenRouterChat
from .metrics import (
    record_ingest_metric,
    record_retrieval_metric,
    render_prometheus_metrics,
    set_entity_gauges,
)
from .middleware import RequestObservabilityMiddleware
from .pool import StoragePool

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_config: Optional[Config] = None
_engine: Optional[MemoryEngine] = None
_start_time: float = 0.0

logging.getLogger("audit").setLevel(logging.INFO)


def _get_engine() -> MemoryEngine:
    if _engine is None:
        raise HTTPException(503, "Engine not initialised")
    return _engine


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _config, _engine, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    pool = StoragePool(
        base_dir=_config.data_dir,
        dimensions=_config.embedding_dimensions,
    )

    embedder: Optional[OpenRouterEmbeddings] = None
    chat: Optional[OpenRouterChat] = None
    if _config.openrouter_api_key:
        embedder = OpenRouterEmbeddings(config=_config)
        chat = OpenRouterChat(config=_config)
    else:
        logger.warning(
            "No OPENROUTER_API_KEY -- vector search, LLM rewrites and the Tier 1 judge are disabled"
        )

    _engine = MemoryEngine(config=_config, pool=pool, embedder=embedder, chat=chat)
    _start_time = time.time()

    logger.info(
        "Memory API ready -- data_dir=%s users=%s emb_model=%s chat_model=%s dims=%d",
        _config.data_dir,
        pool.get_all_users(),
        _config.embedding_model if embedder else "off",
        _config.chat_model if chat else "off",
        _config.embedding_dimensions,
    )

    yield

    _engine.close()
    _engine = None


app = FastAPI(
    title="Graph Memory API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestObservabilityMiddleware)


# ---------------------------------------------------------------------------
# Centralized error handling
# ---------------------------------------------------------------------------

_ERROR_STATUS = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StoreError, 503),
    (DependencyUnavailable, 503),
)


def _status_for(exc: GraphMemoryError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


@app.exception_handler(GraphMemoryError)
async def graph_memory_exception_handler(request, exc):
    status = _status_for(exc)
    if status >= 500:
        logger.error("%s: %s (path=%s)", type(exc).__name__, exc, request.url.path)
    else:
        logger.warning("%s: %s (path=%s)", type(exc).__name__, exc, request.url.path)
    return JSONResponse(
        status_code=status,
        content={"error": str(exc), "type": type(exc).__name__, "status_code": status},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "status_code": 422, "detail": exc.errors()},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "status_code": 500},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    source_type: str = Field(..., min_length=1)
    source_id: str = Field(..., min_length=1, max_length=256)
    payload: Dict[str, Any]


class RetrieveRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    query: str = Field(..., min_length=1, max_length=2000)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=100000)
    mode: str = Field(default="fast", pattern="^(fast|full)$")


class CascadeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    source_id: str = Field(..., min_length=1, max_length=256)


class CorrectRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(default="user_corrected")


class MaintenanceRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, description="None = every user")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/ingest")
async def ingest(req: IngestRequest) -> Dict[str, Any]:
    """Apply one extraction event. Item failures come back in ``errors``."""
    result = await _get_engine().ingest(req.user_id, req.payload, req.source_type, req.source_id)
    record_ingest_metric(source_type=result.source_type, item_errors=len(result.errors))
    return result.to_dict()


@app.post("/v1/retrieve")
async def retrieve(req: RetrieveRequest) -> Dict[str, Any]:
    result = await _get_engine().retrieve(req.user_id, req.query, req.max_tokens, req.mode)
    record_retrieval_metric(mode=result.mode, tier_used=result.tier_used, degraded=result.degraded)
    return result.to_dict()


@app.post("/v1/cascade/invalidate")
async def cascade_invalidate(req: CascadeRequest) -> Dict[str, Any]:
    counts = _get_engine().cascade_invalidate(req.user_id, req.source_id)
    return {"source_id": req.source_id, "invalidated": counts}


@app.post("/v1/cascade/restore")
async def cascade_restore(req: CascadeRequest) -> Dict[str, Any]:
    counts = _get_engine().cascade_restore(req.user_id, req.source_id)
    return {"source_id": req.source_id, "restored": counts}


@app.get("/v1/facts")
async def facts_at(
    user_id: str = Query(..., min_length=1),
    entity_id: str = Query(..., min_length=1),
    as_of: Optional[float] = Query(default=None, description="Epoch seconds; default now"),
    predicate: Optional[str] = Query(default=None),
) -> Dict[str, Any]:
    facts = _get_engine().facts_at(user_id, entity_id, as_of, predicate)
    return {"entity_id": entity_id, "as_of": as_of, "facts": facts}


@app.get("/v1/facts/history")
async def fact_history(
    user_id: str = Query(..., min_length=1),
    entity_id: str = Query(..., min_length=1),
    predicate: str = Query(..., min_length=1),
) -> Dict[str, Any]:
    versions = _get_engine().fact_history(user_id, entity_id, predicate)
    return {"entity_id": entity_id, "predicate": predicate, "versions": versions}


@app.post("/v1/facts/{fact_id}/correct")
async def correct_fact(fact_id: str, req: CorrectRequest) -> Dict[str, Any]:
    return _get_engine().correct_fact(req.user_id, fact_id, req.reason)


@app.get("/v1/entities/{entity_id}")
async def get_entity(entity_id: str, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    return _get_engine().get_entity(user_id, entity_id)


@app.delete("/v1/entities/{entity_id}")
async def erase_entity(entity_id: str, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    _get_engine().erase_entity(user_id, entity_id)
    return {"erased": True, "entity_id": entity_id}


@app.post("/v1/maintenance/{job}")
async def run_maintenance(job: str, req: Optional[MaintenanceRequest] = None) -> Dict[str, Any]:
    if job not in MAINTENANCE_JOBS:
        raise HTTPException(404, f"Unknown maintenance job '{job}'")
    user_id = req.user_id if req else None
    return _get_engine().run_job(job, user_id)


@app.get("/v1/merge-candidates")
async def merge_candidates(user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    candidates = _get_engine().merge_candidates(user_id)
    return {"count": len(candidates), "candidates": candidates}


@app.get("/v1/stats")
async def stats(user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    return _get_engine().stats(user_id)


@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Returns 200 with status "ok"|"degraded"|"down"."""
    if _engine is None:
        return {"status": "down", "checks": {}, "uptime_seconds": 0}
    out = await _engine.health()
    out["uptime_seconds"] = round(time.time() - _start_time, 1)
    return out


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    engine = _get_engine()
    totals: Dict[str, int] = {}
    for user_id in engine.pool.get_all_users():
        totals[user_id] = engine.stats(user_id)["entities"]
    set_entity_gauges(totals)
    return PlainTextResponse(
        render_prometheus_metrics(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Graph Memory API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "graph_memory.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
