"""
FastAPI Application: Entry Point

Course-material ingestion service: PDF upload → structured extraction via
an LLM → embedded chunks / question rows, with live SSE progress.

Process-wide objects (built once in the lifespan, stored on app.state):
  - key_pool      KeyPool shared by every job; cooldowns synced through Redis
  - model_client  ModelClient (chat + embeddings) routed through the pool
  - repositories  SQLAlchemy repositories over one async engine
  - coordinator   IngestionCoordinator wiring all of the above

Routes:
  POST /api/v1/documents/parse   → text/event-stream
  GET  /api/v1/admin/key-pool    → key pool snapshot
  GET  /health, /ready
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tutor_ingest.api.v1.admin import router as admin_router
from tutor_ingest.api.v1.documents import router as documents_router
from tutor_ingest.core.config import Settings, settings
from tutor_ingest.db.session import build_engine, build_session_factory, check_db_health
from tutor_ingest.llm.client import ModelClient
from tutor_ingest.llm.cooldown_store import RedisCooldownStore
from tutor_ingest.llm.key_pool import KeyPool
from tutor_ingest.processing.embeddings import EmbeddingOrchestrator
from tutor_ingest.processing.extraction import StructuredExtractor
from tutor_ingest.processing.outline import OutlineGenerator
from tutor_ingest.processing.pdf import PdfTextExtractor
from tutor_ingest.repositories.sql import build_sql_repositories
from tutor_ingest.schemas.events import ErrorDetail, ErrorResponse
from tutor_ingest.services.authz import RoleAuthorizer
from tutor_ingest.services.ingestion import IngestionCoordinator
from tutor_ingest.services.quota import RedisQuotaService

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_coordinator(
    cfg:          Settings,
    model_client: ModelClient,
    repositories,
    quota,
) -> IngestionCoordinator:
    return IngestionCoordinator(
        repositories=repositories,
        pdf_extractor=PdfTextExtractor(),
        extractor=StructuredExtractor(model_client, page_batch_size=cfg.extraction_page_batch_size),
        embedder=EmbeddingOrchestrator(
            model_client,
            repositories.chunks,
            embedding_batch_size=cfg.embedding_batch_size,
            write_batch_size=cfg.write_batch_size,
        ),
        outliner=OutlineGenerator(model_client),
        quota=quota,
        authorizer=RoleAuthorizer(),
        max_file_size_bytes=cfg.max_file_size_bytes,
    )


# ---------------------------------------------------------------------------
# Application lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg = settings
    logger.info(
        "Starting ingestion service | env=%s model=%s keys=%d",
        cfg.app_env, cfg.llm_model, len(cfg.llm_api_key_list),
    )

    engine = build_engine(cfg)
    db_health = await check_db_health(engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    redis_client = redis.from_url(cfg.redis_url, encoding="utf-8", decode_responses=True)
    cooldown_store = (
        RedisCooldownStore(redis_client, key=cfg.key_pool_redis_key)
        if cfg.key_pool_shared_cooldowns else None
    )

    key_pool     = KeyPool(cfg.llm_api_key_list, cfg.key_pool_cooldown_ladder, cooldown_store=cooldown_store)
    model_client = ModelClient.from_settings(key_pool, cfg)
    repositories = build_sql_repositories(build_session_factory(engine))
    quota        = RedisQuotaService(
        redis_client,
        limit=cfg.quota_daily_limit,
        enabled=cfg.quota_enabled,
        fail_open=cfg.quota_fail_open,
    )

    app.state.engine       = engine
    app.state.redis        = redis_client
    app.state.key_pool     = key_pool
    app.state.model_client = model_client
    app.state.repositories = repositories
    app.state.coordinator  = build_coordinator(cfg, model_client, repositories, quota)

    logger.info("Key pool ready | size=%d shared_cooldowns=%s", key_pool.size, cooldown_store is not None)

    yield

    logger.info("Shutting down ingestion service")
    await app.state.coordinator.shutdown()
    await redis_client.aclose()
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="Course Material Ingestion Service",
        description="PDF ingestion, LLM extraction and embedding with live progress streaming.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan if use_lifespan else None,
    )

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | user=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-User-Id", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers: uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions; never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(admin_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth, used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "tutor-ingest"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness(request: Request) -> JSONResponse:
        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": {"status": "error", "detail": "not initialised"}},
            )
        db_status = await check_db_health(engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tutor_ingest.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
