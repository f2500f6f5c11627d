"""
FastAPI Application — Entry Point

Document-to-QA Collection Service

Architecture:
  - All routes are versioned under /api/v1/
  - Caller identity arrives as X-User-ID from the upstream auth layer
  - Processing is asynchronous: POST returns 202, clients poll GET
  - Structured JSON error responses on all 4xx/5xx

Startup (lifespan):
  1. validate_settings() — the API refuses to start on configuration errors
  2. Engine, store and services built once per process (app.state)
  3. Database connectivity check
Shutdown: engine disposed.

Middleware stack (innermost → outermost):
  1. CORS
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from docqa.api.v1.collections import router as collections_router
from docqa.api.v1.jobs import router as jobs_router
from docqa.api.v1.sessions import router as sessions_router
from docqa.core.config import get_settings, validate_settings
from docqa.db.session import build_engine, build_session_factory, check_db_health
from docqa.observability.tracing import TracingConfig
from docqa.schemas.sessions import SessionErrors, validation_details
from docqa.services.dispatch import build_dispatcher
from docqa.services.factory import build_services
from docqa.store.sql import SqlPipelineStore

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting DocQA | env=%s driver=%s model=%s",
        settings.app_env, settings.pipeline_driver, settings.llm_model,
    )

    validation = validate_settings(settings)
    for warning in validation.warnings:
        logger.warning("Config | %s", warning)
    for error in validation.errors:
        logger.critical("Config | %s", error)
    if not validation.valid:
        raise RuntimeError(f"Invalid configuration: {'; '.join(validation.errors)}")

    engine = build_engine(settings)
    services = build_services(settings, store=SqlPipelineStore(build_session_factory(engine)))
    app.state.engine     = engine
    app.state.services   = services
    app.state.dispatcher = build_dispatcher(settings, services.queue)

    db_health = await check_db_health(engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        await engine.dispose()
        raise RuntimeError(f"DB unavailable: {db_health}")

    logger.info("Database: connected")
    logger.info("S3 bucket: %s", settings.s3_bucket)

    yield

    logger.info("Shutting down DocQA")
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="DocQA — Document to Q&A Collections",
        description=(
            "Turns uploaded PDFs and images into reviewed question/answer collections "
            "with vector embeddings. Processing is asynchronous and polled."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-User-ID"],
        expose_headers=["X-Request-ID"],
    )

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
            request.headers.get("X-User-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — every 4xx/5xx body is an ErrorResponse
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = SessionErrors.request_invalid(
            validation_details(exc.errors()),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Pipeline failures never reach here; this only covers API bugs."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        logger.exception("API | unhandled %s path=%s request_id=%s", type(exc).__name__, request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=SessionErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(sessions_router,    prefix="/api/v1")
    app.include_router(collections_router, prefix="/api/v1")
    app.include_router(jobs_router,        prefix="/api/v1")

    TracingConfig.init()

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth — used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "docqa-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe")
    async def readiness(request: Request) -> JSONResponse:
        db_status = await check_db_health(getattr(request.app.state, "engine", None))
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
        "docqa.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
