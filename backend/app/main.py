"""
FastAPI Application — Entry Point

Document ingestion & retrieval API

Architecture:
  - All routes are versioned under /api/v1/
  - Authentication is JWT-based (OIDC issuer) enforced per-route
  - The service container (tracker, pipeline, gateway, resolver, supervisor)
    is built once in the lifespan and stored on app.state
  - Structured JSON error responses on all 4xx/5xx

Startup:
  1. Database reachable (fail fast otherwise)
  2. Service container built
  3. ensure_index_created(): idempotent, runs on every cold start
Shutdown:
  supervisor drained (running pipelines get a grace period), index client
  closed, DB pool disposed.

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
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
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.citations import router as citations_router
from app.api.v1.documents import router as documents_router
from app.api.v1.index_admin import router as admin_router
from app.core.config import settings
from app.db.session import check_db_health
from app.schemas.documents import ErrorDetail, ErrorResponse, IngestionErrors
from app.services.ingestion import IngestionError
from app.services.lifecycle import DocumentNotFoundError, InvalidTransitionError
from app.vectorstore.base import IndexNotFoundError

logger = logging.getLogger(__name__)

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
        "Starting document service | env=%s vector_store=%s dispatch=%s",
        settings.app_env, settings.vector_store_backend, settings.pipeline_dispatch,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    from app.services.container import build_services

    services = build_services(settings)
    created = await services.gateway.ensure_index_created()
    logger.info(
        "Search index ready | backend=%s index=%s created_now=%s",
        services.gateway.backend_name, services.gateway.index_name, created,
    )
    app.state.services = services

    yield

    logger.info("Shutting down document service")
    await services.aclose()
    from app.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

def _error_response(request: Request, status_code: int, body: ErrorResponse) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    body = body.model_copy(update={"request_id": request_id})
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": request_id},
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Ingestion & Retrieval Service",
        description=(
            "Extracts, chunks, embeds and indexes department documents, tracks "
            "their processing state and resolves chat citations."
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

    allowed_origins = ["*"] if settings.app_env == "development" else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    if settings.is_production and settings.allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
        )
        return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, body)

    @app.exception_handler(IngestionError)
    async def ingestion_exception_handler(request: Request, exc: IngestionError):
        logger.info("Upload rejected | code=%s status=%d", exc.error_code, exc.status_code)
        return _error_response(request, exc.status_code, exc.error)

    @app.exception_handler(DocumentNotFoundError)
    async def not_found_exception_handler(request: Request, exc: DocumentNotFoundError):
        return _error_response(
            request,
            status.HTTP_404_NOT_FOUND,
            IngestionErrors.document_not_found(exc.document_id),
        )

    @app.exception_handler(InvalidTransitionError)
    async def transition_exception_handler(request: Request, exc: InvalidTransitionError):
        body = ErrorResponse(error_code="INVALID_STATUS_TRANSITION", message=str(exc))
        return _error_response(request, status.HTTP_409_CONFLICT, body)

    @app.exception_handler(IndexNotFoundError)
    async def index_missing_exception_handler(request: Request, exc: IndexNotFoundError):
        body = ErrorResponse(
            error_code="INDEX_NOT_FOUND",
            message="The search index does not exist. Call POST /api/v1/admin/search-index/ensure.",
            details=[ErrorDetail(field=None, message=str(exc), code="INDEX_NOT_FOUND")],
        )
        return _error_response(request, status.HTTP_409_CONFLICT, body)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        logger.exception("Unhandled exception | path=%s", request.url.path)
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
        )
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, body)

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(documents_router, prefix="/api/v1")
    app.include_router(citations_router, prefix="/api/v1")
    app.include_router(admin_router,     prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health & readiness endpoints (no auth — used by load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        tags=["Operations"],
        summary="Liveness probe",
        description="Returns 200 if the process is alive. No external checks.",
    )
    async def health() -> dict:
        return {"status": "ok", "service": "document-service"}

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness probe",
        description="Returns 200 only if the database and the search index are reachable.",
    )
    async def readiness(request: Request) -> JSONResponse:
        db_status = await check_db_health()
        services = getattr(request.app.state, "services", None)

        index_status = {"status": "error", "detail": "services not initialised"}
        if services is not None:
            try:
                exists = await services.gateway.store.index_exists()
                index_status = {"status": "ok" if exists else "missing", "index": services.gateway.index_name}
            except Exception as exc:
                index_status = {"status": "error", "detail": str(exc)}

        ready = db_status["status"] == "ok" and index_status["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status":   "ready" if ready else "not_ready",
                "database": db_status,
                "index":    index_status,
            },
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


# ---------------------------------------------------------------------------
# Local development entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
