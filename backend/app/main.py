"""
FastAPI Application — KB Ingestion API

The API never processes documents itself: it reads document state and queues
runs on the Celery `documents.ingest` queue.

  GET  /api/v1/documents/{id}             status, stats, optional chunks
  POST /api/v1/documents/{id}/process     queue a run
  POST /api/v1/documents/{id}/reprocess   wipe chunks + queue a run
  GET  /health                            liveness
  GET  /ready                             readiness (database ping)

Middleware (outermost first):
  request logging + X-Request-ID → CORS → GZip

Error mapping (every error body is an ErrorResponse):
  DocumentNotFoundError        404  DOCUMENT_NOT_FOUND
  KnowledgeBaseNotFoundError   404  KNOWLEDGE_BASE_NOT_FOUND
  DocumentBusyError            409  DOCUMENT_BUSY
  RequestValidationError       422  VALIDATION_ERROR
  anything else                500  INTERNAL_ERROR
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.documents import router as documents_router
from app.core.config import settings
from app.core.exceptions import (
    DocumentBusyError,
    DocumentNotFoundError,
    KnowledgeBaseNotFoundError,
)
from app.db.session import check_db_health
from app.schemas.documents import DocumentErrors, ErrorDetail, ErrorResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error(status_code: int, body: ErrorResponse, **headers: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers=headers or None,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "API startup | env=%s embedding=%s/%s broker=%s",
        settings.app_env, settings.embedding_provider, settings.embedding_model,
        settings.celery_broker_url.split("@")[-1],
    )
    if not settings.openai_api_key:
        logger.warning("API startup | OPENAI_API_KEY missing, processing runs will fail")

    # The API can still serve reads of cached state; /ready reports the outage
    db = await check_db_health()
    if db["status"] == "ok":
        logger.info("API startup | database reachable")
    else:
        logger.critical("API startup | database unreachable: %s", db.get("detail"))

    yield

    from app.db.session import engine
    await engine.dispose()
    logger.info("API shutdown | connection pool disposed")


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------

def _install_middleware(app: FastAPI) -> None:
    # Added innermost first
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER, "Location"],
    )

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "HTTP | %s %s status=%d elapsed_ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response


def _install_error_handlers(app: FastAPI) -> None:
    pipeline_errors: dict[type[Exception], tuple[int, Callable[[Exception], ErrorResponse]]] = {
        DocumentNotFoundError: (
            status.HTTP_404_NOT_FOUND,
            lambda exc: DocumentErrors.document_not_found(exc.document_id),
        ),
        KnowledgeBaseNotFoundError: (
            status.HTTP_404_NOT_FOUND,
            lambda exc: ErrorResponse(error_code="KNOWLEDGE_BASE_NOT_FOUND", message=str(exc)),
        ),
        DocumentBusyError: (
            status.HTTP_409_CONFLICT,
            lambda exc: DocumentErrors.document_busy(exc.document_id, exc.current_status),
        ),
    }

    async def pipeline_error(request: Request, exc: Exception) -> JSONResponse:
        status_code, build = pipeline_errors[type(exc)]
        logger.info("Request refused | path=%s status=%d: %s", request.url.path, status_code, exc)
        return _error(status_code, build(exc))

    for exc_type in pipeline_errors:
        app.add_exception_handler(exc_type, pipeline_error)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorResponse(
                error_code="VALIDATION_ERROR",
                message="Request validation failed.",
                details=[
                    ErrorDetail(
                        field=".".join(str(part) for part in err["loc"]),
                        message=err["msg"],
                        code="VALIDATION_ERROR",
                    )
                    for err in exc.errors()
                ],
                request_id=request.headers.get(REQUEST_ID_HEADER),
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        logger.exception("Unhandled error | path=%s request_id=%s", request.url.path, request_id)
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            DocumentErrors.internal_error(request_id),
            **{REQUEST_ID_HEADER: request_id},
        )


def _install_health_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Liveness check")
    async def health() -> dict:
        return {"status": "ok", "service": "kb-ingest-api"}

    @app.get("/ready", tags=["Operations"], summary="Readiness check (database ping)")
    async def ready() -> JSONResponse:
        db = await check_db_health()
        ok = db["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ok else "not_ready", "database": db},
        )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    docs_enabled = not settings.is_production
    app = FastAPI(
        title="KB Ingestion API",
        description="Queue and inspect knowledge base document processing runs.",
        version="1.0.0",
        docs_url="/api/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/api/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    _install_middleware(app)
    _install_error_handlers(app)
    app.include_router(documents_router, prefix="/api/v1")
    _install_health_routes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
    )
