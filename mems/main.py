"""
FastAPI application entry point for Mems.

This module provides:
- FastAPI application setup with middleware
- CORS configuration for web clients
- Prometheus metrics endpoint
- Health check and API route integration
- Error envelope for domain and unexpected errors
"""

# Load environment variables BEFORE any other imports
from pathlib import Path
from dotenv import load_dotenv

project_root = Path(__file__).parent.parent
env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)

import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .adapters.storage_s3 import s3_storage
from .api.media import router as media_router
from .api.mems import router as mems_router
from .core.config import settings
from .core.logging import create_request_id, get_logger, setup_logging, with_logging_context
from .media.compression import is_video_compression_available, preload_engine
from .models.db import db_manager
from .observability.metrics import get_metrics_response, metrics
from .services.errors import MemsError


def error_response(request: Request, status_code: int, code: str, message: str, **extra) -> JSONResponse:
    """Render the error envelope shared by every failing endpoint."""
    content = {
        "error": code,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown tasks."""
    logger = get_logger("app.lifespan")

    logger.info("Starting Mems application")

    if not db_manager.health_check():
        logger.warning("Database health check failed during startup")
    else:
        logger.info("Database connection verified")
        if settings.database.is_sqlite or settings.app.is_development:
            db_manager.create_all()

    try:
        await s3_storage.ensure_bucket()
    except Exception as e:
        logger.warning("Blob storage is not reachable", error=str(e))

    if settings.media.preload_engine:
        ready = await preload_engine()
        logger.info("Transcoding engine preloaded", ready=ready)

    logger.info("Application startup completed")

    yield

    logger.info("Shutting down Mems application")
    db_manager.dispose()
    logger.info("Application shutdown completed")


def create_application() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()
    logger = get_logger("app")

    app = FastAPI(
        title="Mems API",
        description="Collaborative event albums with adaptive media compression",
        version=settings.app.version,
        debug=settings.app.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.app.is_development else None,
        redoc_url="/redoc" if settings.app.is_development else None
    )

    setup_middleware(app)
    setup_exception_handlers(app)

    app.include_router(mems_router, prefix="/api/v1")
    app.include_router(media_router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        """Liveness plus dependency status."""
        database_ok = db_manager.health_check()
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": settings.app.version,
            "database": database_ok,
            "video_compression": is_video_compression_available(),
        }

    @app.get("/metrics", response_class=Response)
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        content, headers = get_metrics_response()
        return Response(content=content, headers=headers)

    logger.info(
        "FastAPI application created",
        version=settings.app.version,
        environment=settings.app.environment,
        debug=settings.app.debug
    )

    return app


def setup_exception_handlers(app: FastAPI):
    """Map domain, HTTP, validation and unexpected errors onto the envelope."""

    @app.exception_handler(MemsError)
    async def mems_error_handler(request: Request, exc: MemsError):
        get_logger("app.error").info(
            "Request rejected",
            path=request.url.path,
            error=exc.code,
            status_code=exc.status_code,
            message=exc.message,
        )
        return error_response(request, exc.status_code, exc.code, exc.message)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return error_response(request, 422, "invalid_request", str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(
            request, 422, "validation_error", "Request validation failed",
            details=jsonable_encoder(exc.errors()),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        codes = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}
        response = error_response(
            request, exc.status_code, codes.get(exc.status_code, "http_error"), str(exc.detail)
        )
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger = get_logger("app.error")

        with with_logging_context(request_id=getattr(request.state, "request_id", None)):
            logger.error(
                "Unhandled exception in request",
                path=request.url.path,
                method=request.method,
                error=str(exc),
                exc_info=True
            )

        return error_response(request, 500, "internal_error", "An unexpected error occurred")


def setup_middleware(app: FastAPI):
    """CORS plus request id, access logging and request metrics."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app.is_development else settings.app.cors_origins,
        allow_credentials=not settings.app.is_development,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    access_logger = get_logger("app.request")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or create_request_id()
        request.state.request_id = request_id
        started = time.perf_counter()
        status_code = 500

        with with_logging_context(request_id=request_id):
            try:
                response = await call_next(request)
                status_code = response.status_code
            except Exception as exc:
                access_logger.error("Request crashed", path=request.url.path, error=str(exc), exc_info=True)
                raise
            finally:
                elapsed = time.perf_counter() - started
                # route template keeps ids out of metric labels
                route = request.scope.get("route")
                metrics.track_request(request.method, getattr(route, "path", request.url.path), status_code, elapsed)

            access_logger.info(
                "Request handled",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=round(elapsed, 3),
            )
            response.headers["X-Request-ID"] = request_id
            return response


app = create_application()


def main():
    """Run the application with Uvicorn."""
    uvicorn.run(
        "mems.main:app",
        host=settings.app.api_host,
        port=settings.app.api_port,
        workers=settings.app.api_workers,
        reload=settings.app.is_development,
        log_level=settings.app.log_level.lower(),
        access_log=True,
        server_header=False,
    )


if __name__ == "__main__":
    main()
