"""
FastAPI Application Factory

Creates and configures the analytics API application: middleware, routers,
error handlers and the Prometheus endpoint.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.config import get_settings
from src.core import ValidationError
from src.ingestion.metrics import EVENTS_REJECTED
from src.serving.api.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from src.serving.api.routes import health_router, reporting_router, tracking_router

settings = get_settings()
logger = structlog.get_logger(__name__)


def _rejection(request: Request, message: str, errors: List[Dict[str, Any]]) -> JSONResponse:
    path = request.url.path
    if path.startswith("/api/analytics/") and request.method == "POST":
        EVENTS_REJECTED.labels(route=path.rsplit("/", 1)[-1]).inc()
    logger.info("Envelope rejected", path=path, errors=errors)
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": message, "errors": errors},
    )


def create_api_app(lifespan: Optional[Any] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Forum Analytics API",
        description="Event ingestion, rollup aggregation and reporting for forum tenants",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.security.rate_limit_requests,
        window_seconds=settings.security.rate_limit_window_seconds,
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return _rejection(request, "Invalid envelope", errors)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return _rejection(request, exc.message, exc.errors)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(tracking_router, prefix="/api/analytics", tags=["Tracking"])
    app.include_router(reporting_router, prefix="/api/analytics/reports", tags=["Reporting"])

    if settings.monitoring.enable_metrics:
        @app.get("/metrics", include_in_schema=False)
        async def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/v1/info")
    async def api_info() -> Dict[str, str]:
        """API information endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
        }

    return app
