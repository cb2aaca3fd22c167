"""
Isoforge API - Main Application
HTTP interface for custom installation image builds.
"""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, settings
from app.context import OrchestratorContext
from app.lifecycle import build_lifespan
from app.routers import builds, catalog, health
from iso_orchestrator.policy.errors import (
    AdmissionRejected,
    ArtifactUnavailable,
    BuildNotCompleted,
    BuildNotFound,
    ConcurrentUpdate,
    FailureReason,
    OrchestratorError,
    ProvisioningFailed,
    ValidationFailed,
)

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
_log = logging.getLogger(__name__)


# =============================================================================
# Error mapping
# =============================================================================

def status_code_for(exc: OrchestratorError) -> int:
    """HTTP status for an orchestrator error."""
    if isinstance(exc, ValidationFailed):
        return 400
    if isinstance(exc, AdmissionRejected):
        return 429 if exc.reason == FailureReason.QUOTA else 503
    if isinstance(exc, BuildNotFound):
        return 404
    if isinstance(exc, BuildNotCompleted):
        return 409
    if isinstance(exc, ArtifactUnavailable):
        return 410
    if isinstance(exc, ConcurrentUpdate):
        return 409
    if isinstance(exc, ProvisioningFailed):
        return 502
    return 500


async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
    status_code = status_code_for(exc)
    headers = None
    if isinstance(exc, AdmissionRejected) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    _log.info("%s on %s %s: %s", status_code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_detail()}, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are validation failures like any other (400)."""
    body = await request.body()
    _log.warning(
        "400 on %s %s  body[:200]=%s  errors=%s",
        request.method, request.url.path, body[:200], exc.errors()[:3],
    )
    errors = exc.errors()
    first = errors[0] if errors else {}
    detail = {
        "reason": FailureReason.VALIDATION.value,
        "message": first.get("msg", "Invalid request"),
        "field": ".".join(str(p) for p in first.get("loc", ()) if p != "body") or None,
    }
    return JSONResponse(status_code=400, content={"detail": detail})


# =============================================================================
# FastAPI Application
# =============================================================================

def create_app(
    app_settings: Optional[Settings] = None,
    context: Optional[OrchestratorContext] = None,
) -> FastAPI:
    app_settings = app_settings or settings
    application = FastAPI(
        title=app_settings.API_TITLE,
        description="Custom installation image builds: submit, follow, download",
        version=app_settings.API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=build_lifespan(app_settings, context),
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(OrchestratorError, orchestrator_exception_handler)
    application.add_exception_handler(RequestValidationError, validation_exception_handler)

    @application.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Isoforge API - custom installation image builds",
            "docs": "/docs",
            "health": "/health",
        }

    application.include_router(health.router)
    application.include_router(builds.router)
    application.include_router(catalog.router)
    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True  # For development
    )
