"""Health endpoint."""

from fastapi import APIRouter, Depends

from app.dependencies import get_context
from app.models import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check(ctx=Depends(get_context)) -> HealthResponse:
    redis_ok = ctx.repository.ping()
    storage_ok = ctx.status_channel.check_connection()

    return HealthResponse(
        status="healthy" if (redis_ok and storage_ok) else "degraded",
        redis_ok=redis_ok,
        storage_ok=storage_ok,
        version=ctx.settings.API_VERSION,
    )
