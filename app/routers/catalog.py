"""Read-only catalog and limits routes."""

from fastapi import APIRouter, Depends

from app.dependencies import get_orchestrator
from app.models import (
    LimitsResponse,
    ModelCatalogResponse,
    ModelEntry,
    ServiceCatalogResponse,
    ServiceEntry,
)
from iso_orchestrator.core.service import Orchestrator
from iso_orchestrator.policy.catalog import CATALOG_VERSION, SERVICE_CATEGORIES

router = APIRouter(prefix="/catalog", tags=["Catalog"])


@router.get("/services", response_model=ServiceCatalogResponse)
def list_services(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Selectable services; hidden backing stores are omitted."""
    return ServiceCatalogResponse(
        version=CATALOG_VERSION,
        categories=SERVICE_CATEGORIES,
        services=[
            ServiceEntry(
                name=s.name,
                display=s.display,
                description=s.description,
                category=s.category,
                size_mb=s.size_mb,
                dependencies=list(s.dependencies),
                required=s.required,
            )
            for s in orchestrator.catalog.visible_services()
        ],
    )


@router.get("/models", response_model=ModelCatalogResponse)
def list_models(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return ModelCatalogResponse(
        version=CATALOG_VERSION,
        models=[
            ModelEntry(name=m.name, display=m.display, description=m.description, size_gb=m.size_gb)
            for m in orchestrator.catalog.models.values()
        ],
    )


@router.get("/limits", response_model=LimitsResponse)
def get_limits(orchestrator: Orchestrator = Depends(get_orchestrator)):
    profile = orchestrator.profile
    windows = {w.seconds: w.limit for w in profile.quota_windows}
    return LimitsResponse(
        max_concurrent_builds=profile.max_concurrent_builds,
        active_builds=orchestrator.repository.count_active(),
        builds_per_hour=windows.get(3600, 0),
        builds_per_day=windows.get(86400, 0),
        max_services_per_build=profile.max_services_per_build,
        max_models_per_build=profile.max_models_per_build,
        stall_seconds=profile.stall_seconds,
        build_timeout_seconds=profile.build_timeout_seconds,
        signed_url_ttl_seconds=profile.signed_url_ttl_seconds,
        retention_hours=profile.retention_seconds // 3600,
    )
