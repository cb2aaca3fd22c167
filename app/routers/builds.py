"""Build-related API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from app.dependencies import get_orchestrator, get_requester_hint, verify_api_key
from app.models import (
    BuildListResponse,
    BuildRequest,
    BuildStatusResponse,
    BuildSubmitResponse,
    DownloadResponse,
)
from iso_orchestrator.core.service import Orchestrator
from iso_orchestrator.io.schema import BuildStatus
from iso_orchestrator.io.status_channel import effective_status

router = APIRouter(prefix="/builds", tags=["Builds"])
logger = logging.getLogger(__name__)


@router.post("", response_model=BuildSubmitResponse, status_code=202)
def submit_build(
    request: BuildRequest,
    background_tasks: BackgroundTasks,
    requester_hint: str = Depends(get_requester_hint),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    record = orchestrator.submit(
        services=request.services,
        models=request.models,
        gpu=request.gpu,
        requester=request.requester or requester_hint,
        image_name=request.image_name,
    )
    background_tasks.add_task(orchestrator.dispatch, record.build_id)

    config = record.requested_config
    return BuildSubmitResponse(
        build_id=record.build_id,
        status=record.status,
        estimated_minutes=record.estimated_minutes,
        services=config.services,
        models=config.models,
    )


@router.get("", response_model=BuildListResponse)
def list_builds(
    status: BuildStatus | None = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Result offset"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    records, total = orchestrator.list_builds(status=status, limit=limit, offset=offset)
    return BuildListResponse(
        builds=[BuildStatusResponse.from_record(r) for r in records],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get("/{build_id}", response_model=BuildStatusResponse)
def get_build_status(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    record = orchestrator.status(build_id)
    status = effective_status(record, None) if record.progress == 0 else record.status
    return BuildStatusResponse.from_record(record, status=status)


@router.get("/{build_id}/download", response_model=DownloadResponse)
def download_build(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    grant = orchestrator.download(build_id)
    return DownloadResponse(**grant.model_dump())


@router.delete("/{build_id}", response_model=BuildStatusResponse)
def cancel_build(
    build_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    _: bool = Depends(verify_api_key),
):
    record = orchestrator.cancel(build_id)
    return BuildStatusResponse.from_record(record)
