"""FastAPI dependency helpers."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from app.config import Settings
from app.context import OrchestratorContext
from iso_orchestrator.core.service import Orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings  # type: ignore[attr-defined]


def get_context(request: Request) -> OrchestratorContext:
    return request.app.state.ctx  # type: ignore[attr-defined]


def get_orchestrator(ctx: OrchestratorContext = Depends(get_context)) -> Orchestrator:
    return ctx.orchestrator


def verify_api_key(
    x_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Optional API key gate."""
    if not settings.REQUIRE_API_KEY:
        return True

    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key required")

    if x_api_key != settings.API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


def get_requester_hint(
    request: Request,
    x_requester_id: Optional[str] = Header(None),
) -> str:
    """Requester identity when the body does not name one: header, else client address."""
    if x_requester_id and x_requester_id.strip():
        return x_requester_id.strip()
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"
