"""Application startup/shutdown lifecycle wiring."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI

from app.config import Settings
from app.context import OrchestratorContext, build_context
from iso_orchestrator.core.service import Orchestrator

logger = logging.getLogger(__name__)


async def run_periodically(name: str, interval: float, step: Callable[[], object]) -> None:
    """Run a blocking *step* in a thread every *interval* seconds until cancelled."""
    logger.info("%s loop started (every %ss)", name, interval)
    while True:
        try:
            await asyncio.to_thread(step)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - best-effort background loop
            logger.error("%s loop iteration failed: %s", name, exc, exc_info=True)
        await asyncio.sleep(interval)


def start_background_loops(orchestrator: Orchestrator, settings: Settings) -> list[asyncio.Task]:
    return [
        asyncio.create_task(
            run_periodically("Sweep", settings.SWEEP_INTERVAL_SECONDS, orchestrator.sweep_once)
        ),
        asyncio.create_task(
            run_periodically("Retention purge", settings.PURGE_INTERVAL_SECONDS, orchestrator.purge_once)
        ),
    ]


def build_lifespan(
    settings: Settings,
    context: Optional[OrchestratorContext] = None,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """Create a lifespan context manager bound to provided settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Isoforge API...")
        ctx = context or build_context(settings)

        app.state.settings = settings
        app.state.ctx = ctx

        if not ctx.repository.ping():
            logger.warning("Build repository not reachable at startup; requests will fail until it is")

        tasks: list[asyncio.Task] = []
        if settings.RUN_SWEEPER:
            tasks = start_background_loops(ctx.orchestrator, settings)
        else:
            logger.info("RUN_SWEEPER is off; expecting a standalone sweep runner")

        yield

        logger.info("Shutting down Isoforge API...")
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        ctx.close()
        logger.info("Isoforge API stopped")

    return lifespan
