"""
FastAPI application entrypoint for the plan takeoff service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from takeoff.api.routes import router as api_router
from takeoff.core.config import AppSettings, get_settings
from takeoff.core.logging import configure_logging

logger = logging.getLogger(__name__)


def _lifespan(settings: AppSettings):
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Takeoff service starting (storage=%s, queue=%s, models=%s)",
            settings.storage_backend,
            settings.queue_backend,
            ",".join((settings.gemini.vision_model_name, *settings.gemini.fallback_model_list)),
        )
        yield
        logger.info("Takeoff service stopped")

    return lifespan


def create_app() -> FastAPI:
    """Build the API with routes mounted under ``/api``."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Plan Takeoff Service",
        version="0.1.0",
        description="Vision-model takeoff extraction for construction plans, single-shot or in page batches.",
        lifespan=_lifespan(settings),
    )
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
