"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nsfwdetect.api.routes import router
from nsfwdetect.config import get_settings
from nsfwdetect.ml.detector import NsfwDetector
from nsfwdetect.ml.environment import resolve_execution_mode
from nsfwdetect.ml.inference import InferencePool
from nsfwdetect.ml.model import ModelLoader

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown.

    A ModelLoadError propagates out of startup and stops the service.
    """
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    mode = resolve_execution_mode(settings)
    logger.info(
        "Starting NSFWDetect (device=%s, mode=%s, max_concurrent=%s)",
        settings.device,
        mode,
        settings.max_concurrent,
    )

    model = ModelLoader(settings, mode).load()
    inference_pool = InferencePool(settings)
    app.state.model = model
    app.state.inference_pool = inference_pool
    app.state.detector = NsfwDetector(model, mode, inference_pool.executor)

    logger.info("NSFWDetect ready")
    yield

    logger.info("Shutting down NSFWDetect")
    inference_pool.shutdown()
    logger.info("NSFWDetect shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="NSFWDetect",
        description="Explicit content confidence scoring for still images",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
