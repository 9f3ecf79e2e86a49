"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from asclepius.api.routes import router
from asclepius.config import Settings, get_settings
from asclepius.ml.analysis import Analyzer
from asclepius.ml.image_classifier import OnnxImageClassifier
from asclepius.ml.inference import InferencePool
from asclepius.ml.model_manager import OnnxModelManager, evict_idle_periodically, get_model_spec
from asclepius.ml.preprocessing import SquareCropPreprocessor

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, model manager, inference pool and analyzer to app.state."""
    app.state.settings = settings
    spec = get_model_spec(settings.classifier_model)
    model_manager = OnnxModelManager(settings)
    inference_pool = InferencePool(settings)
    app.state.model_manager = model_manager
    app.state.inference_pool = inference_pool
    app.state.analyzer = Analyzer(
        pool=inference_pool,
        classifier=OnnxImageClassifier(settings, model_manager),
        preprocessor=SquareCropPreprocessor(settings, input_size=spec.input_size),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Asclepius (device=%s, max_concurrent=%s, classifier=%s, crop_size=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.crop_size,
    )

    init_state(app, settings)
    if settings.preload_model:
        await asyncio.to_thread(app.state.model_manager.preload, settings.classifier_model)

    stop_eviction = asyncio.Event()
    app.state.eviction_task = None
    if settings.model_ttl > 0:
        interval = min(settings.eviction_interval, settings.model_ttl)
        app.state.eviction_task = asyncio.create_task(
            evict_idle_periodically(app.state.model_manager, interval, stop_eviction)
        )

    logger.info("Asclepius ready")
    yield

    logger.info("Shutting down Asclepius")
    stop_eviction.set()
    if app.state.eviction_task is not None:
        app.state.eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await app.state.eviction_task
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("Asclepius shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Asclepius",
        description="Skin lesion image classification with a human-readable verdict",
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


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("asclepius.main:app", host=settings.host, port=settings.port)
