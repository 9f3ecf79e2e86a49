"""API route definitions."""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status

from asclepius.api.middleware import require_api_key
from asclepius.api.schemas import (
    AnalyzeResponse,
    CategorySchema,
    ErrorResponse,
    HealthResponse,
    InterpretRequest,
    ModelInfo,
    ModelsResponse,
)
from asclepius.ml.analysis import AnalyzeRequest
from asclepius.ml.model_manager import MODEL_REGISTRY
from asclepius.ml.result_interpreter import NoResult, Verdict, interpret

if TYPE_CHECKING:
    from asclepius.config import Settings
    from asclepius.ml.analysis import Analyzer
    from asclepius.ml.inference import InferencePool
    from asclepius.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_analyzer(request: Request) -> Analyzer:
    analyzer: Analyzer = request.app.state.analyzer
    return analyzer


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _render(
    result: Verdict | NoResult,
    request_id: str | None = None,
    image_png: bytes = b"",
) -> AnalyzeResponse:
    image = base64.b64encode(image_png).decode("ascii") if image_png else None
    if isinstance(result, NoResult):
        return AnalyzeResponse(request_id=request_id, status="no_result", message=result.message, image=image)
    return AnalyzeResponse(
        request_id=request_id,
        status="verdict",
        message=result.display_text,
        finding=result.finding,
        categories=[CategorySchema(label=c.label, score=c.score) for c in result.categories],
        inference_time_ms=result.inference_time_ms,
        image=image,
    )


async def _read_upload(file: UploadFile | None, max_size: int) -> bytes:
    if file is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image selected")
    data = await file.read(max_size + 1)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image selected")
    if len(data) > max_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Image exceeds {max_size} bytes",
        )
    return data


@router.post(
    "/analyze",
    response_model=AnalyzeResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Crop, classify and interpret an image",
)
async def analyze(
    request: Request,
    file: Annotated[UploadFile | None, File()] = None,
) -> AnalyzeResponse:
    """Classify an uploaded image and return the filtered verdict."""
    settings = _get_settings(request)
    analyzer = _get_analyzer(request)
    data = await _read_upload(file, settings.max_file_size)

    analyze_request = AnalyzeRequest(
        image_bytes=data,
        filename=file.filename if file else None,
        content_type=file.content_type if file else None,
    )
    try:
        outcome = await analyzer.analyze(analyze_request)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Classifier busy, try again later",
        ) from None

    if outcome.failed or outcome.result is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=outcome.error or "Image classifier failed",
        )
    if isinstance(outcome.result, Verdict):
        logger.info("Request %s: finding=%s", analyze_request.request_id, outcome.result.finding)
    else:
        logger.info("Request %s: no classification results", analyze_request.request_id)
    return _render(outcome.result, analyze_request.request_id, outcome.image_png)


@router.post(
    "/interpret",
    response_model=AnalyzeResponse,
    summary="Interpret raw classifier output",
)
async def interpret_results(body: InterpretRequest) -> AnalyzeResponse:
    """Turn classifier output produced elsewhere into a verdict."""
    classifications = (
        None if body.classifications is None else [c.to_classification() for c in body.classifications]
    )
    return _render(interpret(classifications, body.inference_time_ms))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classifier models and which one is active."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status="active" if spec.name == settings.classifier_model else "available",
                license=spec.license,
                labels=list(spec.labels),
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
