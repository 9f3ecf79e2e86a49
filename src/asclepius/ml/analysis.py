"""Analyze pipeline: crop, classify on the inference pool, interpret.

Each request carries its own state in an ``AnalyzeRequest``. The classifier
reports back through a ``ClassifierSuccess`` or ``ClassifierFailure`` value
instead of a callback, and interpretation runs synchronously on the task that
awaited it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from asclepius.ml.preprocessing import ImageDecodeError, encode_png
from asclepius.ml.result_interpreter import NoResult, Verdict, interpret

if TYPE_CHECKING:
    from collections.abc import Sequence

    from asclepius.ml.image_classifier import ImageClassifier
    from asclepius.ml.inference import InferencePool
    from asclepius.ml.preprocessing import ImagePreprocessor
    from asclepius.ml.result_interpreter import Classification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalyzeRequest:
    """One user-initiated analyze action."""

    image_bytes: bytes
    filename: str | None = None
    content_type: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class ClassifierSuccess:
    classifications: Sequence[Classification] | None
    inference_time_ms: int
    image_png: bytes = b""


@dataclass(frozen=True)
class ClassifierFailure:
    error: str


ClassifierResult = ClassifierSuccess | ClassifierFailure


@dataclass(frozen=True)
class AnalysisOutcome:
    """Everything the presenter needs to render one analyze request."""

    request: AnalyzeRequest
    result: Verdict | NoResult | None
    image_png: bytes = b""
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def run_classifier(
    request: AnalyzeRequest,
    classifier: ImageClassifier,
    preprocessor: ImagePreprocessor,
) -> ClassifierResult:
    """Crop and classify one image. Runs on an inference worker thread."""
    try:
        cropped = preprocessor.crop_square(request.image_bytes)
    except ImageDecodeError as exc:
        logger.warning("Request %s: image rejected: %s", request.request_id, exc)
        return ClassifierFailure(error=str(exc))

    tensor = preprocessor.to_tensor(cropped)
    started = time.perf_counter()
    try:
        classifications = classifier.classify(tensor)
    except Exception as exc:
        logger.warning("Request %s: classifier %s failed", request.request_id, classifier.model_name, exc_info=True)
        return ClassifierFailure(error=f"Image classifier failed: {exc}")
    inference_time_ms = int((time.perf_counter() - started) * 1000)

    logger.info(
        "Request %s: classified with %s in %d ms",
        request.request_id,
        classifier.model_name,
        inference_time_ms,
    )
    return ClassifierSuccess(
        classifications=classifications or None,
        inference_time_ms=inference_time_ms,
        image_png=encode_png(cropped),
    )


class Analyzer:
    """Wires the preprocessor and classifier onto the inference pool."""

    def __init__(
        self,
        pool: InferencePool,
        classifier: ImageClassifier,
        preprocessor: ImagePreprocessor,
    ) -> None:
        self._pool = pool
        self._classifier = classifier
        self._preprocessor = preprocessor

    @property
    def classifier(self) -> ImageClassifier:
        return self._classifier

    async def analyze(self, request: AnalyzeRequest) -> AnalysisOutcome:
        """Classify the request's image and interpret the result.

        Raises:
            TimeoutError: If no inference slot frees up in time.
        """
        result = await self._pool.run(run_classifier, request, self._classifier, self._preprocessor)
        if isinstance(result, ClassifierFailure):
            return AnalysisOutcome(request=request, result=None, error=result.error)

        return AnalysisOutcome(
            request=request,
            result=interpret(result.classifications, result.inference_time_ms),
            image_png=result.image_png,
        )
