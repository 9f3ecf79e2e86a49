"""Image classification over ONNX Runtime.

Each model output is treated as one classification head producing a score per
registry label.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from asclepius.ml.model_manager import get_model_spec
from asclepius.ml.result_interpreter import Category, Classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from asclepius.config import Settings
    from asclepius.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, tensor: NDArray[np.float32]) -> list[Classification]:
        """Classify a preprocessed image.

        Args:
            tensor: (1, 3, H, W) float32 array.

        Returns:
            One classification per model head, categories sorted by score (descending).
        """
        ...


def _to_probabilities(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Softmax the scores unless they already form a probability distribution."""
    scores = logits.astype(np.float32).ravel()
    if scores.size and np.all(scores >= 0.0) and np.all(scores <= 1.0) and np.isclose(scores.sum(), 1.0, atol=1e-3):
        return scores
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()


class OnnxImageClassifier:
    """Runs a registry classifier through a session from the model manager."""

    def __init__(self, settings: Settings, model_manager: ModelManager) -> None:
        self._spec = get_model_spec(settings.classifier_model)
        self._model_manager = model_manager
        self._score_threshold = settings.classifier_score_threshold
        self._max_results = settings.classifier_max_results

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._spec.labels

    def classify(self, tensor: NDArray[np.float32]) -> list[Classification]:
        session = self._model_manager.get_session(self._spec.name)
        input_name = session.get_inputs()[0].name
        output_names = [output.name for output in session.get_outputs()]
        outputs = session.run(output_names, {input_name: tensor})

        classifications: list[Classification] = []
        for head_index, (head_name, raw) in enumerate(zip(output_names, outputs, strict=True)):
            probabilities = _to_probabilities(np.asarray(raw))
            if probabilities.size != len(self._spec.labels):
                logger.warning(
                    "Head %s of %s has %d scores for %d labels; skipping",
                    head_name,
                    self._spec.name,
                    probabilities.size,
                    len(self._spec.labels),
                )
                continue
            categories = sorted(
                (
                    Category(label=label, score=float(score))
                    for label, score in zip(self._spec.labels, probabilities, strict=True)
                    if score >= self._score_threshold
                ),
                key=lambda c: c.score,
                reverse=True,
            )
            classifications.append(
                Classification(
                    categories=tuple(categories[: self._max_results]),
                    head_index=head_index,
                    head_name=head_name,
                )
            )
        return classifications
