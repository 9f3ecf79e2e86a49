"""Tests for the ONNX image classifier wrapper."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from asclepius.config import Settings
from asclepius.ml.image_classifier import OnnxImageClassifier, _to_probabilities


def _fake_manager(*outputs: list[float]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="input")]
    session.get_outputs.return_value = [SimpleNamespace(name=f"head{i}") for i in range(len(outputs))]
    session.run.return_value = [np.asarray([o], dtype=np.float32) for o in outputs]
    manager = MagicMock()
    manager.get_session.return_value = session
    return manager


def _tensor() -> np.ndarray:
    return np.zeros((1, 3, 224, 224), dtype=np.float32)


class TestToProbabilities:
    def test_distribution_passes_through(self) -> None:
        probs = _to_probabilities(np.asarray([[0.25, 0.75]], dtype=np.float32))
        np.testing.assert_allclose(probs, [0.25, 0.75])

    def test_logits_are_softmaxed(self) -> None:
        probs = _to_probabilities(np.asarray([2.0, 0.0], dtype=np.float32))
        assert probs.sum() == pytest.approx(1.0)
        assert probs[0] > probs[1]


class TestOnnxImageClassifier:
    def test_classify_builds_sorted_categories(self) -> None:
        manager = _fake_manager([0.15, 0.85])
        classifier = OnnxImageClassifier(Settings(), manager)

        result = classifier.classify(_tensor())

        manager.get_session.assert_called_once_with("cancer_classification")
        assert len(result) == 1
        labels = [c.label for c in result[0].categories]
        assert labels == ["Non Cancer", "Cancer"]
        assert result[0].categories[0].score == pytest.approx(0.85)
        assert result[0].head_name == "head0"

    def test_score_threshold_drops_low_scores(self) -> None:
        manager = _fake_manager([0.95, 0.05])
        classifier = OnnxImageClassifier(Settings(classifier_score_threshold=0.1), manager)

        result = classifier.classify(_tensor())

        assert [c.label for c in result[0].categories] == ["Cancer"]

    def test_max_results_limits_categories(self) -> None:
        manager = _fake_manager([0.6, 0.4])
        classifier = OnnxImageClassifier(Settings(classifier_max_results=1), manager)

        result = classifier.classify(_tensor())

        assert len(result[0].categories) == 1
        assert result[0].categories[0].label == "Cancer"

    def test_one_classification_per_head(self) -> None:
        manager = _fake_manager([0.7, 0.3], [0.2, 0.8])
        classifier = OnnxImageClassifier(Settings(), manager)

        result = classifier.classify(_tensor())

        assert [c.head_index for c in result] == [0, 1]

    def test_head_with_wrong_arity_is_skipped(self) -> None:
        manager = _fake_manager([0.2, 0.3, 0.5])
        classifier = OnnxImageClassifier(Settings(), manager)

        assert classifier.classify(_tensor()) == []

    def test_unknown_model_rejected(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            OnnxImageClassifier(Settings(classifier_model="nope"), MagicMock())

    def test_model_name_and_labels(self) -> None:
        classifier = OnnxImageClassifier(Settings(), MagicMock())
        assert classifier.model_name == "cancer_classification"
        assert classifier.labels == ("Cancer", "Non Cancer")
