"""Turn raw classifier output into a user-facing verdict.

Only categories scoring strictly above ``CONFIDENCE_THRESHOLD`` are shown. The
highest of those (earliest wins on ties) picks the interpretation sentence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD: float = 0.5

CANCER_LABEL = "cancer"
NON_CANCER_LABEL = "non cancer"

CANCER_MESSAGE = "This is an example of skin cancer."
NON_CANCER_MESSAGE = "This is not skin cancer."
UNRECOGNIZED_MESSAGE = "Label not recognized, result cannot be confirmed."
NO_CONFIDENT_CATEGORY_MESSAGE = "No category with percentage > 50% detected."
NO_RESULT_MESSAGE = "No classification results"


@dataclass(frozen=True)
class Category:
    """A single scored label."""

    label: str
    score: float


@dataclass(frozen=True)
class Classification:
    """Categories produced by one model head for one image."""

    categories: tuple[Category, ...]
    head_index: int = 0
    head_name: str | None = None


class Finding(StrEnum):
    CANCER = "cancer"
    NON_CANCER = "non_cancer"
    UNRECOGNIZED = "unrecognized"
    INCONCLUSIVE = "inconclusive"


_FINDING_MESSAGES: dict[Finding, str] = {
    Finding.CANCER: CANCER_MESSAGE,
    Finding.NON_CANCER: NON_CANCER_MESSAGE,
    Finding.UNRECOGNIZED: UNRECOGNIZED_MESSAGE,
    Finding.INCONCLUSIVE: NO_CONFIDENT_CATEGORY_MESSAGE,
}


@dataclass(frozen=True)
class Verdict:
    """Display text for the result screen plus the finding that produced it."""

    display_text: str
    finding: Finding
    categories: tuple[Category, ...] = ()
    inference_time_ms: int = 0

    @property
    def message(self) -> str:
        """The interpretation sentence alone."""
        return _FINDING_MESSAGES[self.finding]


@dataclass(frozen=True)
class NoResult:
    """The classifier produced no output at all."""

    message: str = NO_RESULT_MESSAGE


def format_category(category: Category) -> str:
    """Render a category as ``"label: 92.0%"``."""
    return f"{category.label}: {round(category.score * 100, 2)}%"


def classify_label(label: str) -> Finding:
    """Map a winning label onto a finding (case-insensitive exact match)."""
    folded = label.casefold()
    if folded == CANCER_LABEL:
        return Finding.CANCER
    if folded == NON_CANCER_LABEL:
        return Finding.NON_CANCER
    return Finding.UNRECOGNIZED


def interpret(
    classifications: Sequence[Classification] | None,
    inference_time_ms: int,
) -> Verdict | NoResult:
    """Build the verdict for one analyze request.

    Args:
        classifications: Classifier output, or ``None`` when it produced nothing.
        inference_time_ms: Reported inference duration. Carried through only.

    Returns:
        ``NoResult`` for absent input, otherwise a ``Verdict``.
    """
    if classifications is None:
        return NoResult()

    lines: list[str] = []
    confident: list[Category] = []
    for classification in classifications:
        kept = [c for c in classification.categories if c.score > CONFIDENCE_THRESHOLD]
        confident.extend(kept)
        lines.append(", ".join(format_category(c) for c in kept))
    filtered_text = "\n".join(lines).strip()

    logger.debug("Filtered classification result: %r", filtered_text)

    if not confident:
        return Verdict(
            display_text=NO_CONFIDENT_CATEGORY_MESSAGE,
            finding=Finding.INCONCLUSIVE,
            inference_time_ms=inference_time_ms,
        )

    # max() keeps the first maximal element, so ties resolve to encounter order.
    winner = max(confident, key=lambda c: c.score)
    finding = classify_label(winner.label)

    return Verdict(
        display_text=f"{filtered_text}\n\n{_FINDING_MESSAGES[finding]}",
        finding=finding,
        categories=tuple(confident),
        inference_time_ms=inference_time_ms,
    )
