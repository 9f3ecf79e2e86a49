"""Pydantic request/response schemas for the Asclepius API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from asclepius.ml.result_interpreter import Category, Classification, Finding


class CategorySchema(BaseModel):
    """A single scored label."""

    label: str
    score: float = Field(ge=0.0, le=1.0)

    def to_category(self) -> Category:
        return Category(label=self.label, score=self.score)


class ClassificationSchema(BaseModel):
    """Categories produced by one model head."""

    categories: list[CategorySchema] = Field(default_factory=list)
    head_index: int = 0
    head_name: str | None = None

    def to_classification(self) -> Classification:
        return Classification(
            categories=tuple(c.to_category() for c in self.categories),
            head_index=self.head_index,
            head_name=self.head_name,
        )


class InterpretRequest(BaseModel):
    """Raw classifier output to interpret. ``null`` classifications means no output."""

    classifications: list[ClassificationSchema] | None = None
    inference_time_ms: int = 0


class AnalyzeResponse(BaseModel):
    """Result screen content for one analyze or interpret request."""

    request_id: str | None = None
    status: Literal["verdict", "no_result"]
    message: str = Field(description="Display text: filtered categories followed by the interpretation")
    finding: Finding | None = None
    categories: list[CategorySchema] = Field(default_factory=list)
    inference_time_ms: int | None = None
    image: str | None = Field(default=None, description="Base64-encoded PNG of the square crop that was classified")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'image_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    labels: list[str]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
