"""Classifier model registry and ONNX session lifecycle.

Models are fetched from the HuggingFace Hub on first use, kept as cached
InferenceSessions, and dropped again once idle for longer than ``model_ttl``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from asclepius.config import Settings

logger = logging.getLogger(__name__)

ProviderList = list[str | tuple[str, dict[str, object]]]


class ModelManager(Protocol):
    """What the classifier and the API need from a model manager."""

    def get_session(self, model_name: str) -> InferenceSession: ...

    def get_loaded_models(self) -> list[str]: ...

    def unload_idle_models(self) -> list[str]: ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Where a classifier lives on the Hub and what its outputs mean."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    license: str
    labels: tuple[str, ...]
    input_size: int = 224
    task: ModelTask = ModelTask.IMAGE_CLASSIFICATION


_SKIN_LESION_REPO = "asclepius-health/skin-lesion-classifier"
_SKIN_LESION_LABELS = ("Cancer", "Non Cancer")

MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(
            name="cancer_classification",
            repo_id=_SKIN_LESION_REPO,
            filename="cancer_classification.onnx",
            subfolder=None,
            license="Apache-2.0",
            labels=_SKIN_LESION_LABELS,
        ),
        ModelSpec(
            name="cancer_classification_int8",
            repo_id=_SKIN_LESION_REPO,
            filename="cancer_classification_int8.onnx",
            subfolder="quantized",
            license="Apache-2.0",
            labels=_SKIN_LESION_LABELS,
        ),
    )
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising KeyError for unknown names."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# ONNX Runtime configuration
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> ProviderList:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO runs its own graph optimizations.
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


# ---------------------------------------------------------------------------
# Session cache
# ---------------------------------------------------------------------------


@dataclass
class _LoadedModel:
    session: InferenceSession
    last_used: float

    def touch(self) -> InferenceSession:
        self.last_used = time.monotonic()
        return self.session


class OnnxModelManager:
    """Thread-safe cache of classifier sessions keyed by registry name."""

    def __init__(self, settings: Settings) -> None:
        self._ttl = settings.model_ttl
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

        self._lock = threading.Lock()
        self._loaded: dict[str, _LoadedModel] = {}
        self._files: dict[str, Path] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, fetching it from the Hub when missing."""
        spec = get_model_spec(model_name)
        known = self._files.get(model_name)
        if known is not None and known.exists():
            return known

        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._files[model_name] = path
        logger.info("Downloaded %s to %s", model_name, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the cached session for a model, loading it on first use."""
        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                return loaded.touch()

        started = time.perf_counter()
        session = InferenceSession(
            str(self.ensure_downloaded(model_name)),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # A concurrent request may have loaded the same model meanwhile.
            loaded = self._loaded.setdefault(model_name, _LoadedModel(session, time.monotonic()))
            if loaded.session is session:
                logger.info("Loaded %s in %.0f ms", model_name, (time.perf_counter() - started) * 1000)
            return loaded.touch()

    def preload(self, model_name: str) -> None:
        """Load a model ahead of the first request, logging instead of raising."""
        try:
            self.get_session(model_name)
        except Exception:
            logger.warning("Could not preload %s; it will be loaded on first request", model_name, exc_info=True)

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def unload_idle_models(self) -> list[str]:
        """Drop sessions unused for longer than ``model_ttl`` seconds (0 disables)."""
        if self._ttl == 0:
            return []

        cutoff = time.monotonic() - self._ttl
        with self._lock:
            idle = [name for name, loaded in self._loaded.items() if loaded.last_used < cutoff]
            for name in idle:
                del self._loaded[name]
        for name in idle:
            logger.info("Evicted idle session for %s", name)
        return idle

    def shutdown(self) -> None:
        with self._lock:
            self._loaded.clear()
        logger.info("All model sessions cleared")


async def evict_idle_periodically(manager: ModelManager, interval: float, stop: asyncio.Event) -> None:
    """Call ``unload_idle_models`` every ``interval`` seconds until ``stop`` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            break
        except TimeoutError:
            try:
                manager.unload_idle_models()
            except Exception:
                logger.exception("Idle model eviction failed")
