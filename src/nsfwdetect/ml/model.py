"""Model handle: locate, load and run the NSFW classification model.

The model is an ONNX image classifier with two output classes. It is loaded
once per process by ``ModelLoader`` and the resulting ``NsfwModel`` is shared,
read-only, by every request.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode as OrtExecutionMode
from PIL import Image

from nsfwdetect.ml.environment import ExecutionMode
from nsfwdetect.ml.errors import ModelLoadError
from nsfwdetect.ml.preprocessing import DecodedBitmap, PixelFormat

if TYPE_CHECKING:
    from collections.abc import Mapping

    from numpy.typing import NDArray

    from nsfwdetect.config import Settings
    from nsfwdetect.ml.preprocessing import CanonicalImage

logger = logging.getLogger(__name__)

DESIGNATED_LABEL = "NSFW"

CPU_PROVIDER = "CPUExecutionProvider"


@dataclass(frozen=True)
class Observation:
    """A single labeled score reported by the model."""

    label: str
    confidence: float


class ClassificationModel(Protocol):
    """Protocol for the classification backend (kept for test mocking)."""

    def classify(self, image: CanonicalImage, mode: ExecutionMode) -> list[Observation]:
        """Run the model on one image and return its labeled observations."""
        ...


# ---------------------------------------------------------------------------
# Model metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for the bundled ONNX model."""

    name: str
    repo_id: str
    filename: str
    labels: tuple[str, ...]
    input_size: int
    mean: tuple[float, float, float]
    std: tuple[float, float, float]
    outputs_logits: bool


NSFW_MODEL = ModelSpec(
    name="nsfw_mobilenet_v2",
    repo_id="nsfwdetect/nsfw-models",
    filename="nsfw_mobilenet_v2.onnx",
    labels=("SFW", DESIGNATED_LABEL),
    input_size=224,
    mean=(0.485, 0.456, 0.406),
    std=(0.229, 0.224, 0.225),
    outputs_logits=True,
)


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


class NsfwModel:
    """Immutable handle to the loaded model, one session per execution mode."""

    def __init__(self, spec: ModelSpec, sessions: Mapping[ExecutionMode, InferenceSession]) -> None:
        self._spec = spec
        self._sessions = MappingProxyType(dict(sessions))
        self._input_names = MappingProxyType({mode: session.get_inputs()[0].name for mode, session in sessions.items()})

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def modes(self) -> frozenset[ExecutionMode]:
        """Execution modes this handle has a session for."""
        return frozenset(self._sessions)

    def classify(self, image: CanonicalImage, mode: ExecutionMode) -> list[Observation]:
        """Run inference and return one observation per model label.

        Raises:
            KeyError: If no session exists for ``mode``.
        """
        session = self._sessions[mode]
        tensor = self._to_tensor(image)
        outputs = session.run(None, {self._input_names[mode]: tensor})

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if self._spec.outputs_logits:
            exp = np.exp(scores - scores.max())
            scores = exp / exp.sum()
        return [Observation(label=label, confidence=float(score)) for label, score in zip(self._spec.labels, scores)]

    def _to_tensor(self, image: CanonicalImage) -> NDArray[np.float32]:
        rgb = _to_rgb(image)
        size = self._spec.input_size
        resized = Image.fromarray(np.ascontiguousarray(rgb)).resize((size, size), Image.Resampling.BILINEAR)

        pixels = np.asarray(resized, dtype=np.float32) / 255.0
        pixels = (pixels - np.asarray(self._spec.mean, dtype=np.float32)) / np.asarray(self._spec.std, dtype=np.float32)
        # HWC -> NCHW
        return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)


def _to_rgb(image: CanonicalImage) -> NDArray[np.uint8]:
    if isinstance(image, DecodedBitmap):
        return image.pixels
    if image.pixel_format in (PixelFormat.BGR, PixelFormat.BGRA):
        return image.pixels[..., [2, 1, 0]]
    return image.pixels[..., :3]


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class ModelLoader:
    """Locates the model artifact and builds the shared ``NsfwModel`` once."""

    def __init__(self, settings: Settings, mode: ExecutionMode, spec: ModelSpec = NSFW_MODEL) -> None:
        self._settings = settings
        self._mode = mode
        self._spec = spec

        self._lock = threading.Lock()
        self._model: NsfwModel | None = None

    def ensure_downloaded(self) -> Path:
        """Return the local model path, downloading from HuggingFace if needed."""
        if self._settings.model_path is not None:
            path = Path(self._settings.model_path)
            if not path.is_file():
                raise FileNotFoundError(f"Model file not found: {path}")
            return path

        models_dir = Path(self._settings.models_dir)
        models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._spec.repo_id,
                filename=self._spec.filename,
                local_dir=str(models_dir),
            )
        )
        logger.info("Downloaded %s to %s", self._spec.name, downloaded)
        return downloaded

    def load(self) -> NsfwModel:
        """Load the model on first call; return the same handle afterwards.

        Raises:
            ModelLoadError: If the artifact cannot be found, parsed or compiled.
                This is fatal: no request can succeed without the model.
        """
        # Held for the whole load so concurrent first callers share one handle.
        with self._lock:
            if self._model is not None:
                return self._model

            try:
                model_path = self.ensure_downloaded()
                sessions = {ExecutionMode.PORTABLE_ONLY: self._create_session(model_path, [CPU_PROVIDER])}
                if self._mode is ExecutionMode.ACCELERATED:
                    sessions[ExecutionMode.ACCELERATED] = self._create_session(model_path, self._build_providers())
                model = NsfwModel(self._spec, sessions)
            except Exception as exc:
                logger.critical("Failed to load model %s: %s", self._spec.name, exc)
                raise ModelLoadError(f"Model '{self._spec.name}' could not be loaded") from exc

            self._model = model
            logger.info("Loaded %s (modes=%s)", self._spec.name, sorted(model.modes))
            return model

    # -- Internal -----------------------------------------------------------

    def _create_session(self, model_path: Path, providers: list[str | tuple[str, dict[str, object]]]) -> InferenceSession:
        return InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(providers),
            providers=providers,
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                CPU_PROVIDER,
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                CPU_PROVIDER,
            ]
        return [CPU_PROVIDER]

    def _build_session_options(self, providers: list[str | tuple[str, dict[str, object]]]) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = OrtExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        provider_names = {provider if isinstance(provider, str) else provider[0] for provider in providers}
        if "OpenVINOExecutionProvider" in provider_names:
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
