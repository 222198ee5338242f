"""Model loading: registry, ONNX Runtime session creation, signature checks.

Model artifacts ship with the application under ``Settings.models_dir``.
Each artifact is described by a :class:`ModelSpec` that also carries the
label list, so labels and weights are versioned together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from fruitlens.ml.errors import ModelLoadError

if TYPE_CHECKING:
    from fruitlens.config import Settings

logger = logging.getLogger(__name__)

_FLOAT_TENSOR = "tensor(float)"


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    filename: str
    input_height: int
    input_width: int
    input_channels: int
    labels: tuple[str, ...]

    @property
    def num_classes(self) -> int:
        return len(self.labels)

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        """Batched NHWC input shape."""
        return (1, self.input_height, self.input_width, self.input_channels)


FRUITS_CLASSIFIER = ModelSpec(
    name="fruits_classifier",
    filename="FruitsClassifier.onnx",
    input_height=150,
    input_width=150,
    input_channels=3,
    # Training order of the model's output vector.
    labels=("Apple", "Banana", "Lemon", "Onion", "Potato", "Watermelon"),
)

MODEL_REGISTRY: dict[str, ModelSpec] = {
    FRUITS_CLASSIFIER.name: FRUITS_CLASSIFIER,
}


def get_spec(model_name: str) -> ModelSpec:
    """Look up a registered model by name."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def resolve_model_path(settings: Settings, spec: ModelSpec) -> Path:
    """Return the location of a model artifact inside the models directory."""
    return Path(settings.models_dir) / spec.filename


# ---------------------------------------------------------------------------
# Session construction
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Return the ONNX Runtime execution providers for the configured device."""
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    """Return session options tuned for single, sequential forward passes."""
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


def load_session(model_path: str | Path, settings: Settings) -> InferenceSession:
    """Create an InferenceSession for a model artifact.

    ONNX Runtime reads the artifact from its path itself, so the file is
    never copied into a Python buffer first.

    Raises:
        ModelLoadError: If the file is missing, empty, or not a loadable model.
    """
    path = Path(model_path)
    if not path.is_file():
        raise ModelLoadError(f"Model artifact not found: {path}")
    if path.stat().st_size == 0:
        raise ModelLoadError(f"Model artifact is empty: {path}")

    try:
        session = InferenceSession(
            str(path),
            sess_options=build_session_options(settings),
            providers=build_providers(settings),
        )
    except Exception as exc:
        raise ModelLoadError(f"Failed to load model artifact {path}: {exc}") from exc

    logger.info("Loaded session for %s (device=%s)", path.name, settings.device)
    return session


def _static_dims(shape: list[object]) -> list[object]:
    # Symbolic or unknown batch dimensions come back as strings or None.
    return [dim if isinstance(dim, int) and dim > 0 else None for dim in shape]


def check_signature(session: InferenceSession, spec: ModelSpec) -> tuple[str, str]:
    """Verify a session's input/output signature against a model spec.

    Returns:
        The ``(input_name, output_name)`` pair to use for ``session.run``.

    Raises:
        ModelLoadError: If the declared shapes or input type do not match.
    """
    inputs = session.get_inputs()
    outputs = session.get_outputs()
    if len(inputs) != 1 or len(outputs) != 1:
        raise ModelLoadError(
            f"Model '{spec.name}' must have exactly one input and one output, "
            f"got {len(inputs)} and {len(outputs)}"
        )

    model_input, model_output = inputs[0], outputs[0]
    if model_input.type != _FLOAT_TENSOR:
        raise ModelLoadError(f"Model '{spec.name}' expects {model_input.type}, not {_FLOAT_TENSOR}")

    input_dims = _static_dims(list(model_input.shape))
    expected = list(spec.input_shape[1:])
    if len(input_dims) != 4 or input_dims[1:] != expected:
        raise ModelLoadError(
            f"Model '{spec.name}' input shape {list(model_input.shape)} does not match "
            f"[N, {', '.join(map(str, expected))}]"
        )

    output_dims = _static_dims(list(model_output.shape))
    if len(output_dims) != 2 or output_dims[1] != spec.num_classes:
        raise ModelLoadError(
            f"Model '{spec.name}' output shape {list(model_output.shape)} does not match "
            f"{spec.num_classes} labels"
        )

    return model_input.name, model_output.name
