"""Image classification with a bundled ONNX model.

A classifier is either loaded or released. Loading happens once at
construction; :meth:`OnnxImageClassifier.release` drops the engine session
and every later call raises :class:`InferenceError`.

Instances are not thread-safe: the engine session is mutable state owned by
one in-flight call at a time. Callers that classify from several threads
must serialize access, e.g. through
:class:`fruitlens.ml.inference.ClassificationWorker`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np

from fruitlens.config import Settings
from fruitlens.ml.errors import InferenceError
from fruitlens.ml.model_manager import (
    FRUITS_CLASSIFIER,
    ModelSpec,
    check_signature,
    get_spec,
    load_session,
    resolve_model_path,
)
from fruitlens.ml.preprocessing import to_input_tensor

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from fruitlens.ml.preprocessing import PixelSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


def format_result(result: ClassificationResult) -> str:
    """Render a result for display, e.g. ``"Onion (70%)"``.

    The percentage is truncated, not rounded. The multiplication happens in
    float32, the precision the model produced the score in, so a score of
    0.7 shows as 70% rather than 69%.
    """
    percent = np.float32(result.confidence) * np.float32(100)
    return f"{result.label} ({int(percent)}%)"


def top_index(scores: NDArray[np.float32]) -> int:
    """Index of the highest score; the lowest index wins ties."""
    return int(np.argmax(scores))


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def labels(self) -> tuple[str, ...]:
        """Return the labels in model output order."""
        ...

    def classify(self, image: PixelSource) -> ClassificationResult:
        """Classify an image and return the top prediction.

        Raises:
            InferenceError: If no prediction could be produced.
        """
        ...

    def release(self) -> None:
        """Free the inference engine resources."""
        ...


# ---------------------------------------------------------------------------
# Classifier state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Loaded:
    session: InferenceSession
    input_name: str
    output_name: str


@dataclass(frozen=True)
class Released:
    pass


ClassifierState = Loaded | Released


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxImageClassifier:
    """Runs a fixed-topology ONNX classification model on single images."""

    def __init__(
        self,
        model_path: str | Path,
        *,
        spec: ModelSpec = FRUITS_CLASSIFIER,
        settings: Settings | None = None,
    ) -> None:
        """Load the model artifact.

        Raises:
            ModelLoadError: If the artifact cannot be loaded or its signature
                does not match ``spec``.
        """
        self._spec = spec
        settings = settings or Settings()

        session = load_session(model_path, settings)
        input_name, output_name = check_signature(session, spec)
        self._state: ClassifierState = Loaded(session, input_name, output_name)

    @classmethod
    def from_settings(cls, settings: Settings) -> OnnxImageClassifier:
        """Load the configured registry model from the models directory."""
        spec = get_spec(settings.classifier_model)
        return cls(resolve_model_path(settings, spec), spec=spec, settings=settings)

    # -- Public API ---------------------------------------------------------

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def labels(self) -> tuple[str, ...]:
        return self._spec.labels

    @property
    def is_loaded(self) -> bool:
        return isinstance(self._state, Loaded)

    def classify(self, image: PixelSource) -> ClassificationResult:
        """Return the top label and its raw score for an image.

        Scores are returned as the model produced them, without softmax.

        Raises:
            InferenceError: If the classifier was released or inference failed.
            ValueError: If the image has no pixels.
        """
        scores = self._scores(image)
        index = top_index(scores)
        result = ClassificationResult(label=self._spec.labels[index], confidence=float(scores[index]))
        logger.debug("Classified image as %s (%.4f)", result.label, result.confidence)
        return result

    def rank(self, image: PixelSource, top_k: int | None = None) -> list[ClassificationResult]:
        """Return predictions for every label sorted by descending score.

        Equal scores keep label order, so the first entry always matches
        :meth:`classify`.

        Raises:
            ValueError: If ``top_k`` is negative.
        """
        if top_k is not None and top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {top_k}")
        scores = self._scores(image)
        order = np.argsort(-scores, kind="stable")
        if top_k is not None:
            order = order[:top_k]
        return [ClassificationResult(label=self._spec.labels[i], confidence=float(scores[i])) for i in order]

    def release(self) -> None:
        """Drop the inference session. Safe to call more than once."""
        if isinstance(self._state, Released):
            return
        self._state = Released()
        logger.info("Released session for %s", self._spec.name)

    def __enter__(self) -> OnnxImageClassifier:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    # -- Internal -----------------------------------------------------------

    def _scores(self, image: PixelSource) -> NDArray[np.float32]:
        state = self._state
        if not isinstance(state, Loaded):
            raise InferenceError(f"Classifier for '{self._spec.name}' has been released")

        tensor = to_input_tensor(image, self._spec.input_height, self._spec.input_width)
        if tensor.shape != self._spec.input_shape:
            raise InferenceError(f"Input tensor shape {tensor.shape} does not match {self._spec.input_shape}")

        try:
            outputs = state.session.run([state.output_name], {state.input_name: tensor})
        except Exception as exc:
            raise InferenceError(f"Inference failed for '{self._spec.name}': {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.shape != (self._spec.num_classes,):
            raise InferenceError(f"Model returned {scores.size} scores, expected {self._spec.num_classes}")
        return scores
