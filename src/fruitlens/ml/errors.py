"""Exceptions raised by the inference pipeline."""

from __future__ import annotations


class FruitLensError(Exception):
    """Base class for FruitLens errors."""


class ModelLoadError(FruitLensError):
    """The model artifact is missing, truncated, or incompatible.

    Raised at construction only. The artifact is static, so callers should
    surface the error instead of retrying.
    """


class InferenceError(FruitLensError):
    """A classification could not be produced.

    Raised when the classifier has been released or the engine rejects the
    input or returns an unexpected output.
    """
