"""FruitLens: single-image fruit and vegetable classification."""

from fruitlens.ml.errors import FruitLensError, InferenceError, ModelLoadError
from fruitlens.ml.image_classifier import ClassificationResult, OnnxImageClassifier, format_result
from fruitlens.ml.preprocessing import ArrayPixelSource, PixelSource, decode_image, load_image

__all__ = [
    "ArrayPixelSource",
    "ClassificationResult",
    "FruitLensError",
    "InferenceError",
    "ModelLoadError",
    "OnnxImageClassifier",
    "PixelSource",
    "decode_image",
    "format_result",
    "load_image",
]

__version__ = "0.1.0"
