"""Application lifecycle: logging setup, classifier startup and teardown."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

from fruitlens.config import Settings, get_settings
from fruitlens.ml.image_classifier import OnnxImageClassifier
from fruitlens.ml.inference import ClassificationWorker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging for an application embedding FruitLens."""
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)


@contextmanager
def classifier_lifespan(settings: Settings | None = None) -> Iterator[ClassificationWorker]:
    """Load the configured classifier and yield a worker serving it.

    On exit the worker is drained and the classifier released.

    Raises:
        ModelLoadError: If the configured model cannot be loaded.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    logger.info(
        "Starting FruitLens (device=%s, model=%s, models_dir=%s)",
        settings.device,
        settings.classifier_model,
        settings.models_dir,
    )

    classifier = OnnxImageClassifier.from_settings(settings)
    worker = ClassificationWorker(classifier, settings)

    logger.info("FruitLens ready")
    try:
        yield worker
    finally:
        logger.info("Shutting down FruitLens")
        worker.shutdown()
        classifier.release()
        logger.info("FruitLens shutdown complete")
