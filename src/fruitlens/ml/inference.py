"""Serialized classification off the caller's thread.

Architecture:
    caller (sync or async) -> asyncio.Semaphore(1) -> ThreadPoolExecutor(1) -> classify

A classifier's engine session serves one call at a time, so the worker owns
a single thread. Async callers queue for at most ``queue_timeout`` seconds,
then get a TimeoutError.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fruitlens.config import Settings
    from fruitlens.ml.image_classifier import ClassificationResult, ImageClassifier
    from fruitlens.ml.preprocessing import PixelSource

logger = logging.getLogger(__name__)


class ClassificationWorker:
    """Runs classify calls for one classifier on a single background thread."""

    def __init__(self, classifier: ImageClassifier, settings: Settings) -> None:
        self._classifier = classifier
        self._timeout = settings.queue_timeout
        self._semaphore = asyncio.Semaphore(1)
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    def submit(self, image: PixelSource) -> Future[ClassificationResult]:
        """Queue an image for classification and return a Future.

        Calls run in submission order. Errors raised by the classifier are
        re-raised by ``Future.result()``.

        Raises:
            RuntimeError: If the worker has been shut down.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            future = self._executor.submit(self._run, image)
        except RuntimeError:
            with self._counter_lock:
                self._queue_depth -= 1
            raise
        future.add_done_callback(self._on_done)
        return future

    async def classify(self, image: PixelSource) -> ClassificationResult:
        """Classify an image without blocking the event loop.

        Raises:
            TimeoutError: If the worker stays busy for longer than the timeout.
        """
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Classification queue timed out after %.1fs", self._timeout)
            raise

        try:
            return await asyncio.wrap_future(self.submit(image))
        finally:
            self._semaphore.release()

    @property
    def active_count(self) -> int:
        """Number of currently running classifications (0 or 1)."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of submitted classifications that have not started yet."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Wait for queued classifications and stop the worker thread."""
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    def _on_done(self, future: Future[ClassificationResult]) -> None:
        # Only pending futures can be cancelled, so _run never started.
        if future.cancelled():
            with self._counter_lock:
                self._queue_depth -= 1

    def _run(self, image: PixelSource) -> ClassificationResult:
        with self._counter_lock:
            self._queue_depth -= 1
            self._active_count += 1
        try:
            return self._classifier.classify(image)
        finally:
            with self._counter_lock:
                self._active_count -= 1
