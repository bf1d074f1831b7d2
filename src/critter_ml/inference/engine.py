"""Timeout-bounded inference with a non-committal fallback."""

from __future__ import annotations

import asyncio
import time

import numpy as np
from loguru import logger
from pydantic import BaseModel

from critter_ml.buffers import NumericBuffer
from critter_ml.config import InferenceConfig
from critter_ml.data.decoder import ImageDecoder
from critter_ml.errors import ClassificationError, NotReadyError
from critter_ml.inference.base import BaseClassifier
from critter_ml.memory import ResourceTracker
from critter_ml.models.loader import ExtractorLoader
from critter_ml.schemas.prediction import ClassificationResult
from critter_ml.training import TransferLearningTrainer

__all__ = ["InferenceEngine", "InferenceStats", "fallback_prediction"]


def fallback_prediction(
    rng: np.random.Generator, jitter: float = 0.1
) -> ClassificationResult:
    """Near-0.5 confidence for a randomly chosen class.

    The winning confidence is drawn uniformly from ``[0.5, 0.5 + jitter)``,
    so a timed-out prediction is never confidently wrong.
    """
    confidence = 0.5 + float(rng.uniform(0.0, jitter))
    if rng.random() < 0.5:
        return ClassificationResult(apple=confidence, not_apple=1.0 - confidence)
    return ClassificationResult(apple=1.0 - confidence, not_apple=confidence)


class InferenceStats(BaseModel):
    """Running counters for a developer overlay."""

    completed: int = 0
    fallbacks: int = 0
    failures: int = 0
    last_latency_ms: float | None = None


class InferenceEngine(BaseClassifier):
    """Classify one image with the trained head, raced against a timer.

    Args:
        loader: Provides the shared extractor handle.
        trainer: Owns the installed classifier head.
        decoder: Image decode/normalize stage.
        tracker: Session resource tracker.
        config: Default timeout, fallback jitter and RNG seed.
    """

    def __init__(
        self,
        loader: ExtractorLoader,
        trainer: TransferLearningTrainer,
        decoder: ImageDecoder,
        tracker: ResourceTracker,
        config: InferenceConfig | None = None,
    ) -> None:
        self.loader = loader
        self.trainer = trainer
        self.decoder = decoder
        self.tracker = tracker
        self.config = config or InferenceConfig()
        self.rng = np.random.default_rng(self.config.seed)
        self.stats = InferenceStats()
        self._abandoned: set[asyncio.Task[ClassificationResult]] = set()

    def is_ready_for_classification(self) -> bool:
        return self.loader.is_loaded and self.trainer.has_trained_head()

    def _missing(self) -> list[str]:
        missing = []
        if not self.loader.is_loaded:
            missing.append("extractor")
        if not self.trainer.has_trained_head():
            missing.append("classifier_head")
        return missing

    async def classify(
        self, image_ref: str, timeout_ms: int | None = None
    ) -> ClassificationResult:
        """Return ``(apple, not_apple)`` confidences for ``image_ref``.

        A prediction that does not finish within ``timeout_ms`` is ignored
        and a fallback pair near 0.5 is returned instead.

        Raises:
            NotReadyError: no extractor or no trained head.
            ClassificationError: the prediction failed before the timeout.
        """
        missing = self._missing()
        if missing:
            raise NotReadyError(
                f"Cannot classify yet, missing: {', '.join(missing)}",
                missing=missing,
            )
        if timeout_ms is None:
            timeout_ms = self.config.prediction_default_timeout_ms

        start = time.monotonic()
        task = asyncio.ensure_future(self._predict(image_ref))
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        latency_ms = (time.monotonic() - start) * 1000
        self.stats.last_latency_ms = latency_ms

        if task not in done:
            self._abandon(task)
            self.stats.fallbacks += 1
            result = fallback_prediction(self.rng, self.config.fallback_jitter)
            logger.warning(
                f"Prediction timed out after {timeout_ms}ms; using fallback "
                f"({result.apple:.3f}, {result.not_apple:.3f})"
            )
            return result

        try:
            result = task.result()
        except Exception as err:
            self.stats.failures += 1
            logger.error(f"Classification failed for {image_ref[:80]}: {err!r}")
            raise ClassificationError(
                f"Classification failed: {err}", image_ref=image_ref
            ) from err
        self.stats.completed += 1
        logger.debug(
            f"Classified in {latency_ms:.0f}ms: "
            f"apple={result.apple:.3f} not_apple={result.not_apple:.3f}"
        )
        return result

    def _abandon(self, task: asyncio.Task[ClassificationResult]) -> None:
        """Keep a reference until the ignored prediction finishes."""
        self._abandoned.add(task)

        def _done(t: asyncio.Task[ClassificationResult]) -> None:
            self._abandoned.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.debug(f"Abandoned prediction failed: {t.exception()!r}")

        task.add_done_callback(_done)

    async def _predict(self, image_ref: str) -> ClassificationResult:
        """decode -> embed -> predict; every intermediate buffer is disposed."""
        handle = self.loader.handle
        head = self.trainer.head
        if handle is None or head is None:
            raise NotReadyError(
                "Extractor or head was released mid-prediction",
                missing=self._missing(),
            )
        image: NumericBuffer | None = None
        embedding: NumericBuffer | None = None
        prediction: NumericBuffer | None = None
        try:
            image = await self.decoder.decode(image_ref)
            embedding = await handle.embed(image)
            probs = await asyncio.to_thread(
                head.predict_probability, embedding.tensor
            )
            prediction = self.tracker.registry.wrap(probs, name="prediction")
            p_apple = float(prediction.tensor.reshape(-1)[0])
        finally:
            self.tracker.safe_dispose_all([image, embedding, prediction])
        return ClassificationResult.from_probability(p_apple)

    async def drain(self) -> None:
        """Wait for abandoned predictions to finish (used at shutdown)."""
        if self._abandoned:
            await asyncio.gather(*self._abandoned, return_exceptions=True)
