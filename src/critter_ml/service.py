"""Session facade wiring the pipeline stages together.

Construct one :class:`MLService` per application session and pass it to
whatever needs it; there are no module-level singletons.

Example::

    service = MLService(EngineConfig())
    await service.start()
    await service.train(examples)
    apple, not_apple = await service.classify(uri, timeout_ms=1000)
    await service.cleanup()
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import torch
from loguru import logger

from critter_ml.buffers import BufferRegistry
from critter_ml.callbacks.progress import ProgressListener
from critter_ml.config import EngineConfig
from critter_ml.data.decoder import ImageDecoder
from critter_ml.inference.engine import InferenceEngine
from critter_ml.memory import ResourceTracker
from critter_ml.models.extractor import ExtractorHandle, ModelSource
from critter_ml.models.loader import ExtractorLoader
from critter_ml.schemas.prediction import ClassificationResult
from critter_ml.schemas.training import LabeledExample, TrainingSummary
from critter_ml.training import TransferLearningTrainer


class MLService:
    """Owns the registry, tracker, loader, decoder, trainer and engine.

    Args:
        config: Session configuration; defaults throughout when omitted.
        sources: Override the extractor sources (bundled/remote by default).
        progress_listener: Optional per-epoch training progress sink.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        sources: Sequence[ModelSource] | None = None,
        progress_listener: ProgressListener | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.registry = BufferRegistry()
        self.tracker = ResourceTracker(self.registry, self.config.tracker)
        self.loader = ExtractorLoader(
            self.registry, self.config.loader, sources=sources
        )
        self.decoder = ImageDecoder(
            self.registry,
            image_size=self.config.image_size,
            fetch_timeout_s=self.config.fetch_timeout_s,
        )
        self.trainer = TransferLearningTrainer(
            self.loader,
            self.decoder,
            self.tracker,
            self.config.trainer,
            progress_listener=progress_listener,
        )
        self.engine = InferenceEngine(
            self.loader,
            self.trainer,
            self.decoder,
            self.tracker,
            self.config.inference,
        )

    async def start(self, monitor: bool = True) -> None:
        """Begin memory monitoring and take the initial snapshot."""
        if monitor:
            self.tracker.start_monitoring()
        self.tracker.take_snapshot("initialization")

    async def load_model(self) -> ExtractorHandle:
        return await self.tracker.with_tracking("load_model", self.loader.load)

    async def train(
        self, examples: Sequence[LabeledExample | Mapping[str, Any]]
    ) -> TrainingSummary:
        return await self.trainer.train(examples)

    async def classify(
        self, image_ref: str, timeout_ms: int | None = None
    ) -> ClassificationResult:
        return await self.engine.classify(image_ref, timeout_ms)

    def is_ready_for_training(self) -> bool:
        return self.trainer.is_ready_for_training()

    def is_ready_for_classification(self) -> bool:
        return self.engine.is_ready_for_classification()

    def get_training_status(self) -> dict[str, Any]:
        return {
            "can_train": self.is_ready_for_training(),
            "can_classify": self.is_ready_for_classification(),
            "model_info": self.get_model_info(),
        }

    def get_model_info(self) -> dict[str, Any]:
        handle = self.loader.handle
        usage = self.tracker.get_current_usage()
        return {
            "loader_state": self.loader.state.value,
            "source": handle.source if handle else None,
            "embedding_size": handle.embedding_size if handle else None,
            "load_time_s": self.loader.load_time_s,
            "last_trained_at": self.trainer.last_trained_at,
            "num_buffers": usage.num_buffers,
            "num_bytes": usage.num_bytes,
            "backend": "cuda" if torch.cuda.is_available() else "cpu",
        }

    async def cleanup(self) -> None:
        """Release every resource this session owns.  Never raises."""
        before = self.tracker.take_snapshot("before_cleanup")
        try:
            await self.engine.drain()
        except Exception:
            logger.exception("Error draining abandoned predictions")
        try:
            self.trainer.close()
        except Exception:
            logger.exception("Error disposing classifier head")
        try:
            self.loader.release()
        except Exception:
            logger.exception("Error disposing feature extractor")
        try:
            await self.tracker.shutdown()
        except Exception:
            logger.exception("Error shutting down resource tracker")
        self.registry.collect_garbage()
        usage = self.registry.memory()
        logger.info(
            f"MLService cleanup completed: {before.num_buffers} -> "
            f"{usage.num_buffers} live buffers"
        )
