"""Transfer-learning trainer.

Turns a handful of user-labeled images into a fitted classifier head:

1. validate the dataset (size, class presence, duplicate ids)
2. embed every image with the frozen extractor, strictly in input order
3. fit a fresh :class:`ClassifierHead` with size-adaptive hyperparameters
4. install the head only after a successful fit

The previous head stays authoritative whenever a run fails.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Mapping, Sequence
from typing import Any

import lightning as L
import torch
from loguru import logger
from torch.utils.data import DataLoader, random_split

from critter_ml.buffers import NumericBuffer
from critter_ml.callbacks.progress import ProgressListener, TrainingProgressCallback
from critter_ml.config import TrainerConfig
from critter_ml.data.dataset import EmbeddingDataset
from critter_ml.data.decoder import ImageDecoder
from critter_ml.data.validation import coerce_examples, validate_examples
from critter_ml.errors import BufferDisposedError, TrainingError
from critter_ml.memory import ResourceTracker
from critter_ml.models.extractor import ExtractorHandle
from critter_ml.models.head import ClassifierHead
from critter_ml.models.loader import ExtractorLoader
from critter_ml.schemas.training import (
    DatasetReport,
    LabeledExample,
    TrainingHyperparameters,
    TrainingSummary,
)

__all__ = [
    "TransferLearningTrainer",
    "compute_hyperparameters",
    "estimate_training_time_ms",
    "format_training_time",
]


def compute_hyperparameters(num_examples: int) -> TrainingHyperparameters:
    """Deterministic fit settings for a dataset of ``num_examples``.

    - learning rate: 0.0005 up to 5 examples, 0.001 up to 10, else 0.002
    - epochs: ``2 * N`` clamped to [10, 20]
    - batch size: ``N // 2`` clamped to [2, 8]
    - validation split: 0.2 when N > 4, otherwise nothing is held out
    """
    n = num_examples
    if n <= 5:
        learning_rate = 0.0005
    elif n <= 10:
        learning_rate = 0.001
    else:
        learning_rate = 0.002
    return TrainingHyperparameters(
        learning_rate=learning_rate,
        epochs=min(max(2 * n, 10), 20),
        batch_size=min(max(n // 2, 2), 8),
        validation_split=0.2 if n > 4 else 0.0,
    )


def estimate_training_time_ms(num_examples: int) -> int:
    """Rough wall-clock estimate: 2s base plus 500ms per example."""
    return 2_000 + num_examples * 500


def format_training_time(milliseconds: float) -> str:
    """Human-friendly duration: ``"5 seconds"``, ``"2 minutes"``, ``"1:05"``."""
    seconds = math.ceil(milliseconds / 1000)
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"
    minutes, remaining = divmod(seconds, 60)
    if remaining == 0:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{minutes}:{remaining:02d}"


class TransferLearningTrainer:
    """Fit a classifier head on embeddings from the shared extractor.

    Only one :meth:`train` call may be in flight per instance.

    Args:
        loader: Provides the frozen extractor (loaded on demand).
        decoder: Image decode/normalize stage.
        tracker: Session resource tracker; a cleanup callback releasing the
            current run's staged buffers is registered with it.
        config: Head architecture, accelerator and seeding.
        progress_listener: Optional per-epoch progress sink (UI).
    """

    def __init__(
        self,
        loader: ExtractorLoader,
        decoder: ImageDecoder,
        tracker: ResourceTracker,
        config: TrainerConfig | None = None,
        progress_listener: ProgressListener | None = None,
    ) -> None:
        self.loader = loader
        self.decoder = decoder
        self.tracker = tracker
        self.registry = tracker.registry
        self.config = config or TrainerConfig()
        self.progress_listener = progress_listener
        self._head: ClassifierHead | None = None
        self._staged: list[NumericBuffer] = []
        self.last_summary: TrainingSummary | None = None
        self.last_report: DatasetReport | None = None
        self.last_trained_at: float | None = None
        self._unregister_cleanup = tracker.register_cleanup_callback(
            self._release_staged
        )

    @property
    def head(self) -> ClassifierHead | None:
        return self._head

    def is_ready_for_training(self) -> bool:
        return self.loader.is_loaded

    def has_trained_head(self) -> bool:
        return self._head is not None

    def reset(self) -> None:
        """Drop the installed head and the last run's summary."""
        self._head = None
        self.last_summary = None
        self.last_report = None
        self.last_trained_at = None

    def close(self) -> None:
        self.reset()
        self._release_staged()
        self._unregister_cleanup()

    def _release_staged(self) -> None:
        if self._staged:
            logger.warning(f"Releasing {len(self._staged)} staged training buffers")
        self.tracker.safe_dispose_all(self._staged)
        self._staged.clear()

    def _stage(self, buffer: NumericBuffer) -> NumericBuffer:
        self._staged.append(buffer)
        return buffer

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    async def train(
        self, examples: Sequence[LabeledExample | Mapping[str, Any]]
    ) -> TrainingSummary:
        """Validate, embed, fit and install a new classifier head.

        Raises:
            ValidationError: the dataset is unusable.
            ModelLoadError: the extractor could not be loaded.
            TrainingError: an example failed to embed, or the fit failed.
        """
        coerced = coerce_examples(examples)
        report = validate_examples(
            coerced, imbalance_warning_ratio=self.config.imbalance_warning_ratio
        )
        handle = await self.loader.load()
        hparams = compute_hyperparameters(len(coerced))
        logger.info(
            f"Training classifier head on {len(coerced)} examples "
            f"(apple={report.apple_count}, not_apple={report.not_apple_count}): "
            f"lr={hparams.learning_rate} epochs={hparams.epochs} "
            f"batch_size={hparams.batch_size} val_split={hparams.validation_split}"
        )

        start = time.monotonic()
        async with self.tracker.tracking("training"):
            try:
                embeddings = await self._extract_embeddings(coerced, handle)
                features, labels = self._stack(embeddings, coerced)
                head = ClassifierHead(
                    embedding_size=int(features.shape[1]),
                    learning_rate=hparams.learning_rate,
                    hidden_units=self.config.hidden_units,
                    dropout=self.config.dropout,
                )
                metrics = await self._fit(head, features, labels, hparams)
            finally:
                self._release_staged()

        previous, self._head = self._head, head
        if previous is not None:
            logger.debug("Disposed previous classifier head")
        del previous

        summary = TrainingSummary(
            num_examples=len(coerced),
            embedding_size=int(features.shape[1]),
            hyperparameters=hparams,
            final_loss=metrics.get("train/loss"),
            final_accuracy=metrics.get("train/acc"),
            duration_s=time.monotonic() - start,
            warnings=report.warnings,
        )
        self.last_summary = summary
        self.last_report = report
        self.last_trained_at = time.time()
        logger.info(
            f"Classifier head trained in {summary.duration_s:.2f}s "
            f"(loss={summary.final_loss}, acc={summary.final_accuracy})"
        )
        return summary

    async def _extract_embeddings(
        self, examples: Sequence[LabeledExample], handle: ExtractorHandle
    ) -> list[NumericBuffer]:
        """Embed examples one at a time, in input order."""
        embeddings: list[NumericBuffer] = []
        embedding_size: int | None = None
        for index, example in enumerate(examples):
            image: NumericBuffer | None = None
            try:
                image = await self.decoder.decode(example.image_ref)
                embedding = self._stage(await handle.embed(image))
            except Exception as err:
                raise TrainingError(
                    f"Failed to extract features for example {index} "
                    f"({example.id}): {err}",
                    example_index=index,
                    example_id=example.id,
                ) from err
            finally:
                self.tracker.safe_dispose(image)

            size = int(embedding.shape[1])
            if embedding_size is None:
                embedding_size = size
            elif size != embedding_size:
                raise TrainingError(
                    f"Example {index} ({example.id}) produced a {size}-d "
                    f"embedding, expected {embedding_size}",
                    example_index=index,
                    example_id=example.id,
                )
            embeddings.append(embedding)
            logger.debug(f"Embedded example {index + 1}/{len(examples)}")
        return embeddings

    def _stack(
        self, embeddings: Sequence[NumericBuffer], examples: Sequence[LabeledExample]
    ) -> tuple[NumericBuffer, NumericBuffer]:
        """Stack staged embeddings into ``[N, E]`` features and ``[N, 1]`` labels."""
        try:
            features = self._stage(
                self.registry.wrap(
                    torch.cat([e.tensor for e in embeddings], dim=0),
                    name="features",
                )
            )
        except BufferDisposedError as err:
            raise TrainingError(
                "Training aborted: staged buffers released by emergency cleanup"
            ) from err
        labels = self._stage(
            self.registry.wrap(
                torch.tensor(
                    [[ex.label.target] for ex in examples], dtype=torch.float32
                ),
                name="labels",
            )
        )
        return features, labels

    async def _fit(
        self,
        head: ClassifierHead,
        features: NumericBuffer,
        labels: NumericBuffer,
        hparams: TrainingHyperparameters,
    ) -> dict[str, float]:
        try:
            return await asyncio.to_thread(
                self._fit_blocking, head, features.tensor, labels.tensor, hparams
            )
        except Exception as err:
            logger.error(f"Classifier head fit failed: {err!r}")
            raise TrainingError(f"Training failed: {err}") from err

    def _fit_blocking(
        self,
        head: ClassifierHead,
        features: torch.Tensor,
        labels: torch.Tensor,
        hparams: TrainingHyperparameters,
    ) -> dict[str, float]:
        if self.config.seed is not None:
            L.seed_everything(self.config.seed, workers=False)

        dataset = EmbeddingDataset(features.clone(), labels.clone())
        train_set: torch.utils.data.Dataset[Any] = dataset
        val_loader = None
        if hparams.validation_split > 0:
            n_val = max(1, round(len(dataset) * hparams.validation_split))
            train_set, val_set = random_split(
                dataset, [len(dataset) - n_val, n_val]
            )
            val_loader = DataLoader(val_set, batch_size=hparams.batch_size)
        train_loader = DataLoader(
            train_set, batch_size=hparams.batch_size, shuffle=True
        )

        trainer = L.Trainer(
            max_epochs=hparams.epochs,
            accelerator=self.config.accelerator,
            devices=1,
            logger=False,
            enable_checkpointing=False,
            enable_progress_bar=False,
            enable_model_summary=False,
            num_sanity_val_steps=0,
            log_every_n_steps=1,
            callbacks=[TrainingProgressCallback(self.progress_listener)],
        )
        trainer.fit(head, train_dataloaders=train_loader, val_dataloaders=val_loader)
        head.cpu().eval()
        return {k: float(v) for k, v in trainer.callback_metrics.items()}
