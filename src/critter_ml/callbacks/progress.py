"""Epoch progress reporting for classifier head training."""

from __future__ import annotations

from collections.abc import Callable

import lightning as L
from loguru import logger
from pydantic import BaseModel


class TrainingProgress(BaseModel, frozen=True):
    """Progress of one fit, reported at the end of every training epoch."""

    epoch: int
    max_epochs: int
    fraction: float
    loss: float | None = None
    accuracy: float | None = None


ProgressListener = Callable[[TrainingProgress], None]


class TrainingProgressCallback(L.Callback):
    """Forward per-epoch loss/accuracy to an optional listener.

    A listener that raises is logged and detached; UI feedback must never
    abort a fit.

    Args:
        listener: Called once per training epoch.
    """

    def __init__(self, listener: ProgressListener | None = None) -> None:
        super().__init__()
        self.listener = listener
        self.history: list[TrainingProgress] = []

    def on_train_start(self, trainer: L.Trainer, pl_module: L.LightningModule) -> None:
        self.history = []
        logger.debug(f"Head training started: {trainer.max_epochs} epochs")

    def on_train_epoch_end(
        self, trainer: L.Trainer, pl_module: L.LightningModule
    ) -> None:
        metrics = trainer.callback_metrics
        loss = metrics.get("train/loss")
        acc = metrics.get("train/acc")
        max_epochs = trainer.max_epochs or 1
        epoch = trainer.current_epoch + 1
        progress = TrainingProgress(
            epoch=epoch,
            max_epochs=max_epochs,
            fraction=min(1.0, epoch / max_epochs),
            loss=float(loss) if loss is not None else None,
            accuracy=float(acc) if acc is not None else None,
        )
        self.history.append(progress)
        logger.debug(
            f"Epoch {epoch}/{max_epochs}: loss={progress.loss} acc={progress.accuracy}"
        )
        if self.listener is None:
            return
        try:
            self.listener(progress)
        except Exception:
            logger.exception("Training progress listener failed; detaching it")
            self.listener = None
