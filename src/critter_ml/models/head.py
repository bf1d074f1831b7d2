"""Trainable binary classifier head fit on frozen-extractor embeddings."""

from __future__ import annotations

from typing import Any

import lightning as L
import torch
from torchmetrics.classification import BinaryAccuracy

from critter_ml.types import EmbeddingBatch


class ClassifierHead(L.LightningModule):
    """dense(128, relu) -> dropout -> dense(64, relu) -> dense(1, sigmoid).

    ``forward`` returns the sigmoid probability of the apple class with
    shape ``(B, 1)``.  A head is created fresh for every training run.
    """

    def __init__(
        self,
        embedding_size: int,
        learning_rate: float = 1e-3,
        hidden_units: tuple[int, int] = (128, 64),
        dropout: float = 0.3,
    ) -> None:
        super().__init__()
        self.save_hyperparameters()
        first, second = hidden_units
        self.model = torch.nn.Sequential(
            torch.nn.Linear(embedding_size, first),
            torch.nn.ReLU(),
            torch.nn.Dropout(dropout),
            torch.nn.Linear(first, second),
            torch.nn.ReLU(),
            torch.nn.Linear(second, 1),
            torch.nn.Sigmoid(),
        )
        self.loss_fn = torch.nn.BCELoss()
        self.train_acc = BinaryAccuracy()
        self.val_acc = BinaryAccuracy()

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        return self.model(features)  # type: ignore[no-any-return]

    def training_step(self, batch: EmbeddingBatch, batch_idx: int) -> torch.Tensor:
        features, labels = batch["features"], batch["labels"]
        probs = self(features)
        loss: torch.Tensor = self.loss_fn(probs, labels)
        self.log(
            "train/loss",
            loss,
            on_step=False,
            on_epoch=True,
            batch_size=features.shape[0],
        )
        self.train_acc.update(probs, labels.int())
        return loss

    def on_train_epoch_end(self) -> None:
        self.log("train/acc", self.train_acc.compute())
        self.train_acc.reset()

    def validation_step(self, batch: EmbeddingBatch, batch_idx: int) -> None:
        features, labels = batch["features"], batch["labels"]
        probs = self(features)
        loss = self.loss_fn(probs, labels)
        self.log(
            "val/loss",
            loss,
            on_step=False,
            on_epoch=True,
            batch_size=features.shape[0],
        )
        self.val_acc.update(probs, labels.int())

    def on_validation_epoch_end(self) -> None:
        self.log("val/acc", self.val_acc.compute())
        self.val_acc.reset()

    def configure_optimizers(self) -> Any:
        return torch.optim.Adam(
            self.parameters(), lr=self.hparams["learning_rate"]
        )

    @torch.inference_mode()
    def predict_probability(self, features: torch.Tensor) -> torch.Tensor:
        """Eval-mode forward pass (dropout off)."""
        was_training = self.training
        self.eval()
        try:
            return self(features)
        finally:
            self.train(was_training)
