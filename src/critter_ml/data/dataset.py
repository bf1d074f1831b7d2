"""In-memory embedding dataset for classifier head training."""

import torch
from torch.utils.data import Dataset

from critter_ml.types import EmbeddingBatch


class EmbeddingDataset(Dataset[EmbeddingBatch]):
    """Rows of a stacked feature tensor paired with binary targets.

    Args:
        features: Float tensor of shape (N, embedding_size).
        labels: Float tensor of shape (N, 1).
    """

    def __init__(self, features: torch.Tensor, labels: torch.Tensor) -> None:
        if features.shape[0] != labels.shape[0]:
            raise ValueError(
                f"features ({features.shape[0]}) and labels "
                f"({labels.shape[0]}) disagree on N"
            )
        self.features = features
        self.labels = labels

    def __len__(self) -> int:
        return int(self.features.shape[0])

    def __getitem__(self, idx: int) -> EmbeddingBatch:
        return {"features": self.features[idx], "labels": self.labels[idx]}
