"""Type aliases and TypedDicts for critter_ml inter-module contracts."""

from typing import TypedDict

import torch


class EmbeddingBatch(TypedDict):
    """A single batch of extracted embeddings fed to the classifier head.

    features: Float tensor of shape (B, embedding_size).
    labels: Float tensor of shape (B, 1); 1.0 for apple, 0.0 for not apple.
    """

    features: torch.Tensor
    labels: torch.Tensor
