"""Training data and training-run schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class Label(str, Enum):
    """The two classes a user can sort an image into."""

    APPLE = "apple"
    NOT_APPLE = "not_apple"

    @property
    def target(self) -> float:
        """Binary training target: apple is the positive class."""
        return 1.0 if self is Label.APPLE else 0.0


class LabeledExample(BaseModel, frozen=True):
    """One image sorted by the user.  Immutable once created."""

    id: str = Field(min_length=1)
    image_ref: str = Field(min_length=1)
    label: Label
    captured_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class DatasetReport(BaseModel, frozen=True):
    """Outcome of dataset validation: class counts plus non-fatal warnings."""

    num_examples: int
    apple_count: int
    not_apple_count: int
    imbalance_ratio: float
    duplicate_image_refs: list[str] = []
    warnings: list[str] = []


class TrainingHyperparameters(BaseModel, frozen=True):
    """Dataset-size-adaptive fit settings."""

    learning_rate: float
    epochs: int
    batch_size: int
    validation_split: float


class TrainingSummary(BaseModel, frozen=True):
    """Result of a successful training run."""

    num_examples: int
    embedding_size: int
    hyperparameters: TrainingHyperparameters
    final_loss: float | None = None
    final_accuracy: float | None = None
    duration_s: float
    warnings: list[str] = []
