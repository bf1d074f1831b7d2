"""Data schemas shared across critter_ml."""

from critter_ml.schemas.memory import (
    MemoryAlert,
    MemorySnapshot,
    MemoryStats,
    UsagePercentage,
)
from critter_ml.schemas.prediction import ClassificationResult
from critter_ml.schemas.training import (
    DatasetReport,
    Label,
    LabeledExample,
    TrainingHyperparameters,
    TrainingSummary,
)

__all__ = [
    "ClassificationResult",
    "DatasetReport",
    "Label",
    "LabeledExample",
    "MemoryAlert",
    "MemorySnapshot",
    "MemoryStats",
    "TrainingHyperparameters",
    "TrainingSummary",
    "UsagePercentage",
]
