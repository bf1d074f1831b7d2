"""Transfer-learning pipeline for the apple-sorting critter game."""

from critter_ml.config import EngineConfig
from critter_ml.errors import (
    ClassificationError,
    CritterMLError,
    ImageProcessingError,
    MemoryExhaustedError,
    ModelLoadError,
    NotReadyError,
    TrainingError,
    ValidationError,
)
from critter_ml.schemas import ClassificationResult, Label, LabeledExample
from critter_ml.service import MLService

__version__ = "0.1.0"

__all__ = [
    "ClassificationError",
    "ClassificationResult",
    "CritterMLError",
    "EngineConfig",
    "ImageProcessingError",
    "Label",
    "LabeledExample",
    "MLService",
    "MemoryExhaustedError",
    "ModelLoadError",
    "NotReadyError",
    "TrainingError",
    "ValidationError",
    "__version__",
]
