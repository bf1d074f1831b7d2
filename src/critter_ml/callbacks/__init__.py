"""Training callbacks for critter_ml."""

from critter_ml.callbacks.progress import (
    ProgressListener,
    TrainingProgress,
    TrainingProgressCallback,
)

__all__ = ["ProgressListener", "TrainingProgress", "TrainingProgressCallback"]
