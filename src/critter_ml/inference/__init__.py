"""Classification inference."""

from critter_ml.inference.base import BaseClassifier
from critter_ml.inference.engine import (
    InferenceEngine,
    InferenceStats,
    fallback_prediction,
)

__all__ = [
    "BaseClassifier",
    "InferenceEngine",
    "InferenceStats",
    "fallback_prediction",
]
