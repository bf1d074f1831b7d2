"""Abstract base class for two-class classifiers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from critter_ml.schemas.prediction import ClassificationResult


class BaseClassifier(ABC):
    """Base class for classifiers consumed by the game UI.

    Subclasses implement ``classify`` (one image reference, bounded by a
    timeout) and ``is_ready_for_classification``.
    """

    @abstractmethod
    async def classify(
        self, image_ref: str, timeout_ms: int | None = None
    ) -> ClassificationResult:
        """Return the ``(apple, not_apple)`` confidence pair for one image."""

    @abstractmethod
    def is_ready_for_classification(self) -> bool:
        """Whether :meth:`classify` can run without raising ``NotReadyError``."""
