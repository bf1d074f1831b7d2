"""Typed error hierarchy for critter_ml.

One exception class per failure kind.  Each carries its structured context as
attributes and a short ``user_message`` that a calling surface can show in a
retry prompt without inspecting buffer state.
"""

from __future__ import annotations

from typing import Any, ClassVar


class CritterMLError(Exception):
    """Base class for all critter_ml errors."""

    kind: ClassVar[str] = "UNKNOWN_ERROR"
    user_message: ClassVar[str] = (
        "Something unexpected happened, but don't worry - we can fix it!"
    )
    recoverable: ClassVar[bool] = True
    retryable: ClassVar[bool] = True

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = dict(context)

    @property
    def cause(self) -> BaseException | None:
        """The underlying exception this error was raised from, if any."""
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        """Structured summary for a UI boundary."""
        return {
            "kind": self.kind,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ModelLoadError(CritterMLError):
    """The feature extractor could not be loaded or failed validation."""

    kind = "MODEL_LOAD_ERROR"
    user_message = (
        "Oops! Your critter is having trouble waking up. Let's try again!"
    )

    def __init__(self, message: str, attempts: int = 0, **context: Any) -> None:
        super().__init__(message, attempts=attempts, **context)
        self.attempts = attempts


class ImageProcessingError(CritterMLError):
    """A single image reference could not be fetched or decoded."""

    kind = "IMAGE_PROCESSING_ERROR"
    user_message = "Your critter couldn't see that picture. Let's try another!"

    def __init__(self, message: str, image_ref: str, **context: Any) -> None:
        super().__init__(message, image_ref=image_ref, **context)
        self.image_ref = image_ref


class ValidationError(CritterMLError):
    """Caller-supplied training data violates a structural rule."""

    kind = "VALIDATION_ERROR"
    user_message = (
        "Something doesn't look right. Let's try a different approach!"
    )

    def __init__(
        self,
        message: str,
        problems: list[str] | None = None,
        index: int | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, index=index, **context)
        self.problems = problems or [message]
        self.index = index


class TrainingError(CritterMLError):
    """Embedding extraction or fitting failed; the previous head is kept."""

    kind = "TRAINING_ERROR"
    user_message = "Your critter got a bit confused. Let's teach it again!"

    def __init__(
        self, message: str, example_index: int | None = None, **context: Any
    ) -> None:
        super().__init__(message, example_index=example_index, **context)
        self.example_index = example_index


class ClassificationError(CritterMLError):
    """Unexpected failure during inference (never used for timeouts)."""

    kind = "CLASSIFICATION_ERROR"
    user_message = "Your critter got a bit confused. Let's help it focus!"

    def __init__(self, message: str, image_ref: str, **context: Any) -> None:
        super().__init__(message, image_ref=image_ref, **context)
        self.image_ref = image_ref


class NotReadyError(CritterMLError):
    """Classification was requested before the extractor and head exist."""

    kind = "NOT_READY_ERROR"
    user_message = "Your critter needs a few more lessons before it can guess!"

    def __init__(self, message: str, missing: list[str], **context: Any) -> None:
        super().__init__(message, missing=missing, **context)
        self.missing = missing


class MemoryExhaustedError(CritterMLError, MemoryError):
    """Emergency cleanup could not bring buffer usage back under the limits."""

    kind = "MEMORY_ERROR"
    user_message = "Your critter needs a quick rest. Let's restart the game!"
    retryable = False

    def __init__(
        self,
        message: str,
        num_buffers: int,
        num_bytes: int,
        **context: Any,
    ) -> None:
        super().__init__(
            message, num_buffers=num_buffers, num_bytes=num_bytes, **context
        )
        self.num_buffers = num_buffers
        self.num_bytes = num_bytes


class BufferDisposedError(CritterMLError):
    """A disposed NumericBuffer was read or passed to an operation."""

    kind = "TENSOR_ERROR"
    recoverable = False
    retryable = False
