"""Pydantic frozen configuration models for critter_ml."""

from pydantic import BaseModel, Field, model_validator

_MB = 1024 * 1024


class LoaderConfig(BaseModel, frozen=True):
    """Configuration for ExtractorLoader.

    Timeouts and backoff are in milliseconds.  ``bundled_model_path`` points
    at a TorchScript archive produced by ``scripts/download_models.py``; when
    unset, every attempt goes straight to the remote weights.
    """

    model_load_timeout_ms: int = Field(default=30_000, gt=0)
    max_load_retries: int = Field(default=3, ge=1)
    retry_backoff_ms: int = Field(default=2_000, ge=0)
    bundled_model_path: str | None = None
    input_shape: tuple[int, int, int] = (224, 224, 3)


class MemoryThresholds(BaseModel, frozen=True):
    """Buffer count/byte limits for the ResourceTracker.

    Exceeding a ``max_*`` value is critical; exceeding a ``warning_*`` value
    only triggers a gentle garbage-collection pass.
    """

    max_buffers: int = Field(default=150, gt=0)
    max_buffer_bytes: int = Field(default=150 * _MB, gt=0)
    warning_buffers: int = Field(default=100, gt=0)
    warning_buffer_bytes: int = Field(default=100 * _MB, gt=0)

    @model_validator(mode="after")
    def _warning_below_max(self) -> "MemoryThresholds":
        if self.warning_buffers > self.max_buffers:
            raise ValueError(
                f"warning_buffers ({self.warning_buffers}) exceeds "
                f"max_buffers ({self.max_buffers})"
            )
        if self.warning_buffer_bytes > self.max_buffer_bytes:
            raise ValueError(
                f"warning_buffer_bytes ({self.warning_buffer_bytes}) exceeds "
                f"max_buffer_bytes ({self.max_buffer_bytes})"
            )
        return self


class TrackerConfig(BaseModel, frozen=True):
    """Configuration for ResourceTracker monitoring and history sizes."""

    thresholds: MemoryThresholds = MemoryThresholds()
    snapshot_history_size: int = Field(default=20, gt=0)
    monitoring_interval_ms: int = Field(default=5_000, gt=0)
    alert_cooldown_ms: int = Field(default=30_000, ge=0)
    max_alerts_history: int = Field(default=50, gt=0)


class TrainerConfig(BaseModel, frozen=True):
    """Configuration for TransferLearningTrainer.

    Hyperparameters (learning rate, epochs, batch size, validation split)
    are not configured here: they are derived from the dataset size.
    """

    accelerator: str = "cpu"
    seed: int | None = None
    imbalance_warning_ratio: float = Field(default=5.0, gt=1.0)
    hidden_units: tuple[int, int] = (128, 64)
    dropout: float = Field(default=0.3, ge=0.0, lt=1.0)


class InferenceConfig(BaseModel, frozen=True):
    """Configuration for InferenceEngine.

    ``fallback_jitter`` is the width of the band above 0.5 from which the
    timeout fallback confidence is drawn.
    """

    prediction_default_timeout_ms: int = Field(default=1_000, gt=0)
    fallback_jitter: float = Field(default=0.1, ge=0.0, le=0.5)
    seed: int | None = None


class EngineConfig(BaseModel, frozen=True):
    """Top-level configuration for one MLService session."""

    loader: LoaderConfig = LoaderConfig()
    tracker: TrackerConfig = TrackerConfig()
    trainer: TrainerConfig = TrainerConfig()
    inference: InferenceConfig = InferenceConfig()
    image_size: tuple[int, int] = (224, 224)
    fetch_timeout_s: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _image_size_matches_loader(self) -> "EngineConfig":
        """Decoded images must fit the extractor's declared input shape."""
        if tuple(self.image_size) != tuple(self.loader.input_shape[:2]):
            raise ValueError(
                f"image_size {self.image_size} does not match loader "
                f"input_shape {self.loader.input_shape}"
            )
        return self
