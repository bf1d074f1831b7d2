"""Unit tests for critter_ml.types and critter_ml.config."""

import pytest
import torch
from pydantic import ValidationError as PydanticValidationError

from critter_ml.config import (
    EngineConfig,
    InferenceConfig,
    LoaderConfig,
    MemoryThresholds,
    TrackerConfig,
)
from critter_ml.types import EmbeddingBatch


class TestLoaderConfig:
    def test_defaults(self) -> None:
        cfg = LoaderConfig()
        assert cfg.model_load_timeout_ms == 30_000
        assert cfg.max_load_retries == 3
        assert cfg.retry_backoff_ms == 2_000
        assert cfg.bundled_model_path is None
        assert cfg.input_shape == (224, 224, 3)

    def test_frozen_raises_on_mutation(self) -> None:
        cfg = LoaderConfig()
        with pytest.raises(PydanticValidationError):
            cfg.max_load_retries = 5  # type: ignore[misc]

    def test_zero_retries_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            LoaderConfig(max_load_retries=0)


class TestMemoryThresholds:
    def test_defaults(self) -> None:
        t = MemoryThresholds()
        assert t.max_buffers == 150
        assert t.max_buffer_bytes == 150 * 1024 * 1024
        assert t.warning_buffers == 100
        assert t.warning_buffer_bytes == 100 * 1024 * 1024

    def test_warning_above_max_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="warning_buffers"):
            MemoryThresholds(max_buffers=10, warning_buffers=20)

    def test_warning_bytes_above_max_rejected(self) -> None:
        with pytest.raises(PydanticValidationError, match="warning_buffer_bytes"):
            MemoryThresholds(max_buffer_bytes=10, warning_buffer_bytes=20)


class TestTrackerAndInferenceConfig:
    def test_tracker_defaults(self) -> None:
        cfg = TrackerConfig()
        assert cfg.snapshot_history_size == 20
        assert cfg.monitoring_interval_ms == 5_000
        assert cfg.alert_cooldown_ms == 30_000

    def test_inference_defaults(self) -> None:
        cfg = InferenceConfig()
        assert cfg.prediction_default_timeout_ms == 1_000
        assert 0 < cfg.fallback_jitter <= 0.5

    def test_jitter_bounded(self) -> None:
        with pytest.raises(PydanticValidationError):
            InferenceConfig(fallback_jitter=0.6)


class TestEngineConfig:
    def test_nested_from_mapping(self) -> None:
        cfg = EngineConfig.model_validate(
            {"loader": {"max_load_retries": 5}, "tracker": {"alert_cooldown_ms": 0}}
        )
        assert cfg.loader.max_load_retries == 5
        assert cfg.tracker.alert_cooldown_ms == 0
        assert cfg.inference.prediction_default_timeout_ms == 1_000

    def test_image_size_must_match_loader(self) -> None:
        with pytest.raises(PydanticValidationError, match="image_size"):
            EngineConfig(image_size=(128, 128))


class TestEmbeddingBatchType:
    def test_typed_dict_keys(self) -> None:
        batch: EmbeddingBatch = {
            "features": torch.zeros(4, 16),
            "labels": torch.zeros(4, 1),
        }
        assert batch["features"].shape == (4, 16)
        assert batch["labels"].shape == (4, 1)
