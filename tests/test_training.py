"""Tests for TransferLearningTrainer and its hyperparameter policy."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import lightning as L
import pytest
import torch
from PIL import Image

from critter_ml.buffers import BufferRegistry, NumericBuffer
from critter_ml.callbacks.progress import TrainingProgress
from critter_ml.data.decoder import ImageDecoder
from critter_ml.errors import TrainingError, ValidationError
from critter_ml.inference.engine import InferenceEngine
from critter_ml.schemas.training import Label, LabeledExample
from critter_ml.training import (
    TransferLearningTrainer,
    compute_hyperparameters,
    estimate_training_time_ms,
    format_training_time,
)

ExampleFactory = Callable[..., list[LabeledExample]]


class TestHyperparameters:
    @pytest.mark.parametrize(
        ("n", "lr", "epochs", "batch_size", "val_split"),
        [
            (2, 0.0005, 10, 2, 0.0),
            (4, 0.0005, 10, 2, 0.0),
            (8, 0.001, 16, 4, 0.2),
            (20, 0.002, 20, 8, 0.2),
        ],
    )
    def test_table(
        self, n: int, lr: float, epochs: int, batch_size: int, val_split: float
    ) -> None:
        hp = compute_hyperparameters(n)
        assert hp.learning_rate == lr
        assert hp.epochs == epochs
        assert hp.batch_size == batch_size
        assert hp.validation_split == val_split

    def test_training_time_estimate(self) -> None:
        assert estimate_training_time_ms(10) == 7_000

    @pytest.mark.parametrize(
        ("ms", "text"),
        [
            (1_000, "1 second"),
            (4_200, "5 seconds"),
            (120_000, "2 minutes"),
            (65_000, "1:05"),
        ],
    )
    def test_format_training_time(self, ms: float, text: str) -> None:
        assert format_training_time(ms) == text


class TestValidationBeforeWork:
    def test_empty_rejected(self, trainer: TransferLearningTrainer) -> None:
        with pytest.raises(ValidationError, match="At least 2"):
            asyncio.run(trainer.train([]))
        assert not trainer.loader.is_loaded

    def test_only_apples_names_missing_class(
        self, trainer: TransferLearningTrainer, make_examples: ExampleFactory
    ) -> None:
        with pytest.raises(ValidationError) as info:
            asyncio.run(trainer.train(make_examples(3, 0)))
        assert info.value.context["missing_classes"] == ["not_apple"]

    def test_malformed_mapping_rejected(self, trainer: TransferLearningTrainer) -> None:
        with pytest.raises(ValidationError) as info:
            asyncio.run(
                trainer.train(
                    [
                        {"id": "a", "image_ref": "a.png", "label": "apple"},
                        {"id": "", "image_ref": "b.png", "label": "not_apple"},
                    ]
                )
            )
        assert info.value.index == 1


class TestTrain:
    def test_minimal_dataset_trains(
        self,
        trainer: TransferLearningTrainer,
        make_examples: ExampleFactory,
        registry: BufferRegistry,
    ) -> None:
        summary = asyncio.run(trainer.train(make_examples(1, 1)))
        assert trainer.has_trained_head()
        assert summary.num_examples == 2
        assert summary.embedding_size == 8
        assert summary.hyperparameters.epochs == 10
        assert summary.final_loss is not None
        assert registry.live_buffers() == []

    def test_mapping_examples_accepted(
        self, trainer: TransferLearningTrainer, make_data_uri: Callable[..., str]
    ) -> None:
        summary = asyncio.run(
            trainer.train(
                [
                    {"id": "1", "image_ref": make_data_uri((220, 30, 30)), "label": "apple"},
                    {"id": "2", "image_ref": make_data_uri((30, 30, 220)), "label": "not_apple"},
                ]
            )
        )
        assert summary.num_examples == 2

    def test_validation_split_dataset(
        self,
        trainer: TransferLearningTrainer,
        make_examples: ExampleFactory,
        registry: BufferRegistry,
    ) -> None:
        summary = asyncio.run(trainer.train(make_examples(3, 3)))
        assert summary.hyperparameters.validation_split == 0.2
        assert registry.memory().num_buffers == 0

    def test_imbalance_warning_surfaces_in_summary(
        self, trainer: TransferLearningTrainer, make_examples: ExampleFactory
    ) -> None:
        summary = asyncio.run(trainer.train(make_examples(6, 1)))
        assert any("imbalance" in w for w in summary.warnings)

    def test_bad_image_names_example_index(
        self,
        trainer: TransferLearningTrainer,
        make_examples: ExampleFactory,
        registry: BufferRegistry,
    ) -> None:
        examples = make_examples(2, 1)
        examples.insert(
            2,
            LabeledExample(id="broken", image_ref="ftp://nowhere/x.png", label=Label.APPLE),
        )
        with pytest.raises(TrainingError) as info:
            asyncio.run(trainer.train(examples))
        assert info.value.example_index == 2
        assert not trainer.has_trained_head()
        assert registry.live_buffers() == []

    def test_oversized_image_names_example_index(
        self,
        trainer: TransferLearningTrainer,
        make_examples: ExampleFactory,
        make_data_uri: Callable[..., str],
        registry: BufferRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1_500)
        examples = make_examples(1, 1)
        examples.append(
            LabeledExample(
                id="huge",
                image_ref=make_data_uri((200, 30, 30), size=(64, 64)),
                label=Label.APPLE,
            )
        )
        with pytest.raises(TrainingError) as info:
            asyncio.run(trainer.train(examples))
        assert info.value.example_index == 2
        assert not trainer.has_trained_head()
        assert registry.live_buffers() == []

    def test_emergency_cleanup_mid_run_raises_training_error(
        self,
        trainer: TransferLearningTrainer,
        decoder: ImageDecoder,
        make_examples: ExampleFactory,
        registry: BufferRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        original = decoder.decode
        calls: list[str] = []

        async def decode_then_cleanup(image_ref: str) -> NumericBuffer:
            calls.append(image_ref)
            if len(calls) == 2:
                trainer.tracker.execute_cleanup_callbacks()
            return await original(image_ref)

        monkeypatch.setattr(decoder, "decode", decode_then_cleanup)
        with pytest.raises(TrainingError, match="emergency cleanup") as info:
            asyncio.run(trainer.train(make_examples(1, 1)))
        assert info.value.example_index is None
        assert not trainer.has_trained_head()
        assert registry.live_buffers() == []

    def test_progress_listener_receives_every_epoch(
        self, trainer: TransferLearningTrainer, make_examples: ExampleFactory
    ) -> None:
        seen: list[TrainingProgress] = []
        trainer.progress_listener = seen.append
        asyncio.run(trainer.train(make_examples(1, 1)))
        assert [p.epoch for p in seen] == list(range(1, 11))
        assert seen[-1].fraction == 1.0

    def test_failing_listener_does_not_abort_fit(
        self, trainer: TransferLearningTrainer, make_examples: ExampleFactory
    ) -> None:
        def broken(progress: TrainingProgress) -> None:
            raise RuntimeError("ui gone")

        trainer.progress_listener = broken
        asyncio.run(trainer.train(make_examples(1, 1)))
        assert trainer.has_trained_head()


class TestFailedFitKeepsPreviousHead:
    def test_previous_head_stays_authoritative(
        self,
        trainer: TransferLearningTrainer,
        engine: InferenceEngine,
        make_examples: ExampleFactory,
        make_data_uri: Callable[..., str],
        registry: BufferRegistry,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        asyncio.run(trainer.train(make_examples(1, 1)))
        first_head = trainer.head
        sample_uri = make_data_uri((220, 30, 30))
        before = asyncio.run(engine.classify(sample_uri, timeout_ms=5_000))

        def failing_fit(self: L.Trainer, *args: Any, **kwargs: Any) -> None:
            raise RuntimeError("optimizer diverged")

        monkeypatch.setattr(L.Trainer, "fit", failing_fit)
        with pytest.raises(TrainingError, match="optimizer diverged"):
            asyncio.run(trainer.train(make_examples(2, 2)))

        assert trainer.head is first_head
        after = asyncio.run(engine.classify(sample_uri, timeout_ms=5_000))
        assert after == pytest.approx(before)
        assert registry.live_buffers() == []

    def test_retrain_replaces_head(
        self, trainer: TransferLearningTrainer, make_examples: ExampleFactory
    ) -> None:
        asyncio.run(trainer.train(make_examples(1, 1)))
        first_head = trainer.head
        asyncio.run(trainer.train(make_examples(2, 2)))
        assert trainer.head is not first_head


class TestCleanupCallback:
    def test_emergency_cleanup_releases_staged_buffers(
        self, trainer: TransferLearningTrainer, registry: BufferRegistry
    ) -> None:
        trainer._stage(registry.wrap(torch.zeros(4)))
        trainer.tracker.execute_cleanup_callbacks()
        assert registry.memory().num_buffers == 0

    def test_close_unregisters(
        self, trainer: TransferLearningTrainer, registry: BufferRegistry
    ) -> None:
        trainer.close()
        buf = registry.wrap(torch.zeros(4))
        trainer._staged.append(buf)
        trainer.tracker.execute_cleanup_callbacks()
        assert not buf.is_disposed
