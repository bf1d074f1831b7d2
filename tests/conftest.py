"""Shared pytest fixtures for critter_ml tests.

All networks here are tiny in-process modules: no test downloads weights.
"""

from __future__ import annotations

import base64
import io
from collections.abc import Callable
from pathlib import Path

import pytest
import torch
from PIL import Image

from critter_ml.buffers import BufferRegistry
from critter_ml.config import (
    InferenceConfig,
    LoaderConfig,
    TrackerConfig,
    TrainerConfig,
)
from critter_ml.data.decoder import ImageDecoder
from critter_ml.inference.engine import InferenceEngine
from critter_ml.memory import ResourceTracker
from critter_ml.models.extractor import ModuleSource
from critter_ml.models.loader import ExtractorLoader
from critter_ml.schemas.training import Label, LabeledExample
from critter_ml.training import TransferLearningTrainer

RED = (220, 30, 30)
BLUE = (30, 30, 220)


class TinyFeatureNetwork(torch.nn.Module):
    """Mean colour -> linear projection; satisfies the feature-output contract.

    With ``spatial=True`` the output keeps a rank-4 ``(B, C, 1, 1)`` shape to
    exercise embedding flattening.
    """

    def __init__(
        self,
        embedding_size: int = 8,
        input_shape: tuple[int, int, int] = (224, 224, 3),
        spatial: bool = False,
    ) -> None:
        super().__init__()
        torch.manual_seed(0)
        self.proj = torch.nn.Linear(3, embedding_size)
        self.input_shape = [-1, *input_shape]
        self.spatial = spatial

    def feature_output(self, images: torch.Tensor) -> torch.Tensor:
        colour = images.mean(dim=(1, 2))
        out = self.proj(colour * 4.0)
        if self.spatial:
            return out[:, :, None, None]
        return out

    def forward(self, images: torch.Tensor) -> torch.Tensor:
        return self.feature_output(images)


def _png_bytes(color: tuple[int, int, int], size: tuple[int, int] = (32, 32)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color=color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> Callable[..., bytes]:
    return _png_bytes


@pytest.fixture()
def make_data_uri() -> Callable[..., str]:
    """Factory: colour -> base64 PNG data URI."""

    def _make(color: tuple[int, int, int], size: tuple[int, int] = (32, 32)) -> str:
        payload = base64.b64encode(_png_bytes(color, size)).decode("ascii")
        return f"data:image/png;base64,{payload}"

    return _make


@pytest.fixture()
def image_dir(tmp_path: Path) -> Path:
    """Two red and two blue PNG files on disk."""
    for name, color in (
        ("apple_0.png", RED),
        ("apple_1.png", (200, 40, 20)),
        ("other_0.png", BLUE),
        ("other_1.png", (20, 60, 200)),
    ):
        Image.new("RGB", (48, 40), color=color).save(tmp_path / name)
    return tmp_path


@pytest.fixture()
def make_examples(make_data_uri: Callable[..., str]) -> Callable[..., list[LabeledExample]]:
    """Factory: (n_apple, n_not_apple) -> list of LabeledExample with data URIs."""

    def _make(n_apple: int, n_not_apple: int) -> list[LabeledExample]:
        examples = []
        for i in range(n_apple):
            examples.append(
                LabeledExample(
                    id=f"apple-{i}",
                    image_ref=make_data_uri((220 - i * 5, 30, 30)),
                    label=Label.APPLE,
                )
            )
        for i in range(n_not_apple):
            examples.append(
                LabeledExample(
                    id=f"other-{i}",
                    image_ref=make_data_uri((30, 30, 220 - i * 5)),
                    label=Label.NOT_APPLE,
                )
            )
        return examples

    return _make


@pytest.fixture()
def registry() -> BufferRegistry:
    return BufferRegistry()


@pytest.fixture()
def tracker(registry: BufferRegistry) -> ResourceTracker:
    return ResourceTracker(registry, TrackerConfig())


@pytest.fixture()
def decoder(registry: BufferRegistry) -> ImageDecoder:
    return ImageDecoder(registry)


@pytest.fixture()
def fast_loader_config() -> LoaderConfig:
    return LoaderConfig(
        model_load_timeout_ms=2_000, max_load_retries=3, retry_backoff_ms=10
    )


@pytest.fixture()
def loader(registry: BufferRegistry, fast_loader_config: LoaderConfig) -> ExtractorLoader:
    return ExtractorLoader(
        registry,
        fast_loader_config,
        sources=[ModuleSource(TinyFeatureNetwork, name="tiny")],
    )


@pytest.fixture()
def trainer(
    loader: ExtractorLoader, decoder: ImageDecoder, tracker: ResourceTracker
) -> TransferLearningTrainer:
    return TransferLearningTrainer(
        loader, decoder, tracker, TrainerConfig(seed=7)
    )


@pytest.fixture()
def engine(
    loader: ExtractorLoader,
    trainer: TransferLearningTrainer,
    decoder: ImageDecoder,
    tracker: ResourceTracker,
) -> InferenceEngine:
    return InferenceEngine(
        loader, trainer, decoder, tracker, InferenceConfig(seed=3)
    )


@pytest.fixture()
def tiny_network_cls() -> type[TinyFeatureNetwork]:
    return TinyFeatureNetwork
