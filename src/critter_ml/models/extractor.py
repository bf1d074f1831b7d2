"""Frozen feature extractor: network contract, model sources and handle.

A loadable artifact must expose two things:

- ``feature_output(images)``: NHWC float images in ``[0, 1]`` to features
- ``input_shape``: the declared input shape including the batch dimension

:class:`FeatureNetwork` wraps a torchvision backbone into that contract and
is what ``scripts/download_models.py`` exports as the bundled TorchScript
archive.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from pathlib import Path

import torch
import torchvision.models as tv_models
from loguru import logger

from critter_ml.buffers import BufferRegistry, NumericBuffer
from critter_ml.errors import ModelLoadError

__all__ = [
    "BundledModelSource",
    "ExtractorHandle",
    "FeatureNetwork",
    "ModelSource",
    "ModuleSource",
    "RemoteModelSource",
    "build_mobilenet_v2",
]

# ImageNet statistics expected by torchvision backbones
_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)


class FeatureNetwork(torch.nn.Module):
    """Backbone plus global average pooling, exposed as ``feature_output``.

    Accepts NHWC images in ``[0, 1]`` and applies ImageNet normalisation
    internally, so callers never see backbone-specific preprocessing.
    """

    def __init__(
        self,
        backbone: torch.nn.Module,
        input_shape: Sequence[int] = (224, 224, 3),
    ) -> None:
        super().__init__()
        self.backbone = backbone
        self.pool = torch.nn.AdaptiveAvgPool2d(1)
        self.input_shape: list[int] = [-1, *input_shape]
        self.register_buffer(
            "mean", torch.tensor(_IMAGENET_MEAN).view(1, 3, 1, 1)
        )
        self.register_buffer("std", torch.tensor(_IMAGENET_STD).view(1, 3, 1, 1))

    @torch.jit.export
    def feature_output(self, images: torch.Tensor) -> torch.Tensor:
        x = images.permute(0, 3, 1, 2)
        x = (x - self.mean) / self.std
        x = self.backbone(x)
        if x.dim() == 4:
            x = self.pool(x)
        return torch.flatten(x, 1)

    def forward(self, images: torch.Tensor) -> torch.Tensor:
        return self.feature_output(images)


def build_mobilenet_v2(
    pretrained: bool = True, input_shape: Sequence[int] = (224, 224, 3)
) -> FeatureNetwork:
    """MobileNetV2 convolutional trunk (1280-d embeddings).

    Pass ``pretrained=False`` in tests to skip the ~14MB weight download.
    """
    weights = tv_models.MobileNet_V2_Weights.DEFAULT if pretrained else None
    backbone = tv_models.mobilenet_v2(weights=weights)
    return FeatureNetwork(backbone.features, input_shape=input_shape)


# ---------------------------------------------------------------------------
# Model sources
# ---------------------------------------------------------------------------
class ModelSource(ABC):
    """Where a feature network comes from.

    ``load`` is blocking and runs in a worker thread.
    """

    name: str = "source"

    @abstractmethod
    def load(self) -> torch.nn.Module:
        """Load and return a network satisfying the feature-output contract."""


class BundledModelSource(ModelSource):
    """TorchScript archive shipped with the application."""

    name = "bundled"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> torch.nn.Module:
        if not self.path.is_file():
            raise FileNotFoundError(f"Bundled model not found: {self.path}")
        logger.info(f"Loading feature extractor from bundle {self.path}")
        return torch.jit.load(str(self.path), map_location="cpu")


class RemoteModelSource(ModelSource):
    """Pretrained torchvision MobileNetV2, downloaded on first use."""

    name = "remote"

    def __init__(self, input_shape: Sequence[int] = (224, 224, 3)) -> None:
        self.input_shape = tuple(input_shape)

    def load(self) -> torch.nn.Module:
        logger.info("Loading MobileNetV2 feature extractor from remote weights")
        return build_mobilenet_v2(pretrained=True, input_shape=self.input_shape)


class ModuleSource(ModelSource):
    """Source backed by an arbitrary factory (custom backbones, tests)."""

    def __init__(
        self, factory: Callable[[], torch.nn.Module], name: str = "module"
    ) -> None:
        self.factory = factory
        self.name = name

    def load(self) -> torch.nn.Module:
        return self.factory()


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------
class ExtractorHandle:
    """A loaded, frozen feature network shared read-only by all stages.

    Build via :meth:`from_network`, which enforces the feature-output
    contract and measures ``embedding_size`` with a trial forward pass.
    """

    def __init__(
        self,
        network: torch.nn.Module,
        input_shape: tuple[int, ...],
        embedding_size: int,
        source: str,
        registry: BufferRegistry,
    ) -> None:
        self._network: torch.nn.Module | None = network
        self.input_shape = input_shape
        self.embedding_size = embedding_size
        self.source = source
        self.registry = registry

    @classmethod
    def from_network(
        cls,
        network: torch.nn.Module,
        source: str,
        registry: BufferRegistry,
        expected_input_shape: Sequence[int] | None = None,
    ) -> ExtractorHandle:
        """Validate ``network`` and wrap it in a frozen handle.

        The declared input shape is checked against ``expected_input_shape``
        (batch dimension ignored) before any forward pass runs.

        Raises:
            ModelLoadError: the contract is not met or the shape mismatches.
                The handle is disposed before raising on a mismatch.
        """
        if not hasattr(network, "feature_output"):
            raise ModelLoadError(
                f"Network from {source} does not expose a 'feature_output' entry point",
                source=source,
            )
        declared = getattr(network, "input_shape", None)
        if not declared:
            raise ModelLoadError(
                f"Network from {source} does not declare an input_shape",
                source=source,
            )
        input_shape = tuple(int(d) for d in declared)
        handle = cls(network, input_shape, 0, source, registry)
        if expected_input_shape is not None and not handle.matches_input_shape(
            expected_input_shape
        ):
            handle.dispose()
            raise ModelLoadError(
                f"Loaded model input shape {list(input_shape[1:])} "
                f"does not match expected {list(expected_input_shape)}",
                source=source,
                input_shape=input_shape,
            )

        network.eval()
        for param in network.parameters():
            param.requires_grad_(False)
        try:
            handle.embedding_size = handle._measure_embedding_size()
        except Exception:
            handle.dispose()
            raise
        return handle

    def _measure_embedding_size(self) -> int:
        """Trial forward pass on a zero image of the declared shape."""
        zero_shape = [1, *(d if d > 0 else 1 for d in self.input_shape[1:])]
        return int(self.compute_features(torch.zeros(zero_shape)).shape[1])

    @property
    def is_disposed(self) -> bool:
        return self._network is None

    @property
    def network(self) -> torch.nn.Module:
        if self._network is None:
            raise ModelLoadError("Feature extractor has been released")
        return self._network

    def matches_input_shape(self, expected: Sequence[int]) -> bool:
        """Compare the declared shape, ignoring batch, to ``expected``.

        ``-1`` in ``expected`` matches any size.
        """
        actual = self.input_shape[1:]
        if len(actual) != len(expected):
            return False
        return all(e == -1 or a == e for a, e in zip(actual, expected))

    def compute_features(self, images: torch.Tensor) -> torch.Tensor:
        """Blocking forward pass, flattened to ``[batch, embedding_size]``."""
        with torch.inference_mode():
            out = self.network.feature_output(images)  # type: ignore[operator]
        return out.reshape(out.shape[0], -1)

    async def embed(self, image: NumericBuffer) -> NumericBuffer:
        """Embed one decoded image; the caller owns the returned buffer."""
        features = await asyncio.to_thread(self.compute_features, image.tensor)
        return self.registry.wrap(features, name="embedding")

    def dispose(self) -> None:
        if self._network is not None:
            logger.debug(f"Releasing feature extractor from {self.source}")
            self._network = None
