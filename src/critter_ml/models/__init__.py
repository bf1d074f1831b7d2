"""Feature extractor and classifier head models."""

from critter_ml.models.extractor import (
    BundledModelSource,
    ExtractorHandle,
    FeatureNetwork,
    ModelSource,
    ModuleSource,
    RemoteModelSource,
    build_mobilenet_v2,
)
from critter_ml.models.head import ClassifierHead
from critter_ml.models.loader import ExtractorLoader, LoaderState

__all__ = [
    "BundledModelSource",
    "ClassifierHead",
    "ExtractorHandle",
    "ExtractorLoader",
    "FeatureNetwork",
    "LoaderState",
    "ModelSource",
    "ModuleSource",
    "RemoteModelSource",
    "build_mobilenet_v2",
]
