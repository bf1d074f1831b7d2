"""Image decoding and training data handling."""

from critter_ml.data.dataset import EmbeddingDataset
from critter_ml.data.decoder import ImageDecoder, read_image_bytes
from critter_ml.data.validation import coerce_examples, validate_examples

__all__ = [
    "EmbeddingDataset",
    "ImageDecoder",
    "coerce_examples",
    "read_image_bytes",
    "validate_examples",
]
