"""Image decode/normalize stage.

Turns an opaque image reference into a ``[1, H, W, 3]`` float buffer with
values in ``[0, 1]``.  Supported references:

- ``http://`` / ``https://`` URLs, fetched with ``requests`` off the event loop
- ``data:`` URIs (base64 or percent-encoded payloads)
- bundled files, as ``file://`` URIs or plain filesystem paths
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
from pathlib import Path
from urllib.parse import unquote_to_bytes, urlparse

import requests
import torch
import torch.nn.functional as F
from loguru import logger
from PIL import Image
from torchvision.transforms.functional import pil_to_tensor

from critter_ml.buffers import BufferRegistry, NumericBuffer
from critter_ml.errors import ImageProcessingError

__all__ = ["ImageDecoder", "read_image_bytes"]

_REMOTE_SCHEMES = ("http", "https")


def _decode_data_uri(image_ref: str) -> bytes:
    """Payload of a ``data:[<mediatype>][;base64],<data>`` URI."""
    header, sep, payload = image_ref[len("data:") :].partition(",")
    if not sep:
        raise ValueError("data URI has no ',' separator")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as err:
            raise ValueError(f"invalid base64 payload: {err}") from err
    return unquote_to_bytes(payload)


def _fetch_remote(url: str, timeout_s: float) -> bytes:
    response = requests.get(url, timeout=timeout_s)
    response.raise_for_status()
    return response.content


async def read_image_bytes(image_ref: str, timeout_s: float = 10.0) -> bytes:
    """Resolve ``image_ref`` to raw encoded image bytes.

    Large payloads are decoded and read in worker threads so the event
    loop stays free to fire timeouts.

    Raises:
        ImageProcessingError: unsupported scheme, fetch or read failure.
    """
    is_data_uri = image_ref.startswith("data:")
    scheme = "data" if is_data_uri else urlparse(image_ref).scheme.lower()
    try:
        if is_data_uri:
            return await asyncio.to_thread(_decode_data_uri, image_ref)
        if scheme in _REMOTE_SCHEMES:
            return await asyncio.to_thread(_fetch_remote, image_ref, timeout_s)
        if scheme == "file":
            path = Path(unquote_to_bytes(urlparse(image_ref).path).decode())
            return await asyncio.to_thread(path.read_bytes)
        # Windows drive letters parse as a one-letter scheme
        if scheme == "" or len(scheme) == 1:
            return await asyncio.to_thread(Path(image_ref).read_bytes)
    except (OSError, ValueError, requests.RequestException) as err:
        raise ImageProcessingError(
            f"Failed to load image from {_short(image_ref)}: {err}",
            image_ref=image_ref,
        ) from err
    raise ImageProcessingError(
        f"Unsupported image reference scheme '{scheme}'", image_ref=image_ref
    )


def _short(image_ref: str, limit: int = 80) -> str:
    return image_ref if len(image_ref) <= limit else image_ref[:limit] + "..."


class ImageDecoder:
    """Decode image references into normalized buffers.

    Args:
        registry: Buffer registry the returned buffers belong to.
        image_size: Target ``(height, width)``.
        fetch_timeout_s: Per-request timeout for remote references.
    """

    def __init__(
        self,
        registry: BufferRegistry,
        image_size: tuple[int, int] = (224, 224),
        fetch_timeout_s: float = 10.0,
    ) -> None:
        self.registry = registry
        self.image_size = image_size
        self.fetch_timeout_s = fetch_timeout_s

    async def decode(self, image_ref: str) -> NumericBuffer:
        """Fetch, decode, resize and normalize one image.

        Pixel work runs in a worker thread; only the finished tensor is
        registered, back on the event loop, so an abandoned decode leaves
        nothing behind.  The caller owns the returned buffer.  No partial
        buffer is ever returned: every failure surfaces as
        :class:`ImageProcessingError`.
        """
        raw = await read_image_bytes(image_ref, self.fetch_timeout_s)
        try:
            pixels = await asyncio.to_thread(self._normalize, raw)
        except Exception as err:
            raise ImageProcessingError(
                f"Failed to decode image from {_short(image_ref)}: {err}",
                image_ref=image_ref,
            ) from err
        return self._register(pixels)

    def _register(self, pixels: torch.Tensor) -> NumericBuffer:
        batched = self.registry.wrap(pixels, name="image")
        logger.debug(f"Decoded image to buffer {batched.id} shape={batched.shape}")
        return batched

    def _normalize(self, raw: bytes) -> torch.Tensor:
        """Encoded bytes -> ``[1, H, W, 3]`` float tensor in ``[0, 1]``."""
        with Image.open(io.BytesIO(raw)) as img:
            pixels = pil_to_tensor(img.convert("RGB"))  # (3, H, W) uint8

        with self.registry.scope():
            chw = self.registry.wrap(pixels.to(torch.float32), name="decoded")
            resized = self.registry.wrap(
                F.interpolate(
                    chw.tensor.unsqueeze(0),
                    size=self.image_size,
                    mode="bilinear",
                    align_corners=False,
                ),
                name="resized",
            )
            normalized = self.registry.wrap(
                (resized.tensor / 255.0).clamp_(0.0, 1.0), name="normalized"
            )
            # NCHW -> NHWC; contiguous so the result owns its storage
            return normalized.tensor.permute(0, 2, 3, 1).contiguous()

    async def get_image_dimensions(self, image_ref: str) -> tuple[int, int]:
        """Native ``(width, height)`` of the referenced image."""
        raw = await read_image_bytes(image_ref, self.fetch_timeout_s)
        try:
            return await asyncio.to_thread(_read_size, raw)
        except Exception as err:
            raise ImageProcessingError(
                f"Failed to read dimensions of {_short(image_ref)}: {err}",
                image_ref=image_ref,
            ) from err


def _read_size(raw: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(raw)) as img:
        return img.size
