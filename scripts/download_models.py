#!/usr/bin/env python3
"""Download MobileNetV2 weights and export the bundled feature extractor.

Writes a TorchScript archive exposing ``feature_output`` and ``input_shape``
that ``BundledModelSource`` loads offline.  Point
``LoaderConfig.bundled_model_path`` at the output file.

Usage::

    python scripts/download_models.py --output assets/models/mobilenet_v2.pt
    python scripts/download_models.py --output model.pt --force
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

import torch
from loguru import logger
from rich.console import Console
from rich.table import Table

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from critter_ml.buffers import BufferRegistry  # noqa: E402
from critter_ml.models.extractor import (  # noqa: E402
    BundledModelSource,
    ExtractorHandle,
    build_mobilenet_v2,
)


def export_bundled_extractor(output: Path, image_size: int = 224) -> Path:
    """Script the pretrained feature network and save it to ``output``."""
    network = build_mobilenet_v2(
        pretrained=True, input_shape=(image_size, image_size, 3)
    ).eval()
    scripted = torch.jit.script(network)
    output.parent.mkdir(parents=True, exist_ok=True)
    scripted.save(str(output))
    return output


def verify_bundle(path: Path) -> ExtractorHandle:
    """Load the archive back through the same path the app uses."""
    network = BundledModelSource(path).load()
    return ExtractorHandle.from_network(
        network, source="bundled", registry=BufferRegistry()
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Export the bundled MobileNetV2 feature extractor"
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=PROJECT_ROOT / "assets" / "models" / "mobilenet_v2.pt",
        help="Destination TorchScript file",
    )
    parser.add_argument("--image-size", type=int, default=224)
    parser.add_argument(
        "--force", action="store_true", help="Overwrite an existing archive"
    )
    args = parser.parse_args()

    if args.output.exists() and not args.force:
        logger.info(f"{args.output} already exists (use --force to overwrite)")
    else:
        start = time.monotonic()
        export_bundled_extractor(args.output, args.image_size)
        logger.info(
            f"Exported feature extractor to {args.output} "
            f"in {time.monotonic() - start:.1f}s"
        )

    handle = verify_bundle(args.output)

    console = Console()
    table = Table(title="Bundled Feature Extractor")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Path", str(args.output))
    table.add_row("Size", f"{args.output.stat().st_size / 1024 / 1024:.1f} MB")
    table.add_row("Input shape", str(list(handle.input_shape)))
    table.add_row("Embedding size", str(handle.embedding_size))
    console.print(table)


if __name__ == "__main__":
    main()
