"""Structural and statistical checks on user-labeled training data."""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

import pydantic
from loguru import logger

from critter_ml.errors import ValidationError
from critter_ml.schemas.training import DatasetReport, Label, LabeledExample

__all__ = ["MIN_EXAMPLES", "coerce_examples", "validate_examples"]

MIN_EXAMPLES = 2


def coerce_examples(
    examples: Sequence[LabeledExample | Mapping[str, Any]],
) -> list[LabeledExample]:
    """Accept examples or plain mappings; reject malformed entries.

    Raises:
        ValidationError: an entry has a missing/empty id, image_ref or label,
            or a label outside the known set.  ``index`` names the entry.
    """
    coerced: list[LabeledExample] = []
    for index, example in enumerate(examples):
        if isinstance(example, LabeledExample):
            coerced.append(example)
            continue
        try:
            coerced.append(LabeledExample.model_validate(example))
        except pydantic.ValidationError as err:
            problems = [
                f"{'.'.join(str(p) for p in e['loc']) or 'example'}: {e['msg']}"
                for e in err.errors()
            ]
            raise ValidationError(
                f"Example {index} is malformed: {'; '.join(problems)}",
                problems=problems,
                index=index,
            ) from err
    return coerced


def validate_examples(
    examples: Sequence[LabeledExample],
    imbalance_warning_ratio: float = 5.0,
) -> DatasetReport:
    """Check dataset size, class presence and uniqueness.

    Errors raise :class:`ValidationError`; duplicate image references and
    severe class imbalance only produce warnings on the returned report.
    """
    if len(examples) < MIN_EXAMPLES:
        raise ValidationError(
            f"At least {MIN_EXAMPLES} training examples required, "
            f"got {len(examples)}",
            num_examples=len(examples),
        )

    id_counts = Counter(ex.id for ex in examples)
    duplicate_ids = sorted(i for i, n in id_counts.items() if n > 1)
    if duplicate_ids:
        raise ValidationError(
            f"Duplicate example ids: {', '.join(duplicate_ids)}",
            problems=[f"duplicate id {i}" for i in duplicate_ids],
            duplicate_ids=duplicate_ids,
        )

    label_counts = Counter(ex.label for ex in examples)
    missing = [label for label in Label if label_counts[label] == 0]
    if missing:
        names = ", ".join(label.value for label in missing)
        raise ValidationError(
            f"No examples for class: {names}",
            problems=[f"No {label.value} examples provided" for label in missing],
            missing_classes=[label.value for label in missing],
        )

    apple = label_counts[Label.APPLE]
    not_apple = label_counts[Label.NOT_APPLE]
    ratio = max(apple, not_apple) / min(apple, not_apple)

    warnings: list[str] = []
    if ratio > imbalance_warning_ratio:
        warnings.append(
            f"Severe class imbalance detected ({ratio:.1f}:1). "
            "This may affect model performance."
        )

    ref_counts = Counter(ex.image_ref for ex in examples)
    duplicate_refs = sorted(r for r, n in ref_counts.items() if n > 1)
    if duplicate_refs:
        warnings.append(
            f"Duplicate images detected in training data ({len(duplicate_refs)})"
        )

    for warning in warnings:
        logger.warning(warning)

    return DatasetReport(
        num_examples=len(examples),
        apple_count=apple,
        not_apple_count=not_apple,
        imbalance_ratio=ratio,
        duplicate_image_refs=duplicate_refs,
        warnings=warnings,
    )
