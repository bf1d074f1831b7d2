"""Classification result schema."""

from __future__ import annotations

from typing import NamedTuple


class ClassificationResult(NamedTuple):
    """Two-class confidence pair; unpacks as ``(apple, not_apple)``.

    Both values lie in ``[0, 1]`` and sum to 1.
    """

    apple: float
    not_apple: float

    @classmethod
    def from_probability(cls, p_apple: float) -> ClassificationResult:
        """Build the pair from the sigmoid output for the apple class."""
        p = min(1.0, max(0.0, float(p_apple)))
        return cls(apple=p, not_apple=1.0 - p)
