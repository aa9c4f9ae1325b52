"""Relevance and confidence percentages derived from cosine similarity."""

import math
from typing import Sequence


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(similarity: float) -> float:
    return min(max(similarity, 0.0), 1.0)


def relevance(similarity: float) -> int:
    """Percentage relevance of one cited chunk, clamped to [0, 100]."""
    return _round_half_up(_clamp(similarity) * 100)


def confidence(similarities: Sequence[float]) -> int:
    """Rounded mean similarity of the cited chunks as a 0-100 percentage.

    Negative similarities count as zero. No citations means no confidence.
    """
    if not similarities:
        return 0
    mean = sum(_clamp(s) for s in similarities) / len(similarities)
    return _round_half_up(mean * 100)
