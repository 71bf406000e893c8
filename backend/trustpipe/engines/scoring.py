"""Weighted score aggregation shared by the spam and quality strategies."""

import math
from typing import Mapping, Optional


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def aggregate(
    weights: Mapping[str, float],
    signals: Mapping[str, Optional[float]],
    maximum: float,
) -> float:
    """Sum ``weight * signal`` over the configured checks.

    Checks absent from ``signals`` (or with a ``None`` signal) contribute
    zero. The total is clamped to ``[0, maximum]``.
    """
    total = 0.0
    for name, weight in weights.items():
        signal = signals.get(name)
        if signal is None:
            continue
        total += weight * float(signal)
    return clamp(total, 0.0, maximum)


def spam_signal(check: Optional[Mapping]) -> float:
    """Confidence of a check that flagged spam; zero otherwise."""
    if not check or not check.get("is_spam"):
        return 0.0
    confidence = check.get("confidence")
    if confidence is None:
        return 1.0
    return clamp(float(confidence), 0.0, 1.0)


def metric_signal(metric: Optional[Mapping]) -> float:
    """Score of a quality metric, 0-100."""
    if not metric:
        return 0.0
    return clamp(float(metric.get("score") or 0), 0.0, 100.0)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive scores."""
    return int(math.floor(value + 0.5))
