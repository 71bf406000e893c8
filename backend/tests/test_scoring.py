import pytest

from trustpipe.engines.scoring import aggregate, clamp, metric_signal, round_half_up, spam_signal


def test_aggregate_ignores_missing_checks() -> None:
    weights = {"a": 0.5, "b": 0.3, "c": 0.2}

    assert aggregate(weights, {"a": 1.0}, 1.0) == pytest.approx(0.5)
    assert aggregate(weights, {"a": 1.0, "b": None}, 1.0) == pytest.approx(0.5)
    assert aggregate(weights, {}, 1.0) == 0.0


def test_aggregate_clamps_to_bounds() -> None:
    assert aggregate({"a": 1.0}, {"a": 3.0}, 1.0) == 1.0
    assert aggregate({"a": 1.0}, {"a": -2.0}, 1.0) == 0.0
    assert aggregate({"a": 0.6, "b": 0.4}, {"a": 100, "b": 100}, 100.0) == pytest.approx(100.0)


def test_spam_signal_uses_confidence_only_for_flagged_checks() -> None:
    assert spam_signal({"is_spam": True, "confidence": 0.8}) == 0.8
    assert spam_signal({"is_spam": False, "confidence": 0.8}) == 0.0
    assert spam_signal({"is_spam": True}) == 1.0
    assert spam_signal({"is_spam": True, "confidence": 7}) == 1.0
    assert spam_signal(None) == 0.0


def test_metric_signal_is_bounded_score() -> None:
    assert metric_signal({"score": 80}) == 80
    assert metric_signal({"score": 140}) == 100
    assert metric_signal({}) == 0.0


def test_round_half_up() -> None:
    assert round_half_up(92.5) == 93
    assert round_half_up(92.49) == 92
    assert round_half_up(0.5) == 1
    assert clamp(5, 0, 3) == 3
