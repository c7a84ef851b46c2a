import math

import pytest

from services.evaluator.stats import TelemetryStats, compute_stats

pytestmark = [pytest.mark.unit]


def test_empty_window():
    stats = compute_stats([])
    assert stats == TelemetryStats(count=0)
    assert stats.to_dict() == {"min": None, "max": None, "avg": None, "count": 0}


def test_basic_window():
    stats = compute_stats([20, 18.0, 15.5, 25])
    assert stats.count == 4
    assert stats.min == 15.5
    assert stats.max == 25.0
    assert stats.avg == pytest.approx(19.625)


def test_single_value():
    stats = compute_stats([3.3])
    assert stats.min == stats.max == stats.avg == 3.3
    assert stats.count == 1


def test_non_finite_and_garbage_are_ignored():
    stats = compute_stats([10.0, float("nan"), float("inf"), None, "abc", True, "4"])
    assert stats.count == 2
    assert stats.min == 4.0
    assert stats.max == 10.0
    assert stats.avg == 7.0


def test_all_garbage_never_yields_nan():
    stats = compute_stats([float("nan"), None])
    assert stats.count == 0
    assert stats.avg is None
    for value in stats.to_dict().values():
        assert not (isinstance(value, float) and math.isnan(value))


def test_accepts_generators():
    assert compute_stats(v for v in range(1, 4)).avg == 2.0
