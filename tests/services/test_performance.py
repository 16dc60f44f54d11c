"""
Tests for the performance collector.
"""

from activity_audit.services import performance
from activity_audit.services.performance import PerformanceCollector, PerformanceMetrics


def fake_timer(*readings):
    values = iter(readings)
    return lambda: next(values)


def test_duration_comes_from_the_timer():
    collector = PerformanceCollector(timer=fake_timer(10.0, 10.25))
    metrics = collector.start().finish()
    assert metrics.duration_ms == 250.0


def test_best_effort_fields_are_numbers_or_none():
    metrics = PerformanceCollector().start().finish()
    assert metrics.duration_ms >= 0
    assert metrics.memory_mb is None or metrics.memory_mb >= 0
    assert metrics.cpu_pct is None or 0 <= metrics.cpu_pct <= 100


def test_is_slow_uses_threshold():
    collector = PerformanceCollector(slow_operation_ms=1000)
    assert collector.is_slow(PerformanceMetrics(duration_ms=1000.1))
    assert not collector.is_slow(PerformanceMetrics(duration_ms=1000))
    assert not collector.is_slow(None)


def test_memory_is_growth_of_the_peak(monkeypatch):
    peaks = iter([100.0, 112.5])
    monkeypatch.setattr(performance, "_peak_memory_mb", lambda: next(peaks))

    metrics = PerformanceCollector().start().finish()

    assert metrics.memory_mb == 12.5


def test_memory_is_zero_when_peak_did_not_move(monkeypatch):
    monkeypatch.setattr(performance, "_peak_memory_mb", lambda: 100.0)
    assert PerformanceCollector().start().finish().memory_mb == 0.0


def test_memory_is_none_when_unavailable(monkeypatch):
    monkeypatch.setattr(performance, "_peak_memory_mb", lambda: None)
    assert PerformanceCollector().start().finish().memory_mb is None
