"""
tests/test_telemetry_collector.py
──────────────────────────────────
Test suite for lifecycle/telemetry/collector.py

Test groups
────────────
Group 1: Readings    — baselines, noise, clamping, seeding
Group 2: Scenarios   — spikes, custom metrics, injected failures, history
"""

from __future__ import annotations

import pytest

from lifecycle.telemetry.collector import (
    CPU,
    HISTORY_SIZE,
    MEMORY,
    SPIKE_UTIL,
    SimulatedMetricsCollector,
)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Readings
# ─────────────────────────────────────────────────────────────────────────────

class TestReadings:

    def test_noiseless_baselines(self) -> None:
        collector = SimulatedMetricsCollector(cpu_base=42.0, memory_base=61.0, noise=False)
        assert collector.get_cpu_utilization() == 42.0
        assert collector.get_memory_utilization() == 61.0

    def test_readings_stay_in_range(self) -> None:
        collector = SimulatedMetricsCollector(cpu_base=99.0, memory_base=1.0, seed=7)
        for _ in range(200):
            assert 0.0 <= collector.get_cpu_utilization() <= 100.0
            assert 0.0 <= collector.get_memory_utilization() <= 100.0

    def test_baseline_clamped(self) -> None:
        collector = SimulatedMetricsCollector(cpu_base=130.0, memory_base=-5.0, noise=False)
        assert collector.get_cpu_utilization() == 100.0
        assert collector.get_memory_utilization() == 0.0

    def test_seed_makes_runs_repeatable(self) -> None:
        first = SimulatedMetricsCollector(seed=123)
        second = SimulatedMetricsCollector(seed=123)
        assert [first.get_cpu_utilization() for _ in range(5)] == [
            second.get_cpu_utilization() for _ in range(5)
        ]

    def test_set_baseline(self) -> None:
        collector = SimulatedMetricsCollector(noise=False)
        collector.set_baseline(MEMORY, 88.0)
        assert collector.get_memory_utilization() == 88.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Scenarios
# ─────────────────────────────────────────────────────────────────────────────

class TestScenarios:

    def test_spike_lasts_n_reads(self) -> None:
        collector = SimulatedMetricsCollector(cpu_base=40.0, noise=False)
        collector.inject_spike(CPU, n_reads=2)
        readings = [collector.get_cpu_utilization() for _ in range(3)]
        assert readings == [SPIKE_UTIL, SPIKE_UTIL, 40.0]

    def test_spike_only_affects_its_metric(self) -> None:
        collector = SimulatedMetricsCollector(memory_base=30.0, noise=False)
        collector.inject_spike(CPU, value=85.0)
        assert collector.get_memory_utilization() == 30.0
        assert collector.get_cpu_utilization() == 85.0

    def test_custom_metric(self) -> None:
        collector = SimulatedMetricsCollector()
        collector.set_custom_metric("queue_depth", 120.0)
        assert collector.get_custom_metric("queue_depth") == 120.0

    def test_unknown_custom_metric(self) -> None:
        with pytest.raises(KeyError):
            SimulatedMetricsCollector().get_custom_metric("queue_depth")

    def test_fail_next(self) -> None:
        collector = SimulatedMetricsCollector(noise=False)
        collector.fail_next(MEMORY, n=2)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                collector.get_memory_utilization()
        assert collector.get_memory_utilization() == 50.0
        assert collector.get_cpu_utilization() == 50.0

    def test_fail_next_custom_metric(self) -> None:
        collector = SimulatedMetricsCollector()
        collector.set_custom_metric("rps", 10.0)
        collector.fail_next("rps")
        with pytest.raises(ConnectionError):
            collector.get_custom_metric("rps")
        assert collector.get_custom_metric("rps") == 10.0

    def test_history_is_bounded(self) -> None:
        collector = SimulatedMetricsCollector(noise=False)
        for _ in range(HISTORY_SIZE + 10):
            collector.get_cpu_utilization()
        assert len(collector.history(CPU)) == HISTORY_SIZE
        assert collector.history(MEMORY) == []

    def test_failed_reads_not_recorded(self) -> None:
        collector = SimulatedMetricsCollector(noise=False)
        collector.fail_next(CPU)
        with pytest.raises(ConnectionError):
            collector.get_cpu_utilization()
        assert collector.history(CPU) == []
