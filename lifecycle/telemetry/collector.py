"""
lifecycle/telemetry/collector.py
────────────────────────────────
SimulatedMetricsCollector: a MetricsCollector that needs no cluster.

What this is
─────────────
The autoscaler reads utilisation through the MetricsCollector protocol. In
production that is a metrics-server or Prometheus client. For tests, demos
and dry runs this collector produces readings from a baseline plus Gaussian
noise, with knobs for the scenarios the autoscaler must handle:

  inject_spike("cpu", value=95.0, n_reads=3)   next 3 CPU reads return ~95%
  set_custom_metric("queue_depth", 120.0)      custom metric readings
  fail_next("memory", n=2)                     next 2 memory reads raise

Design
───────
- Synchronous. Every get_* call is one reading; there is no tick loop.
- Noise comes from a private random.Random, so seed=... makes a run
  repeatable without touching the global generator.
- Failures raise ConnectionError, the way a real collector's transport
  would. The autoscaler turns any collector exception into
  MetricsUnavailableError.
- The last HISTORY_SIZE readings per metric are kept for inspection.
"""

from __future__ import annotations

import random
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

# ── Constants ─────────────────────────────────────────────────────────────────

CPU_BASE_UTIL: float = 50.0
"""Default CPU utilisation baseline (%). Below the 70% default target."""

CPU_NOISE_STD: float = 5.0
"""Gaussian noise std dev for CPU readings (%).

At a 50% baseline a ±2σ excursion reaches 60%, still short of the 80%
scale-up threshold, so an untouched collector never triggers scaling.
"""

MEMORY_BASE_UTIL: float = 50.0
"""Default memory utilisation baseline (%)."""

MEMORY_NOISE_STD: float = 5.0

SPIKE_UTIL: float = 95.0
"""Utilisation returned during inject_spike() when no value is given."""

HISTORY_SIZE: int = 100

CPU = "cpu"
MEMORY = "memory"


class SimulatedMetricsCollector:
    """
    Synthetic utilisation readings around configurable baselines.

    Args:
        cpu_base:     CPU baseline (%).
        memory_base:  Memory baseline (%).
        noise:        Whether to add Gaussian noise. noise=False returns
                      baselines exactly, which is what arithmetic tests want.
        seed:         Seed for the private random generator.
    """

    def __init__(
        self,
        cpu_base: float = CPU_BASE_UTIL,
        memory_base: float = MEMORY_BASE_UTIL,
        noise: bool = True,
        seed: Optional[int] = None,
    ) -> None:
        self._rng = random.Random(seed)
        self._noise = noise
        self._lock = threading.Lock()
        self._base: Dict[str, float] = {CPU: cpu_base, MEMORY: memory_base}
        self._std: Dict[str, float] = {CPU: CPU_NOISE_STD, MEMORY: MEMORY_NOISE_STD}
        self._spikes: Dict[str, List[float]] = {}      # metric → [value, reads remaining]
        self._failures: Dict[str, int] = {}
        self._custom: Dict[str, float] = {}
        self._history: Dict[str, Deque[float]] = {}

    # ── MetricsCollector protocol ─────────────────────────────────────────────

    def get_cpu_utilization(self) -> float:
        return self._read(CPU)

    def get_memory_utilization(self) -> float:
        return self._read(MEMORY)

    def get_custom_metric(self, name: str) -> float:
        with self._lock:
            self._maybe_fail(name)
            if name not in self._custom:
                raise KeyError(f"custom metric {name} not found")
            value = self._custom[name]
            self._record(name, value)
            return value

    # ── Scenario controls ─────────────────────────────────────────────────────

    def set_baseline(self, metric: str, value: float) -> None:
        with self._lock:
            self._base[metric] = value

    def inject_spike(self, metric: str = CPU, value: float = SPIKE_UTIL, n_reads: int = 1) -> None:
        """
        Return value (plus noise) for the next n_reads readings of metric.

        Injecting again before the spike runs out replaces it.
        """
        with self._lock:
            self._spikes[metric] = [value, n_reads]

    def set_custom_metric(self, name: str, value: float) -> None:
        with self._lock:
            self._custom[name] = value

    def fail_next(self, metric: str, n: int = 1) -> None:
        """Make the next n readings of metric raise ConnectionError."""
        with self._lock:
            self._failures[metric] = self._failures.get(metric, 0) + n

    def history(self, metric: str) -> List[float]:
        with self._lock:
            return list(self._history.get(metric, ()))

    # ── Private helpers ───────────────────────────────────────────────────────

    def _read(self, metric: str) -> float:
        with self._lock:
            self._maybe_fail(metric)
            base = self._base[metric]
            spike = self._spikes.get(metric)
            if spike is not None:
                base = spike[0]
                spike[1] -= 1
                if spike[1] <= 0:
                    del self._spikes[metric]
            value = base
            if self._noise:
                value = self._rng.gauss(base, self._std[metric])
            value = _clamp(value, 0.0, 100.0)
            self._record(metric, value)
            return value

    def _maybe_fail(self, metric: str) -> None:
        remaining = self._failures.get(metric, 0)
        if remaining > 0:
            self._failures[metric] = remaining - 1
            raise ConnectionError(f"simulated {metric} collection failure")

    def _record(self, metric: str, value: float) -> None:
        self._history.setdefault(metric, deque(maxlen=HISTORY_SIZE)).append(value)

    def __repr__(self) -> str:
        return (
            f"SimulatedMetricsCollector(cpu_base={self._base[CPU]}, "
            f"memory_base={self._base[MEMORY]}, noise={self._noise})"
        )


# ── Utility ────────────────────────────────────────────────────────────────────

def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
