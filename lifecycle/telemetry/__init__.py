"""
lifecycle/telemetry — metrics sources for the autoscaler.

Public API:
    SimulatedMetricsCollector  — baseline + noise readings with spike / failure injection
"""

from lifecycle.telemetry.collector import SimulatedMetricsCollector

__all__ = ["SimulatedMetricsCollector"]
