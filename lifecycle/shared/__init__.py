"""
lifecycle/shared — types shared by every control plane component.

Public API:
    EventBus                 — async in-process publish / subscribe
    LifecycleError           — base of every control plane error
    ConfigurationError       — fail-fast configuration mistakes
    StrategyNotFoundError    — unknown strategy name
    MetricsUnavailableError  — transient metrics collection failure
"""

from lifecycle.shared.errors import (
    ConfigurationError,
    ConfigurationRejectedError,
    LifecycleError,
    MetricsUnavailableError,
    StrategyNotFoundError,
)
from lifecycle.shared.events import EventBus

__all__ = [
    "EventBus",
    "LifecycleError",
    "ConfigurationError",
    "ConfigurationRejectedError",
    "StrategyNotFoundError",
    "MetricsUnavailableError",
]
