"""
lifecycle/shared/errors.py
──────────────────────────
Exception taxonomy shared by every control plane component.

Categories
──────────
  ConfigurationError      → bad strategy name (StrategyNotFoundError), invalid
                            config (ConfigurationRejectedError), disabled or
                            unconfigured feature. Raised synchronously, never
                            retried.
  MetricsUnavailableError → transient collection failure. The autoscaler
                            turns it into "no decision this cycle".

Component-specific errors (spot rejections, upgrade failures, hook failures)
live next to the component that raises them and subclass LifecycleError.
"""

from __future__ import annotations

from typing import Optional


class LifecycleError(Exception):
    """Base class for all control plane errors."""


class ConfigurationError(LifecycleError):
    """
    Raised for configuration mistakes detected at call time.

    Attributes:
        reason: Human-readable explanation.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class MetricsUnavailableError(LifecycleError):
    """A metrics collector could not produce a reading for this cycle."""

    def __init__(self, metric: str, cause: Optional[BaseException] = None) -> None:
        self.metric = metric
        self.cause = cause
        message = f"failed to get {metric}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class StrategyNotFoundError(ConfigurationError, LookupError):
    """A registry was asked for a strategy name it does not hold."""

    def __init__(self, kind: str, name: str, available: Optional[list] = None) -> None:
        self.kind = kind
        self.name = name
        self.available = sorted(available or [])
        super().__init__(
            f"{kind} strategy {name!r} not found (available: {', '.join(self.available) or 'none'})"
        )


class ConfigurationRejectedError(ConfigurationError):
    """Raised by admission checks when a configuration is semantically invalid."""
