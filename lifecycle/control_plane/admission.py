"""
lifecycle/control_plane/admission.py
────────────────────────────────────
Admission control: semantic validation of a ControlPlaneConfig.

The admission check runs AFTER pydantic validation (which handles types and
per-field bounds) and BEFORE any component is built from the config.

What it checks
───────────────
  1. Autoscaling bounds: min_nodes ≤ max_nodes.
  2. Autoscaling targets: an explicit target must leave room for both
     thresholds. target + SCALE_UP_BUFFER above 100 never scales up;
     target − scale-down margin at or below 0 never scales down.
  3. Strategy names: every strategy named in the config exists in the
     registry that will resolve it. A custom:<metric> scaling strategy is
     only admitted when the caller lists it under known_strategies["scaling"].
  4. Upgrade policy: pause_on_failure and auto_rollback are exclusive;
     surge upgrades need max_surge ≥ 1; canary percent is in (0, 100].
  5. Spot: a price ceiling only makes sense with spot enabled.

What it does NOT check
───────────────────────
  • Whether providers, drainers or collaborators exist: components raise
    ConfigurationError for those at call time.
  • Hook actions: a hook with nothing to run fails when triggered and is
    reported like any other hook failure.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from lifecycle.shared.errors import ConfigurationRejectedError
from lifecycle.shared.models import ControlPlaneConfig
from lifecycle.control_plane.autoscaler import (
    CPU_SCALE_DOWN_MARGIN,
    MEMORY_SCALE_DOWN_MARGIN,
    SCALE_UP_BUFFER,
    default_scaling_registry,
)
from lifecycle.control_plane.spot_manager import default_spot_registry
from lifecycle.control_plane.upgrade_strategies import (
    DEFAULT_CANARY_PERCENT,
    default_upgrade_registry,
)
from policy_core.distribution import default_distribution_registry


def admit_config(
    config: ControlPlaneConfig,
    known_strategies: Optional[Mapping[str, Iterable[str]]] = None,
    canary_percent: int = DEFAULT_CANARY_PERCENT,
) -> None:
    """
    Run all admission checks on a ControlPlaneConfig.

    Returns None on success.

    Args:
        config:           The validated configuration.
        known_strategies: Names per kind ("scaling", "distribution", "spot",
                          "upgrade"). Kinds left out fall back to the names
                          of the built-in registries.
        canary_percent:   The canary share the upgrade strategy will use.

    Raises:
        ConfigurationRejectedError: with a descriptive reason string.
    """
    _check_autoscaling_bounds(config)
    _check_autoscaling_targets(config)
    _check_strategy_names(config, known_strategies or {})
    _check_upgrade_policy(config, canary_percent)
    _check_spot(config)


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_autoscaling_bounds(config: ControlPlaneConfig) -> None:
    scaling = config.autoscaling
    if scaling.min_nodes > scaling.max_nodes:
        raise ConfigurationRejectedError(
            f"autoscaling min_nodes ({scaling.min_nodes}) exceeds "
            f"max_nodes ({scaling.max_nodes})"
        )


def _check_autoscaling_targets(config: ControlPlaneConfig) -> None:
    scaling = config.autoscaling
    for label, target, margin in (
        ("target_cpu", scaling.target_cpu, CPU_SCALE_DOWN_MARGIN),
        ("target_memory", scaling.target_memory, MEMORY_SCALE_DOWN_MARGIN),
    ):
        if target == 0:
            continue
        if target + SCALE_UP_BUFFER > 100:
            raise ConfigurationRejectedError(
                f"autoscaling {label}={target} leaves no scale-up threshold "
                f"(must be ≤ {100 - SCALE_UP_BUFFER})"
            )
        if target - margin <= 0:
            raise ConfigurationRejectedError(
                f"autoscaling {label}={target} leaves no scale-down threshold "
                f"(must be > {margin})"
            )


def _check_strategy_names(
    config: ControlPlaneConfig, known: Mapping[str, Iterable[str]]
) -> None:
    def names(kind: str, factory) -> set:
        if kind in known:
            return set(known[kind])
        return set(factory().list())

    for kind, value, factory in (
        ("scaling", config.scaling_strategy, default_scaling_registry),
        ("distribution", config.distribution_strategy, default_distribution_registry),
        ("spot", config.spot_strategy, default_spot_registry),
        ("upgrade", config.upgrade.strategy, default_upgrade_registry),
    ):
        valid = names(kind, factory)
        if value not in valid:
            raise ConfigurationRejectedError(
                f"unknown {kind} strategy {value!r} (known: {', '.join(sorted(valid))})"
            )


def _check_upgrade_policy(config: ControlPlaneConfig, canary_percent: int) -> None:
    upgrade = config.upgrade
    if upgrade.pause_on_failure and upgrade.auto_rollback:
        raise ConfigurationRejectedError(
            "upgrade pause_on_failure and auto_rollback are mutually exclusive"
        )
    if upgrade.strategy == "surge" and upgrade.max_surge < 1:
        raise ConfigurationRejectedError("surge upgrades require max_surge ≥ 1")
    if upgrade.strategy == "canary" and not 0 < canary_percent <= 100:
        raise ConfigurationRejectedError(
            f"canary percent {canary_percent} must be in (0, 100]"
        )


def _check_spot(config: ControlPlaneConfig) -> None:
    spot = config.spot
    if not spot.enabled and spot.max_spot_price > 0:
        raise ConfigurationRejectedError(
            "spot max_spot_price is set but spot capacity is disabled"
        )
