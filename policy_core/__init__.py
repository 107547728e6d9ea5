"""
policy_core — pure placement and lookup policies, no I/O.

Public API:
    StrategyRegistry  — thread-safe name → strategy map
    ZoneDistributor   — spread units across zones, compute rebalance deltas

Usage:
    from policy_core import ZoneDistributor

    plan = ZoneDistributor("round_robin").distribute(10, ["a", "b", "c"])
    plan.zone_counts      # {"a": 4, "b": 3, "c": 3}
"""

from policy_core.registry import StrategyRegistry
from policy_core.distribution import ZoneDistributor, default_distribution_registry

__all__ = ["StrategyRegistry", "ZoneDistributor", "default_distribution_registry"]
