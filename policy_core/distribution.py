"""
policy_core/distribution.py
───────────────────────────
ZoneDistributor: how N units are spread across availability zones.

What this is
─────────────
Node pools are spread over zones for availability. The distributor answers
two questions:

  distribute(n, zones)     → how many units should each zone get?
  rebalance(current)       → what per-zone deltas turn a skewed layout into
                             an even one?

Placement policies
───────────────────
Each policy is a small object with a `name` and a pure
calculate(total, zones, weights) method, registered in a StrategyRegistry.

  round_robin  base = n // |Z|; the first n mod |Z| zones (input order) get
               one extra.               10 over [a,b,c] → {a:4, b:3, c:3}

  weighted     floor(n·w/Σw) per zone; leftover units go one at a time to
               zones in descending weight order (stable on input order).
               Missing or non-positive weights count as 1, so no weights at
               all is exactly round_robin.

  packed       fill each zone up to its capacity (default PACKED_ZONE_CAPACITY,
               a zone's weight overrides it) in input order. Units beyond the
               total capacity spill round-robin so the sum always holds.

  spread       floor(n/|Z|) everywhere, remainder to the highest-weight zones
               (stable). Same arithmetic as round_robin without weights; the
               "HA-first" choice.

Invariant (every policy)
─────────────────────────
  • keys of zone_counts == the input zones (zero counts included)
  • every count ≥ 0
  • Σ counts == total_units

NumPy usage
────────────
The proportional split and the remainder ordering are computed on int64
arrays: `np.floor_divide` for the per-zone share and a stable `argsort` on
negated weights for the tie-break. Lists of ≤ a few dozen zones are small,
but the vectorised form reads closer to the formulas above.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from lifecycle.shared.errors import ConfigurationError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.models import ZoneDistribution, ZoneDistributionPlan
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Distribution constants ────────────────────────────────────────────────────

PACKED_ZONE_CAPACITY: int = 10
"""Default per-zone capacity for the packed policy when no weight is given."""

DEFAULT_DISTRIBUTION_STRATEGY: str = "round_robin"


# ─────────────────────────────────────────────────────────────────────────────
# Placement policies
# ─────────────────────────────────────────────────────────────────────────────

def _weight_vector(zones: Sequence[str], weights: Optional[Mapping[str, int]]) -> np.ndarray:
    """Per-zone weights in input order. Missing / non-positive → 1."""
    raw = np.array([(weights or {}).get(zone, 0) for zone in zones], dtype=np.int64)
    return np.where(raw > 0, raw, 1)


def _by_descending_weight(weight_vec: np.ndarray) -> np.ndarray:
    """Zone indices ordered by descending weight, ties kept in input order."""
    return np.argsort(-weight_vec, kind="stable")


class RoundRobinStrategy:
    name = "round_robin"

    def calculate(
        self, total: int, zones: Sequence[str], weights: Optional[Mapping[str, int]] = None
    ) -> Dict[str, int]:
        base, remainder = divmod(total, len(zones))
        return {zone: base + (1 if i < remainder else 0) for i, zone in enumerate(zones)}


class WeightedStrategy:
    name = "weighted"

    def calculate(
        self, total: int, zones: Sequence[str], weights: Optional[Mapping[str, int]] = None
    ) -> Dict[str, int]:
        weight_vec = _weight_vector(zones, weights)
        counts = np.floor_divide(total * weight_vec, int(weight_vec.sum()))
        leftover = total - int(counts.sum())
        order = _by_descending_weight(weight_vec)
        # leftover < |Z| because each floor loses less than one unit
        counts[order[:leftover]] += 1
        return {zone: int(c) for zone, c in zip(zones, counts)}


class PackedStrategy:
    """Bin-packing: fill zones in input order before touching the next one."""

    name = "packed"

    def __init__(self, zone_capacity: int = PACKED_ZONE_CAPACITY) -> None:
        self.zone_capacity = zone_capacity if zone_capacity > 0 else PACKED_ZONE_CAPACITY

    def calculate(
        self, total: int, zones: Sequence[str], weights: Optional[Mapping[str, int]] = None
    ) -> Dict[str, int]:
        weights = weights or {}
        result = {zone: 0 for zone in zones}
        remaining = total
        for zone in zones:
            if remaining <= 0:
                break
            capacity = weights.get(zone, 0)
            if capacity <= 0:
                capacity = self.zone_capacity
            take = min(capacity, remaining)
            result[zone] = take
            remaining -= take

        if remaining > 0:
            logger.warning(
                "packed: %d units exceed total zone capacity, spilling round-robin", remaining
            )
            spill = RoundRobinStrategy().calculate(remaining, zones)
            for zone, extra in spill.items():
                result[zone] += extra
        return result


class SpreadStrategy:
    """Maximise the minimum per-zone count."""

    name = "spread"

    def calculate(
        self, total: int, zones: Sequence[str], weights: Optional[Mapping[str, int]] = None
    ) -> Dict[str, int]:
        base, remainder = divmod(total, len(zones))
        counts = np.full(len(zones), base, dtype=np.int64)
        raw = np.array([(weights or {}).get(zone, 0) for zone in zones], dtype=np.int64)
        counts[_by_descending_weight(raw)[:remainder]] += 1
        return {zone: int(c) for zone, c in zip(zones, counts)}


def default_distribution_registry() -> StrategyRegistry:
    registry: StrategyRegistry = StrategyRegistry("distribution")
    registry.register(RoundRobinStrategy())
    registry.register(WeightedStrategy())
    registry.register(PackedStrategy())
    registry.register(SpreadStrategy())
    return registry


# ─────────────────────────────────────────────────────────────────────────────
# Distributor
# ─────────────────────────────────────────────────────────────────────────────

class ZoneDistributor:
    """
    Applies the active placement policy and enforces the plan invariant.

    Usage:
        distributor = ZoneDistributor(strategy_name="weighted")
        plan = distributor.distribute(10, ["a", "b", "c"], weights={"a": 2})
        plan.zone_counts                  # {"a": 6, "b": 2, "c": 2}
        distributor.rebalance({"a": 7, "b": 1, "c": 1})
                                          # {"a": -4, "b": 2, "c": 2}

    Thread safety:
        The active strategy reference is swapped under a lock. Policies are
        pure, so concurrent distribute() calls need nothing else.
    """

    def __init__(
        self,
        strategy_name: str = DEFAULT_DISTRIBUTION_STRATEGY,
        registry: Optional[StrategyRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._registry = registry if registry is not None else default_distribution_registry()
        self._lock = threading.Lock()
        self._strategy = self._registry.get(strategy_name or DEFAULT_DISTRIBUTION_STRATEGY)
        self._bus = event_bus

    @property
    def strategy_name(self) -> str:
        with self._lock:
            return self._strategy.name

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    def set_strategy(self, name: str) -> None:
        strategy = self._registry.get(name)
        with self._lock:
            self._strategy = strategy
        logger.info("Zone distribution strategy set to %s", name)

    # ── Public API ────────────────────────────────────────────────────────────

    def distribute(
        self,
        total_units: int,
        zones: Sequence[str],
        weights: Optional[Mapping[str, int]] = None,
    ) -> ZoneDistributionPlan:
        """
        Spread total_units over zones with the active policy.

        Raises:
            ConfigurationError: empty zone list, duplicate zones, or a
                                negative total.
        """
        zones = self._validate(total_units, zones)
        with self._lock:
            strategy = self._strategy
        counts = strategy.calculate(total_units, zones, weights)
        plan = self._make_plan(total_units, zones, counts, strategy.name)
        emit_safely(
            self._bus, "zones_distributed", "zone_distributor",
            strategy=plan.strategy_name, total_units=total_units,
            zone_counts=dict(plan.zone_counts),
        )
        return plan

    def distribute_with_config(
        self, total_units: int, distributions: Sequence[ZoneDistribution]
    ) -> ZoneDistributionPlan:
        """
        Honour an explicit per-zone layout from configuration.

        If the configured counts add up to total_units they are used as-is.
        Otherwise they become weights for the active policy.
        """
        if not distributions:
            raise ConfigurationError("no zone distributions provided")
        zones = [d.zone for d in distributions]
        explicit_total = sum(d.count for d in distributions)
        if explicit_total == total_units:
            zones = self._validate(total_units, zones)
            counts = {d.zone: d.count for d in distributions}
            return self._make_plan(total_units, zones, counts, "explicit")
        weights = {d.zone: d.count for d in distributions if d.count > 0}
        return self.distribute(total_units, zones, weights)

    def rebalance(self, current_counts: Mapping[str, int]) -> Dict[str, int]:
        """
        Per-zone deltas (target − current) toward a round-robin layout.

        The target keeps the current total and the mapping's zone order.
        Every zone appears in the result, zeros included. Σ deltas == 0.
        """
        zones = list(current_counts)
        total = sum(current_counts.values())
        zones = self._validate(total, zones)
        if any(count < 0 for count in current_counts.values()):
            raise ConfigurationError("current zone counts must be ≥ 0")
        target = RoundRobinStrategy().calculate(total, zones)
        deltas = {zone: target[zone] - current_counts[zone] for zone in zones}
        emit_safely(
            self._bus, "zones_rebalanced", "zone_distributor",
            total_units=total, deltas=dict(deltas),
        )
        return deltas

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    def _validate(total_units: int, zones: Sequence[str]) -> List[str]:
        zones = list(zones)
        if not zones:
            raise ConfigurationError("no zones provided for distribution")
        if len(set(zones)) != len(zones):
            raise ConfigurationError(f"duplicate zones in {zones}")
        if total_units < 0:
            raise ConfigurationError(f"total_units must be ≥ 0, got {total_units}")
        return zones

    @staticmethod
    def _make_plan(
        total_units: int, zones: List[str], counts: Mapping[str, int], strategy_name: str
    ) -> ZoneDistributionPlan:
        if set(counts) != set(zones) or sum(counts.values()) != total_units or min(counts.values()) < 0:
            raise ConfigurationError(
                f"strategy {strategy_name!r} produced an invalid plan {dict(counts)} "
                f"for {total_units} units over {zones}"
            )
        return ZoneDistributionPlan(
            total_units=total_units,
            zone_counts={zone: counts[zone] for zone in zones},
            strategy_name=strategy_name,
        )

    def __repr__(self) -> str:
        return f"ZoneDistributor(strategy={self.strategy_name!r})"
