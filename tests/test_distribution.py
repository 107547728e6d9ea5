"""
tests/test_distribution.py
───────────────────────────
Test suite for policy_core/registry.py and policy_core/distribution.py

What we are testing
────────────────────
ZoneDistributor turns (total units, zones, weights) into a plan whose counts
always cover exactly the input zones and always sum to the total, whatever
policy produced them. rebalance() returns per-zone deltas that sum to zero.

Test groups
────────────
Group 1: StrategyRegistry      — register / get / list / not-found
Group 2: Placement policies    — round_robin, weighted, packed, spread arithmetic
Group 3: Plan invariant        — sum and key set across every policy and size
Group 4: Validation            — empty, duplicate, negative input
Group 5: Config and rebalance  — explicit layouts, zero-sum deltas, events
"""

from __future__ import annotations

import pytest

from lifecycle.shared.errors import ConfigurationError, StrategyNotFoundError
from lifecycle.shared.events import EventBus
from lifecycle.shared.models import ZoneDistribution
from policy_core.distribution import (
    PACKED_ZONE_CAPACITY,
    PackedStrategy,
    RoundRobinStrategy,
    ZoneDistributor,
    default_distribution_registry,
)
from policy_core.registry import StrategyRegistry


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

ZONES = ["us-east-1a", "us-east-1b", "us-east-1c"]


class _Named:
    def __init__(self, name: str, tag: str = "") -> None:
        self.name = name
        self.tag = tag


class _BrokenStrategy:
    """Drops a unit on the floor: the distributor must refuse the plan."""
    name = "broken"

    def calculate(self, total, zones, weights=None):
        return {zone: 0 for zone in zones}


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: StrategyRegistry
# ─────────────────────────────────────────────────────────────────────────────

class TestStrategyRegistry:

    def test_get_returns_registered_impl(self) -> None:
        registry: StrategyRegistry = StrategyRegistry("test")
        impl = _Named("alpha")
        registry.register(impl)
        assert registry.get("alpha") is impl
        assert "alpha" in registry
        assert len(registry) == 1

    def test_duplicate_name_last_write_wins(self) -> None:
        registry: StrategyRegistry = StrategyRegistry("test")
        registry.register(_Named("alpha", tag="first"))
        registry.register(_Named("alpha", tag="second"))
        assert registry.get("alpha").tag == "second"
        assert registry.list() == ["alpha"]

    def test_unknown_name_raises_not_found(self) -> None:
        registry: StrategyRegistry = StrategyRegistry("scaling")
        registry.register(_Named("cpu"))
        with pytest.raises(StrategyNotFoundError) as exc_info:
            registry.get("gpu")
        assert exc_info.value.kind == "scaling"
        assert exc_info.value.name == "gpu"
        assert exc_info.value.available == ["cpu"]

    def test_not_found_is_a_configuration_error(self) -> None:
        registry: StrategyRegistry = StrategyRegistry()
        with pytest.raises(ConfigurationError):
            registry.get("missing")

    def test_impl_without_name_rejected(self) -> None:
        registry: StrategyRegistry = StrategyRegistry()
        with pytest.raises(ValueError):
            registry.register(object())

    def test_empty_registry_is_usable(self) -> None:
        """An empty registry passed explicitly is used, not replaced by defaults."""
        registry: StrategyRegistry = StrategyRegistry("distribution")
        with pytest.raises(StrategyNotFoundError):
            ZoneDistributor("round_robin", registry=registry)

    def test_default_registry_names(self) -> None:
        assert sorted(default_distribution_registry().list()) == [
            "packed", "round_robin", "spread", "weighted",
        ]


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Placement policies
# ─────────────────────────────────────────────────────────────────────────────

class TestPlacementPolicies:

    def test_round_robin_ten_over_three(self) -> None:
        plan = ZoneDistributor("round_robin").distribute(10, ZONES)
        assert plan.zone_counts == {"us-east-1a": 4, "us-east-1b": 3, "us-east-1c": 3}
        assert plan.strategy_name == "round_robin"

    def test_round_robin_is_deterministic(self) -> None:
        distributor = ZoneDistributor("round_robin")
        first = distributor.distribute(17, ZONES).zone_counts
        for _ in range(5):
            assert distributor.distribute(17, ZONES).zone_counts == first

    def test_round_robin_fewer_units_than_zones(self) -> None:
        plan = ZoneDistributor().distribute(2, ZONES)
        assert list(plan.zone_counts.values()) == [1, 1, 0]

    def test_weighted_leftover_goes_to_heaviest(self) -> None:
        plan = ZoneDistributor("weighted").distribute(10, ["a", "b", "c"], weights={"a": 2})
        assert plan.zone_counts == {"a": 6, "b": 2, "c": 2}

    def test_weighted_heaviest_zone_not_first(self) -> None:
        plan = ZoneDistributor("weighted").distribute(7, ["a", "b", "c"], weights={"c": 3})
        assert plan.zone_counts == {"a": 1, "b": 1, "c": 5}

    def test_weighted_non_positive_weight_counts_as_one(self) -> None:
        plan = ZoneDistributor("weighted").distribute(9, ["a", "b", "c"], weights={"a": 0, "b": -4})
        assert plan.zone_counts == {"a": 3, "b": 3, "c": 3}

    def test_packed_fills_in_order(self) -> None:
        plan = ZoneDistributor("packed").distribute(25, ZONES)
        assert list(plan.zone_counts.values()) == [PACKED_ZONE_CAPACITY, PACKED_ZONE_CAPACITY, 5]

    def test_packed_weights_are_capacities(self) -> None:
        plan = ZoneDistributor("packed").distribute(6, ["a", "b"], weights={"a": 4})
        assert plan.zone_counts == {"a": 4, "b": 2}

    def test_packed_overflow_spills_round_robin(self) -> None:
        plan = ZoneDistributor("packed").distribute(35, ZONES)
        assert list(plan.zone_counts.values()) == [12, 12, 11]
        assert sum(plan.zone_counts.values()) == 35

    def test_packed_non_positive_capacity_uses_default(self) -> None:
        assert PackedStrategy(zone_capacity=0).zone_capacity == PACKED_ZONE_CAPACITY

    def test_spread_without_weights_matches_round_robin(self) -> None:
        spread = ZoneDistributor("spread").distribute(11, ZONES).zone_counts
        rr = RoundRobinStrategy().calculate(11, ZONES)
        assert spread == rr

    def test_spread_remainder_follows_weights(self) -> None:
        plan = ZoneDistributor("spread").distribute(4, ["a", "b", "c"], weights={"c": 5})
        assert plan.zone_counts == {"a": 1, "b": 1, "c": 2}

    def test_set_strategy_switches_policy(self) -> None:
        distributor = ZoneDistributor()
        distributor.set_strategy("packed")
        assert distributor.strategy_name == "packed"
        with pytest.raises(StrategyNotFoundError):
            distributor.set_strategy("nope")
        assert distributor.strategy_name == "packed"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Plan invariant
# ─────────────────────────────────────────────────────────────────────────────

class TestPlanInvariant:

    @pytest.mark.parametrize("strategy", ["round_robin", "weighted", "packed", "spread"])
    @pytest.mark.parametrize("total", [0, 1, 5, 29, 31, 100])
    def test_counts_sum_to_total_over_input_zones(self, strategy: str, total: int) -> None:
        plan = ZoneDistributor(strategy).distribute(total, ZONES, weights={"us-east-1b": 3})
        assert sum(plan.zone_counts.values()) == total
        assert list(plan.zone_counts) == ZONES
        assert all(count >= 0 for count in plan.zone_counts.values())

    def test_zero_total_gives_zero_percentages(self) -> None:
        plan = ZoneDistributor().distribute(0, ZONES)
        assert plan.zone_percentages() == {zone: 0.0 for zone in ZONES}

    def test_percentages(self) -> None:
        plan = ZoneDistributor().distribute(4, ["a", "b"])
        assert plan.zone_percentages() == {"a": pytest.approx(50.0), "b": pytest.approx(50.0)}

    def test_strategy_breaking_invariant_is_rejected(self) -> None:
        registry = default_distribution_registry()
        registry.register(_BrokenStrategy())
        with pytest.raises(ConfigurationError):
            ZoneDistributor("broken", registry=registry).distribute(3, ZONES)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Validation
# ─────────────────────────────────────────────────────────────────────────────

class TestValidation:

    def test_empty_zones(self) -> None:
        with pytest.raises(ConfigurationError):
            ZoneDistributor().distribute(3, [])

    def test_duplicate_zones(self) -> None:
        with pytest.raises(ConfigurationError):
            ZoneDistributor().distribute(3, ["a", "a"])

    def test_negative_total(self) -> None:
        with pytest.raises(ConfigurationError):
            ZoneDistributor().distribute(-1, ZONES)

    def test_unknown_initial_strategy(self) -> None:
        with pytest.raises(StrategyNotFoundError):
            ZoneDistributor("diagonal")


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Config and rebalance
# ─────────────────────────────────────────────────────────────────────────────

class TestConfigAndRebalance:

    def test_explicit_layout_used_verbatim(self) -> None:
        layout = [ZoneDistribution(zone="a", count=5), ZoneDistribution(zone="b", count=1)]
        plan = ZoneDistributor().distribute_with_config(6, layout)
        assert plan.zone_counts == {"a": 5, "b": 1}
        assert plan.strategy_name == "explicit"

    def test_mismatched_layout_becomes_weights(self) -> None:
        layout = [ZoneDistribution(zone="a", count=2), ZoneDistribution(zone="b", count=1),
                  ZoneDistribution(zone="c", count=1)]
        plan = ZoneDistributor("weighted").distribute_with_config(10, layout)
        assert plan.zone_counts == {"a": 6, "b": 2, "c": 2}

    def test_empty_layout_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            ZoneDistributor().distribute_with_config(3, [])

    def test_rebalance_deltas(self) -> None:
        deltas = ZoneDistributor().rebalance({"a": 7, "b": 1, "c": 1})
        assert deltas == {"a": -4, "b": 2, "c": 2}

    def test_rebalance_balanced_layout_is_all_zero(self) -> None:
        deltas = ZoneDistributor().rebalance({"a": 4, "b": 3, "c": 3})
        assert deltas == {"a": 0, "b": 0, "c": 0}

    @pytest.mark.parametrize("current", [
        {"a": 0, "b": 0, "c": 9},
        {"a": 13, "b": 2},
        {"x": 1, "y": 0, "z": 0, "w": 6},
    ])
    def test_rebalance_is_zero_sum(self, current) -> None:
        deltas = ZoneDistributor().rebalance(current)
        assert sum(deltas.values()) == 0
        assert set(deltas) == set(current)

    def test_rebalance_rejects_negative_counts(self) -> None:
        with pytest.raises(ConfigurationError):
            ZoneDistributor().rebalance({"a": 3, "b": -1})

    def test_distribute_and_rebalance_emit_events(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe("zones_distributed", seen.append)
        bus.subscribe("zones_rebalanced", seen.append)
        distributor = ZoneDistributor(event_bus=bus)
        distributor.distribute(5, ZONES)
        distributor.rebalance({"a": 2, "b": 0})
        assert bus.flush(timeout=2.0)
        bus.shutdown()
        assert sorted(e.type for e in seen) == ["zones_distributed", "zones_rebalanced"]
        distributed = next(e for e in seen if e.type == "zones_distributed")
        assert distributed.payload["total_units"] == 5
        assert distributed.source == "zone_distributor"
