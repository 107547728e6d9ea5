"""
lifecycle/control_plane/cost_estimator.py
──────────────────────────────────────────
CostEstimator: static-price cost estimates for nodes and clusters.

What this is
─────────────
Before a cluster is created (or resized) operators want a number: what will
this cost per month? The estimator answers from per-provider price tables.
It never calls a billing API; the tables are list prices and are good for
comparing layouts, not for invoicing.

Per-node formula
─────────────────
  hourly   = on-demand price, or the spot price when spot and cheaper
  storage  = STORAGE_GB_PER_NODE × provider SSD price per GB-month
  monthly  = hourly × HOURS_PER_MONTH + storage
  yearly   = monthly × 12

Cluster formula
────────────────
  Σ node monthly costs (one estimate per node of every pool)
  + load balancer monthly price (when a load balancer provider is given)
  + NETWORK_BASE_MONTHLY

Recommendations
────────────────
  spot_usage          worker pool on on-demand capacity
                      saves ≈ 30% of its share of the monthly total
  right_sizing        node above RIGHT_SIZING_HOURLY_THRESHOLD ($0.50/h)
                      saves ≈ 20% of that node's monthly cost
  reserved_instances  yearly total above RESERVED_YEARLY_THRESHOLD ($5000)
                      saves ≈ 25% of the yearly total

Caching
────────
Resolved prices (not estimates) are cached per
(provider, instance_type, region, spot) for cache_ttl_s. Node names are
stamped on each estimate after the lookup, so a cached price never leaks
another node's name.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from lifecycle.shared.errors import LifecycleError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.models import (
    ClusterCostEstimate,
    CostEstimate,
    CostRecommendation,
    NodePoolSpec,
)
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Cost estimator constants ──────────────────────────────────────────────────
# Module-level so tests can import and assert against them directly.

HOURS_PER_MONTH: int = 730
"""Average hours in a month (8760 / 12)."""

STORAGE_GB_PER_NODE: int = 50
"""Assumed root volume size for every node."""

NETWORK_BASE_MONTHLY: float = 10.0
"""Flat monthly network estimate added to every cluster."""

DEFAULT_CACHE_TTL_S: float = 3600.0

DEFAULT_SPOT_DISCOUNT: float = 0.50
"""AWS spot discount for instance types without a table entry."""

LOAD_BALANCER_MONTHLY: Dict[str, float] = {
    "aws": 16.20,
    "gcp": 18.00,
    "digitalocean": 12.00,
    "linode": 10.00,
}
"""Monthly base price of one managed load balancer per provider."""

DEFAULT_LOAD_BALANCER_MONTHLY: float = 15.00

SPOT_USAGE_SAVINGS: float = 0.30
RIGHT_SIZING_SAVINGS: float = 0.20
RESERVED_SAVINGS: float = 0.25

RIGHT_SIZING_HOURLY_THRESHOLD: float = 0.5
"""Nodes above this hourly price get a right_sizing recommendation."""

RESERVED_YEARLY_THRESHOLD: float = 5000.0
"""Clusters above this yearly total get a reserved_instances recommendation."""


class PriceUnavailableError(LifecycleError):
    """A provider has no price for the requested instance type."""

    def __init__(self, provider: str, instance_type: str, reason: str = "") -> None:
        self.provider = provider
        self.instance_type = instance_type
        self.reason = reason or f"unknown instance type: {instance_type}"
        super().__init__(f"{provider}: {self.reason}")


# ─────────────────────────────────────────────────────────────────────────────
# Price providers
# ─────────────────────────────────────────────────────────────────────────────

class AWSPriceProvider:
    """
    Regional on-demand table with per-type spot discounts.

    Unknown regions fall back to us-east-1. Unknown instance types raise.
    """
    name = "aws"

    DEFAULT_REGION = "us-east-1"

    INSTANCE_PRICES: Dict[str, Dict[str, float]] = {
        "us-east-1": {
            "t3.micro": 0.0104, "t3.small": 0.0208, "t3.medium": 0.0416,
            "t3.large": 0.0832, "t3.xlarge": 0.1664,
            "m5.large": 0.096, "m5.xlarge": 0.192, "m5.2xlarge": 0.384,
            "c5.large": 0.085, "c5.xlarge": 0.17, "c5.2xlarge": 0.34,
        },
        "us-west-2": {
            "t3.micro": 0.0104, "t3.small": 0.0208, "t3.medium": 0.0416,
            "t3.large": 0.0832, "t3.xlarge": 0.1664,
            "m5.large": 0.096, "m5.xlarge": 0.192,
        },
        "eu-west-1": {
            "t3.micro": 0.0114, "t3.small": 0.0228, "t3.medium": 0.0456,
            "t3.large": 0.0912, "m5.large": 0.107,
        },
    }

    SPOT_DISCOUNTS: Dict[str, float] = {
        "t3.micro": 0.70, "t3.small": 0.65, "t3.medium": 0.60, "t3.large": 0.65,
        "m5.large": 0.60, "m5.xlarge": 0.55, "c5.large": 0.65,
    }

    STORAGE_PRICES: Dict[str, float] = {
        "ssd": 0.08, "gp3": 0.08, "hdd": 0.045, "st1": 0.045, "io1": 0.125,
    }

    def instance_price(self, instance_type: str, region: str) -> float:
        prices = self.INSTANCE_PRICES.get(region) or self.INSTANCE_PRICES[self.DEFAULT_REGION]
        if instance_type not in prices:
            raise PriceUnavailableError(self.name, instance_type)
        return prices[instance_type]

    def spot_price(self, instance_type: str, region: str) -> float:
        discount = self.SPOT_DISCOUNTS.get(instance_type, DEFAULT_SPOT_DISCOUNT)
        return self.instance_price(instance_type, region) * (1.0 - discount)

    def storage_price(self, storage_type: str, region: str) -> float:
        return self.STORAGE_PRICES.get(storage_type, 0.10)


class GCPPriceProvider:
    """Preemptible capacity is priced at 20% of on-demand. Unknown types cost $0.10/h."""
    name = "gcp"

    DEFAULT_REGION = "us-central1"

    INSTANCE_PRICES: Dict[str, Dict[str, float]] = {
        "us-central1": {
            "e2-micro": 0.0084, "e2-small": 0.0168, "e2-medium": 0.0335,
            "e2-standard-2": 0.067, "e2-standard-4": 0.134,
            "n1-standard-1": 0.0475, "n1-standard-2": 0.095, "n1-standard-4": 0.19,
        },
    }

    def instance_price(self, instance_type: str, region: str) -> float:
        prices = self.INSTANCE_PRICES.get(region) or self.INSTANCE_PRICES[self.DEFAULT_REGION]
        return prices.get(instance_type, 0.10)

    def spot_price(self, instance_type: str, region: str) -> float:
        return self.instance_price(instance_type, region) * 0.2

    def storage_price(self, storage_type: str, region: str) -> float:
        return 0.04


class _FlatPriceProvider:
    """Single price table, no regional pricing, no spot market."""
    name = ""
    PRICES: Dict[str, float] = {}
    FALLBACK_PRICE = 0.0
    STORAGE_PRICE = 0.10

    def instance_price(self, instance_type: str, region: str) -> float:
        return self.PRICES.get(instance_type, self.FALLBACK_PRICE)

    def spot_price(self, instance_type: str, region: str) -> float:
        return self.instance_price(instance_type, region)

    def storage_price(self, storage_type: str, region: str) -> float:
        return self.STORAGE_PRICE


class DigitalOceanPriceProvider(_FlatPriceProvider):
    name = "digitalocean"
    FALLBACK_PRICE = 0.05
    PRICES = {
        "s-1vcpu-1gb": 0.007, "s-1vcpu-2gb": 0.014, "s-2vcpu-2gb": 0.021,
        "s-2vcpu-4gb": 0.028, "s-4vcpu-8gb": 0.056, "s-6vcpu-16gb": 0.111,
        "s-8vcpu-32gb": 0.167, "g-2vcpu-8gb": 0.089, "g-4vcpu-16gb": 0.179,
        "c-2": 0.050, "c-4": 0.100,
    }


class LinodePriceProvider(_FlatPriceProvider):
    name = "linode"
    FALLBACK_PRICE = 0.03
    PRICES = {
        "g6-nanode-1": 0.0075, "g6-standard-1": 0.015, "g6-standard-2": 0.030,
        "g6-standard-4": 0.060, "g6-standard-6": 0.120, "g6-standard-8": 0.240,
    }


def default_price_registry() -> StrategyRegistry:
    registry: StrategyRegistry = StrategyRegistry("price provider")
    for provider in (
        AWSPriceProvider(),
        GCPPriceProvider(),
        DigitalOceanPriceProvider(),
        LinodePriceProvider(),
    ):
        registry.register(provider)
    return registry


# ─────────────────────────────────────────────────────────────────────────────
# Estimator
# ─────────────────────────────────────────────────────────────────────────────

_PriceKey = Tuple[str, str, str, bool]
_Price = Tuple[float, float, float]      # hourly, spot savings %, monthly storage


class CostEstimator:
    """
    Node and cluster cost estimates from registered price providers.

    Usage:
        estimator = CostEstimator()
        estimate = estimator.estimate_node_cost("w-1", "aws", "m5.large", "us-east-1")
        cluster  = estimator.estimate_cluster_cost(pools, load_balancer_provider="aws")
    """

    def __init__(
        self,
        registry: Optional[StrategyRegistry] = None,
        event_bus: Optional[EventBus] = None,
        cache_ttl_s: float = DEFAULT_CACHE_TTL_S,
        clock=time.monotonic,
    ) -> None:
        self._registry = registry if registry is not None else default_price_registry()
        self._bus = event_bus
        self.cache_ttl_s = cache_ttl_s
        self._clock = clock
        self._cache: Dict[_PriceKey, Tuple[_Price, float]] = {}
        self._lock = threading.Lock()

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    def register_provider(self, provider) -> None:
        self._registry.register(provider)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    # ── Node estimate ─────────────────────────────────────────────────────────

    def estimate_node_cost(
        self,
        name: str,
        provider: str,
        instance_type: str,
        region: str = "",
        spot: bool = False,
    ) -> CostEstimate:
        """
        Raises:
            StrategyNotFoundError  — no price provider registered under provider.
            PriceUnavailableError  — the provider cannot price instance_type.
        """
        hourly, savings_pct, storage = self._price(provider, instance_type, region, spot)
        compute = hourly * HOURS_PER_MONTH
        monthly = compute + storage
        return CostEstimate(
            resource=name,
            hourly_cost=hourly,
            monthly_cost=monthly,
            yearly_cost=monthly * 12,
            is_spot=spot,
            spot_savings_pct=savings_pct,
            breakdown={"compute": compute, "storage": storage},
        )

    def _price(self, provider: str, instance_type: str, region: str, spot: bool) -> _Price:
        key = (provider, instance_type, region, spot)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and cached[1] > now:
                return cached[0]

        source = self._registry.get(provider)
        hourly = source.instance_price(instance_type, region)
        savings_pct = 0.0
        if spot:
            spot_price = source.spot_price(instance_type, region)
            if spot_price < hourly:
                savings_pct = (hourly - spot_price) / hourly * 100.0
                hourly = spot_price
        storage = source.storage_price("ssd", region) * STORAGE_GB_PER_NODE

        price = (hourly, savings_pct, storage)
        with self._lock:
            self._cache[key] = (price, now + self.cache_ttl_s)
        return price

    # ── Cluster estimate ──────────────────────────────────────────────────────

    def estimate_cluster_cost(
        self,
        pools: Sequence[NodePoolSpec],
        load_balancer_provider: Optional[str] = None,
    ) -> ClusterCostEstimate:
        """
        Estimate every node of every pool, plus load balancer and network.

        Nodes the providers cannot price are skipped with a warning rather
        than failing the whole estimate.
        """
        node_costs: List[CostEstimate] = []
        for pool in pools:
            for i in range(pool.count):
                name = f"{pool.name}-{i + 1}"
                try:
                    node_costs.append(self.estimate_node_cost(
                        name, pool.provider, pool.instance_type, pool.region, pool.spot
                    ))
                except LifecycleError as exc:
                    logger.warning("Skipping %s in cost estimate: %s", name, exc)

        monthly = np.array([c.monthly_cost for c in node_costs], dtype=float)
        total_monthly = float(monthly.sum())

        lb_cost = 0.0
        if load_balancer_provider:
            lb_cost = LOAD_BALANCER_MONTHLY.get(load_balancer_provider, DEFAULT_LOAD_BALANCER_MONTHLY)
        total_monthly += lb_cost + NETWORK_BASE_MONTHLY

        spot_savings = [c.spot_savings_pct for c in node_costs if c.is_spot]
        estimate = ClusterCostEstimate(
            total_monthly_cost=total_monthly,
            total_yearly_cost=total_monthly * 12,
            node_costs=node_costs,
            load_balancer_cost=lb_cost,
            network_cost=NETWORK_BASE_MONTHLY,
            spot_savings_pct=float(np.mean(spot_savings)) if spot_savings else 0.0,
        )
        estimate.recommendations = self.recommend(pools, estimate)

        emit_safely(self._bus, "cost_estimate_generated", "cost_estimator",
                    monthly_cost=estimate.total_monthly_cost,
                    yearly_cost=estimate.total_yearly_cost,
                    node_count=len(node_costs))
        logger.info("Cluster estimate: %d nodes, $%.2f/month",
                    len(node_costs), estimate.total_monthly_cost)
        return estimate

    @staticmethod
    def recommend(
        pools: Sequence[NodePoolSpec], estimate: ClusterCostEstimate
    ) -> List[CostRecommendation]:
        recommendations: List[CostRecommendation] = []
        priced_nodes = len(estimate.node_costs)

        if priced_nodes:
            for pool in pools:
                if pool.spot or "worker" not in pool.roles or pool.count == 0:
                    continue
                share = pool.count / priced_nodes
                recommendations.append(CostRecommendation(
                    type="spot_usage",
                    description=f"Consider using spot instances for pool '{pool.name}'",
                    potential_savings=estimate.total_monthly_cost * SPOT_USAGE_SAVINGS * share,
                    resource=pool.name,
                    current_config="on-demand",
                    recommended_config="spot/preemptible",
                ))

        for cost in estimate.node_costs:
            if cost.hourly_cost > RIGHT_SIZING_HOURLY_THRESHOLD:
                recommendations.append(CostRecommendation(
                    type="right_sizing",
                    description=f"Review sizing for node '{cost.resource}'",
                    potential_savings=cost.monthly_cost * RIGHT_SIZING_SAVINGS,
                    resource=cost.resource,
                ))

        if estimate.total_yearly_cost > RESERVED_YEARLY_THRESHOLD:
            recommendations.append(CostRecommendation(
                type="reserved_instances",
                description="Consider reserved instances for 1-year commitment",
                potential_savings=estimate.total_yearly_cost * RESERVED_SAVINGS,
                current_config="on-demand",
                recommended_config="1-year reserved",
            ))
        return recommendations

    def __repr__(self) -> str:
        return f"CostEstimator(providers={self._registry.list()}, ttl={self.cache_ttl_s}s)"
