"""
lifecycle/control_plane/spot_manager.py
───────────────────────────────────────
SpotManager: cost-aware creation of preemptible capacity.

What this is
─────────────
Spot / preemptible instances are cheap but come with two failure modes that
are not bugs: the provider has no inventory in the zone, or the current
price is above what the operator is willing to pay. Both are reified as
typed rejections so callers can branch on them:

    try:
        outcome = spot.create_spot_instance(node_spec, spot_config)
    except SpotRejectedError as rej:
        if rej.should_fallback():
            create_on_demand(node_spec)      # caller's policy
        else:
            raise

Creation flow
──────────────
  1. Resolve the provider adapter by node_spec.provider
     (ConfigurationError if unregistered).
  2. If candidate zones are given, price each one and let the strategy pick
     (select_best_zone). Otherwise node_spec.zone is used.
  3. is_spot_available() false           → CapacityUnavailableError
  4. strategy.is_price_acceptable() false → PriceTooHighError
  5. adapter.create_spot_instance(SpotRequest) → SpotOutcome

A cancel Event is checked between steps; a set event aborts with
SpotRequestCancelledError before the next provider call.

Allocation strategies
──────────────────────
  default       price ≤ max (no max ⇒ any price); spot share from
                spot_percentage (0 ⇒ 100%); cheapest zone.
  aggressive    price ≤ 120% of max; every node is spot when enabled.
  conservative  price ≤ 80% of max and a max is required; share is
                spot_percentage − 10 (0 ⇒ 50 − 10); median-price zone when
                more than two zones are priced.

Interruptions
──────────────
handle_interruption(provider, node_id) notifies every registered
InterruptionHandler first (best-effort: failures are logged and announced,
never block), then delegates termination to the provider adapter.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence

from lifecycle.shared.errors import ConfigurationError, LifecycleError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.interfaces import InterruptionHandler, SpotProviderAdapter
from lifecycle.shared.models import (
    NodeSpec,
    SpotConfig,
    SpotOutcome,
    SpotRejection,
    SpotRequest,
)
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Spot constants ────────────────────────────────────────────────────────────

AGGRESSIVE_PRICE_TOLERANCE: float = 1.2
"""Aggressive strategy accepts prices up to this multiple of max_spot_price."""

CONSERVATIVE_PRICE_TOLERANCE: float = 0.8
"""Conservative strategy accepts prices up to this multiple of max_spot_price."""

CONSERVATIVE_DEFAULT_PERCENTAGE: int = 50
CONSERVATIVE_SAFETY_MARGIN: int = 10


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class SpotRejectedError(LifecycleError):
    """
    Spot capacity could not be obtained for an expected, policy-level reason.

    Not an alarm: callers are expected to consult should_fallback() and retry
    on-demand when it is True.

    Attributes:
        reason:        SpotRejection value.
        zone, instance_type, spot_price, max_price: request context.
    """

    reason: SpotRejection = SpotRejection.CAPACITY_UNAVAILABLE

    def __init__(
        self,
        instance_type: str,
        zone: str,
        fallback_on_demand: bool,
        spot_price: Optional[float] = None,
        max_price: Optional[float] = None,
    ) -> None:
        self.instance_type = instance_type
        self.zone = zone
        self.fallback_on_demand = fallback_on_demand
        self.spot_price = spot_price
        self.max_price = max_price
        super().__init__(
            f"spot instance {instance_type} not available in zone {zone}: {self.reason.value}"
        )

    def should_fallback(self) -> bool:
        return self.fallback_on_demand


class CapacityUnavailableError(SpotRejectedError):
    reason = SpotRejection.CAPACITY_UNAVAILABLE


class PriceTooHighError(SpotRejectedError):
    reason = SpotRejection.PRICE_TOO_HIGH


class SpotRequestCancelledError(LifecycleError):
    """The caller's cancel signal was set before the request completed."""


# ─────────────────────────────────────────────────────────────────────────────
# Allocation strategies
# ─────────────────────────────────────────────────────────────────────────────

def _cheapest_zone(zones: Sequence[str], prices: Mapping[str, float]) -> str:
    """Pure minimum; first zone wins ties; first zone if nothing is priced."""
    best_zone = ""
    best_price: Optional[float] = None
    for zone in zones:
        price = prices.get(zone)
        if price is None:
            continue
        if best_price is None or price < best_price:
            best_zone, best_price = zone, price
    if not best_zone and zones:
        return zones[0]
    return best_zone


class DefaultSpotStrategy:
    name = "default"

    def is_price_acceptable(self, spot_config: SpotConfig, current_price: float) -> bool:
        if spot_config.max_spot_price > 0:
            return current_price <= spot_config.max_spot_price
        return True

    def should_use_spot(self, spot_config: SpotConfig, node_index: int, total_nodes: int) -> bool:
        if not spot_config.enabled:
            return False
        percentage = spot_config.spot_percentage or 100
        return node_index < (total_nodes * percentage) // 100

    def select_best_zone(self, zones: Sequence[str], prices: Mapping[str, float]) -> str:
        return _cheapest_zone(zones, prices)


class AggressiveSpotStrategy(DefaultSpotStrategy):
    name = "aggressive"

    def is_price_acceptable(self, spot_config: SpotConfig, current_price: float) -> bool:
        if spot_config.max_spot_price > 0:
            return current_price <= spot_config.max_spot_price * AGGRESSIVE_PRICE_TOLERANCE
        return True

    def should_use_spot(self, spot_config: SpotConfig, node_index: int, total_nodes: int) -> bool:
        return spot_config.enabled


class ConservativeSpotStrategy(DefaultSpotStrategy):
    """Avoids both the cheapest (volatile) and the most expensive zone."""

    name = "conservative"

    def is_price_acceptable(self, spot_config: SpotConfig, current_price: float) -> bool:
        if spot_config.max_spot_price > 0:
            return current_price <= spot_config.max_spot_price * CONSERVATIVE_PRICE_TOLERANCE
        return False

    def should_use_spot(self, spot_config: SpotConfig, node_index: int, total_nodes: int) -> bool:
        if not spot_config.enabled:
            return False
        percentage = spot_config.spot_percentage or CONSERVATIVE_DEFAULT_PERCENTAGE
        safe = max(0, percentage - CONSERVATIVE_SAFETY_MARGIN)
        return node_index < (total_nodes * safe) // 100

    def select_best_zone(self, zones: Sequence[str], prices: Mapping[str, float]) -> str:
        if len(zones) <= 2:
            return _cheapest_zone(zones, prices)
        priced = [(prices[zone], i, zone) for i, zone in enumerate(zones) if zone in prices]
        if not priced:
            return zones[0]
        priced.sort()
        return priced[len(priced) // 2][2]


def default_spot_registry() -> StrategyRegistry:
    registry: StrategyRegistry = StrategyRegistry("spot")
    registry.register(DefaultSpotStrategy())
    registry.register(AggressiveSpotStrategy())
    registry.register(ConservativeSpotStrategy())
    return registry


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────

class SpotManager:
    """
    Provider-adapter table + allocation strategy + interruption fan-out.

    Thread safety:
        The adapter table, handler list and active strategy are guarded by
        one lock, held only for lookups and mutations. Provider calls run
        outside it.
    """

    def __init__(
        self,
        strategy_name: str = "default",
        registry: Optional[StrategyRegistry] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._registry = registry if registry is not None else default_spot_registry()
        self._strategy = self._registry.get(strategy_name or "default")
        self._bus = event_bus
        self._lock = threading.RLock()
        self._providers: Dict[str, SpotProviderAdapter] = {}
        self._handlers: List[InterruptionHandler] = []

    # ── Registration ──────────────────────────────────────────────────────────

    def register_provider(self, name: str, adapter: SpotProviderAdapter) -> None:
        with self._lock:
            self._providers[name] = adapter
        logger.info("Spot provider registered: %s", name)

    def register_interruption_handler(self, handler: InterruptionHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def set_strategy(self, name: str) -> None:
        strategy = self._registry.get(name)
        with self._lock:
            self._strategy = strategy

    @property
    def strategy(self):
        with self._lock:
            return self._strategy

    def providers(self) -> List[str]:
        with self._lock:
            return list(self._providers)

    # ── Creation ──────────────────────────────────────────────────────────────

    def create_spot_instance(
        self,
        node_spec: NodeSpec,
        spot_config: SpotConfig,
        candidate_zones: Optional[Sequence[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SpotOutcome:
        """
        Create one spot instance or raise a typed rejection.

        Raises:
            ConfigurationError:        provider not registered, or spot disabled.
            CapacityUnavailableError:  no spot inventory in the chosen zone.
            PriceTooHighError:         current price rejected by the strategy.
            SpotRequestCancelledError: cancel was set between steps.
        """
        adapter = self._adapter(node_spec.provider)
        if not spot_config.enabled:
            raise ConfigurationError(f"spot is disabled for node {node_spec.name!r}")
        strategy = self.strategy
        instance_type = node_spec.instance_type

        zone = node_spec.zone
        if candidate_zones:
            _check_cancel(cancel, node_spec)
            prices = self._price_zones(adapter, instance_type, candidate_zones)
            zone = strategy.select_best_zone(list(candidate_zones), prices)
            logger.debug("Spot zone for %s selected: %s (%s)", node_spec.name, zone, prices)

        _check_cancel(cancel, node_spec)
        if not adapter.is_spot_available(instance_type, zone):
            emit_safely(self._bus, "spot_capacity_unavailable", "spot_manager",
                        instance_type=instance_type, zone=zone,
                        fallback=spot_config.fallback_on_demand)
            logger.warning("No spot capacity for %s in %s", instance_type, zone)
            raise CapacityUnavailableError(instance_type, zone, spot_config.fallback_on_demand)

        _check_cancel(cancel, node_spec)
        price = float(adapter.get_spot_price(instance_type, zone))
        if not strategy.is_price_acceptable(spot_config, price):
            emit_safely(self._bus, "spot_price_too_high", "spot_manager",
                        instance_type=instance_type, zone=zone, spot_price=price,
                        max_price=spot_config.max_spot_price,
                        fallback=spot_config.fallback_on_demand)
            logger.warning(
                "Spot price %.4f for %s in %s exceeds policy (max %.4f)",
                price, instance_type, zone, spot_config.max_spot_price,
            )
            raise PriceTooHighError(
                instance_type, zone, spot_config.fallback_on_demand,
                spot_price=price, max_price=spot_config.max_spot_price,
            )

        request = SpotRequest(
            node_spec=node_spec.model_copy(update={"zone": zone, "spot": True}),
            zone=zone,
            max_price_per_hour=spot_config.max_spot_price,
            fallback_allowed=spot_config.fallback_on_demand,
        )
        _check_cancel(cancel, node_spec)
        emit_safely(self._bus, "spot_instance_creating", "spot_manager",
                    instance_type=instance_type, zone=zone, spot_price=price)
        try:
            instance_ref = adapter.create_spot_instance(request)
        except Exception as exc:
            emit_safely(self._bus, "spot_instance_create_failed", "spot_manager",
                        instance_type=instance_type, zone=zone, error=str(exc))
            raise

        outcome = SpotOutcome(
            instance_ref=instance_ref, actual_price=price, zone=zone, provider=node_spec.provider
        )
        logger.info("Spot instance %s created in %s at $%.4f/h", instance_ref, zone, price)
        emit_safely(self._bus, "spot_instance_created", "spot_manager",
                    instance_id=instance_ref, instance_type=instance_type,
                    zone=zone, spot_price=price)
        return outcome

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_spot_price(self, provider: str, instance_type: str, zone: str) -> float:
        return float(self._adapter(provider).get_spot_price(instance_type, zone))

    def is_spot_available(self, provider: str, instance_type: str, zone: str) -> bool:
        return bool(self._adapter(provider).is_spot_available(instance_type, zone))

    def should_use_spot(self, spot_config: SpotConfig, node_index: int, total_nodes: int) -> bool:
        return self.strategy.should_use_spot(spot_config, node_index, total_nodes)

    # ── Interruptions ─────────────────────────────────────────────────────────

    def handle_interruption(self, provider: str, node_id: str) -> None:
        adapter = self._adapter(provider)
        with self._lock:
            handlers = list(self._handlers)

        emit_safely(self._bus, "spot_interruption_received", "spot_manager",
                    node_id=node_id, provider=provider)
        for handler in handlers:
            try:
                handler.handle_interruption(node_id)
            except Exception as exc:
                handler_name = getattr(handler, "name", type(handler).__name__)
                logger.warning(
                    "Interruption handler %s failed for %s: %s", handler_name, node_id, exc
                )
                emit_safely(self._bus, "spot_interruption_handler_failed", "spot_manager",
                            node_id=node_id, handler=handler_name, error=str(exc))

        adapter.handle_interruption(node_id)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _adapter(self, provider: str) -> SpotProviderAdapter:
        with self._lock:
            adapter = self._providers.get(provider)
        if adapter is None:
            raise ConfigurationError(f"spot provider {provider!r} not registered")
        return adapter

    @staticmethod
    def _price_zones(
        adapter: SpotProviderAdapter, instance_type: str, zones: Sequence[str]
    ) -> Dict[str, float]:
        prices: Dict[str, float] = {}
        for zone in zones:
            try:
                prices[zone] = float(adapter.get_spot_price(instance_type, zone))
            except Exception as exc:
                logger.warning("No spot price for %s in %s: %s", instance_type, zone, exc)
        return prices

    def __repr__(self) -> str:
        return f"SpotManager(strategy={self.strategy.name!r}, providers={self.providers()})"


def _check_cancel(cancel: Optional[threading.Event], node_spec: NodeSpec) -> None:
    if cancel is not None and cancel.is_set():
        raise SpotRequestCancelledError(f"spot request for {node_spec.name!r} cancelled")
