"""
lifecycle/control_plane/lifecycle_service.py
─────────────────────────────────────────────
LifecycleService: one object that wires every control plane component.

What this is
─────────────
Each component (distributor, autoscaler, spot manager, upgrade orchestrator,
hook engine, cost estimator) works on its own. The service builds them from
one ControlPlaneConfig, shares one EventBus and one HookEngine between them,
and exposes the operations a provisioning driver needs:

    distribute_nodes(total, zones)         → Dict[str, int]
    create_spot_instance(node_spec)        → SpotOutcome
    plan_upgrade(target_version, nodes)    → UpgradePlan
    execute_upgrade(plan)                  → UpgradeStatus
    trigger_hook(event, payload)           → List[HookResult]
    estimate_cluster_cost(pools)           → ClusterCostEstimate
    start() / stop() / shutdown()

Wiring
───────
  1. admit_config(config)                     (skipped with admit=False)
  2. EventBus                                  (owned unless one is passed)
  3. HookEngine ← config.hooks                 (shared by everything below)
  4. ZoneDistributor(config.distribution_strategy)
  5. SpotManager(config.spot_strategy)
  6. CostEstimator
  7. AutoscalingEngine   only when scaler AND metrics are given
  8. UpgradeOrchestrator only when a drainer, node_upgrader or provisioner
                         is given

Components that were not wired raise ConfigurationError when their
operation is called. Hooks never do: an event without hooks is a no-op.

Spot fallback
──────────────
create_spot_instance does NOT fall back to on-demand itself. A rejection
reaches the caller as SpotRejectedError and err.should_fallback() tells it
whether the config allows retrying as on-demand. Creating on-demand
capacity is the provisioning driver's job.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from lifecycle.shared.errors import ConfigurationError, LifecycleError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.interfaces import (
    HealthChecker,
    MetricsCollector,
    NodeDrainer,
    NodeProvisioner,
    NodeScaler,
    NodeUpgrader,
)
from lifecycle.shared.models import (
    ClusterCostEstimate,
    ControlPlaneConfig,
    HookEvent,
    HookResult,
    NodePoolSpec,
    NodeRef,
    NodeSpec,
    SpotConfig,
    SpotOutcome,
    UpgradePlan,
    UpgradeStatus,
    ZoneDistribution,
)
from lifecycle.control_plane.admission import admit_config
from lifecycle.control_plane.autoscaler import AutoscalingEngine
from lifecycle.control_plane.cost_estimator import CostEstimator
from lifecycle.control_plane.hook_engine import HookEngine
from lifecycle.control_plane.spot_manager import SpotManager
from lifecycle.control_plane.upgrade_orchestrator import UpgradeOrchestrator
from policy_core.distribution import ZoneDistributor
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)


class LifecycleService:
    """
    Facade over the control plane components.

    Args:
        config:         ControlPlaneConfig. Defaults to all defaults.
        event_bus:      Shared bus. When omitted the service owns one and
                        shuts it down in shutdown().
        scaler, metrics:
                        Autoscaling collaborators. Both are needed to wire
                        the autoscaler.
        drainer, node_upgrader, provisioner, health_checker:
                        Upgrade collaborators.
        admit:          Run admission checks on config (default True).
        **components:   Prebuilt components override the defaults:
                        hook_engine, distributor, spot_manager,
                        cost_estimator, autoscaler, upgrader.
                        scaling_registry resolves config.scaling_strategy
                        (and is what admission checks it against), so a
                        registered CustomMetricStrategy can be named there.

    Thread safety:
        start/stop are serialised by a lock. Every other call delegates to a
        component that guards its own state.
    """

    def __init__(
        self,
        config: Optional[ControlPlaneConfig] = None,
        event_bus: Optional[EventBus] = None,
        scaler: Optional[NodeScaler] = None,
        metrics: Optional[MetricsCollector] = None,
        drainer: Optional[NodeDrainer] = None,
        node_upgrader: Optional[NodeUpgrader] = None,
        provisioner: Optional[NodeProvisioner] = None,
        health_checker: Optional[HealthChecker] = None,
        admit: bool = True,
        **components: Any,
    ) -> None:
        self.config = config or ControlPlaneConfig()
        unknown = set(components) - {
            "hook_engine", "distributor", "spot_manager",
            "cost_estimator", "autoscaler", "upgrader", "scaling_registry",
        }
        if unknown:
            raise TypeError(f"unexpected components: {', '.join(sorted(unknown))}")

        scaling_registry: Optional[StrategyRegistry] = components.get("scaling_registry")
        if admit:
            known = {"scaling": scaling_registry.list()} if scaling_registry is not None else None
            admit_config(self.config, known_strategies=known)

        self._owns_bus = event_bus is None
        self.event_bus = event_bus if event_bus is not None else EventBus()

        # ── Hooks first: every other component fires them ─────────────────────
        self.hooks: HookEngine = components.get("hook_engine") or HookEngine(event_bus=self.event_bus)
        self.hooks.register_hooks_from_config(self.config.hooks)

        self.distributor: ZoneDistributor = components.get("distributor") or ZoneDistributor(
            self.config.distribution_strategy, event_bus=self.event_bus
        )
        self.spot: SpotManager = components.get("spot_manager") or SpotManager(
            self.config.spot_strategy, event_bus=self.event_bus
        )
        self.costs: CostEstimator = components.get("cost_estimator") or CostEstimator(
            event_bus=self.event_bus
        )

        self.autoscaler: Optional[AutoscalingEngine] = components.get("autoscaler")
        if self.autoscaler is None and scaler is not None and metrics is not None:
            self.autoscaler = AutoscalingEngine(
                self.config.autoscaling,
                scaler,
                metrics,
                strategy_name=self.config.scaling_strategy,
                registry=scaling_registry,
                event_bus=self.event_bus,
                hook_engine=self.hooks,
            )

        self.upgrader: Optional[UpgradeOrchestrator] = components.get("upgrader")
        if self.upgrader is None and any(c is not None for c in (drainer, node_upgrader, provisioner)):
            self.upgrader = UpgradeOrchestrator(
                self.config.upgrade,
                drainer=drainer,
                upgrader=node_upgrader,
                provisioner=provisioner,
                health_checker=health_checker,
                event_bus=self.event_bus,
                hook_engine=self.hooks,
            )

        self._lock = threading.Lock()
        self._started = False
        logger.info(
            "LifecycleService initialised (autoscaler=%s, upgrader=%s, spot providers=%d)",
            self.autoscaler is not None, self.upgrader is not None, len(self.spot.providers()),
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start background work: the autoscaling loop when enabled."""
        with self._lock:
            if self._started:
                raise LifecycleError("lifecycle service already started")
            if self.autoscaler is not None and self.config.autoscaling.enabled:
                self.autoscaler.start()
            self._started = True
        emit_safely(self.event_bus, "lifecycle_started", "lifecycle_service",
                    autoscaling=self.autoscaler is not None and self.autoscaler.is_running)

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            if self.autoscaler is not None:
                self.autoscaler.stop()
            self._started = False
        emit_safely(self.event_bus, "lifecycle_stopped", "lifecycle_service")

    def shutdown(self) -> None:
        """stop(), then release the owned EventBus."""
        self.stop()
        if self._owns_bus:
            self.event_bus.shutdown()

    @property
    def is_started(self) -> bool:
        with self._lock:
            return self._started

    # ── Placement ─────────────────────────────────────────────────────────────

    def distribute_nodes(
        self,
        total_nodes: int,
        zones: Union[Sequence[str], Sequence[ZoneDistribution]],
        weights: Optional[Mapping[str, int]] = None,
    ) -> Dict[str, int]:
        """
        Spread total_nodes over zones with the configured strategy.

        zones may be plain names or ZoneDistribution entries from a pool's
        explicit layout.
        """
        zone_list = list(zones)
        if zone_list and isinstance(zone_list[0], ZoneDistribution):
            plan = self.distributor.distribute_with_config(total_nodes, zone_list)
        else:
            plan = self.distributor.distribute(total_nodes, zone_list, weights)
        return dict(plan.zone_counts)

    # ── Spot capacity ─────────────────────────────────────────────────────────

    def create_spot_instance(
        self,
        node_spec: NodeSpec,
        spot_config: Optional[SpotConfig] = None,
        candidate_zones: Optional[Sequence[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SpotOutcome:
        """
        Create one spot node and fire post_node_create hooks for it.

        Raises whatever SpotManager.create_spot_instance raises; hooks only
        fire on success.
        """
        outcome = self.spot.create_spot_instance(
            node_spec, spot_config or self.config.spot, candidate_zones, cancel
        )
        self.hooks.trigger_hooks(HookEvent.POST_NODE_CREATE, {
            "node_name": node_spec.name,
            "is_spot": True,
            "instance_id": outcome.instance_ref,
            "zone": outcome.zone,
            "provider": outcome.provider,
        })
        return outcome

    def handle_spot_interruption(self, provider: str, node_id: str) -> None:
        self.spot.handle_interruption(provider, node_id)

    # ── Upgrades ──────────────────────────────────────────────────────────────

    def plan_upgrade(
        self,
        target_version: str,
        nodes: Sequence[Union[NodeRef, str]],
        current_version: Optional[str] = None,
    ) -> UpgradePlan:
        return self._require_upgrader().plan(target_version, nodes, current_version)

    def execute_upgrade(
        self, plan: UpgradePlan, cancel: Optional[threading.Event] = None
    ) -> UpgradeStatus:
        return self._require_upgrader().execute(plan, cancel)

    def rollback_upgrade(
        self, plan: UpgradePlan, cancel: Optional[threading.Event] = None
    ) -> UpgradeStatus:
        return self._require_upgrader().rollback(plan, cancel)

    def get_upgrade_status(self) -> UpgradeStatus:
        return self._require_upgrader().get_status()

    def _require_upgrader(self) -> UpgradeOrchestrator:
        if self.upgrader is None:
            raise ConfigurationError("upgrade orchestrator not configured")
        return self.upgrader

    # ── Hooks and costs ───────────────────────────────────────────────────────

    def trigger_hook(
        self, event: Union[HookEvent, str], payload: Optional[Mapping[str, Any]] = None
    ) -> List[HookResult]:
        return self.hooks.trigger_hooks(event, payload)

    def estimate_cluster_cost(
        self,
        pools: Sequence[NodePoolSpec],
        load_balancer_provider: Optional[str] = None,
    ) -> ClusterCostEstimate:
        return self.costs.estimate_cluster_cost(pools, load_balancer_provider)

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        upgrade_phase = None
        if self.upgrader is not None and self.upgrader.get_plan() is not None:
            upgrade_phase = self.upgrader.get_status().phase.value
        return {
            "started": self.is_started,
            "distribution_strategy": self.distributor.strategy_name,
            "spot_strategy": self.spot.strategy.name,
            "spot_providers": self.spot.providers(),
            "autoscaling": self.autoscaler.get_status() if self.autoscaler is not None else None,
            "upgrade_phase": upgrade_phase,
        }

    def __repr__(self) -> str:
        return (
            f"LifecycleService(started={self.is_started}, "
            f"autoscaler={self.autoscaler is not None}, upgrader={self.upgrader is not None})"
        )
