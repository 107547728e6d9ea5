"""
lifecycle/shared/interfaces.py
──────────────────────────────
Narrow capability contracts for the collaborators the control plane drives.

The control plane never talks to a cloud SDK, a Kubernetes client or a
metrics backend directly. Every such dependency is injected as an object
satisfying one of the protocols below. Each protocol covers exactly one
method family; keep it that way.

  MetricsCollector      → autoscaler         (utilisation readings)
  NodeScaler            → autoscaler         (apply a scaling decision)
  NodeDrainer           → upgrade strategies (cordon / drain / uncordon)
  HealthChecker         → upgrade orchestrator
  NodeUpgrader          → in-place upgrades  (rolling, canary)
  NodeProvisioner       → node swaps         (blue-green, surge)
  SpotProviderAdapter   → spot manager       (one per cloud provider)
  InterruptionHandler   → spot manager       (observers of interruption notices)
  HookExecutor          → hook engine        (script / kubectl / http)
  CommandRunner         → kubectl drainer    (argv in, stdout out)

Structural typing (typing.Protocol): tests pass small fake classes and
nothing has to inherit from these.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from lifecycle.shared.models import HookAction, NodeRef, SpotRequest


@runtime_checkable
class MetricsCollector(Protocol):
    """Percentages in [0, 100]. Raise on transient collection failure."""

    def get_cpu_utilization(self) -> float: ...

    def get_memory_utilization(self) -> float: ...

    def get_custom_metric(self, name: str) -> float: ...


@runtime_checkable
class NodeScaler(Protocol):
    def get_current_count(self) -> int: ...

    def scale_up(self, count: int) -> None: ...

    def scale_down(self, count: int) -> None: ...


@runtime_checkable
class NodeDrainer(Protocol):
    def cordon(self, node_name: str) -> None: ...

    def drain(self, node_name: str, timeout_s: int) -> None: ...

    def uncordon(self, node_name: str) -> None: ...


@runtime_checkable
class HealthChecker(Protocol):
    def is_node_healthy(self, node_name: str) -> bool: ...


@runtime_checkable
class NodeUpgrader(Protocol):
    def upgrade_node(self, node: NodeRef, target_version: str) -> None: ...


@runtime_checkable
class NodeProvisioner(Protocol):
    """Create a replacement node and retire the original."""

    def provision_replacement(self, node: NodeRef, target_version: str) -> NodeRef: ...

    def decommission(self, node: NodeRef) -> None: ...


@runtime_checkable
class SpotProviderAdapter(Protocol):
    """Spot operations for one cloud provider, keyed by provider name."""

    def create_spot_instance(self, request: SpotRequest) -> str: ...

    def get_spot_price(self, instance_type: str, zone: str) -> float: ...

    def is_spot_available(self, instance_type: str, zone: str) -> bool: ...

    def handle_interruption(self, node_id: str) -> None: ...


@runtime_checkable
class InterruptionHandler(Protocol):
    name: str

    def handle_interruption(self, node_id: str) -> None: ...


@runtime_checkable
class HookExecutor(Protocol):
    def execute(self, action: HookAction, payload: Dict[str, Any], timeout_s: float) -> None: ...


@runtime_checkable
class CommandRunner(Protocol):
    def run(
        self,
        argv: List[str],
        timeout_s: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> str: ...


__all__ = [
    "MetricsCollector",
    "NodeScaler",
    "NodeDrainer",
    "HealthChecker",
    "NodeUpgrader",
    "NodeProvisioner",
    "SpotProviderAdapter",
    "InterruptionHandler",
    "HookExecutor",
    "CommandRunner",
]
