"""
lifecycle/control_plane — the components that act on a running cluster.

Public API:

    Scaling:
        AutoscalingEngine      — metric-driven scale up / down with cooldowns
        NodePoolScaler         — NodeScaler built from create / delete callables

    Spot capacity:
        SpotManager            — zone selection, price policy, interruptions
        SpotRejectedError      — typed rejection with should_fallback()

    Upgrades:
        UpgradeOrchestrator    — plan / execute / pause / resume / stop / rollback
        KubectlDrainer         — NodeDrainer backed by kubectl

    Hooks, costs, admission:
        HookEngine             — priority-ordered, retryable lifecycle hooks
        CostEstimator          — static-price node and cluster estimates
        admit_config()         — semantic ControlPlaneConfig checks

    Facade:
        LifecycleService       — wires all of the above from one config
"""

from lifecycle.control_plane.admission import admit_config
from lifecycle.control_plane.autoscaler import AutoscalingEngine, NodePoolScaler
from lifecycle.control_plane.cost_estimator import CostEstimator
from lifecycle.control_plane.hook_engine import HookEngine
from lifecycle.control_plane.lifecycle_service import LifecycleService
from lifecycle.control_plane.spot_manager import SpotManager, SpotRejectedError
from lifecycle.control_plane.upgrade_orchestrator import UpgradeOrchestrator
from lifecycle.control_plane.upgrade_strategies import KubectlDrainer

__all__ = [
    "AutoscalingEngine",
    "NodePoolScaler",
    "SpotManager",
    "SpotRejectedError",
    "UpgradeOrchestrator",
    "KubectlDrainer",
    "HookEngine",
    "CostEstimator",
    "admit_config",
    "LifecycleService",
]
