"""
lifecycle/control_plane/upgrade_strategies.py
─────────────────────────────────────────────
How a single node is taken from the current version to the target version.

Strategy contract
──────────────────
    prepare_node(node, cancel)                 → None
    upgrade_node(node, target_version, cancel) → NodeRef   (the node now serving)
    validate_node(node, cancel)                → None
    get_batch_size(total_nodes, max_unavailable) → int     (nodes per wave)
    soak_seconds(wave_index)                   → float     (wait after upgrade)

The orchestrator calls these in that order for every node, then polls the
HealthChecker. Strategies never touch UpgradeStatus.

The four strategies
────────────────────
  rolling     cordon + drain → in-place upgrade → uncordon.
              batch = min(max_unavailable (≤0 ⇒ 1), ⌈total/4⌉)
                (10, 5) → 3      (4, 2) → 1

  blue-green  provision a replacement at the target version, wait for it,
              cordon + drain + decommission the original. batch = 1.

  surge       as blue-green, but draining the original is best-effort.
              batch = max_surge (default 1).

  canary      as rolling; batch = max(1, total·canary_percent/100). Nodes in
              wave 0 (the canary wave) soak for canary_validation_s after the
              upgrade, which is the gate for the rest of the rollout.

Collaborators
──────────────
NodeDrainer is optional (no drainer ⇒ no cordon/drain). NodeUpgrader is
required by rolling and canary, NodeProvisioner by blue-green and surge.
A missing required collaborator raises ConfigurationError when the strategy
is used, not when it is constructed, so the default registry can always be
built.
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import threading
import time
from typing import Dict, List, Optional

from lifecycle.shared.errors import ConfigurationError, LifecycleError
from lifecycle.shared.interfaces import (
    CommandRunner,
    NodeDrainer,
    NodeProvisioner,
    NodeUpgrader,
)
from lifecycle.shared.models import NodeRef
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Upgrade strategy constants ────────────────────────────────────────────────

DEFAULT_DRAIN_TIMEOUT_S: int = 300
"""Seconds kubectl drain may take before the node is failed."""

READY_WAIT_S: float = 30.0
"""Wait after provisioning a replacement before retiring the original."""

DEFAULT_CANARY_PERCENT: int = 10
"""Share of the pool upgraded in the canary wave."""

CANARY_VALIDATION_S: float = 600.0
"""Soak time for each canary node before validation (10 minutes)."""

MAX_BATCH_FRACTION: int = 4
"""Rolling upgrades never take down more than ⌈total / 4⌉ nodes at once."""


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class UpgradeFailedError(LifecycleError):
    """
    A node failed during an upgrade wave.

    Attributes:
        node_name:   The node that failed.
        phase:       prepare | upgrade | soak | validate | health
        cause:       The underlying exception (also chained as __cause__).
        rolled_back: True when auto-rollback restored the completed nodes.
    """

    def __init__(
        self,
        node_name: str,
        phase: str,
        cause: Optional[BaseException] = None,
        rolled_back: bool = False,
    ) -> None:
        self.node_name = node_name
        self.phase = phase
        self.cause = cause
        self.rolled_back = rolled_back
        message = f"node {node_name} failed during {phase}"
        if cause is not None:
            message = f"{message}: {cause}"
        if rolled_back:
            message = f"{message} (completed nodes rolled back)"
        super().__init__(message)


class UpgradeStateError(LifecycleError):
    """An operation is not valid in the orchestrator's current phase."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AlreadyInProgressError(UpgradeStateError):
    """Plan / execute / set_strategy while an execution is live."""

    def __init__(self, reason: str = "an upgrade is already in progress") -> None:
        super().__init__(reason)


class RollbackFailedError(LifecycleError):
    """
    Rolling a node back to the previous version failed. Terminal.

    Attributes:
        node_name: The node whose rollback failed.
        cause:     The rollback failure.
        original:  The UpgradeFailedError that triggered an auto-rollback,
                   None for an operator-initiated rollback.
    """

    def __init__(
        self,
        node_name: str,
        cause: BaseException,
        original: Optional[UpgradeFailedError] = None,
    ) -> None:
        self.node_name = node_name
        self.cause = cause
        self.original = original
        message = f"rollback of node {node_name} failed: {cause}"
        if original is not None:
            message = f"upgrade failed ({original}) and {message}"
        super().__init__(message)


class UpgradeCancelledError(LifecycleError):
    """The caller's cancel signal fired while a node was being worked on."""

    def __init__(self, node_name: str, phase: str = "") -> None:
        self.node_name = node_name
        self.phase = phase
        where = f" during {phase}" if phase else ""
        super().__init__(f"upgrade cancelled while working on node {node_name}{where}")


def wait_or_cancel(seconds: float, cancel: Optional[threading.Event], node_name: str) -> None:
    """Sleep for seconds, aborting with UpgradeCancelledError if cancel fires."""
    if seconds <= 0:
        if cancel is not None and cancel.is_set():
            raise UpgradeCancelledError(node_name)
        return
    if cancel is None:
        time.sleep(seconds)
    elif cancel.wait(seconds):
        raise UpgradeCancelledError(node_name)


# ─────────────────────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────────────────────

class UpgradeStrategy:
    """Shared collaborator wiring and cordon/drain helpers."""

    name = ""

    def __init__(
        self,
        drainer: Optional[NodeDrainer] = None,
        upgrader: Optional[NodeUpgrader] = None,
        provisioner: Optional[NodeProvisioner] = None,
        drain_timeout_s: int = DEFAULT_DRAIN_TIMEOUT_S,
    ) -> None:
        self.drainer = drainer
        self.upgrader = upgrader
        self.provisioner = provisioner
        self.drain_timeout_s = drain_timeout_s

    def prepare_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        raise NotImplementedError

    def upgrade_node(
        self, node: NodeRef, target_version: str, cancel: Optional[threading.Event] = None
    ) -> NodeRef:
        raise NotImplementedError

    def validate_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        raise NotImplementedError

    def get_batch_size(self, total_nodes: int, max_unavailable: int) -> int:
        raise NotImplementedError

    def soak_seconds(self, wave_index: int) -> float:
        return 0.0

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _require_upgrader(self) -> NodeUpgrader:
        if self.upgrader is None:
            raise ConfigurationError(f"{self.name} upgrade requires a NodeUpgrader")
        return self.upgrader

    def _require_provisioner(self) -> NodeProvisioner:
        if self.provisioner is None:
            raise ConfigurationError(f"{self.name} upgrade requires a NodeProvisioner")
        return self.provisioner

    def _cordon_and_drain(self, node: NodeRef) -> None:
        if self.drainer is None:
            return
        self.drainer.cordon(node.name)
        self.drainer.drain(node.name, self.drain_timeout_s)

    def _uncordon(self, node: NodeRef) -> None:
        if self.drainer is not None:
            self.drainer.uncordon(node.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RollingStrategy(UpgradeStrategy):
    name = "rolling"

    def prepare_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        self._cordon_and_drain(node)

    def upgrade_node(
        self, node: NodeRef, target_version: str, cancel: Optional[threading.Event] = None
    ) -> NodeRef:
        self._require_upgrader().upgrade_node(node, target_version)
        return node.model_copy(update={"version": target_version})

    def validate_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        self._uncordon(node)

    def get_batch_size(self, total_nodes: int, max_unavailable: int) -> int:
        if max_unavailable <= 0:
            max_unavailable = 1
        cap = max(1, math.ceil(total_nodes / MAX_BATCH_FRACTION))
        return min(max_unavailable, cap)


class CanaryStrategy(RollingStrategy):
    """Rolling with a small first wave that soaks before the rest proceed."""

    name = "canary"

    def __init__(
        self,
        drainer: Optional[NodeDrainer] = None,
        upgrader: Optional[NodeUpgrader] = None,
        provisioner: Optional[NodeProvisioner] = None,
        drain_timeout_s: int = DEFAULT_DRAIN_TIMEOUT_S,
        canary_percent: int = DEFAULT_CANARY_PERCENT,
        validation_s: float = CANARY_VALIDATION_S,
    ) -> None:
        super().__init__(drainer, upgrader, provisioner, drain_timeout_s)
        if not 0 < canary_percent <= 100:
            raise ConfigurationError(f"canary_percent must be in (0, 100], got {canary_percent}")
        self.canary_percent = canary_percent
        self.validation_s = validation_s

    def get_batch_size(self, total_nodes: int, max_unavailable: int) -> int:
        return max(1, (total_nodes * self.canary_percent) // 100)

    def soak_seconds(self, wave_index: int) -> float:
        return self.validation_s if wave_index == 0 else 0.0


class BlueGreenStrategy(UpgradeStrategy):
    """Replace each node with a freshly provisioned one at the target version."""

    name = "blue-green"
    drain_best_effort = False

    def __init__(
        self,
        drainer: Optional[NodeDrainer] = None,
        upgrader: Optional[NodeUpgrader] = None,
        provisioner: Optional[NodeProvisioner] = None,
        drain_timeout_s: int = DEFAULT_DRAIN_TIMEOUT_S,
        ready_wait_s: float = READY_WAIT_S,
    ) -> None:
        super().__init__(drainer, upgrader, provisioner, drain_timeout_s)
        self.ready_wait_s = ready_wait_s

    def prepare_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        # Nothing to drain yet: traffic moves only after the replacement is up.
        self._require_provisioner()

    def upgrade_node(
        self, node: NodeRef, target_version: str, cancel: Optional[threading.Event] = None
    ) -> NodeRef:
        provisioner = self._require_provisioner()
        replacement = provisioner.provision_replacement(node, target_version)
        logger.info("%s: provisioned %s to replace %s", self.name, replacement.name, node.name)
        wait_or_cancel(self.ready_wait_s, cancel, node.name)

        try:
            self._cordon_and_drain(node)
        except Exception as exc:
            if not self.drain_best_effort:
                raise
            logger.warning("%s: draining %s failed, continuing: %s", self.name, node.name, exc)

        provisioner.decommission(node)
        if not replacement.version:
            replacement = replacement.model_copy(update={"version": target_version})
        return replacement

    def validate_node(self, node: NodeRef, cancel: Optional[threading.Event] = None) -> None:
        return None

    def get_batch_size(self, total_nodes: int, max_unavailable: int) -> int:
        return 1


class SurgeStrategy(BlueGreenStrategy):
    name = "surge"
    drain_best_effort = True

    def __init__(self, *args, max_surge: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.max_surge = max(1, max_surge)

    def get_batch_size(self, total_nodes: int, max_unavailable: int) -> int:
        return self.max_surge


def default_upgrade_registry(
    drainer: Optional[NodeDrainer] = None,
    upgrader: Optional[NodeUpgrader] = None,
    provisioner: Optional[NodeProvisioner] = None,
    drain_timeout_s: int = DEFAULT_DRAIN_TIMEOUT_S,
    ready_wait_s: float = READY_WAIT_S,
    canary_percent: int = DEFAULT_CANARY_PERCENT,
    canary_validation_s: float = CANARY_VALIDATION_S,
    max_surge: int = 1,
) -> StrategyRegistry:
    """Registry of the four built-in strategies sharing one set of collaborators."""
    registry: StrategyRegistry = StrategyRegistry("upgrade")
    registry.register(RollingStrategy(drainer, upgrader, provisioner, drain_timeout_s))
    registry.register(BlueGreenStrategy(drainer, upgrader, provisioner, drain_timeout_s,
                                        ready_wait_s=ready_wait_s))
    registry.register(SurgeStrategy(drainer, upgrader, provisioner, drain_timeout_s,
                                    ready_wait_s=ready_wait_s, max_surge=max_surge))
    registry.register(CanaryStrategy(drainer, upgrader, provisioner, drain_timeout_s,
                                     canary_percent=canary_percent,
                                     validation_s=canary_validation_s))
    return registry


# ─────────────────────────────────────────────────────────────────────────────
# kubectl-backed NodeDrainer
# ─────────────────────────────────────────────────────────────────────────────

class SubprocessRunner:
    """
    CommandRunner over subprocess.run.

    env entries are layered over the current process environment. Non-zero
    exit raises CalledProcessError, a timeout raises TimeoutExpired.
    """

    def run(
        self,
        argv: List[str],
        timeout_s: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> str:
        merged = None
        if env:
            merged = dict(os.environ)
            merged.update(env)
        completed = subprocess.run(
            argv, capture_output=True, text=True, timeout=timeout_s, check=True, env=merged
        )
        return completed.stdout


class KubectlDrainer:
    """
    NodeDrainer that shells out to kubectl through a CommandRunner.

    Usage:
        drainer = KubectlDrainer(kubeconfig="/etc/kube/admin.conf")
        drainer.cordon("worker-1")
        drainer.drain("worker-1", timeout_s=300)
    """

    def __init__(
        self,
        kubeconfig: str = "",
        runner: Optional[CommandRunner] = None,
        kubectl: str = "kubectl",
    ) -> None:
        self.kubeconfig = kubeconfig
        self.kubectl = kubectl
        self._runner = runner if runner is not None else SubprocessRunner()

    def cordon(self, node_name: str) -> None:
        self._run(["cordon", node_name])

    def drain(self, node_name: str, timeout_s: int) -> None:
        self._run(
            [
                "drain", node_name,
                "--ignore-daemonsets",
                "--delete-emptydir-data",
                "--force",
                f"--timeout={timeout_s}s",
            ],
            # kubectl enforces its own timeout; leave headroom for startup
            timeout_s=timeout_s + 30,
        )

    def uncordon(self, node_name: str) -> None:
        self._run(["uncordon", node_name])

    def _run(self, args: List[str], timeout_s: Optional[float] = None) -> str:
        argv = [self.kubectl]
        if self.kubeconfig:
            argv += ["--kubeconfig", self.kubeconfig]
        argv += args
        logger.debug("kubectl: %s", " ".join(argv))
        return self._runner.run(argv, timeout_s)

    def __repr__(self) -> str:
        return f"KubectlDrainer(kubeconfig={self.kubeconfig!r})"
