"""
lifecycle/control_plane/upgrade_orchestrator.py
───────────────────────────────────────────────
UpgradeOrchestrator: the wave-by-wave version rollout state machine.

State machine
──────────────
    planned ──execute──▶ executing ──▶ completed
                           │  ▲
                     PAUSE │  │ RESUME
                           ▼  │
                          paused ──STOP──▶ stopped

    executing ──node failure──▶ paused_on_failure   (pause_on_failure)
                              ▶ rolling_back ──▶ rolled_back | failed
                                                      (auto_rollback)
                              ▶ failed              (neither: propagate)
    executing ──STOP / cancel──▶ stopped

Only plan(), execute(), pause(), resume(), stop(), rollback() and the
failure handling inside execute() move the phase.

Execution order
────────────────
  • Waves run strictly in ascending order; nodes inside a wave run strictly
    one after another. No intra-wave parallelism.
  • Per node: prepare → upgrade → soak → validate → health poll.
    Health is polled every health_check_interval_s until healthy or
    health_timeout_s elapses (timeout fails the node).
  • A node failure stops its wave. The failure policy then decides:
    pause for the operator, roll back, or propagate.
  • Progress after wave k (0-based) of W: (k + 1) · 100 // W.
  • Nodes already `completed` in the plan are skipped, so executing the same
    plan again after paused_on_failure picks up from the failed wave.

Control signals
────────────────
pause() / resume() / stop() put PAUSE / RESUME / STOP on a single queue.Queue
without blocking. The executing thread drains it before each wave. A PAUSE
blocks that thread until RESUME (emits upgrade_resumed) or STOP arrives.
The queue is emptied at the start of every execute(), so a stale signal
never leaks into the next run.

Cancellation
─────────────
execute(plan, cancel=threading.Event()). The event is checked before each
step, during soak waits, during health polling and while paused. A set event
abandons the current node (or, while paused, the next pending one) with
UpgradeCancelledError naming it, and the phase becomes stopped.
Cancellation bypasses the failure policy.

Snapshots
──────────
One UpgradeStatus is live per orchestrator and only mutated under
self._lock. get_status() returns a deep copy, never the live object.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from lifecycle.shared.errors import ConfigurationError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.interfaces import (
    HealthChecker,
    NodeDrainer,
    NodeProvisioner,
    NodeUpgrader,
)
from lifecycle.shared.models import (
    HookEvent,
    NodeRef,
    NodeUpgradeStatus,
    UpgradeConfig,
    UpgradeNodePlan,
    UpgradePhase,
    UpgradePlan,
    UpgradeStatus,
)
from lifecycle.control_plane.upgrade_strategies import (
    AlreadyInProgressError,
    RollbackFailedError,
    UpgradeCancelledError,
    UpgradeFailedError,
    UpgradeStateError,
    default_upgrade_registry,
    wait_or_cancel,
)
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Orchestrator constants ────────────────────────────────────────────────────

HEALTH_CHECK_TIMEOUT_S: float = 300.0
"""A node that is not healthy within 5 minutes of validation fails."""

DEFAULT_CURRENT_VERSION: str = "v1.28.0"
"""Assumed current version when the nodes carry none (or disagree)."""

ESTIMATED_SECONDS_PER_NODE: int = 5 * 60
"""Drain + upgrade + validation estimate used for estimated_duration_s."""

_PAUSE_POLL_S: float = 0.1


class Signal(str, enum.Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class UpgradeOrchestrator:
    """
    Runs one UpgradePlan at a time.

    Usage:
        orch = UpgradeOrchestrator(UpgradeConfig(strategy="rolling"),
                                   drainer=drainer, upgrader=upgrader,
                                   health_checker=checker)
        plan = orch.plan("v1.29.0", nodes)
        orch.execute(plan)                 # blocks until done / raises
        orch.get_status().phase            # UpgradePhase.COMPLETED

    Args:
        config:          UpgradeConfig (strategy, max_unavailable, failure policy).
        drainer, upgrader, provisioner:
                         Collaborators handed to the default strategy registry.
        health_checker:  Optional. Without one, the health poll is skipped.
        registry:        Custom strategy registry (overrides the collaborators).
        event_bus:       Optional EventBus for upgrade_* / node_* events.
        hook_engine:     Optional HookEngine; pre_upgrade / post_upgrade hooks.
        health_timeout_s, ready_wait_s, canary_validation_s:
                         Timing knobs (tests set them near zero).
    """

    def __init__(
        self,
        config: Optional[UpgradeConfig] = None,
        drainer: Optional[NodeDrainer] = None,
        upgrader: Optional[NodeUpgrader] = None,
        provisioner: Optional[NodeProvisioner] = None,
        health_checker: Optional[HealthChecker] = None,
        registry: Optional[StrategyRegistry] = None,
        event_bus: Optional[EventBus] = None,
        hook_engine: Optional[Any] = None,
        health_timeout_s: float = HEALTH_CHECK_TIMEOUT_S,
        ready_wait_s: Optional[float] = None,
        canary_validation_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or UpgradeConfig()
        if registry is None:
            extra: Dict[str, Any] = {}
            if ready_wait_s is not None:
                extra["ready_wait_s"] = ready_wait_s
            if canary_validation_s is not None:
                extra["canary_validation_s"] = canary_validation_s
            registry = default_upgrade_registry(
                drainer=drainer,
                upgrader=upgrader,
                provisioner=provisioner,
                drain_timeout_s=self.config.drain_timeout_s,
                max_surge=self.config.max_surge,
                **extra,
            )
        self._registry = registry
        self._strategy = self._registry.get(self.config.strategy or "rolling")
        self._health = health_checker
        self._bus = event_bus
        self._hooks = hook_engine
        self._health_timeout_s = health_timeout_s
        self._clock = clock

        self._lock = threading.RLock()
        self._running = False
        self._plan: Optional[UpgradePlan] = None
        self._status: Optional[UpgradeStatus] = None
        self._refs: Dict[str, NodeRef] = {}
        self._control: "queue.Queue[Signal]" = queue.Queue()

    # ── Strategy management ───────────────────────────────────────────────────

    @property
    def strategy_name(self) -> str:
        with self._lock:
            return self._strategy.name

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def set_strategy(self, name: str) -> None:
        with self._lock:
            if self._running:
                raise AlreadyInProgressError(
                    "cannot change strategy while an upgrade is in progress"
                )
            self._strategy = self._registry.get(name)
        logger.info("Upgrade strategy set to %s", name)

    # ── Planning ──────────────────────────────────────────────────────────────

    def plan(
        self,
        target_version: str,
        nodes: Sequence[Union[NodeRef, str]],
        current_version: Optional[str] = None,
    ) -> UpgradePlan:
        """
        Assign nodes to waves with the active strategy's batch size.

        Nodes are assigned sequentially in input order, batch_size per wave.

        Raises:
            AlreadyInProgressError: an execution is live.
            ConfigurationError:     empty node list.
        """
        refs = [n if isinstance(n, NodeRef) else NodeRef(name=n) for n in nodes]
        if not refs:
            raise ConfigurationError("no nodes to upgrade")

        with self._lock:
            if self._running:
                raise AlreadyInProgressError()
            strategy = self._strategy
            max_unavailable = self.config.max_unavailable if self.config.max_unavailable > 0 else 1
            batch_size = max(1, strategy.get_batch_size(len(refs), max_unavailable))

            node_plans = [
                UpgradeNodePlan(node=ref, order=i, wave=i // batch_size)
                for i, ref in enumerate(refs)
            ]
            waves = node_plans[-1].wave + 1
            plan = UpgradePlan(
                current_version=current_version or _current_version(refs),
                target_version=target_version,
                strategy_name=strategy.name,
                nodes=node_plans,
                estimated_duration_s=waves * batch_size * ESTIMATED_SECONDS_PER_NODE,
            )
            self._plan = plan
            self._status = UpgradeStatus(plan_id=plan.id, phase=UpgradePhase.PLANNED)

        logger.info(
            "Upgrade %s planned: %s → %s, %d nodes in %d waves (%s)",
            plan.id, plan.current_version, target_version, len(refs), waves, strategy.name,
        )
        emit_safely(self._bus, "upgrade_planned", "upgrade_orchestrator",
                    plan_id=plan.id, target_version=target_version,
                    node_count=len(refs), waves=waves,
                    estimated_duration_s=plan.estimated_duration_s)
        return plan

    # ── Execution ─────────────────────────────────────────────────────────────

    def execute(self, plan: UpgradePlan, cancel: Optional[threading.Event] = None) -> UpgradeStatus:
        """
        Run plan to completion. Blocks the calling thread.

        Returns:
            Snapshot of the final (completed) status.

        Raises:
            AlreadyInProgressError: another execute() is live.
            UpgradeFailedError:     a node failed (pause / propagate policy,
                                    or rolled_back=True after auto-rollback).
            RollbackFailedError:    auto-rollback itself failed.
            UpgradeStateError:      stopped via stop().
            UpgradeCancelledError:  cancel fired mid-node or while paused.
        """
        with self._lock:
            if self._running:
                raise AlreadyInProgressError()
            self._running = True
            self._drain_control()
            now = datetime.utcnow()
            self._plan = plan
            self._refs = {
                item.node.name: _serving_ref(item) for item in plan.nodes
            }
            self._status = UpgradeStatus(
                plan_id=plan.id,
                phase=UpgradePhase.EXECUTING,
                completed_nodes=[
                    item.node.name for item in plan.nodes
                    if item.status == NodeUpgradeStatus.COMPLETED
                ],
                started_at=now,
                estimated_finish=now + timedelta(seconds=plan.estimated_duration_s),
            )
            strategy = self._strategy

        try:
            return self._run(plan, strategy, cancel)
        finally:
            with self._lock:
                self._running = False

    def _run(self, plan: UpgradePlan, strategy: Any, cancel: Optional[threading.Event]) -> UpgradeStatus:
        logger.info("Upgrade %s started (%s → %s)", plan.id, plan.current_version, plan.target_version)
        emit_safely(self._bus, "upgrade_started", "upgrade_orchestrator", plan_id=plan.id)
        self._trigger(HookEvent.PRE_UPGRADE, plan)

        waves = plan.waves()
        total_waves = len(waves)
        for wave_index, node_plans in enumerate(waves.values()):
            try:
                self._check_control(plan, cancel, _first_pending(node_plans))
                for node_plan in node_plans:
                    if node_plan.status == NodeUpgradeStatus.COMPLETED:
                        continue
                    self._upgrade_one(plan, strategy, node_plan, wave_index, cancel)
            except UpgradeCancelledError as exc:
                self._set_phase(UpgradePhase.STOPPED, str(exc))
                logger.warning("Upgrade %s cancelled: %s", plan.id, exc)
                emit_safely(self._bus, "upgrade_cancelled", "upgrade_orchestrator",
                            plan_id=plan.id, node_name=exc.node_name)
                raise
            except UpgradeFailedError as exc:
                self._handle_failure(plan, strategy, exc, cancel)

            with self._lock:
                self._status.progress_percent = (wave_index + 1) * 100 // total_waves
            logger.info("Upgrade %s: wave %d/%d done", plan.id, wave_index + 1, total_waves)

        with self._lock:
            self._status.phase = UpgradePhase.COMPLETED
            self._status.progress_percent = 100
            self._status.current_node = ""
            self._status.error = ""
            snapshot = self._status.model_copy(deep=True)
        logger.info("Upgrade %s completed", plan.id)
        self._trigger(HookEvent.POST_UPGRADE, plan)
        emit_safely(self._bus, "upgrade_completed", "upgrade_orchestrator", plan_id=plan.id)
        return snapshot

    def _upgrade_one(
        self,
        plan: UpgradePlan,
        strategy: Any,
        node_plan: UpgradeNodePlan,
        wave_index: int,
        cancel: Optional[threading.Event],
    ) -> None:
        name = node_plan.node.name
        ref = self._refs.get(name, node_plan.node)
        with self._lock:
            self._status.current_node = name
            node_plan.status = NodeUpgradeStatus.IN_PROGRESS

        phase = "prepare"
        try:
            _check_cancel(cancel, name, phase)
            strategy.prepare_node(ref, cancel)

            phase = "upgrade"
            _check_cancel(cancel, name, phase)
            serving = strategy.upgrade_node(ref, plan.target_version, cancel)

            phase = "soak"
            wait_or_cancel(strategy.soak_seconds(wave_index), cancel, name)

            phase = "validate"
            _check_cancel(cancel, name, phase)
            strategy.validate_node(serving, cancel)

            phase = "health"
            self._wait_healthy(serving.name, cancel)
        except UpgradeCancelledError as exc:
            self._mark_failed(node_plan)
            raise UpgradeCancelledError(name, exc.phase or phase) from exc
        except Exception as exc:
            self._mark_failed(node_plan)
            logger.warning("Upgrade %s: node %s failed during %s: %s", plan.id, name, phase, exc)
            emit_safely(self._bus, "node_upgrade_failed", "upgrade_orchestrator",
                        plan_id=plan.id, node_name=name, phase=phase, error=str(exc))
            raise UpgradeFailedError(name, phase, exc) from exc

        with self._lock:
            self._refs[name] = serving
            node_plan.status = NodeUpgradeStatus.COMPLETED
            if serving.name != name:
                node_plan.replacement = serving.name
            if name not in self._status.completed_nodes:
                self._status.completed_nodes.append(name)
        logger.info("Upgrade %s: node %s at %s", plan.id, serving.name, plan.target_version)
        emit_safely(self._bus, "node_upgraded", "upgrade_orchestrator",
                    plan_id=plan.id, node_name=name, serving_node=serving.name,
                    target_version=plan.target_version)

    def _wait_healthy(self, node_name: str, cancel: Optional[threading.Event]) -> None:
        if self._health is None:
            return
        interval = self.config.health_check_interval_s
        deadline = self._clock() + self._health_timeout_s
        while True:
            _check_cancel(cancel, node_name, "health")
            try:
                if self._health.is_node_healthy(node_name):
                    return
            except Exception as exc:
                logger.debug("Health check for %s errored: %s", node_name, exc)
            if self._clock() >= deadline:
                raise TimeoutError(
                    f"node {node_name} not healthy within {self._health_timeout_s:.0f}s"
                )
            wait_or_cancel(interval, cancel, node_name)

    # ── Failure policy ────────────────────────────────────────────────────────

    def _handle_failure(
        self,
        plan: UpgradePlan,
        strategy: Any,
        failure: UpgradeFailedError,
        cancel: Optional[threading.Event],
    ) -> None:
        """Apply the configured policy. Always raises."""
        if self.config.pause_on_failure:
            self._set_phase(UpgradePhase.PAUSED_ON_FAILURE, str(failure))
            logger.warning("Upgrade %s paused on failure: %s", plan.id, failure)
            emit_safely(self._bus, "upgrade_paused_on_failure", "upgrade_orchestrator",
                        plan_id=plan.id, node_name=failure.node_name, error=str(failure))
            raise failure

        if self.config.auto_rollback:
            logger.warning("Upgrade %s failed, rolling back: %s", plan.id, failure)
            emit_safely(self._bus, "upgrade_auto_rollback_triggered", "upgrade_orchestrator",
                        plan_id=plan.id, node_name=failure.node_name, error=str(failure))
            try:
                self._rollback(plan, strategy, cancel)
            except RollbackFailedError as rb_exc:
                raise RollbackFailedError(rb_exc.node_name, rb_exc.cause, original=failure) from rb_exc
            with self._lock:
                self._status.error = str(failure)
            raise UpgradeFailedError(
                failure.node_name, failure.phase, failure.cause, rolled_back=True
            ) from failure

        self._set_phase(UpgradePhase.FAILED, str(failure))
        logger.error("Upgrade %s failed: %s", plan.id, failure)
        emit_safely(self._bus, "upgrade_failed", "upgrade_orchestrator",
                    plan_id=plan.id, node_name=failure.node_name, error=str(failure))
        raise failure

    # ── Rollback ──────────────────────────────────────────────────────────────

    def rollback(self, plan: UpgradePlan, cancel: Optional[threading.Event] = None) -> UpgradeStatus:
        """
        Operator-initiated rollback of the nodes completed so far.

        Raises:
            AlreadyInProgressError: an execution is live.
            UpgradeStateError:      plan is not the orchestrator's current plan.
            RollbackFailedError:    a node could not be rolled back (terminal).
        """
        with self._lock:
            if self._running:
                raise AlreadyInProgressError()
            if self._plan is None or self._plan.id != plan.id or self._status is None:
                raise UpgradeStateError(f"plan {plan.id} is not the current upgrade")
            self._running = True
            strategy = self._strategy
        try:
            self._rollback(plan, strategy, cancel)
            return self.get_status()
        finally:
            with self._lock:
                self._running = False

    def _rollback(self, plan: UpgradePlan, strategy: Any, cancel: Optional[threading.Event]) -> None:
        with self._lock:
            self._status.phase = UpgradePhase.ROLLING_BACK
            completed = list(self._status.completed_nodes)
        by_name = {item.node.name: item for item in plan.nodes}
        emit_safely(self._bus, "upgrade_rollback_started", "upgrade_orchestrator",
                    plan_id=plan.id, nodes=list(reversed(completed)))

        for name in reversed(completed):
            node_plan = by_name.get(name)
            ref = self._refs.get(name) or (node_plan.node if node_plan else NodeRef(name=name))
            with self._lock:
                self._status.current_node = name
            try:
                _check_cancel(cancel, name, "rollback")
                strategy.prepare_node(ref, cancel)
                restored = strategy.upgrade_node(ref, plan.current_version, cancel)
                strategy.validate_node(restored, cancel)
            except Exception as exc:
                self._set_phase(UpgradePhase.FAILED, f"rollback of {name} failed: {exc}")
                logger.error("Upgrade %s: rollback of %s failed: %s", plan.id, name, exc)
                emit_safely(self._bus, "upgrade_rollback_failed", "upgrade_orchestrator",
                            plan_id=plan.id, node_name=name, error=str(exc))
                raise RollbackFailedError(name, exc) from exc

            with self._lock:
                self._refs[name] = restored
                if node_plan is not None:
                    node_plan.status = NodeUpgradeStatus.ROLLED_BACK
                    node_plan.replacement = restored.name if restored.name != name else None
            emit_safely(self._bus, "node_rolled_back", "upgrade_orchestrator",
                        plan_id=plan.id, node_name=name)

        with self._lock:
            self._status.phase = UpgradePhase.ROLLED_BACK
            self._status.current_node = ""
        logger.info("Upgrade %s rolled back (%d nodes)", plan.id, len(completed))
        emit_safely(self._bus, "upgrade_rollback_completed", "upgrade_orchestrator",
                    plan_id=plan.id)

    # ── Control signals ───────────────────────────────────────────────────────

    def pause(self) -> None:
        with self._lock:
            if not self._running:
                raise UpgradeStateError("no upgrade in progress")
        self._control.put_nowait(Signal.PAUSE)

    def resume(self) -> None:
        with self._lock:
            phase = self._status.phase if self._status is not None else None
            if phase != UpgradePhase.PAUSED:
                if phase == UpgradePhase.PAUSED_ON_FAILURE:
                    raise UpgradeStateError(
                        "upgrade paused on failure: fix the node, then execute the plan again"
                    )
                raise UpgradeStateError("upgrade is not paused")
        self._control.put_nowait(Signal.RESUME)

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                raise UpgradeStateError("no upgrade in progress")
        self._control.put_nowait(Signal.STOP)

    def _check_control(
        self, plan: UpgradePlan, cancel: Optional[threading.Event], next_node: str
    ) -> None:
        """Consume pending signals between waves (non-blocking unless paused)."""
        while True:
            try:
                signal = self._control.get_nowait()
            except queue.Empty:
                return
            if signal is Signal.STOP:
                self._stop(plan)
            if signal is Signal.PAUSE:
                self._pause_until_resumed(plan, cancel, next_node)

    def _pause_until_resumed(
        self, plan: UpgradePlan, cancel: Optional[threading.Event], next_node: str
    ) -> None:
        """Block until RESUME or STOP; cancel fired while paused aborts before next_node."""
        self._set_phase(UpgradePhase.PAUSED, "")
        logger.info("Upgrade %s paused", plan.id)
        emit_safely(self._bus, "upgrade_paused", "upgrade_orchestrator", plan_id=plan.id)
        while True:
            _check_cancel(cancel, next_node, "paused")
            try:
                signal = self._control.get(timeout=_PAUSE_POLL_S)
            except queue.Empty:
                continue
            if signal is Signal.STOP:
                self._stop(plan)
            if signal is Signal.RESUME:
                self._set_phase(UpgradePhase.EXECUTING, "")
                logger.info("Upgrade %s resumed", plan.id)
                emit_safely(self._bus, "upgrade_resumed", "upgrade_orchestrator", plan_id=plan.id)
                return

    def _stop(self, plan: UpgradePlan) -> None:
        self._set_phase(UpgradePhase.STOPPED, "upgrade stopped by user")
        logger.info("Upgrade %s stopped", plan.id)
        emit_safely(self._bus, "upgrade_stopped", "upgrade_orchestrator", plan_id=plan.id)
        raise UpgradeStateError("upgrade stopped by user")

    def _drain_control(self) -> None:
        while True:
            try:
                self._control.get_nowait()
            except queue.Empty:
                return

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self) -> UpgradeStatus:
        """Deep-copied snapshot of the live status."""
        with self._lock:
            if self._status is None:
                raise UpgradeStateError("no upgrade status available")
            return self._status.model_copy(deep=True)

    def get_plan(self) -> Optional[UpgradePlan]:
        with self._lock:
            return self._plan.model_copy(deep=True) if self._plan is not None else None

    # ── Internals ─────────────────────────────────────────────────────────────

    def _set_phase(self, phase: UpgradePhase, error: str) -> None:
        with self._lock:
            self._status.phase = phase
            self._status.error = error

    def _mark_failed(self, node_plan: UpgradeNodePlan) -> None:
        with self._lock:
            node_plan.status = NodeUpgradeStatus.FAILED
            if node_plan.node.name not in self._status.failed_nodes:
                self._status.failed_nodes.append(node_plan.node.name)

    def _trigger(self, event: HookEvent, plan: UpgradePlan) -> None:
        if self._hooks is None:
            return
        self._hooks.trigger_hooks(event, {
            "plan_id": plan.id,
            "current_version": plan.current_version,
            "target_version": plan.target_version,
            "strategy": plan.strategy_name,
        })

    def __repr__(self) -> str:
        phase = self._status.phase.value if self._status is not None else "idle"
        return f"UpgradeOrchestrator(strategy={self.strategy_name!r}, phase={phase})"


def _current_version(refs: List[NodeRef]) -> str:
    versions = {ref.version for ref in refs if ref.version}
    if len(versions) == 1:
        return versions.pop()
    return DEFAULT_CURRENT_VERSION


def _serving_ref(node_plan: UpgradeNodePlan) -> NodeRef:
    """The node currently serving for this slot (the replacement, once swapped)."""
    if node_plan.replacement:
        return node_plan.node.model_copy(update={"name": node_plan.replacement})
    return node_plan.node


def _check_cancel(cancel: Optional[threading.Event], node_name: str, phase: str) -> None:
    if cancel is not None and cancel.is_set():
        raise UpgradeCancelledError(node_name, phase)


def _first_pending(node_plans: List[UpgradeNodePlan]) -> str:
    for item in node_plans:
        if item.status != NodeUpgradeStatus.COMPLETED:
            return item.node.name
    return node_plans[0].node.name
