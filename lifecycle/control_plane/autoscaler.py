"""
lifecycle/control_plane/autoscaler.py
─────────────────────────────────────
Autoscaling: decide when a node pool grows or shrinks, then do it safely.

Two layers
───────────
  1. ScalingStrategy  — pure decision from live metrics:
                          should_scale_up(metrics, cfg)   → (bool, count)
                          should_scale_down(metrics, cfg) → (bool, count)
                        Strategies know nothing about the current pool size,
                        bounds or time.

  2. AutoscalingEngine — applies a strategy's suggestion under the global
                        invariants the strategies do not enforce:
                          • min_nodes ≤ current + delta ≤ max_nodes
                          • scale-up cooldown / scale-down delay
                          • metric failures skip the cycle, never crash

Strategy arithmetic
────────────────────
  cpu     target t (default 70)
            up   if u > t + 10     delta = ⌊(u − t) / 20⌋ + 1, capped at max_nodes
            down if u < t − 20     delta = max(1, ⌊(t − u) / 25⌋)
  memory  target t (default 75)
            up   if u > t + 10     delta = ⌊(u − t) / 15⌋ + 1, capped at max_nodes
            down if u < t − 25     delta = max(1, ⌊(t − u) / 20⌋)

  Example: target 70, u = 85 → excess 15 → ⌊15/20⌋ + 1 = 1 node.
           u = 95 → excess 25 → ⌊25/20⌋ + 1 = 2 nodes.

  composite  up if ANY sub-strategy says up (max delta);
             down only if ALL agree (min delta). A single noisy signal can
             add capacity but cannot remove it.

  custom:<metric>  one direction fixed at construction; value > threshold
                   (up) or < threshold (down) moves exactly one node.

Disabled configs (cfg.enabled = False) always yield (False, 0).
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from lifecycle.shared.errors import ConfigurationError, MetricsUnavailableError
from lifecycle.shared.events import EventBus, emit_safely
from lifecycle.shared.interfaces import MetricsCollector, NodeScaler
from lifecycle.shared.models import (
    AutoScalingConfig,
    HookEvent,
    ScalingDecision,
    ScalingDirection,
)
from policy_core.registry import StrategyRegistry

logger = logging.getLogger(__name__)

# ── Autoscaling constants ─────────────────────────────────────────────────────

DEFAULT_TARGET_CPU: float = 70.0
"""CPU target (%) used when AutoScalingConfig.target_cpu is 0."""

DEFAULT_TARGET_MEMORY: float = 75.0
"""Memory target (%) used when AutoScalingConfig.target_memory is 0."""

SCALE_UP_BUFFER: float = 10.0
"""Utilisation must exceed target by more than this before adding nodes."""

CPU_SCALE_DOWN_MARGIN: float = 20.0
MEMORY_SCALE_DOWN_MARGIN: float = 25.0

DEFAULT_COOLDOWN_S: float = 300.0
"""Minimum seconds between scale-ups when cfg.cooldown_s is 0."""

DEFAULT_SCALE_DOWN_DELAY_S: float = 600.0
"""Minimum seconds between scale-downs when cfg.scale_down_delay_s is 0."""

DEFAULT_CHECK_INTERVAL_S: float = 60.0
"""Background loop period when cfg.cooldown_s is 0."""

ScaleSuggestion = Tuple[bool, int]


# ─────────────────────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────────────────────

def _read(metric: str, reader: Callable[[], float]) -> float:
    try:
        return float(reader())
    except MetricsUnavailableError:
        raise
    except Exception as exc:
        raise MetricsUnavailableError(metric, exc) from exc


class _UtilisationStrategy:
    """Shared threshold logic for the cpu and memory strategies."""

    name = ""
    metric = ""
    default_target = 0.0
    up_step = 1.0
    down_margin = 0.0
    down_step = 1.0

    def _target(self, cfg: AutoScalingConfig) -> float:
        raise NotImplementedError

    def _utilisation(self, metrics: MetricsCollector) -> float:
        raise NotImplementedError

    def should_scale_up(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        if not cfg.enabled:
            return False, 0
        util = self._utilisation(metrics)
        target = self._target(cfg)
        if util > target + SCALE_UP_BUFFER:
            nodes = int((util - target) // self.up_step) + 1
            return True, min(nodes, cfg.max_nodes)
        return False, 0

    def should_scale_down(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        if not cfg.enabled:
            return False, 0
        util = self._utilisation(metrics)
        target = self._target(cfg)
        if util < target - self.down_margin:
            return True, max(1, int((target - util) // self.down_step))
        return False, 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class CPUStrategy(_UtilisationStrategy):
    name = "cpu"
    up_step = 20.0
    down_margin = CPU_SCALE_DOWN_MARGIN
    down_step = 25.0

    def _target(self, cfg: AutoScalingConfig) -> float:
        return float(cfg.target_cpu) or DEFAULT_TARGET_CPU

    def _utilisation(self, metrics: MetricsCollector) -> float:
        return _read("CPU utilization", metrics.get_cpu_utilization)


class MemoryStrategy(_UtilisationStrategy):
    name = "memory"
    up_step = 15.0
    down_margin = MEMORY_SCALE_DOWN_MARGIN
    down_step = 20.0

    def _target(self, cfg: AutoScalingConfig) -> float:
        return float(cfg.target_memory) or DEFAULT_TARGET_MEMORY

    def _utilisation(self, metrics: MetricsCollector) -> float:
        return _read("memory utilization", metrics.get_memory_utilization)


class CompositeStrategy:
    """OR-gate for scale-up, AND-gate for scale-down."""

    name = "composite"

    def __init__(self, strategies: Optional[Sequence[Any]] = None) -> None:
        self.strategies: List[Any] = list(strategies) if strategies else [CPUStrategy(), MemoryStrategy()]

    def should_scale_up(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        best = 0
        for strategy in self.strategies:
            fire, nodes = strategy.should_scale_up(metrics, cfg)
            if fire and nodes > best:
                best = nodes
        return best > 0, best

    def should_scale_down(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        smallest: Optional[int] = None
        for strategy in self.strategies:
            fire, nodes = strategy.should_scale_down(metrics, cfg)
            if not fire:
                return False, 0
            if smallest is None or nodes < smallest:
                smallest = nodes
        if not smallest:
            return False, 0
        return True, smallest

    def __repr__(self) -> str:
        return f"CompositeStrategy({[s.name for s in self.strategies]})"


class CustomMetricStrategy:
    """
    Threshold on a named external metric, one direction only.

    Args:
        metric_name: Passed to MetricsCollector.get_custom_metric().
        threshold:   Compared with strict > (scale_up) or < (scale down).
        scale_up:    True → scale-up only, False → scale-down only.
    """

    def __init__(self, metric_name: str, threshold: float, scale_up: bool) -> None:
        self.metric_name = metric_name
        self.threshold = threshold
        self.scale_up = scale_up
        self.name = f"custom:{metric_name}"

    def _value(self, metrics: MetricsCollector) -> float:
        return _read(
            f"custom metric {self.metric_name}",
            lambda: metrics.get_custom_metric(self.metric_name),
        )

    def should_scale_up(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        if not cfg.enabled or not self.scale_up:
            return False, 0
        if self._value(metrics) > self.threshold:
            return True, 1
        return False, 0

    def should_scale_down(self, metrics: MetricsCollector, cfg: AutoScalingConfig) -> ScaleSuggestion:
        if not cfg.enabled or self.scale_up:
            return False, 0
        if self._value(metrics) < self.threshold:
            return True, 1
        return False, 0

    def __repr__(self) -> str:
        direction = "up" if self.scale_up else "down"
        return f"CustomMetricStrategy({self.metric_name!r}, {self.threshold}, {direction})"


def default_scaling_registry() -> StrategyRegistry:
    registry: StrategyRegistry = StrategyRegistry("scaling")
    registry.register(CPUStrategy())
    registry.register(MemoryStrategy())
    registry.register(CompositeStrategy())
    return registry


# ─────────────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────────────

class AutoscalingEngine:
    """
    Applies a ScalingStrategy to one node pool.

    Usage:
        engine = AutoscalingEngine(cfg, scaler, metrics, strategy_name="cpu")
        decision = engine.evaluate()        # one cycle, returns what was applied
        engine.start()                      # background loop (daemon thread)
        engine.stop()

    Each evaluate() asks the strategy for scale-up first; scale-down is only
    considered when no scale-up was suggested. The returned ScalingDecision
    describes what the engine actually did, after clamping and cooldown:
    direction NONE with a reason when it did nothing.

    One cycle (evaluate, scale_up or scale_down) runs at a time. The state
    lock covers the committed state only; metric reads, scaler
    calls and hooks run outside it, so get_status() and set_strategy()
    answer while a scale is in flight.

    Args:
        config:        The pool's AutoScalingConfig.
        scaler:        NodeScaler that performs the change.
        metrics:       MetricsCollector the strategies read.
        strategy_name: Registry name. Defaults to "composite".
        event_bus:     Optional EventBus for autoscaling_* events.
        hook_engine:   Optional HookEngine; scale_up / scale_down hooks fire
                       after a successful change.
        clock:         Monotonic seconds source (tests inject a fake).
    """

    def __init__(
        self,
        config: AutoScalingConfig,
        scaler: NodeScaler,
        metrics: MetricsCollector,
        strategy_name: str = "composite",
        registry: Optional[StrategyRegistry] = None,
        event_bus: Optional[EventBus] = None,
        hook_engine: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._scaler = scaler
        self._metrics = metrics
        self._registry = registry if registry is not None else default_scaling_registry()
        self._strategy = self._registry.get(strategy_name or "composite")
        self._bus = event_bus
        self._hooks = hook_engine
        self._clock = clock

        self._lock = threading.RLock()
        self._scaling = threading.Lock()
        self._current_nodes: int = 0
        self._last_scale_up: Optional[float] = None
        self._last_scale_down: Optional[float] = None
        self._last_scale_up_at: Optional[datetime] = None
        self._last_scale_down_at: Optional[datetime] = None

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Strategy management ───────────────────────────────────────────────────

    @property
    def registry(self) -> StrategyRegistry:
        return self._registry

    def set_strategy(self, name: str) -> None:
        strategy = self._registry.get(name)
        with self._lock:
            self._strategy = strategy
        logger.info("Autoscaling strategy set to %s", name)

    # ── Evaluation ────────────────────────────────────────────────────────────

    def evaluate(self) -> ScalingDecision:
        """
        Run one decision cycle. Never raises for metric failures.

        Only one cycle (or manual scale) runs at a time; a call that finds
        one in flight returns a NONE decision instead of waiting.

        Returns:
            The ScalingDecision actually applied.
        """
        with self._lock:
            strategy = self._strategy
        if not self._scaling.acquire(blocking=False):
            return ScalingDecision.none("scaling already in progress", strategy.name)
        try:
            if not self.config.enabled:
                return ScalingDecision.none("autoscaling disabled", strategy.name)
            try:
                fire_up, up_count = strategy.should_scale_up(self._metrics, self.config)
                if fire_up:
                    return self._apply_up(up_count, strategy.name)
                fire_down, down_count = strategy.should_scale_down(self._metrics, self.config)
                if fire_down:
                    return self._apply_down(down_count, strategy.name)
            except MetricsUnavailableError as exc:
                logger.warning("Autoscaling cycle skipped: %s", exc)
                emit_safely(self._bus, "autoscaling_error", "autoscaling_engine", error=str(exc))
                return ScalingDecision.none(f"metrics unavailable: {exc}", strategy.name)
            return ScalingDecision.none("within target range", strategy.name)
        finally:
            self._scaling.release()

    def scale_up(self, count: int) -> ScalingDecision:
        """Add up to count nodes, subject to max_nodes and the cooldown."""
        if not self._scaling.acquire(blocking=False):
            return ScalingDecision.none("scaling already in progress", "manual")
        try:
            return self._apply_up(count, "manual")
        finally:
            self._scaling.release()

    def scale_down(self, count: int) -> ScalingDecision:
        """Remove up to count nodes, subject to min_nodes and the scale-down delay."""
        if not self._scaling.acquire(blocking=False):
            return ScalingDecision.none("scaling already in progress", "manual")
        try:
            return self._apply_down(count, "manual")
        finally:
            self._scaling.release()

    # ── Background loop ───────────────────────────────────────────────────────

    @property
    def check_interval_s(self) -> float:
        return float(self.config.cooldown_s) or DEFAULT_CHECK_INTERVAL_S

    def start(self, interval_s: Optional[float] = None) -> None:
        """Run evaluate() periodically on a daemon thread."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise ConfigurationError("autoscaling engine is already running")
            self._stop_event.clear()
            period = self.check_interval_s if interval_s is None else interval_s
            self._thread = threading.Thread(
                target=self._run, args=(period,), name="autoscaler", daemon=True
            )
            self._thread.start()
        logger.info("Autoscaling loop started (interval=%.1fs)", period)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        logger.info("Autoscaling loop stopped")

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def _run(self, period: float) -> None:
        while not self._stop_event.wait(period):
            try:
                self.evaluate()
            except Exception:
                logger.exception("Autoscaling cycle failed")
                emit_safely(self._bus, "autoscaling_error", "autoscaling_engine",
                            error="unexpected failure, see logs")

    # ── Status ────────────────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.config.enabled,
                "current_nodes": self._current_nodes,
                "min_nodes": self.config.min_nodes,
                "max_nodes": self.config.max_nodes,
                "strategy": self._strategy.name,
                "last_scale_up": self._last_scale_up_at,
                "last_scale_down": self._last_scale_down_at,
                "is_running": self.is_running,
            }

    # ── Internals (caller holds self._scaling, never self._lock) ─────────────

    def _in_window(self, last: Optional[float], window_s: float) -> bool:
        return last is not None and (self._clock() - last) < window_s

    def _apply_up(self, count: int, strategy_name: str) -> ScalingDecision:
        cooldown = float(self.config.cooldown_s) or DEFAULT_COOLDOWN_S
        if self._in_window(self._last_scale_up, cooldown):
            return ScalingDecision.none("scale-up cooldown active", strategy_name)

        current = self._scaler.get_current_count()
        count = min(count, self.config.max_nodes - current)
        if count <= 0:
            return ScalingDecision.none(f"already at max_nodes={self.config.max_nodes}", strategy_name)

        emit_safely(self._bus, "autoscaling_scale_up_start", "autoscaling_engine",
                    current_nodes=current, nodes_to_add=count)
        try:
            self._scaler.scale_up(count)
        except Exception as exc:
            emit_safely(self._bus, "autoscaling_scale_up_failed", "autoscaling_engine", error=str(exc))
            raise

        target = current + count
        with self._lock:
            self._last_scale_up = self._clock()
            self._last_scale_up_at = datetime.utcnow()
            self._current_nodes = target
        logger.info("Scaled up %d → %d nodes (%s)", current, target, strategy_name)
        emit_safely(self._bus, "autoscaling_scale_up_complete", "autoscaling_engine",
                    previous_nodes=current, current_nodes=target, nodes_added=count)
        self._fire_hook(HookEvent.SCALE_UP, current, target, count)
        return ScalingDecision(
            direction=ScalingDirection.UP,
            node_count=count,
            reason=f"{strategy_name}: {current} → {target}",
            strategy=strategy_name,
        )

    def _apply_down(self, count: int, strategy_name: str) -> ScalingDecision:
        delay = float(self.config.scale_down_delay_s) or DEFAULT_SCALE_DOWN_DELAY_S
        if self._in_window(self._last_scale_down, delay):
            return ScalingDecision.none("scale-down delay active", strategy_name)

        current = self._scaler.get_current_count()
        count = min(count, current - self.config.min_nodes)
        if count <= 0:
            return ScalingDecision.none(f"already at min_nodes={self.config.min_nodes}", strategy_name)

        emit_safely(self._bus, "autoscaling_scale_down_start", "autoscaling_engine",
                    current_nodes=current, nodes_to_remove=count)
        try:
            self._scaler.scale_down(count)
        except Exception as exc:
            emit_safely(self._bus, "autoscaling_scale_down_failed", "autoscaling_engine", error=str(exc))
            raise

        target = current - count
        with self._lock:
            self._last_scale_down = self._clock()
            self._last_scale_down_at = datetime.utcnow()
            self._current_nodes = target
        logger.info("Scaled down %d → %d nodes (%s)", current, target, strategy_name)
        emit_safely(self._bus, "autoscaling_scale_down_complete", "autoscaling_engine",
                    previous_nodes=current, current_nodes=target, nodes_removed=count)
        self._fire_hook(HookEvent.SCALE_DOWN, current, target, count)
        return ScalingDecision(
            direction=ScalingDirection.DOWN,
            node_count=count,
            reason=f"{strategy_name}: {current} → {target}",
            strategy=strategy_name,
        )

    def _fire_hook(self, event: HookEvent, previous: int, current: int, count: int) -> None:
        if self._hooks is None:
            return
        self._hooks.trigger_hooks(event, {
            "previous_nodes": previous,
            "current_nodes": current,
            "count": count,
        })

    def __repr__(self) -> str:
        return (
            f"AutoscalingEngine(strategy={self._strategy.name!r}, "
            f"min={self.config.min_nodes}, max={self.config.max_nodes})"
        )


# ─────────────────────────────────────────────────────────────────────────────
# NodeScaler adapter
# ─────────────────────────────────────────────────────────────────────────────

class NodePoolScaler:
    """
    NodeScaler for one pool, composed from four narrow callables.

    Args:
        pool_name: Passed to every collaborator.
        creator:   (pool_name, count) → None
        deleter:   (node_ids) → None
        counter:   (pool_name) → int
        selector:  (pool_name, count) → list of node ids to delete
    """

    def __init__(
        self,
        pool_name: str,
        creator: Callable[[str, int], None],
        deleter: Callable[[List[str]], None],
        counter: Callable[[str], int],
        selector: Callable[[str, int], List[str]],
    ) -> None:
        self.pool_name = pool_name
        self._creator = creator
        self._deleter = deleter
        self._counter = counter
        self._selector = selector

    def get_current_count(self) -> int:
        return int(self._counter(self.pool_name))

    def scale_up(self, count: int) -> None:
        self._creator(self.pool_name, count)

    def scale_down(self, count: int) -> None:
        node_ids = self._selector(self.pool_name, count)
        self._deleter(list(node_ids))

    def __repr__(self) -> str:
        return f"NodePoolScaler(pool={self.pool_name!r})"
