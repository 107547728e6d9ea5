"""
lifecycle/shared/events.py
──────────────────────────
EventBus: in-process publish / subscribe for state transitions.

Every control plane component announces what it did here
(`upgrade_planned`, `hook_failed`, `zones_distributed`, ...). Subscribers are
observability or automation glue; the components never depend on anyone
listening.

Delivery model
───────────────
  • emit() looks up the handlers for event.type (plus "*" wildcard handlers)
    and submits each one to a ThreadPoolExecutor. It returns immediately.
  • Fire-and-forget: no acknowledgement, no backpressure, no ordering
    guarantee between subscribers.
  • A handler that raises is logged with its traceback and otherwise ignored.

Subscriptions
──────────────
Handlers are stored keyed by subscription id. unsubscribe(id) removes the
handler itself, so it stops receiving events from the next emit() on.
Events already submitted to the pool may still reach it.

Usage:
    bus = EventBus()
    sub_id = bus.subscribe("upgrade_completed", on_done)
    bus.publish("upgrade_completed", source="upgrade_orchestrator",
                payload={"plan_id": plan.id})
    bus.flush()           # tests: wait for pending deliveries
    bus.unsubscribe(sub_id)
    bus.shutdown()
"""

from __future__ import annotations

import itertools
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set

from lifecycle.shared.models import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]

# ── Constants ─────────────────────────────────────────────────────────────────

WILDCARD: str = "*"
"""Subscribe with this type to receive every event."""

DEFAULT_MAX_WORKERS: int = 8
"""Thread pool size for handler delivery."""


class EventBus:
    """
    Thread-safe, asynchronous event fan-out.

    Attributes:
        _handlers : Dict[sub_id, (event_type, handler)]
        _pending  : futures not yet finished, used by flush()
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self._lock = threading.RLock()
        self._handlers: Dict[str, tuple] = {}
        self._ids = itertools.count(1)
        self._pending: Set[Future] = set()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="event-bus"
        )
        self._closed = False

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Register handler for event_type (or WILDCARD). Returns the subscription id."""
        with self._lock:
            sub_id = f"sub-{next(self._ids)}"
            self._handlers[sub_id] = (event_type, handler)
        logger.debug("Subscribed %s to %r", sub_id, event_type)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a subscription. Returns False if the id was unknown."""
        with self._lock:
            removed = self._handlers.pop(sub_id, None)
        return removed is not None

    def subscriber_count(self, event_type: Optional[str] = None) -> int:
        with self._lock:
            if event_type is None:
                return len(self._handlers)
            return sum(1 for etype, _ in self._handlers.values() if etype == event_type)

    # ── Publishing ────────────────────────────────────────────────────────────

    def emit(self, event: Event) -> None:
        """Deliver event to every matching handler on the pool. Never blocks on handlers."""
        with self._lock:
            if self._closed:
                logger.debug("EventBus closed; dropping %r", event.type)
                return
            targets: List[EventHandler] = [
                handler
                for etype, handler in self._handlers.values()
                if etype == event.type or etype == WILDCARD
            ]
            for handler in targets:
                future = self._executor.submit(self._deliver, handler, event)
                self._pending.add(future)
                future.add_done_callback(self._discard)

    def publish(
        self,
        event_type: str,
        source: str = "",
        payload: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Event:
        """Build an Event and emit it. Returns the emitted event."""
        event = Event(
            type=event_type,
            source=source,
            payload=dict(payload or {}),
            metadata=dict(metadata or {}),
        )
        self.emit(event)
        return event

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for in-flight deliveries. Returns True if all finished in time."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_pending)

    # ── Internals ─────────────────────────────────────────────────────────────

    @staticmethod
    def _deliver(handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("Event handler failed for %r", event.type)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def __repr__(self) -> str:
        return f"EventBus(subscriptions={len(self._handlers)}, closed={self._closed})"


def emit_safely(bus: Optional[EventBus], event_type: str, source: str, **payload: Any) -> None:
    """Publish on bus if one is attached. Components accept bus=None."""
    if bus is not None:
        bus.publish(event_type, source=source, payload=payload)
