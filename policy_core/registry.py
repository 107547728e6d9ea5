"""
policy_core/registry.py
───────────────────────
StrategyRegistry: the name → implementation map every pluggable policy uses.

Scaling strategies, upgrade strategies, zone distribution policies and spot
allocation strategies are all looked up the same way:

    registry = StrategyRegistry("upgrade")
    registry.register(RollingStrategy())      # keyed by impl.name
    strategy = registry.get("rolling")        # StrategyNotFoundError if absent

Rules
──────
  • register() keys by the implementation's `name` attribute. Registering a
    second implementation under the same name replaces the first silently
    (last write wins).
  • list() returns every registered name. Order is not part of the contract.
  • No module-level registries. Each subsystem builds its own value through
    a default_*_registry() factory so tests never share state.

Thread safety
──────────────
An RLock guards the dict. Only the mutation itself and the lookup are done
under the lock, never the caller's work with the returned strategy.
"""

from __future__ import annotations

import threading
from typing import Dict, Generic, Iterator, List, TypeVar

from lifecycle.shared.errors import StrategyNotFoundError

T = TypeVar("T")


class StrategyRegistry(Generic[T]):
    """
    Thread-safe registry of named strategies.

    Args:
        kind: Label used in error messages ("scaling", "upgrade", ...).
    """

    def __init__(self, kind: str = "strategy") -> None:
        self.kind = kind
        self._lock = threading.RLock()
        self._items: Dict[str, T] = {}

    def register(self, impl: T) -> None:
        name = getattr(impl, "name", None)
        if not name:
            raise ValueError(f"cannot register {impl!r}: missing 'name'")
        with self._lock:
            self._items[name] = impl

    def get(self, name: str) -> T:
        with self._lock:
            try:
                return self._items[name]
            except KeyError:
                raise StrategyNotFoundError(self.kind, name, list(self._items)) from None

    def list(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.list())

    def __repr__(self) -> str:
        return f"StrategyRegistry(kind={self.kind!r}, names={sorted(self.list())})"
