"""Registry mapping opaque handle ids to the live components they stand for."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RegistryEvent:
    action: str  # "start" or "stop"
    kind: str
    handle_id: int


class ProcessRegistry:
    """Owns every component a harness has started.

    Handles given to callers only carry an integer id; the live object stays
    here until :meth:`release` is called, and every registration and release
    is appended to :attr:`events` so shutdown order can be asserted on.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._entries: dict[int, tuple[str, Any]] = {}
        self.events: list[RegistryEvent] = []

    def register(self, kind: str, component: Any) -> int:
        with self._lock:
            handle_id = next(self._ids)
            self._entries[handle_id] = (kind, component)
            self.events.append(RegistryEvent("start", kind, handle_id))
            return handle_id

    def get(self, handle_id: int) -> Any:
        with self._lock:
            try:
                return self._entries[handle_id][1]
            except KeyError:
                raise KeyError(f"no live component for handle {handle_id}") from None

    def contains(self, handle_id: int) -> bool:
        with self._lock:
            return handle_id in self._entries

    def release(self, handle_id: int) -> Any:
        with self._lock:
            kind, component = self._entries.pop(handle_id)
            self.events.append(RegistryEvent("stop", kind, handle_id))
            return component

    def live(self, kind: str | None = None) -> list[int]:
        with self._lock:
            return [hid for hid, (k, _) in self._entries.items() if kind is None or k == kind]

    def order(self, action: str) -> list[str]:
        """Component kinds in the order they were started or stopped."""
        return [e.kind for e in self.events if e.action == action]
