"""
Process-wide lookup of live remote contexts.

The registry only holds weak references: a context stays discoverable for as
long as something else keeps it alive, and dead entries are pruned on lookup.
"""

from __future__ import annotations

import threading
import weakref
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .context import RemoteContext


class ContextRegistry:
    def __init__(self):
        self._refs: list[weakref.ReferenceType[RemoteContext]] = []
        self._lock = threading.Lock()

    def register(self, context: RemoteContext) -> None:
        with self._lock:
            self._refs.append(weakref.ref(context))

    def find_by_id(self, context_id: str) -> RemoteContext | None:
        if context_id is None:
            raise ValueError("find_by_id must not be called with None")
        result = None
        with self._lock:
            alive = []
            for ref in self._refs:
                context = ref()
                if context is None:
                    continue
                alive.append(ref)
                if result is None and context.id == context_id:
                    result = context
            self._refs = alive
        return result

    def live_contexts(self) -> list[RemoteContext]:
        with self._lock:
            contexts = [ref() for ref in self._refs]
        return [c for c in contexts if c is not None]

    def __len__(self) -> int:
        return len(self.live_contexts())


REGISTRY = ContextRegistry()
