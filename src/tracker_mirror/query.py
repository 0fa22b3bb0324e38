"""
Saved summary queries and their result diffing.
"""

from __future__ import annotations

import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from . import dispatch
from .events import EVENT_QUERY_RESULT_CHANGED, ChangeListener, ChangeSupport
from .issue import IssueEntity

if TYPE_CHECKING:
    from .context import RemoteContext

logger = logging.getLogger(__name__)


@dataclass
class QueryDiff:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


class SavedQuery:
    """A named summary search whose result set is kept for diffing.

    The query refers to its context weakly and keeps only result ids, so a
    query still subscribed to the refresh timer does not keep a dropped
    context alive. Entities are resolved through the context's cache.
    """

    def __init__(
        self,
        context: RemoteContext,
        name: str,
        pattern: str,
        project_key: str | None = None,
    ):
        self._context_ref = weakref.ref(context)
        self.name = name
        self.pattern = pattern
        self.project_key = project_key
        self._result_ids: list[str] = []
        self._last_ids: set[str] | None = None
        self._lock = threading.Lock()
        self._support = ChangeSupport(self)

    @property
    def context(self) -> RemoteContext | None:
        return self._context_ref()

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def issues(self) -> list[IssueEntity]:
        context = self._context_ref()
        if context is None:
            return []
        with self._lock:
            ids = list(self._result_ids)
        return [issue for issue in map(context.issue_cache.get, ids) if issue is not None]

    def was_run(self) -> bool:
        with self._lock:
            return self._last_ids is not None

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._support.add_listener(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        self._support.remove_listener(listener)

    def refresh(self) -> QueryDiff:
        """Re-run the search and report which issue ids entered or left the result."""
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"

        context = self._context_ref()
        if context is None:
            logger.debug("query %s outlived its context, skipping refresh", self.name)
            return QueryDiff()

        pattern = self.pattern if "*" in self.pattern else f"*{self.pattern}*"
        result_ids = [issue.id for issue in context.search(pattern, self.project_key) if issue.id is not None]
        ids = set(result_ids)

        with self._lock:
            previous = self._last_ids or set()
            self._result_ids = result_ids
            self._last_ids = ids
        diff = QueryDiff(added=sorted(ids - previous), removed=sorted(previous - ids))
        if diff:
            logger.debug(
                "query %s on %s changed: +%s -%s",
                self.name,
                context.display_name,
                diff.added,
                diff.removed,
            )
            self._support.fire(EVENT_QUERY_RESULT_CHANGED)
        return diff

    def auto_refresh(self) -> QueryDiff | None:
        """Refresh unless the query's own settings disable periodic refresh."""
        context = self._context_ref()
        if context is None:
            return None
        if not context.config.is_query_auto_refresh(context.id, self.name):
            logger.debug("auto refresh disabled for query %s", self.name)
            return None
        return self.refresh()

    def __repr__(self) -> str:
        return f"SavedQuery({self.name!r}, {self.pattern!r})"
