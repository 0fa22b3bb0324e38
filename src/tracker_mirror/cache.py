"""
Per-context identity map of issue entities.

At most one `IssueEntity` exists per remote id. Later fetches of the same id
update that object in place, and concurrent fetches of an id that is not
cached yet share a single remote call.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING

from .errors import NotFoundError, RemoteError
from .issue import IssueEntity
from .models import IssueSnapshot

if TYPE_CHECKING:
    from .context import RemoteContext

logger = logging.getLogger(__name__)


def _key(issue_id: str | int) -> str:
    return str(issue_id).strip()


class IdentityCache:
    """Maps issue id strings to entities for one context."""

    def __init__(self, context: RemoteContext):
        self._context = context
        self._entries: dict[str, IssueEntity] = {}
        self._in_flight: dict[str, Future[IssueEntity]] = {}
        self._lock = threading.Lock()

    def get(self, issue_id: str | int) -> IssueEntity | None:
        with self._lock:
            return self._entries.get(_key(issue_id))

    def get_or_fetch(self, issue_id: str | int) -> IssueEntity:
        """Return the cached entity or fetch it once.

        Raises:
            NotFoundError: the issue does not exist on the server.
            RemoteError: the fetch failed; nothing is cached.
            ValueError: `issue_id` is not a numeric id.
        """
        key = _key(issue_id)
        with self._lock:
            entity = self._entries.get(key)
            if entity is not None:
                return entity
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            return future.result()

        try:
            if not key.isdigit():
                raise ValueError(f"invalid issue id: {issue_id!r}")
            snapshot = self._context.client.fetch_issue_by_id(int(key))
            entity = self.put(snapshot)
        except NotFoundError as exc:
            logger.debug("Issue %s not found on %s", key, self._context.display_name)
            self._finish(key, future, error=exc)
            raise
        except RemoteError as exc:
            logger.warning("Can't fetch issue %s: %s", key, exc)
            self._finish(key, future, error=exc)
            raise
        except BaseException as exc:
            self._finish(key, future, error=exc)
            raise

        self._finish(key, future, entity=entity)
        return entity

    def _finish(
        self,
        key: str,
        future: Future[IssueEntity],
        entity: IssueEntity | None = None,
        error: BaseException | None = None,
    ) -> None:
        with self._lock:
            self._in_flight.pop(key, None)
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(entity)

    def put(self, snapshot: IssueSnapshot) -> IssueEntity:
        """Install a snapshot obtained elsewhere, keeping object identity."""
        if not snapshot.id:
            raise ValueError("cannot cache an issue without id")
        key = _key(snapshot.id)
        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                entity = IssueEntity(self._context, snapshot)
                self._entries[key] = entity
                return entity
        existing.set_snapshot(snapshot)
        return existing

    def install(self, entity: IssueEntity) -> IssueEntity:
        """Register an entity that just received its id (a submitted draft)."""
        issue_id = entity.id
        if issue_id is None:
            raise ValueError("cannot cache an issue without id")
        with self._lock:
            existing = self._entries.setdefault(_key(issue_id), entity)
        if existing is not entity:
            existing.set_snapshot(entity.snapshot)
        return existing

    def evict(self, issue_id: str | int) -> IssueEntity | None:
        with self._lock:
            return self._entries.pop(_key(issue_id), None)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, issue_id: object) -> bool:
        if not isinstance(issue_id, (str, int)):
            return False
        with self._lock:
            return _key(issue_id) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
