"""
Background refresh of the issues and queries a context has open.

Two independent timer loops run per context. Each tick copies its working set
under the set's lock, refreshes every member without holding the lock, and
always schedules the next tick, whatever happened during the run. The timers
are created on the first subscription and then keep ticking; an empty working
set just makes the tick a no-op.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .config import TrackerConfig

if TYPE_CHECKING:
    from .query import SavedQuery

logger = logging.getLogger(__name__)


class _PeriodicTask:
    """Self-rescheduling timer. The delay is asked for before every tick."""

    def __init__(self, name: str, payload: Callable[[], Any], delay: Callable[[], float]):
        self._name = name
        self._payload = payload
        self._delay = delay
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._stopped = False
        self.runs = 0
        self.last_run_at: float | None = None
        self.last_error: str | None = None
        self.next_delay: float | None = None

    def schedule(self) -> None:
        delay = self._delay()
        with self._lock:
            if self._stopped:
                return
            timer = threading.Timer(delay, self._run)
            timer.daemon = True
            timer.name = self._name
            self._timer = timer
            self.next_delay = delay
            timer.start()

    def _run(self) -> None:
        try:
            self._payload()
            self.last_error = None
        except Exception as exc:
            self.last_error = f"{exc.__class__.__name__}: {exc}"
            logger.exception("%s failed", self._name)
        finally:
            self.runs += 1
            self.last_run_at = time.time()
            self.schedule()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timer = self._timer
            self._timer = None
        if timer is not None:
            timer.cancel()

    def get_health(self) -> dict[str, Any]:
        return {
            "runs": self.runs,
            "lastRunAt": self.last_run_at,
            "lastError": self.last_error,
            "nextDelaySeconds": self.next_delay,
            "stopped": self._stopped,
        }


class RefreshScheduler:
    """Working sets of subscribed issue ids and queries, refreshed periodically."""

    def __init__(
        self,
        name: str,
        config: TrackerConfig,
        refresh_issue: Callable[[str], Any],
        refresh_query: Callable[[SavedQuery], Any],
    ):
        self._name = name
        self._config = config
        self._refresh_issue = refresh_issue
        self._refresh_query = refresh_query

        self._issue_ids: set[str] = set()
        self._issue_lock = threading.Lock()
        self._queries: set[SavedQuery] = set()
        self._query_lock = threading.Lock()

        self._task_lock = threading.Lock()
        self._issue_task: _PeriodicTask | None = None
        self._query_task: _PeriodicTask | None = None
        self._shut_down = False

    # -- delays --------------------------------------------------------------

    def next_issue_delay(self) -> float:
        delay = self._config.issue_refresh_delay()
        logger.debug("scheduling issue refresh for %s in %.0f second(s)", self._name, delay)
        return delay

    def next_query_delay(self) -> float:
        delay = self._config.query_refresh_delay()
        logger.debug("scheduling query refresh for %s in %.0f second(s)", self._name, delay)
        return delay

    # -- working sets --------------------------------------------------------

    def schedule_issue(self, issue_id: str) -> None:
        logger.debug("scheduling issue %s for refresh on %s", issue_id, self._name)
        with self._issue_lock:
            self._issue_ids.add(issue_id)
        self._ensure_issue_task()

    def stop_issue(self, issue_id: str) -> None:
        logger.debug("removing issue %s from refresh on %s", issue_id, self._name)
        with self._issue_lock:
            self._issue_ids.discard(issue_id)

    def schedule_query(self, query: SavedQuery) -> None:
        logger.debug("scheduling query %s for refresh on %s", query.display_name, self._name)
        with self._query_lock:
            self._queries.add(query)
        self._ensure_query_task()

    def stop_query(self, query: SavedQuery) -> None:
        logger.debug("removing query %s from refresh on %s", query.display_name, self._name)
        with self._query_lock:
            self._queries.discard(query)

    def subscribed_ids(self) -> set[str]:
        with self._issue_lock:
            return set(self._issue_ids)

    def subscribed_queries(self) -> set[SavedQuery]:
        with self._query_lock:
            return set(self._queries)

    # -- timers --------------------------------------------------------------

    def _ensure_issue_task(self) -> None:
        with self._task_lock:
            if self._issue_task is not None or self._shut_down:
                return
            task = _PeriodicTask(
                f"tracker-mirror issue refresh - {self._name}",
                self.run_issue_cycle,
                self.next_issue_delay,
            )
            self._issue_task = task
        task.schedule()

    def _ensure_query_task(self) -> None:
        with self._task_lock:
            if self._query_task is not None or self._shut_down:
                return
            task = _PeriodicTask(
                f"tracker-mirror query refresh - {self._name}",
                self.run_query_cycle,
                self.next_query_delay,
            )
            self._query_task = task
        task.schedule()

    def has_issue_timer(self) -> bool:
        with self._task_lock:
            return self._issue_task is not None

    def has_query_timer(self) -> bool:
        with self._task_lock:
            return self._query_task is not None

    # -- cycles --------------------------------------------------------------

    def run_issue_cycle(self) -> int:
        """Refresh every subscribed issue once. Returns how many succeeded."""
        ids = self.subscribed_ids()
        if not ids:
            logger.debug("no issues to refresh %s", self._name)
            return 0
        logger.debug("preparing to refresh issues %s - %s", self._name, sorted(ids))

        refreshed = 0
        for issue_id in sorted(ids):
            try:
                if self._refresh_issue(issue_id) is not False:
                    refreshed += 1
            except Exception as exc:
                logger.warning("Background refresh of issue %s failed: %s", issue_id, exc)
        return refreshed

    def run_query_cycle(self) -> int:
        """Auto-refresh every subscribed query once. Returns how many ran without error."""
        queries = self.subscribed_queries()
        if not queries:
            logger.debug("no queries to refresh %s", self._name)
            return 0

        refreshed = 0
        for query in sorted(queries, key=lambda q: q.display_name):
            logger.debug("preparing to refresh query %s - %s", query.display_name, self._name)
            try:
                self._refresh_query(query)
                refreshed += 1
            except Exception as exc:
                logger.warning("Background refresh of query %s failed: %s", query.display_name, exc)
        return refreshed

    def shutdown(self) -> None:
        with self._task_lock:
            self._shut_down = True
            tasks = [t for t in (self._issue_task, self._query_task) if t is not None]
        for task in tasks:
            task.stop()

    def get_health(self) -> dict[str, Any]:
        with self._task_lock:
            issue_task, query_task = self._issue_task, self._query_task
        return {
            "subscribedIssues": sorted(self.subscribed_ids()),
            "subscribedQueries": sorted(q.display_name for q in self.subscribed_queries()),
            "issueTimer": issue_task.get_health() if issue_task else None,
            "queryTimer": query_task.get_health() if query_task else None,
        }
