"""
One configured connection to a remote tracker.

A `RemoteContext` owns the identity cache, the refresh scheduler and the
lazily built remote client of a connection, and serves the issue, search,
query and reference-data operations of the interactive client.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from collections.abc import Callable
from typing import Any

from . import dispatch
from .cache import IdentityCache
from .client import McpRemoteClient, RemoteClient
from .config import TrackerConfig
from .errors import ConfigurationError, NotFoundError, RemoteError, UnsupportedOperationError
from .events import EVENT_QUERY_LIST_CHANGED, ChangeListener, ChangeSupport
from .issue import IssueEntity
from .models import (
    AuthMode,
    IssueCategory,
    IssuePriority,
    IssueStatus,
    Project,
    TimeEntryActivity,
    Tracker,
    User,
    Version,
)
from .query import SavedQuery
from .registry import REGISTRY, ContextRegistry
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)

ClientFactory = Callable[["RemoteContext"], RemoteClient]
Notifier = Callable[[str, Exception], None]

FALLBACK_TIME_ENTRY_ACTIVITIES = (
    TimeEntryActivity(id=8, name="Design"),
    TimeEntryActivity(id=9, name="Development"),
)

FALLBACK_ISSUE_PRIORITIES = (
    IssuePriority(id=7, name="Immediate"),
    IssuePriority(id=6, name="Urgent"),
    IssuePriority(id=5, name="High"),
    IssuePriority(id=4, name="Normal", is_default=True),
    IssuePriority(id=3, name="Low"),
)

UNKNOWN_STATUS = IssueStatus(id=-1, name="[n/a]")


def default_client_factory(context: RemoteContext) -> RemoteClient:
    return McpRemoteClient.for_connection(
        context.url,
        context.auth_mode,
        access_key=context.access_key,
        username=context.username,
        password=context.password,
    )


def _weak_issue_refresher(context: RemoteContext) -> Callable[[str], bool]:
    # Running timers must not keep a dropped context alive.
    method = weakref.WeakMethod(context._refresh_subscribed_issue)

    def _refresh(issue_id: str) -> bool:
        bound = method()
        return False if bound is None else bound(issue_id)

    return _refresh


def _log_notifier(message: str, exc: Exception) -> None:
    logger.error("%s: %s", message, exc)


class RemoteContext:
    """Facade over cache, scheduler and client for one tracker connection."""

    def __init__(
        self,
        context_id: str | None = None,
        name: str = "",
        url: str = "",
        auth_mode: AuthMode | str | None = AuthMode.ACCESS_KEY,
        access_key: str | None = None,
        username: str | None = None,
        password: str | None = None,
        project: Project | None = None,
        project_key: str | None = None,
        feature_watchers: bool = False,
        config: TrackerConfig | None = None,
        client_factory: ClientFactory | None = None,
        notifier: Notifier | None = None,
        registry: ContextRegistry | None = None,
    ):
        self._id = context_id or f"{name}{int(time.time() * 1000)}"
        self._name = name
        self._url = url
        self._auth_mode = AuthMode.parse(auth_mode)
        self._access_key = access_key
        self._username = username
        self._password = password
        self._project = project
        self._project_key = project.identifier if project else project_key
        self._feature_watchers = feature_watchers
        self.config = config or TrackerConfig()
        self._client_factory = client_factory or default_client_factory
        self._notifier = notifier or _log_notifier

        self._client: RemoteClient | None = None
        self._current_user: User | None = None
        self._client_lock = threading.RLock()

        self.issue_cache = IdentityCache(self)
        self._drafts: set[IssueEntity] = set()
        self._drafts_lock = threading.Lock()

        self._queries: dict[str, SavedQuery] | None = None
        self._queries_lock = threading.Lock()

        self._metadata_lock = threading.Lock()
        self._statuses: list[IssueStatus] | None = None
        self._categories: list[IssueCategory] | None = None
        self._priorities: list[IssuePriority] | None = None

        self._support = ChangeSupport(self)
        self._scheduler = RefreshScheduler(
            self.display_name,
            self.config,
            _weak_issue_refresher(self),
            lambda query: query.auto_refresh(),
        )
        weakref.finalize(self, self._scheduler.shutdown)

        (registry if registry is not None else REGISTRY).register(self)

    @staticmethod
    def get_instance_by_id(context_id: str, registry: ContextRegistry | None = None) -> RemoteContext | None:
        return (registry if registry is not None else REGISTRY).find_by_id(context_id)

    # -- connection settings -------------------------------------------------

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def display_name(self) -> str:
        return self._name or self._url

    @property
    def tooltip(self) -> str:
        return f"Tracker {self._name} : {self._username or ''}@{self._url}"

    @property
    def url(self) -> str:
        return self._url

    @property
    def auth_mode(self) -> AuthMode | None:
        return self._auth_mode

    @property
    def access_key(self) -> str | None:
        return self._access_key

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def password(self) -> str | None:
        return self._password

    def is_feature_watchers(self) -> bool:
        return self._feature_watchers

    def set_auth_mode(self, auth_mode: AuthMode | str | None) -> None:
        parsed = AuthMode.parse(auth_mode)
        with self._client_lock:
            if parsed != self._auth_mode:
                self._invalidate_client()
            self._auth_mode = parsed

    def set_access_key(self, access_key: str | None) -> None:
        with self._client_lock:
            if access_key != self._access_key:
                self._invalidate_client()
            self._access_key = access_key

    def set_credentials(self, username: str | None, password: str | None) -> None:
        with self._client_lock:
            if (username, password) != (self._username, self._password):
                self._invalidate_client()
            self._username = username
            self._password = password

    def set_info_values(
        self,
        name: str,
        url: str,
        username: str | None,
        password: str | None,
        access_key: str | None,
        auth_mode: AuthMode | str | None,
        project: Project | None,
        feature_watchers: bool = False,
    ) -> None:
        with self._client_lock:
            if url != self._url:
                self._invalidate_client()
            self._name = name
            self._url = url
            self._feature_watchers = feature_watchers
            self.set_credentials(username, password)
            self.set_access_key(access_key)
            self.set_auth_mode(auth_mode)
        self.set_project(project)

    def reset(self, keep_configuration: bool = False) -> None:
        if not keep_configuration:
            with self._client_lock:
                self._invalidate_client()

    def _invalidate_client(self) -> None:
        client = self._client
        self._client = None
        self._current_user = None
        if client is not None:
            try:
                client.close()
            except Exception as exc:
                logger.debug("Closing discarded client of %s failed: %s", self.display_name, exc)

    # -- client --------------------------------------------------------------

    @property
    def client(self) -> RemoteClient:
        """The remote client, built on first use.

        Raises:
            ConfigurationError: no auth mode or url is configured.
        """
        with self._client_lock:
            if self._client is not None:
                return self._client
            if self._auth_mode is None:
                raise ConfigurationError("auth mode must be set")
            if not self._url:
                raise ConfigurationError("url must be set")
            client = self._client_factory(self)
            try:
                self._current_user = client.get_current_user()
            except RemoteError as exc:
                logger.warning("Can't get current user for %s: %s", self.display_name, exc)
            self._client = client
            return client

    @property
    def current_user(self) -> User | None:
        with self._client_lock:
            return self._current_user

    # -- project -------------------------------------------------------------

    @property
    def project(self) -> Project | None:
        return self._project

    @property
    def project_key(self) -> str | None:
        return self._project_key

    def set_project(self, project: Project | None) -> None:
        with self._metadata_lock:
            self._project = project
            self._project_key = project.identifier if project else None
            self._categories = None

    def select_project(self, key: str) -> Project | None:
        """Resolve a project by its key on the server and select it."""
        try:
            project = self.client.get_project_by_key(key)
        except RemoteError as exc:
            logger.error("Can't get project %s: %s", key, exc)
            return None
        self.set_project(project)
        return project

    # -- issues --------------------------------------------------------------

    def get_issue(self, issue_id: str | int | None) -> IssueEntity | None:
        if issue_id is None:
            return None
        try:
            return self.issue_cache.get_or_fetch(issue_id)
        except NotFoundError:
            return None
        except ConfigurationError as exc:
            logger.error("Can't get issue %s: %s", issue_id, exc)
            raise
        except ValueError:
            logger.debug("Ignoring invalid issue id %r", issue_id)
            return None
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get issue %s: %s", issue_id, exc)
            return None

    def get_issues(self, *ids: str | int) -> list[IssueEntity]:
        issues = []
        for issue_id in ids:
            issue = self.get_issue(issue_id)
            if issue is not None:
                issues.append(issue)
        return issues

    def create_issue(self, summary: str | None = None, description: str | None = None) -> IssueEntity:
        issue = IssueEntity(self, summary=summary, description=description)
        with self._drafts_lock:
            self._drafts.add(issue)
        return issue

    def drafts(self) -> list[IssueEntity]:
        with self._drafts_lock:
            return list(self._drafts)

    def forget_draft(self, issue: IssueEntity) -> None:
        with self._drafts_lock:
            self._drafts.discard(issue)

    def search(self, pattern: str, project_key: str | None = None) -> list[IssueEntity]:
        """Summary search merged through the identity cache. Raises remote errors."""
        snapshots = self.client.search_issues_by_summary(project_key or self._project_key, pattern)
        return [self.issue_cache.put(snapshot) for snapshot in snapshots if snapshot.id]

    def simple_search(self, text: str) -> list[IssueEntity]:
        """Exact id match first, then a wildcard summary search, without duplicates."""
        results: list[IssueEntity] = []
        seen: set[int] = set()

        def _add(issue: IssueEntity) -> None:
            if id(issue) not in seen:
                seen.add(id(issue))
                results.append(issue)

        try:
            candidate = text.strip()
            if candidate.isdigit():
                try:
                    _add(self.issue_cache.get_or_fetch(candidate))
                except NotFoundError:
                    pass
            for issue in self.search(f"*{candidate}*"):
                _add(issue)
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't search for issues: %s", exc)
            return []
        return results

    def _refresh_subscribed_issue(self, issue_id: str) -> bool:
        issue = self.issue_cache.get(issue_id)
        if issue is None:
            logger.debug("issue %s is subscribed but not cached on %s", issue_id, self.display_name)
            return False
        return issue.refresh()

    # -- queries -------------------------------------------------------------

    def _get_query_map(self) -> dict[str, SavedQuery]:
        with self._queries_lock:
            if self._queries is None:
                queries: dict[str, SavedQuery] = {}
                for name in self.config.get_query_names(self._id):
                    stored = self.config.get_query(self._id, name)
                    if stored is None:
                        logger.warning("Couldn't find query with stored name %s", name)
                        continue
                    queries[name] = SavedQuery(
                        self, name, stored["pattern"], stored.get("project_key")
                    )
                self._queries = queries
            return self._queries

    def create_query(self, name: str, pattern: str, project_key: str | None = None) -> SavedQuery:
        return SavedQuery(self, name, pattern, project_key or self._project_key)

    def get_queries(self) -> list[SavedQuery]:
        queries = self._get_query_map()
        with self._queries_lock:
            return list(queries.values())

    def get_query(self, name: str) -> SavedQuery | None:
        queries = self._get_query_map()
        with self._queries_lock:
            return queries.get(name)

    def save_query(self, query: SavedQuery, auto_refresh: bool = True) -> None:
        self.config.put_query(
            self._id, query.name, query.pattern, query.project_key, auto_refresh=auto_refresh
        )
        queries = self._get_query_map()
        with self._queries_lock:
            queries[query.name] = query
        self._fire_query_list_changed()

    def remove_query(self, name: str) -> None:
        self.config.remove_query(self._id, name)
        queries = self._get_query_map()
        with self._queries_lock:
            query = queries.pop(name, None)
        if query is not None:
            self._scheduler.stop_query(query)
        self._fire_query_list_changed()

    def _fire_query_list_changed(self) -> None:
        logger.debug("firing query list changed for %s", self.display_name)
        self._support.fire(EVENT_QUERY_LIST_CHANGED)

    # -- refresh subscriptions -----------------------------------------------

    def schedule_for_refresh(self, target: str | SavedQuery) -> None:
        if isinstance(target, SavedQuery):
            self._scheduler.schedule_query(target)
        else:
            self._scheduler.schedule_issue(str(target))

    def stop_refreshing(self, target: str | SavedQuery) -> None:
        if isinstance(target, SavedQuery):
            self._scheduler.stop_query(target)
        else:
            self._scheduler.stop_issue(str(target))

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    # -- listeners -----------------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._support.add_listener(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        self._support.remove_listener(listener)

    def notify_failure(self, message: str, exc: Exception) -> None:
        """Report a failed foreground action to the user."""
        try:
            self._notifier(message, exc)
        except Exception:
            logger.exception("Notifier failed for: %s", message)

    # -- reference data ------------------------------------------------------

    def get_trackers(self) -> list[Tracker]:
        try:
            return self.client.list_trackers()
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get issue trackers: %s", exc)
        return []

    def get_statuses(self) -> list[IssueStatus]:
        with self._metadata_lock:
            if self._statuses is not None:
                return list(self._statuses)
        statuses: list[IssueStatus] = []
        try:
            statuses = self.client.list_statuses()
        except NotFoundError as exc:
            self.notify_failure("Can't get issue statuses", exc)
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get issue statuses: %s", exc)
        if not statuses:
            statuses = [UNKNOWN_STATUS]
        with self._metadata_lock:
            self._statuses = statuses
        return list(statuses)

    def get_status(self, status_id: int) -> IssueStatus | None:
        for status in self.get_statuses():
            if status.id == status_id:
                return status
        return None

    def get_issue_categories(self) -> list[IssueCategory]:
        with self._metadata_lock:
            if self._categories is not None:
                return list(self._categories)
            project = self._project
        if project is None:
            return []
        try:
            categories = self.client.list_categories(project.id)
        except NotFoundError as exc:
            self.notify_failure(f"Can't get issue categories for project {project.name}", exc)
            return []
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get issue categories for project %s: %s", project.name, exc)
            return []
        with self._metadata_lock:
            self._categories = categories
        return list(categories)

    def reload_issue_categories(self) -> list[IssueCategory]:
        with self._metadata_lock:
            self._categories = None
        return self.get_issue_categories()

    def get_versions(self) -> list[Version]:
        project = self._project
        if project is None:
            return []
        try:
            return self.client.list_versions(project.id)
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get versions for project %s: %s", project.name, exc)
        return []

    def get_issue_priorities(self) -> list[IssuePriority]:
        with self._metadata_lock:
            if self._priorities is not None:
                return list(self._priorities)
        try:
            priorities = list(reversed(self.client.list_issue_priorities()))
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.info("Can't get issue priorities, using defaults: %s", exc)
            priorities = list(FALLBACK_ISSUE_PRIORITIES)
        with self._metadata_lock:
            self._priorities = priorities
        return list(priorities)

    def get_default_issue_priority(self) -> IssuePriority | None:
        for priority in self.get_issue_priorities():
            if priority.is_default:
                return priority
        return None

    def get_issue_priority(self, priority_id: int) -> IssuePriority | None:
        for priority in self.get_issue_priorities():
            if priority.id == priority_id:
                return priority
        return None

    def get_time_entry_activities(self) -> list[TimeEntryActivity]:
        try:
            return self.client.list_time_entry_activities()
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.info(
                "Failed to get time entry activities (either API is missing or no permission): %s",
                exc,
            )
        return list(FALLBACK_TIME_ENTRY_ACTIVITIES)

    def get_users(self) -> list[User]:
        """Current user first, then the other members of the selected project."""
        users: list[User] = []
        try:
            client = self.client
        except ConfigurationError as exc:
            logger.error("Can't get users: %s", exc)
            return users
        current = self.current_user
        if current is not None:
            users.append(current)
        if self._project is None:
            return users
        try:
            for membership in client.list_memberships(self._project):
                user = membership.user
                if user is not None and (current is None or user.id != current.id):
                    users.append(user)
        except (RemoteError, UnsupportedOperationError) as exc:
            logger.error("Can't get users: %s", exc)
        return users

    # -- lifecycle -----------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        with self._client_lock:
            client = self._client
        client_health = None
        get_client_health = getattr(client, "get_health", None)
        if callable(get_client_health):
            client_health = get_client_health()
        return {
            "id": self._id,
            "name": self.display_name,
            "connected": client is not None,
            "cachedIssues": len(self.issue_cache),
            "drafts": len(self.drafts()),
            "scheduler": self._scheduler.get_health(),
            "client": client_health,
            "interactiveThread": dispatch.is_interactive_thread(),
        }

    def dispose(self) -> None:
        """Stop background refresh and close the remote client."""
        self._scheduler.shutdown()
        with self._client_lock:
            self._invalidate_client()

    def __repr__(self) -> str:
        return f"RemoteContext[{self.display_name}]"
