from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from tracker_mirror import dispatch
from tracker_mirror.config import TrackerConfig
from tracker_mirror.context import RemoteContext
from tracker_mirror.errors import NotFoundError
from tracker_mirror.models import (
    Attachment,
    IssuePriority,
    IssueSnapshot,
    IssueStatus,
    Journal,
    Membership,
    Project,
    TimeEntryActivity,
    Tracker,
    User,
)
from tracker_mirror.registry import ContextRegistry


class FakeRemoteClient:
    """In-memory tracker. Records calls and raises configured exceptions."""

    def __init__(self):
        self.issues: dict[int, IssueSnapshot] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.exceptions: dict[str, Exception] = {}
        self.fetch_gate: threading.Event | None = None
        self.updated: list[IssueSnapshot] = []
        self.statuses = [IssueStatus(id=1, name="New"), IssueStatus(id=3, name="Resolved")]
        self.priorities = [IssuePriority(id=3, name="Low"), IssuePriority(id=4, name="Normal", is_default=True)]
        self.members = [
            Membership(id=1, user=User(id=1, login="me")),
            Membership(id=2, user=User(id=2, login="alice")),
        ]
        self.closed = False
        self.next_id = 100
        self._lock = threading.Lock()

    def _record(self, name: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((name, args))
        if name in self.exceptions:
            raise self.exceptions[name]

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for call_name, _ in self.calls if call_name == name)

    def add_issue(self, issue_id: int, subject: str, **fields: Any) -> IssueSnapshot:
        snapshot = IssueSnapshot(id=issue_id, subject=subject, tracker="Bug", **fields)
        self.issues[issue_id] = snapshot
        return snapshot

    def fetch_issue_by_id(self, issue_id, include=()):
        self._record("fetch_issue_by_id", issue_id, tuple(include))
        if self.fetch_gate is not None:
            self.fetch_gate.wait(5)
        snapshot = self.issues.get(int(issue_id))
        if snapshot is None:
            raise NotFoundError(f"issue {issue_id} not found")
        return snapshot.copy()

    def search_issues_by_summary(self, project_key, pattern):
        self._record("search_issues_by_summary", project_key, pattern)
        needle = pattern.strip("*").lower()
        return [s.copy() for s in self.issues.values() if needle in s.subject.lower()]

    def create_issue(self, project_key, issue):
        self._record("create_issue", project_key, issue)
        created = issue.copy()
        created.id = self.next_id
        created.project_key = project_key
        self.next_id += 1
        self.issues[created.id] = created
        return created.copy()

    def update_issue(self, issue):
        self._record("update_issue", issue)
        stored = issue.copy()
        self.updated.append(issue.copy())
        if stored.notes:
            stored.journals.append(Journal(id=len(stored.journals) + 1, notes=stored.notes))
            stored.notes = None
        self.issues[stored.id] = stored

    def upload_attachment(self, content_type, path):
        self._record("upload_attachment", content_type, path)
        return Attachment(filename=Path(path).name, content_type=content_type, token="tok-1")

    def list_trackers(self):
        self._record("list_trackers")
        return [Tracker(id=1, name="Bug")]

    def list_statuses(self):
        self._record("list_statuses")
        return list(self.statuses)

    def list_categories(self, project_id):
        self._record("list_categories", project_id)
        return []

    def list_versions(self, project_id):
        self._record("list_versions", project_id)
        return []

    def list_memberships(self, project):
        self._record("list_memberships", project)
        return list(self.members)

    def list_time_entry_activities(self):
        self._record("list_time_entry_activities")
        return [TimeEntryActivity(id=1, name="Testing")]

    def list_issue_priorities(self):
        self._record("list_issue_priorities")
        return list(self.priorities)

    def get_current_user(self):
        self._record("get_current_user")
        return User(id=1, login="me", is_current=True)

    def get_project_by_key(self, key):
        self._record("get_project_by_key", key)
        return Project(id=1, identifier=key, name=key.title())

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_interactive_thread():
    yield
    dispatch.clear_interactive_thread()


@pytest.fixture
def client_class() -> type[FakeRemoteClient]:
    return FakeRemoteClient


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def config() -> TrackerConfig:
    return TrackerConfig(
        issue_refresh_minutes=20,
        query_refresh_minutes=30,
        resolved_status_id=3,
        no_issue_refresh=False,
        force_refresh_seconds=None,
    )


@pytest.fixture
def make_context(fake_client: FakeRemoteClient, config: TrackerConfig):
    created: list[RemoteContext] = []
    notifications: list[tuple[str, Exception]] = []

    def _make(**kwargs: Any) -> RemoteContext:
        kwargs.setdefault("context_id", f"ctx-{len(created)}")
        kwargs.setdefault("name", "Test tracker")
        kwargs.setdefault("url", "https://tracker.example.com")
        kwargs.setdefault("access_key", "secret")
        kwargs.setdefault("project", Project(id=1, identifier="proj", name="Project"))
        kwargs.setdefault("config", config)
        kwargs.setdefault("client_factory", lambda _ctx: fake_client)
        kwargs.setdefault("notifier", lambda message, exc: notifications.append((message, exc)))
        kwargs.setdefault("registry", ContextRegistry())
        context = RemoteContext(**kwargs)
        context.notifications = notifications
        created.append(context)
        return context

    yield _make

    for context in created:
        context.dispose()


@pytest.fixture
def context(make_context) -> RemoteContext:
    return make_context()
