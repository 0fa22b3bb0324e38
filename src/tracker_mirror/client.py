"""
Blocking remote tracker API.

`RemoteClient` is the interface the cache and the issue entities program
against. `McpRemoteClient` implements it on top of the tracker's MCP server.
Every call may raise `NotFoundError` or `RemoteError`.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

from .errors import NotFoundError, RemoteError, UnsupportedOperationError
from .models import (
    Attachment,
    AuthMode,
    IssueCategory,
    IssuePriority,
    IssueSnapshot,
    IssueStatus,
    Membership,
    Project,
    TimeEntryActivity,
    Tracker,
    User,
    Version,
)
from .session import RemoteSessionManager

logger = logging.getLogger(__name__)

INCLUDE_JOURNALS = "journals"
INCLUDE_ATTACHMENTS = "attachments"
INCLUDE_WATCHERS = "watchers"
INCLUDE_ALL = (INCLUDE_JOURNALS, INCLUDE_ATTACHMENTS, INCLUDE_WATCHERS)

OBJECTS_PER_PAGE = 100


class RemoteClient(Protocol):
    def fetch_issue_by_id(self, issue_id: int, include: Iterable[str] = ()) -> IssueSnapshot: ...

    def search_issues_by_summary(self, project_key: str | None, pattern: str) -> list[IssueSnapshot]: ...

    def create_issue(self, project_key: str, issue: IssueSnapshot) -> IssueSnapshot: ...

    def update_issue(self, issue: IssueSnapshot) -> None: ...

    def upload_attachment(self, content_type: str, path: str | Path) -> Attachment: ...

    def list_trackers(self) -> list[Tracker]: ...

    def list_statuses(self) -> list[IssueStatus]: ...

    def list_categories(self, project_id: int) -> list[IssueCategory]: ...

    def list_versions(self, project_id: int) -> list[Version]: ...

    def list_memberships(self, project: Project) -> list[Membership]: ...

    def list_time_entry_activities(self) -> list[TimeEntryActivity]: ...

    def list_issue_priorities(self) -> list[IssuePriority]: ...

    def get_current_user(self) -> User: ...

    def get_project_by_key(self, key: str) -> Project: ...

    def close(self) -> None: ...


def _items(payload: Any, key: str) -> list[dict[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get(key) or []
    raise RemoteError("remote_tool_error", f"unexpected payload for {key}: {type(payload).__name__}")


class McpRemoteClient:
    """RemoteClient backed by the tracker's MCP server."""

    def __init__(self, session: RemoteSessionManager):
        self._session = session

    @classmethod
    def for_connection(
        cls,
        url: str,
        auth_mode: AuthMode,
        access_key: str | None = None,
        username: str | None = None,
        password: str | None = None,
    ) -> McpRemoteClient:
        """Build a client whose session carries the context's credentials."""
        env = {"REDMINE_URL": url}
        headers: dict[str, str] = {}
        if auth_mode is AuthMode.ACCESS_KEY:
            env["REDMINE_API_KEY"] = access_key or ""
            headers["X-Redmine-API-Key"] = access_key or ""
        else:
            env["REDMINE_USERNAME"] = username or ""
            env["REDMINE_PASSWORD"] = password or ""
            token = base64.b64encode(f"{username or ''}:{password or ''}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        return cls(RemoteSessionManager(env=env, headers=headers))

    def _call(self, tool_name: str, arguments: dict[str, Any] | None = None) -> Any:
        try:
            return self._session.call_tool(tool_name, arguments or {})
        except RemoteError as exc:
            if exc.code != "remote_tool_error":
                raise
            lowered = exc.message.lower()
            if "unknown tool" in lowered:
                raise UnsupportedOperationError(
                    f"remote server does not support '{tool_name}'"
                ) from exc
            if "not found" in lowered or "404" in lowered:
                raise NotFoundError(exc.message) from exc
            raise

    def fetch_issue_by_id(self, issue_id: int, include: Iterable[str] = ()) -> IssueSnapshot:
        payload = self._call("get_issue", {"id": int(issue_id), "include": list(include)})
        if not payload:
            raise NotFoundError(f"issue {issue_id} not found")
        data = payload.get("issue", payload) if isinstance(payload, dict) else payload
        return IssueSnapshot.from_dict(data)

    def search_issues_by_summary(self, project_key: str | None, pattern: str) -> list[IssueSnapshot]:
        args: dict[str, Any] = {"subject": pattern, "limit": OBJECTS_PER_PAGE}
        if project_key:
            args["project_id"] = project_key
        payload = self._call("list_issues", args)
        return [IssueSnapshot.from_dict(item) for item in _items(payload, "issues")]

    def create_issue(self, project_key: str, issue: IssueSnapshot) -> IssueSnapshot:
        args = issue.to_dict()
        args["project_id"] = project_key
        args.pop("id", None)
        payload = self._call("create_issue", args)
        data = payload.get("issue", payload) if isinstance(payload, dict) else payload
        return IssueSnapshot.from_dict(data)

    def update_issue(self, issue: IssueSnapshot) -> None:
        if not issue.id:
            raise ValueError("cannot update an issue without id")
        self._call("update_issue", issue.to_dict())

    def upload_attachment(self, content_type: str, path: str | Path) -> Attachment:
        file_path = Path(path)
        try:
            content = file_path.read_bytes()
        except OSError as exc:
            raise RemoteError("attachment_unreadable", f"cannot read {file_path}: {exc}") from exc
        payload = self._call(
            "upload_attachment",
            {
                "filename": file_path.name,
                "content_type": content_type,
                "content_base64": base64.b64encode(content).decode("ascii"),
            },
        )
        upload = payload.get("upload", payload) if isinstance(payload, dict) else {}
        return Attachment(
            filename=file_path.name,
            content_type=content_type,
            token=upload.get("token"),
            filesize=len(content),
        )

    def list_trackers(self) -> list[Tracker]:
        return [Tracker.from_dict(t) for t in _items(self._call("list_trackers"), "trackers")]

    def list_statuses(self) -> list[IssueStatus]:
        payload = self._call("list_issue_statuses")
        return [IssueStatus.from_dict(s) for s in _items(payload, "issue_statuses")]

    def list_categories(self, project_id: int) -> list[IssueCategory]:
        payload = self._call("list_issue_categories", {"project_id": project_id})
        return [IssueCategory.from_dict(c) for c in _items(payload, "issue_categories")]

    def list_versions(self, project_id: int) -> list[Version]:
        payload = self._call("list_versions", {"project_id": project_id})
        return [Version.from_dict(v) for v in _items(payload, "versions")]

    def list_memberships(self, project: Project) -> list[Membership]:
        payload = self._call("list_memberships", {"project_id": project.identifier})
        return [Membership.from_dict(m) for m in _items(payload, "memberships")]

    def list_time_entry_activities(self) -> list[TimeEntryActivity]:
        payload = self._call("list_time_entry_activities")
        return [TimeEntryActivity.from_dict(a) for a in _items(payload, "time_entry_activities")]

    def list_issue_priorities(self) -> list[IssuePriority]:
        payload = self._call("list_issue_priorities")
        return [IssuePriority.from_dict(p) for p in _items(payload, "issue_priorities")]

    def get_current_user(self) -> User:
        payload = self._call("get_current_user")
        data = payload.get("user", payload) if isinstance(payload, dict) else None
        if not data:
            raise RemoteError("remote_tool_error", "remote returned no current user")
        return User.from_dict(data, is_current=True)

    def get_project_by_key(self, key: str) -> Project:
        payload = self._call("get_project", {"id": key})
        if not payload:
            raise NotFoundError(f"project {key} not found")
        data = payload.get("project", payload) if isinstance(payload, dict) else payload
        return Project.from_dict(data)

    def get_health(self) -> dict[str, Any]:
        return self._session.get_health()

    def close(self) -> None:
        self._session.close()
