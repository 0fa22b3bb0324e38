"""
Records mirrored from the remote tracker.

All records are plain dataclasses built from the dictionaries returned by the
remote client. Dates are kept as the ISO strings the server sends.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class IssueStatusKind(enum.Enum):
    """Local status of an issue entity relative to the server."""

    NEW = "new"
    MODIFIED = "modified"
    SEEN = "seen"


class AuthMode(enum.Enum):
    ACCESS_KEY = "access_key"
    CREDENTIALS = "credentials"

    @classmethod
    def parse(cls, value: str | AuthMode | None) -> AuthMode | None:
        if value is None or isinstance(value, AuthMode):
            return value
        normalized = value.strip().lower().replace("-", "_")
        for mode in cls:
            if normalized in (mode.value, mode.name.lower()):
                return mode
        # Legacy spelling stored by older settings files.
        if normalized == "accesskey":
            return cls.ACCESS_KEY
        return None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _name_of(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("name")
    return value


@dataclass
class User:
    id: int
    login: str | None = None
    firstname: str | None = None
    lastname: str | None = None
    mail: str | None = None
    is_current: bool = False

    @property
    def full_name(self) -> str:
        parts = [p for p in (self.firstname, self.lastname) if p]
        if parts:
            return " ".join(parts)
        return self.login or str(self.id)

    @classmethod
    def from_dict(cls, data: dict[str, Any], is_current: bool = False) -> User:
        return cls(
            id=int(data["id"]),
            login=data.get("login"),
            firstname=data.get("firstname"),
            lastname=data.get("lastname"),
            mail=data.get("mail"),
            is_current=is_current,
        )


@dataclass
class Project:
    id: int
    identifier: str
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Project:
        return cls(
            id=int(data["id"]),
            identifier=str(data.get("identifier") or data["id"]),
            name=data.get("name", ""),
        )


@dataclass
class Tracker:
    id: int
    name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tracker:
        return cls(id=int(data["id"]), name=data.get("name", ""))


@dataclass
class IssueStatus:
    id: int
    name: str
    is_default: bool = False
    is_closed: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueStatus:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            is_default=bool(data.get("is_default", False)),
            is_closed=bool(data.get("is_closed", False)),
        )


@dataclass
class IssuePriority:
    id: int
    name: str
    is_default: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssuePriority:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            is_default=bool(data.get("is_default", False)),
        )


@dataclass
class IssueCategory:
    id: int
    name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueCategory:
        return cls(id=int(data["id"]), name=data.get("name", ""))


@dataclass
class Version:
    id: int
    name: str
    status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Version:
        return cls(id=int(data["id"]), name=data.get("name", ""), status=data.get("status"))


@dataclass
class TimeEntryActivity:
    id: int
    name: str
    is_default: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeEntryActivity:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            is_default=bool(data.get("is_default", False)),
        )


@dataclass
class Membership:
    id: int
    user: User | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Membership:
        user = data.get("user")
        return cls(id=int(data["id"]), user=User.from_dict(user) if user else None)


@dataclass
class Attachment:
    filename: str
    content_type: str = "application/octet-stream"
    id: int | None = None
    token: str | None = None
    description: str | None = None
    filesize: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            filename=data.get("filename", ""),
            content_type=data.get("content_type") or "application/octet-stream",
            id=_int_or_none(data.get("id")),
            token=data.get("token"),
            description=data.get("description"),
            filesize=_int_or_none(data.get("filesize")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "id": self.id,
            "token": self.token,
            "description": self.description,
        }


@dataclass
class Journal:
    id: int
    user: str | None = None
    notes: str | None = None
    created_on: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Journal:
        return cls(
            id=int(data["id"]),
            user=_name_of(data.get("user")),
            notes=data.get("notes"),
            created_on=data.get("created_on"),
        )


@dataclass
class IssueSnapshot:
    """Remote state of one issue as last fetched from the server."""

    id: int | None = None
    project_key: str | None = None
    subject: str = ""
    description: str = ""
    tracker: str | None = None
    status_id: int | None = None
    status_name: str | None = None
    priority_id: int | None = None
    priority_text: str | None = None
    assignee: str | None = None
    author: str | None = None
    category: str | None = None
    target_version: str | None = None
    parent_id: int | None = None
    start_date: str | None = None
    due_date: str | None = None
    done_ratio: int | None = None
    estimated_hours: float | None = None
    spent_hours: float | None = None
    created_on: str | None = None
    updated_on: str | None = None
    notes: str | None = None  # outgoing journal note, cleared by the server
    attachments: list[Attachment] = field(default_factory=list)
    journals: list[Journal] = field(default_factory=list)
    watchers: list[str] = field(default_factory=list)

    def copy(self) -> IssueSnapshot:
        return IssueSnapshot(
            **{
                **self.__dict__,
                "attachments": list(self.attachments),
                "journals": list(self.journals),
                "watchers": list(self.watchers),
            }
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueSnapshot:
        status = data.get("status") or {}
        priority = data.get("priority") or {}
        project = data.get("project") or {}
        parent = data.get("parent") or {}
        return cls(
            id=_int_or_none(data.get("id")),
            project_key=project.get("identifier") or data.get("project_key"),
            subject=data.get("subject") or "",
            description=data.get("description") or "",
            tracker=_name_of(data.get("tracker")),
            status_id=_int_or_none(status.get("id", data.get("status_id"))),
            status_name=status.get("name", data.get("status_name")),
            priority_id=_int_or_none(priority.get("id", data.get("priority_id"))),
            priority_text=priority.get("name", data.get("priority_text")),
            assignee=_name_of(data.get("assigned_to")),
            author=_name_of(data.get("author")),
            category=_name_of(data.get("category")),
            target_version=_name_of(data.get("fixed_version")),
            parent_id=_int_or_none(parent.get("id", data.get("parent_id"))),
            start_date=data.get("start_date"),
            due_date=data.get("due_date"),
            done_ratio=_int_or_none(data.get("done_ratio")),
            estimated_hours=data.get("estimated_hours"),
            spent_hours=data.get("spent_hours"),
            created_on=data.get("created_on"),
            updated_on=data.get("updated_on"),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            journals=[Journal.from_dict(j) for j in data.get("journals") or []],
            watchers=[w for w in (_name_of(w) for w in data.get("watchers") or []) if w],
        )

    def to_dict(self) -> dict[str, Any]:
        """Payload for create/update calls. Only writable fields are sent."""
        payload: dict[str, Any] = {
            "id": self.id,
            "project_key": self.project_key,
            "subject": self.subject,
            "description": self.description,
            "status_id": self.status_id,
            "priority_id": self.priority_id,
            "parent_id": self.parent_id,
            "start_date": self.start_date,
            "due_date": self.due_date,
            "done_ratio": self.done_ratio,
            "estimated_hours": self.estimated_hours,
        }
        if self.notes:
            payload["notes"] = self.notes
        uploads = [a.to_dict() for a in self.attachments if a.token]
        if uploads:
            payload["uploads"] = uploads
        return {k: v for k, v in payload.items() if v is not None}
