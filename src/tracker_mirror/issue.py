"""
Local mirror of one remote issue.

An `IssueEntity` holds the last fetched `IssueSnapshot` plus summary and
description edits that have not been pushed yet. The identity cache keeps one
entity per remote id, so a refresh replaces the snapshot in place and every
holder sees the new data.

Refreshes triggered concurrently for the same issue are not serialized: the
fetch that finishes last wins. Each fetch reads current server state, so in
steady state that is also the newest data, though a slow fetch can briefly
overwrite a newer one until the next tick.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import dispatch
from .client import INCLUDE_ALL
from .errors import ConfigurationError, NotFoundError, RemoteError, UnsupportedOperationError
from .events import EVENT_ISSUE_DATA_CHANGED, ChangeListener, ChangeSupport
from .models import IssueSnapshot, IssueStatusKind

if TYPE_CHECKING:
    from .context import RemoteContext

logger = logging.getLogger(__name__)

NEW_ISSUE_LABEL = "New Issue"
SHORTENED_SUMMARY_LENGTH = 22
PATCH_CONTENT_TYPE = "text/x-diff"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Failures of a single remote operation. Anything else is a bug and propagates.
_OPERATION_ERRORS = (RemoteError, ConfigurationError, UnsupportedOperationError)

_SNAPSHOT_FIELDS = frozenset(f.name for f in fields(IssueSnapshot))


class IssueEntity:
    """One issue of a context, either fetched from the server or a draft."""

    def __init__(
        self,
        context: RemoteContext,
        snapshot: IssueSnapshot | None = None,
        summary: str | None = None,
        description: str | None = None,
    ):
        self._context = context
        if snapshot is None:
            snapshot = IssueSnapshot(
                project_key=context.project_key,
                subject=summary or "",
                description=description or "",
            )
        self._snapshot = snapshot
        self._local_summary: str | None = None
        self._local_description: str | None = None
        self._lock = threading.RLock()
        self._support = ChangeSupport(self)

    # -- identity ------------------------------------------------------------

    @property
    def context(self) -> RemoteContext:
        return self._context

    @property
    def snapshot(self) -> IssueSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def remote_id(self) -> int | None:
        """Server id, or None for drafts (id 0 counts as a draft)."""
        with self._lock:
            return self._snapshot.id or None

    @property
    def id(self) -> str | None:
        remote_id = self.remote_id
        return None if remote_id is None else str(remote_id)

    def is_new(self) -> bool:
        return self.remote_id is None

    # -- derived state -------------------------------------------------------

    def get_status(self) -> IssueStatusKind:
        with self._lock:
            if not self._snapshot.id:
                return IssueStatusKind.NEW
            if self._local_summary is not None or self._local_description is not None:
                return IssueStatusKind.MODIFIED
            return IssueStatusKind.SEEN

    status = property(get_status)

    @property
    def summary(self) -> str:
        with self._lock:
            if self._local_summary is not None:
                return self._local_summary
            if not self._snapshot.id and not self._snapshot.subject:
                return NEW_ISSUE_LABEL
            return self._snapshot.subject

    @property
    def description(self) -> str:
        with self._lock:
            if self._local_description is not None:
                return self._local_description
            return self._snapshot.description

    @property
    def short_summary(self) -> str:
        summary = self.summary
        if len(summary) <= SHORTENED_SUMMARY_LENGTH:
            return summary
        return summary[:SHORTENED_SUMMARY_LENGTH] + "..."

    @property
    def display_name(self) -> str:
        with self._lock:
            snapshot = self._snapshot
        if not snapshot.id:
            return snapshot.subject or NEW_ISSUE_LABEL
        return f"{snapshot.tracker or 'Issue'} #{snapshot.id}: {snapshot.subject}"

    @property
    def tooltip(self) -> str:
        return self.display_name

    def has_parent(self) -> bool:
        return self.snapshot.parent_id is not None

    def is_finished(self) -> bool:
        return (self.snapshot.status_name or "").lower() == "closed"

    @property
    def created_on(self) -> str | None:
        return self.snapshot.created_on

    @property
    def updated_on(self) -> str | None:
        return self.snapshot.updated_on

    @property
    def due_date(self) -> str | None:
        return self.snapshot.due_date

    @property
    def schedule(self) -> str | None:
        return self.snapshot.start_date

    def get_field_value(self, name: str) -> Any:
        if name not in _SNAPSHOT_FIELDS:
            raise KeyError(name)
        return getattr(self.snapshot, name)

    # -- local edits ---------------------------------------------------------

    def set_local_summary(self, summary: str | None) -> None:
        with self._lock:
            self._local_summary = summary
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)

    def set_local_description(self, description: str | None) -> None:
        with self._lock:
            self._local_description = description
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)

    def discard_outgoing(self) -> None:
        """Drop summary and description edits that were never pushed."""
        with self._lock:
            self._local_summary = None
            self._local_description = None
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)

    # -- listeners -----------------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._support.add_listener(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        self._support.remove_listener(listener)

    # -- remote state --------------------------------------------------------

    def set_snapshot(self, snapshot: IssueSnapshot) -> None:
        """Replace the mirrored state wholesale and notify listeners."""
        with self._lock:
            self._snapshot = snapshot
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)

    def refresh(self, notify: bool = False) -> bool:
        """Re-read the issue from the server. Blocking; never raises remote errors.

        Args:
            notify: Report a failure to the user as well as logging it. Set for
                refreshes the user asked for, never for background ones.
        """
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"

        remote_id = self.remote_id
        if remote_id is None:
            return True
        try:
            snapshot = self._context.client.fetch_issue_by_id(remote_id, include=INCLUDE_ALL)
        except NotFoundError as exc:
            logger.error("Can't refresh issue %s, it no longer exists: %s", remote_id, exc)
            if notify:
                self._context.notify_failure(f"Issue {remote_id} no longer exists", exc)
            return False
        except _OPERATION_ERRORS as exc:
            logger.error("Can't refresh issue %s: %s", remote_id, exc)
            if notify:
                self._context.notify_failure(f"Can't refresh issue {remote_id}", exc)
            return False
        self.set_snapshot(snapshot)
        return True

    def open(self) -> None:
        logger.debug("issue %s open start", self.id)
        if self._context.config.no_issue_refresh:
            return
        if dispatch.is_interactive_thread():
            dispatch.run_in_background(self.refresh)
        else:
            self.refresh()
        if not self.is_new():
            self._context.schedule_for_refresh(self.id)
        logger.debug("issue %s open finish", self.id)

    def close(self) -> None:
        logger.debug("issue %s close start", self.id)
        if not self.is_new():
            self._context.stop_refreshing(self.id)
        logger.debug("issue %s close finish", self.id)

    # -- pushes --------------------------------------------------------------

    def add_comment(self, comment: str, resolve: bool = False) -> bool:
        """Add a journal note, optionally resolving the issue in the same update."""
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"
        if self.is_new():
            raise ValueError("cannot comment on an issue that was not submitted")

        with self._lock:
            snapshot = self._snapshot
            old_status_id, old_notes = snapshot.status_id, snapshot.notes
            snapshot.notes = comment
            if resolve:
                snapshot.status_id = self._context.config.resolved_status_id
            payload = snapshot.copy()

        try:
            self._context.client.update_issue(payload)
        except _OPERATION_ERRORS as exc:
            with self._lock:
                snapshot.status_id = old_status_id
                snapshot.notes = old_notes
            self._context.notify_failure(f"Can't add comment to issue {self.id}", exc)
            return False

        with self._lock:
            snapshot.notes = None
        self.refresh()
        return True

    def attach_file(
        self,
        path: str | Path,
        description: str | None = None,
        comment: str | None = None,
        patch: bool = False,
    ) -> bool:
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"
        if self.is_new():
            raise ValueError("cannot attach a file to an issue that was not submitted")

        client = None
        try:
            client = self._context.client
            content_type = PATCH_CONTENT_TYPE if patch else DEFAULT_CONTENT_TYPE
            attachment = client.upload_attachment(content_type, path)
        except _OPERATION_ERRORS as exc:
            self._context.notify_failure(f"Can't attach file to issue {self.id}", exc)
            return False
        attachment.description = description

        with self._lock:
            snapshot = self._snapshot
            old_notes = snapshot.notes
            snapshot.attachments.append(attachment)
            if comment and comment.strip():
                snapshot.notes = comment
            payload = snapshot.copy()

        try:
            client.update_issue(payload)
        except _OPERATION_ERRORS as exc:
            with self._lock:
                if attachment in snapshot.attachments:
                    snapshot.attachments.remove(attachment)
                snapshot.notes = old_notes
            self._context.notify_failure(f"Can't attach file to issue {self.id}", exc)
            return False

        with self._lock:
            snapshot.notes = None
        self.refresh()
        return True

    def set_schedule(self, start_date: str | None) -> bool:
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"
        if self.is_new():
            # Drafts carry no schedule until they are submitted.
            return False

        with self._lock:
            snapshot = self._snapshot
            old_start_date = snapshot.start_date
            snapshot.start_date = start_date
            payload = snapshot.copy()
        try:
            self._context.client.update_issue(payload)
        except _OPERATION_ERRORS as exc:
            with self._lock:
                snapshot.start_date = old_start_date
            logger.warning("Failed to update start date for issue %s: %s", self.id, exc)
            return False
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)
        return True

    def submit(self) -> bool:
        """Push the draft or the pending edits. Nothing is committed locally on failure."""
        assert not dispatch.is_interactive_thread(), "Accessing remote host. Do not call on the interactive thread"

        with self._lock:
            snapshot = self._snapshot
            local_summary = self._local_summary
            local_description = self._local_description
            payload = snapshot.copy()
        if local_summary is not None:
            payload.subject = local_summary
        if local_description is not None:
            payload.description = local_description

        if not payload.id:
            return self._submit_draft(payload)

        if local_summary is None and local_description is None:
            return True
        try:
            self._context.client.update_issue(payload)
        except _OPERATION_ERRORS as exc:
            self._context.notify_failure(f"Can't submit issue {self.id}", exc)
            return False

        with self._lock:
            if self._local_summary == local_summary:
                self._local_summary = None
            if self._local_description == local_description:
                self._local_description = None
            if self._snapshot is snapshot:
                self._snapshot = payload
        self._support.fire(EVENT_ISSUE_DATA_CHANGED)
        return True

    def _submit_draft(self, payload: IssueSnapshot) -> bool:
        project_key = payload.project_key or self._context.project_key
        if not project_key:
            raise ConfigurationError("select a project before submitting a new issue")
        if not payload.subject:
            raise ValueError("a new issue needs a summary")

        try:
            created = self._context.client.create_issue(project_key, payload)
        except _OPERATION_ERRORS as exc:
            self._context.notify_failure("Can't create issue", exc)
            return False

        with self._lock:
            self._local_summary = None
            self._local_description = None
        self.set_snapshot(created)
        self._context.issue_cache.install(self)
        self._context.forget_draft(self)
        return True

    def __repr__(self) -> str:
        return f"IssueEntity({self.display_name!r})"

    def __str__(self) -> str:
        return self.tooltip
