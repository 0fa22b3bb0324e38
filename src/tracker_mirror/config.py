"""
Process settings for tracker contexts.

Values default from environment variables and can be changed at runtime. The
refresh intervals are read each time a refresh is scheduled, so a change takes
effect on the next tick.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

logger = logging.getLogger(__name__)

MIN_REFRESH_MINUTES = 5
DEFAULT_ISSUE_REFRESH_MINUTES = 20
DEFAULT_QUERY_REFRESH_MINUTES = 30
DEFAULT_RESOLVED_STATUS_ID = 3


def int_env(var_name: str, default: int) -> int:
    raw = os.getenv(var_name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return default


def _float_env(var_name: str) -> float | None:
    raw = os.getenv(var_name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r", var_name, raw)
        return None


def _bool_env(var_name: str) -> bool:
    return os.getenv(var_name, "").strip().lower() in {"1", "true", "yes"}


def resolve_refresh_minutes(configured: int, default: int, kind: str) -> int:
    """Apply the refresh floor: values below it fall back to the default."""
    if configured < MIN_REFRESH_MINUTES:
        logger.warning(
            "Wrong %s refresh delay %d, falling back to default %d",
            kind,
            configured,
            default,
        )
        return default
    return configured


class TrackerConfig:
    """In-memory settings store shared by every context in the process."""

    def __init__(
        self,
        issue_refresh_minutes: int | None = None,
        query_refresh_minutes: int | None = None,
        resolved_status_id: int | None = None,
        no_issue_refresh: bool | None = None,
        force_refresh_seconds: float | None = None,
    ):
        self.issue_refresh_minutes = (
            issue_refresh_minutes
            if issue_refresh_minutes is not None
            else int_env("TRACKER_MIRROR_ISSUE_REFRESH_MINUTES", DEFAULT_ISSUE_REFRESH_MINUTES)
        )
        self.query_refresh_minutes = (
            query_refresh_minutes
            if query_refresh_minutes is not None
            else int_env("TRACKER_MIRROR_QUERY_REFRESH_MINUTES", DEFAULT_QUERY_REFRESH_MINUTES)
        )
        self.resolved_status_id = (
            resolved_status_id
            if resolved_status_id is not None
            else int_env("TRACKER_MIRROR_RESOLVED_STATUS_ID", DEFAULT_RESOLVED_STATUS_ID)
        )
        # Debug overrides, not meant for production settings.
        self.no_issue_refresh = (
            no_issue_refresh
            if no_issue_refresh is not None
            else _bool_env("TRACKER_MIRROR_NO_ISSUE_REFRESH")
        )
        self.force_refresh_seconds = (
            force_refresh_seconds
            if force_refresh_seconds is not None
            else _float_env("TRACKER_MIRROR_FORCE_REFRESH_SECONDS")
        )

        self._lock = threading.Lock()
        self._queries: dict[str, dict[str, dict[str, Any]]] = {}

    def issue_refresh_delay(self) -> float:
        """Seconds until the next issue refresh tick."""
        if self.force_refresh_seconds is not None:
            return self.force_refresh_seconds
        minutes = resolve_refresh_minutes(
            self.issue_refresh_minutes, DEFAULT_ISSUE_REFRESH_MINUTES, "issue"
        )
        return minutes * 60.0

    def query_refresh_delay(self) -> float:
        """Seconds until the next query refresh tick."""
        if self.force_refresh_seconds is not None:
            return self.force_refresh_seconds
        minutes = resolve_refresh_minutes(
            self.query_refresh_minutes, DEFAULT_QUERY_REFRESH_MINUTES, "query"
        )
        return minutes * 60.0

    # -- saved queries -----------------------------------------------------

    def get_query_names(self, context_id: str) -> list[str]:
        with self._lock:
            return sorted(self._queries.get(context_id, {}))

    def get_query(self, context_id: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            stored = self._queries.get(context_id, {}).get(name)
            return dict(stored) if stored is not None else None

    def put_query(
        self,
        context_id: str,
        name: str,
        pattern: str,
        project_key: str | None = None,
        auto_refresh: bool = True,
    ) -> None:
        with self._lock:
            self._queries.setdefault(context_id, {})[name] = {
                "pattern": pattern,
                "project_key": project_key,
                "auto_refresh": auto_refresh,
            }

    def remove_query(self, context_id: str, name: str) -> None:
        with self._lock:
            self._queries.get(context_id, {}).pop(name, None)

    def is_query_auto_refresh(self, context_id: str, name: str) -> bool:
        with self._lock:
            stored = self._queries.get(context_id, {}).get(name)
            # Unsaved queries refresh like saved ones with default settings.
            return True if stored is None else bool(stored.get("auto_refresh", True))

    def set_query_auto_refresh(self, context_id: str, name: str, enabled: bool) -> None:
        with self._lock:
            stored = self._queries.get(context_id, {}).get(name)
            if stored is not None:
                stored["auto_refresh"] = enabled
