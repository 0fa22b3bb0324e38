"""
MCP server exposing one tracker context to an interactive client.

The event loop thread is the interactive thread: tools never run remote calls
on it and hand blocking work to a worker thread instead.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import dispatch
from .context import RemoteContext
from .issue import IssueEntity

logger = logging.getLogger(__name__)

_context: RemoteContext | None = None


def get_context() -> RemoteContext:
    global _context
    if _context is None:
        _context = RemoteContext(
            context_id=os.getenv("TRACKER_MIRROR_ID"),
            name=os.getenv("TRACKER_MIRROR_NAME", "tracker"),
            url=os.getenv("TRACKER_MIRROR_URL", ""),
            auth_mode=os.getenv("TRACKER_MIRROR_AUTH_MODE", "access_key"),
            access_key=os.getenv("TRACKER_MIRROR_ACCESS_KEY"),
            username=os.getenv("TRACKER_MIRROR_USERNAME"),
            password=os.getenv("TRACKER_MIRROR_PASSWORD"),
            project_key=os.getenv("TRACKER_MIRROR_PROJECT"),
        )
    return _context


def _shutdown() -> None:
    global _context
    if _context is not None:
        _context.dispose()
        _context = None
    dispatch.shutdown(wait=False)


atexit.register(_shutdown)


def _handle_sigterm(signum: int, frame: Any) -> None:
    """On SIGTERM: stop the refresh timers and close the remote session."""
    _shutdown()
    raise SystemExit(0)


signal.signal(signal.SIGTERM, _handle_sigterm)


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    dispatch.mark_interactive_thread()
    project_key = get_context().project_key
    if project_key:
        try:
            await asyncio.to_thread(get_context().select_project, project_key)
        except Exception as exc:
            logger.warning("Project selection failed, continuing without project: %s", exc)
    try:
        yield
    finally:
        dispatch.clear_interactive_thread()
        _shutdown()


mcp = FastMCP(
    "Tracker Mirror",
    instructions=(
        "Cached access to a remote issue tracker. Opened issues and saved "
        "queries are refreshed in the background; reads are served from the "
        "local mirror whenever possible."
    ),
    lifespan=_lifespan,
)


def issue_to_dict(issue: IssueEntity) -> dict[str, Any]:
    snapshot = issue.snapshot
    return {
        "id": issue.id,
        "displayName": issue.display_name,
        "summary": issue.summary,
        "description": issue.description,
        "status": issue.get_status().value,
        "remoteStatus": snapshot.status_name,
        "priority": snapshot.priority_text,
        "assignee": snapshot.assignee,
        "tracker": snapshot.tracker,
        "parentId": snapshot.parent_id,
        "doneRatio": snapshot.done_ratio,
        "startDate": snapshot.start_date,
        "dueDate": snapshot.due_date,
        "updatedOn": snapshot.updated_on,
        "attachments": [a.filename for a in snapshot.attachments],
        "journals": [
            {"user": j.user, "notes": j.notes, "createdOn": j.created_on}
            for j in snapshot.journals
        ],
    }


@mcp.tool()
async def get_issue(id: str) -> dict[str, Any] | None:
    """Retrieve an issue by id from the local mirror, fetching it on first use.

    Args:
        id: Numeric issue id.
    """
    issue = await asyncio.to_thread(get_context().get_issue, id)
    return issue_to_dict(issue) if issue else None


@mcp.tool()
async def search_issues(text: str) -> list[dict[str, Any]]:
    """Search by exact id, then by summary substring, in the selected project.

    Args:
        text: Issue id or part of the summary.
    """
    issues = await asyncio.to_thread(get_context().simple_search, text)
    return [issue_to_dict(issue) for issue in issues]


@mcp.tool()
async def open_issue(id: str) -> dict[str, Any] | None:
    """Open an issue: refresh it now and keep refreshing it in the background."""
    issue = await asyncio.to_thread(get_context().get_issue, id)
    if issue is None:
        return None
    # Called on the interactive thread: the immediate refresh goes to a worker.
    issue.open()
    return issue_to_dict(issue)


@mcp.tool()
def close_issue(id: str) -> dict[str, Any]:
    """Stop refreshing an issue in the background."""
    issue = get_context().issue_cache.get(id)
    if issue is not None:
        issue.close()
    else:
        get_context().stop_refreshing(id)
    return {"id": id, "subscribed": False}


@mcp.tool()
async def refresh_issue(id: str) -> dict[str, Any] | None:
    """Re-read an issue from the server right away."""
    issue = await asyncio.to_thread(get_context().get_issue, id)
    if issue is None:
        return None
    ok = await asyncio.to_thread(issue.refresh, True)
    return {**issue_to_dict(issue), "refreshed": ok}


@mcp.tool()
async def add_comment(id: str, comment: str, resolve: bool = False) -> dict[str, Any] | None:
    """Add a comment to an issue, optionally marking it resolved.

    Args:
        id: Numeric issue id.
        comment: Text of the journal note.
        resolve: Also move the issue to the resolved status.
    """
    issue = await asyncio.to_thread(get_context().get_issue, id)
    if issue is None:
        return None
    ok = await asyncio.to_thread(issue.add_comment, comment, resolve)
    return {**issue_to_dict(issue), "saved": ok}


@mcp.tool()
def list_queries() -> list[dict[str, Any]]:
    """List the saved queries of this tracker."""
    context = get_context()
    return [
        {
            "name": q.name,
            "pattern": q.pattern,
            "projectKey": q.project_key,
            "autoRefresh": context.config.is_query_auto_refresh(context.id, q.name),
        }
        for q in context.get_queries()
    ]


@mcp.tool()
async def save_query(name: str, pattern: str, auto_refresh: bool = True) -> dict[str, Any]:
    """Save a summary query and start refreshing its results in the background.

    Args:
        name: Display name of the query.
        pattern: Summary pattern; `*` is a wildcard.
        auto_refresh: Whether the periodic refresh re-runs this query.
    """
    context = get_context()
    query = context.create_query(name, pattern)
    context.save_query(query, auto_refresh=auto_refresh)
    await asyncio.to_thread(query.refresh)
    context.schedule_for_refresh(query)
    return {
        "name": query.name,
        "issues": [issue_to_dict(issue) for issue in query.issues],
    }


@mcp.tool()
def remove_query(name: str) -> dict[str, Any]:
    """Remove a saved query."""
    get_context().remove_query(name)
    return {"name": name, "removed": True}


@mcp.tool()
def get_health() -> dict[str, Any]:
    """Cache, scheduler and remote connection state."""
    return get_context().get_health()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("TRACKER_MIRROR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
