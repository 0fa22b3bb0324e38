"""
Synchronous access to the tracker's MCP server.

Tracker contexts call remote tools from plain worker threads, while the `mcp`
client is asyncio based. `RemoteSessionManager` owns one event loop on a
daemon thread and one `ClientSession` living on it; every call is marshalled
onto that loop and waited for.

A call that fails in transit drops the session and is tried once more on a
fresh one. A tool that answers with an error is reported as
`remote_tool_error` straight away.

Transport settings (constructor argument first, then environment):

    TRACKER_MIRROR_REMOTE_TRANSPORT  stdio (default) or http
    TRACKER_MIRROR_REMOTE_COMMAND    server executable for stdio
    TRACKER_MIRROR_REMOTE_ARGS       its arguments, JSON list or shell words
    TRACKER_MIRROR_REMOTE_URL        endpoint for http
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
import os
import shlex
import threading
import time
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any

from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .errors import RemoteError

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "http")
DEFAULT_TRANSPORT = "stdio"
DEFAULT_STDIO_COMMAND = "npx"
DEFAULT_STDIO_ARGS = ["-y", "mcp-server-redmine"]

CALL_ATTEMPTS = 2
# Extra wait on the calling thread beyond the session's own read timeout.
SUBMIT_GRACE_SECONDS = 10.0

_CROSS_TASK_EXIT = "Attempted to exit cancel scope in a different task"


def parse_stdio_args(raw: str | None) -> list[str]:
    """Split server arguments given as a JSON list or as shell words."""
    if not raw:
        return list(DEFAULT_STDIO_ARGS)
    try:
        decoded = json.loads(raw)
    except ValueError:
        decoded = None
    if isinstance(decoded, list):
        return [str(item) for item in decoded]
    try:
        return shlex.split(raw)
    except ValueError:
        logger.warning("Ignoring invalid TRACKER_MIRROR_REMOTE_ARGS value; using default args")
        return list(DEFAULT_STDIO_ARGS)


def result_text(result: Any) -> str:
    blocks = getattr(result, "content", None) or []
    parts = [getattr(b, "text", "") for b in blocks if getattr(b, "type", None) == "text"]
    return "\n".join(p for p in parts if p).strip()


def decode_tool_result(result: Any) -> Any:
    """Turn a `CallToolResult` into plain Python data.

    Structured content wins. A bare ``{"result": ...}`` wrapper, which FastMCP
    uses for non-object return values, is unwrapped. Otherwise the text blocks
    are parsed as JSON, or returned as ``{"text": ...}`` when they are not JSON.

    Raises:
        RemoteError: with code ``remote_tool_error`` if the tool reported an error.
    """
    if getattr(result, "isError", False):
        raise RemoteError("remote_tool_error", result_text(result) or "remote tool reported an error")

    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict) and list(structured) == ["result"]:
        return structured["result"]
    if structured is not None:
        return structured

    text = result_text(result)
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"text": text}


def _log_teardown_error(what: str, exc: Exception) -> None:
    # anyio complains when a transport opened in one task is closed from another.
    level = logging.DEBUG if _CROSS_TASK_EXIT in str(exc) else logging.WARNING
    logger.log(level, "Closing remote %s failed: %s", what, exc)


class RemoteSessionManager:
    """One reconnecting MCP client session, usable from any thread."""

    def __init__(
        self,
        transport: str | None = None,
        command: str | None = None,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        sse_read_timeout_seconds: float = 300.0,
        read_timeout_seconds: float = 30.0,
    ):
        transport = (transport or os.getenv("TRACKER_MIRROR_REMOTE_TRANSPORT") or DEFAULT_TRANSPORT).lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"TRACKER_MIRROR_REMOTE_TRANSPORT must be one of: {', '.join(TRANSPORTS)}")
        url = url or os.getenv("TRACKER_MIRROR_REMOTE_URL")
        if transport == "http" and not url:
            raise ValueError("http transport requires a remote MCP url")

        self._transport = transport
        self._url = url
        self._headers = headers
        self._command = command or os.getenv("TRACKER_MIRROR_REMOTE_COMMAND") or DEFAULT_STDIO_COMMAND
        self._args = args or parse_stdio_args(os.getenv("TRACKER_MIRROR_REMOTE_ARGS"))
        self._env = env
        self._timeout_seconds = timeout_seconds
        self._sse_read_timeout_seconds = sse_read_timeout_seconds
        self._read_timeout_seconds = read_timeout_seconds

        self._lock = threading.RLock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: threading.Thread | None = None
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_connected_at: float | None = None

    # -- event loop ----------------------------------------------------------

    def _start_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None and self._loop_thread is not None and self._loop_thread.is_alive():
            return self._loop
        loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=self._run_loop, args=(loop,), daemon=True, name="tracker-mirror-remote"
        )
        thread.start()
        self._loop, self._loop_thread = loop, thread
        return loop

    @staticmethod
    def _run_loop(loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def _submit(self, coro: Any) -> Any:
        """Run `coro` on the session loop and block for its result."""
        if self._loop is None:
            raise RuntimeError("remote session loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=self._read_timeout_seconds + SUBMIT_GRACE_SECONDS)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    # -- connection ----------------------------------------------------------

    def _transport_client(self) -> Any:
        if self._transport == "http":
            return streamablehttp_client(
                self._url,
                headers=self._headers,
                timeout=self._timeout_seconds,
                sse_read_timeout=self._sse_read_timeout_seconds,
                terminate_on_close=False,
            )
        env = {**os.environ, **self._env} if self._env else None
        return stdio_client(StdioServerParameters(command=self._command, args=self._args, env=env))

    async def _open_async(self) -> None:
        if self._session is not None:
            return
        stack = AsyncExitStack()
        try:
            # stdio yields (read, write); streamable http adds a session id getter.
            streams = await stack.enter_async_context(self._transport_client())
            if len(streams) not in (2, 3):
                raise RuntimeError(f"unexpected transport streams: {len(streams)} items")
            session = await stack.enter_async_context(
                ClientSession(
                    streams[0],
                    streams[1],
                    read_timeout_seconds=timedelta(seconds=self._read_timeout_seconds),
                )
            )
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack, self._session = stack, session
        self._last_connected_at = time.time()
        logger.info("Connected to remote tracker over %s", self._transport)

    async def _disconnect_async(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except Exception as exc:
            _log_teardown_error("session", exc)

    def _ensure_connected(self) -> None:
        self._start_loop()
        self._submit(self._open_async())

    def _drop_session(self) -> None:
        try:
            self._submit(self._disconnect_async())
        except Exception as exc:
            _log_teardown_error("connection", exc)

    # -- calls ---------------------------------------------------------------

    def _note_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{type(exc).__name__}: {exc}"
        logger.warning("Remote call failed (%s): %s", type(exc).__name__, exc)

    def _call_once(self, name: str, arguments: dict[str, Any]) -> Any:
        self._ensure_connected()
        session = self._session
        if session is None:
            raise RuntimeError("remote session unavailable")
        return decode_tool_result(self._submit(session.call_tool(name, arguments=arguments)))

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Call a remote tool and return its decoded result.

        Raises:
            RemoteError: ``remote_tool_error`` when the tool refused the call,
                ``remote_unavailable`` when both attempts failed in transit.
        """
        arguments = arguments or {}
        with self._lock:
            failure: Exception | None = None
            for _ in range(CALL_ATTEMPTS):
                try:
                    value = self._call_once(name, arguments)
                except RemoteError as exc:
                    if exc.code == "remote_tool_error":
                        raise
                    failure = exc
                except Exception as exc:
                    failure = exc
                else:
                    self._failure_count = 0
                    self._last_error = None
                    return value
                self._note_failure(failure)
                self._drop_session()

            if isinstance(failure, RemoteError):
                raise failure
            raise RemoteError(
                "remote_unavailable", f"remote call to '{name}' failed: {failure}"
            ) from failure

    # -- lifecycle -----------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        with self._lock:
            if self._transport == "stdio":
                endpoint = {"command": self._command, "args": self._args}
            else:
                endpoint = {"url": self._url, "hasHeaders": self._headers is not None}
            return {
                "transport": self._transport,
                "connected": self._session is not None,
                "failureCount": self._failure_count,
                "lastError": self._last_error,
                "lastFailureAt": self._last_failure_at,
                "lastConnectedAt": self._last_connected_at,
                **endpoint,
            }

    def close(self) -> None:
        """Disconnect and stop the loop thread. The manager can reconnect later."""
        with self._lock:
            loop, thread = self._loop, self._loop_thread
            self._loop = self._loop_thread = None
            if loop is None:
                return

            try:
                future = asyncio.run_coroutine_threadsafe(self._disconnect_async(), loop)
                future.result(timeout=self._read_timeout_seconds + SUBMIT_GRACE_SECONDS)
            except Exception as exc:
                _log_teardown_error("session on close", exc)
            loop.call_soon_threadsafe(loop.stop)

            if thread is not None:
                thread.join(timeout=1.0)
            if thread is not None and thread.is_alive():
                logger.warning("Remote session loop thread did not stop within timeout")
            else:
                loop.close()
            self._session = None
            self._stack = None
