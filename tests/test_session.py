from __future__ import annotations

import asyncio

import pytest

from tracker_mirror.errors import RemoteError
from tracker_mirror.session import DEFAULT_STDIO_ARGS, RemoteSessionManager, decode_tool_result


@pytest.fixture(autouse=True)
def _clear_remote_env(monkeypatch: pytest.MonkeyPatch):
    keys = [
        "TRACKER_MIRROR_REMOTE_TRANSPORT",
        "TRACKER_MIRROR_REMOTE_COMMAND",
        "TRACKER_MIRROR_REMOTE_ARGS",
        "TRACKER_MIRROR_REMOTE_URL",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


def test_default_transport_uses_stdio():
    manager = RemoteSessionManager()

    health = manager.get_health()
    assert health["transport"] == "stdio"
    assert health["command"] == "npx"
    assert health["args"] == DEFAULT_STDIO_ARGS
    assert health["connected"] is False


def test_stdio_args_support_json_array(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRACKER_MIRROR_REMOTE_ARGS", '["-y", "mcp-server-redmine", "--verbose"]')
    manager = RemoteSessionManager()

    assert manager.get_health()["args"] == ["-y", "mcp-server-redmine", "--verbose"]


def test_stdio_args_support_shell_style_string(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRACKER_MIRROR_REMOTE_ARGS", "-y mcp-server-redmine --name 'My Tracker'")
    manager = RemoteSessionManager()

    assert manager.get_health()["args"] == ["-y", "mcp-server-redmine", "--name", "My Tracker"]


def test_stdio_args_invalid_shell_string_falls_back_to_default(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRACKER_MIRROR_REMOTE_ARGS", "-y mcp-server-redmine 'unterminated")
    manager = RemoteSessionManager()

    assert manager.get_health()["args"] == DEFAULT_STDIO_ARGS


def test_http_transport_reports_url_and_headers():
    manager = RemoteSessionManager(
        transport="http",
        url="https://tracker.example.com/mcp",
        headers={"X-Redmine-API-Key": "secret"},
    )

    health = manager.get_health()
    assert health["transport"] == "http"
    assert health["url"] == "https://tracker.example.com/mcp"
    assert health["hasHeaders"] is True


def test_http_transport_requires_url():
    with pytest.raises(ValueError):
        RemoteSessionManager(transport="http")


def test_invalid_transport_raises(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TRACKER_MIRROR_REMOTE_TRANSPORT", "invalid")
    with pytest.raises(ValueError):
        RemoteSessionManager()


class _FakeText:
    type = "text"

    def __init__(self, text: str):
        self.text = text


class _FakeResult:
    def __init__(self, *, is_error: bool = False, text: str = "", structured=None):
        self.isError = is_error
        self.content = [_FakeText(text)] if text else []
        self.structuredContent = structured


def _sync_submit(value):
    if asyncio.iscoroutine(value):
        return asyncio.run(value)
    return value


async def _noop_disconnect():
    return None


def _wire(monkeypatch: pytest.MonkeyPatch, manager: RemoteSessionManager, session) -> None:
    manager._session = session
    monkeypatch.setattr(manager, "_ensure_connected", lambda: None)
    monkeypatch.setattr(manager, "_submit", _sync_submit)
    monkeypatch.setattr(manager, "_disconnect_async", _noop_disconnect)


def test_call_tool_preserves_remote_tool_error(monkeypatch: pytest.MonkeyPatch):
    manager = RemoteSessionManager()
    calls = {"count": 0}

    class _FakeSession:
        def call_tool(self, name: str, arguments=None):
            calls["count"] += 1
            return _FakeResult(is_error=True, text="issue not found")

    _wire(monkeypatch, manager, _FakeSession())

    with pytest.raises(RemoteError) as exc_info:
        manager.call_tool("get_issue", {"id": 1})

    assert exc_info.value.code == "remote_tool_error"
    assert "issue not found" in exc_info.value.message
    assert calls["count"] == 1


def test_call_tool_retries_once_after_transport_failure(monkeypatch: pytest.MonkeyPatch):
    manager = RemoteSessionManager()
    calls = {"count": 0}

    class _FakeSession:
        def call_tool(self, name: str, arguments=None):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("transient failure")
            return _FakeResult(text='{"issue": {"id": 1}}')

    _wire(monkeypatch, manager, _FakeSession())

    assert manager.call_tool("get_issue", {"id": 1}) == {"issue": {"id": 1}}
    assert calls["count"] == 2
    assert manager.get_health()["failureCount"] == 0


def test_call_tool_gives_up_after_second_failure(monkeypatch: pytest.MonkeyPatch):
    manager = RemoteSessionManager()

    class _FakeSession:
        def call_tool(self, name: str, arguments=None):
            raise RuntimeError("connection reset")

    _wire(monkeypatch, manager, _FakeSession())

    with pytest.raises(RemoteError) as exc_info:
        manager.call_tool("list_issues", {})

    assert exc_info.value.code == "remote_unavailable"
    health = manager.get_health()
    assert health["failureCount"] == 2
    assert "connection reset" in health["lastError"]


def test_structured_result_is_unwrapped(monkeypatch: pytest.MonkeyPatch):
    manager = RemoteSessionManager()

    class _FakeSession:
        def call_tool(self, name: str, arguments=None):
            return _FakeResult(structured={"result": [{"id": 1, "name": "Bug"}]})

    _wire(monkeypatch, manager, _FakeSession())

    assert manager.call_tool("list_trackers") == [{"id": 1, "name": "Bug"}]


def test_plain_text_result_is_wrapped(monkeypatch: pytest.MonkeyPatch):
    manager = RemoteSessionManager()

    class _FakeSession:
        def call_tool(self, name: str, arguments=None):
            return _FakeResult(text="ok")

    _wire(monkeypatch, manager, _FakeSession())

    assert manager.call_tool("update_issue", {"id": 1}) == {"text": "ok"}


def test_structured_object_is_returned_as_is():
    payload = {"issue": {"id": 3}, "result": "extra"}

    assert decode_tool_result(_FakeResult(structured=payload)) == payload


def test_empty_result_decodes_to_none():
    assert decode_tool_result(_FakeResult()) is None


def test_close_without_connection_is_harmless():
    manager = RemoteSessionManager()

    manager.close()

    assert manager.get_health()["connected"] is False
