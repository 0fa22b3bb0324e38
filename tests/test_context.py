from __future__ import annotations

import logging
import threading
import time

import pytest

from tracker_mirror.context import FALLBACK_TIME_ENTRY_ACTIVITIES, UNKNOWN_STATUS
from tracker_mirror.errors import ConfigurationError, NotFoundError, RemoteError
from tracker_mirror.events import EVENT_QUERY_LIST_CHANGED
from tracker_mirror.models import AuthMode, Project


def test_simple_search_by_id_has_no_duplicates(context, fake_client):
    fake_client.add_issue(42, "issue 42 crashes")
    fake_client.add_issue(43, "also about 42")

    results = context.simple_search("42")

    assert [issue.id for issue in results] == ["42", "43"]
    assert results[0] is context.issue_cache.get("42")


def test_simple_search_unknown_id_still_searches(context, fake_client):
    fake_client.add_issue(1, "see 999")

    results = context.simple_search("999")

    assert [issue.id for issue in results] == ["1"]


def test_simple_search_remote_failure_returns_empty(context, fake_client):
    fake_client.exceptions["search_issues_by_summary"] = RemoteError("remote_unavailable", "offline")

    assert context.simple_search("crash") == []


def test_search_merges_into_identity_cache(context, fake_client):
    fake_client.add_issue(5, "crash on start")
    cached = context.get_issue("5")

    results = context.search("*crash*")

    assert results == [cached]
    _, args = fake_client.calls[-1]
    assert args == ("proj", "*crash*")


def test_get_issue_returns_none_when_missing(context):
    assert context.get_issue("404") is None
    assert context.get_issue(None) is None
    assert context.get_issue("abc") is None


def test_get_issues_skips_missing(context, fake_client):
    fake_client.add_issue(1, "one")
    fake_client.add_issue(2, "two")

    issues = context.get_issues("1", "404", 2)

    assert [issue.id for issue in issues] == ["1", "2"]


def test_client_built_once_under_concurrency(make_context, client_class):
    built = []

    def factory(_ctx):
        time.sleep(0.05)
        client = client_class()
        built.append(client)
        return client

    context = make_context(client_factory=factory)
    clients = []
    threads = [threading.Thread(target=lambda: clients.append(context.client)) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert len(built) == 1
    assert all(client is built[0] for client in clients)


def test_credential_change_rebuilds_client(make_context, client_class):
    built = []

    def factory(_ctx):
        client = client_class()
        built.append(client)
        return client

    context = make_context(client_factory=factory)
    first = context.client

    context.set_access_key("secret")
    assert context.client is first

    context.set_access_key("rotated")
    second = context.client

    assert second is not first
    assert first.closed
    assert len(built) == 2

    context.set_credentials("me", "pw")
    context.set_auth_mode(AuthMode.CREDENTIALS)
    assert context.client is not second
    assert second.closed


def test_missing_auth_mode_is_a_configuration_error(make_context):
    context = make_context(auth_mode=None)

    with pytest.raises(ConfigurationError):
        context.client


def test_get_issue_surfaces_missing_auth_mode(make_context, caplog):
    context = make_context(auth_mode=None)

    with caplog.at_level(logging.DEBUG, logger="tracker_mirror.context"):
        with pytest.raises(ConfigurationError):
            context.get_issue("1")

    assert "Ignoring invalid issue id" not in caplog.text
    assert any(record.levelno == logging.ERROR for record in caplog.records)
    assert context.issue_cache.get("1") is None


def test_missing_url_is_a_configuration_error(make_context):
    context = make_context(url="")

    with pytest.raises(ConfigurationError):
        context.client


def test_current_user_fetched_with_client(context):
    assert context.current_user is None

    context.client

    assert context.current_user.login == "me"


def test_current_user_failure_keeps_client(context, fake_client):
    fake_client.exceptions["get_current_user"] = RemoteError("remote_unavailable", "offline")

    assert context.client is fake_client
    assert context.current_user is None


def test_get_users_lists_current_user_first(context):
    users = context.get_users()

    assert [user.login for user in users] == ["me", "alice"]


def test_get_users_without_project(make_context):
    context = make_context(project=None)

    assert [user.login for user in context.get_users()] == ["me"]


def test_select_project(context):
    project = context.select_project("other")

    assert project.identifier == "other"
    assert context.project_key == "other"


def test_queries_are_saved_and_removed(context):
    events = []
    context.add_change_listener(lambda event, source: events.append(event))

    query = context.create_query("crashes", "crash")
    context.save_query(query, auto_refresh=False)

    assert context.get_query("crashes") is query
    assert context.config.get_query_names(context.id) == ["crashes"]
    assert not context.config.is_query_auto_refresh(context.id, "crashes")

    context.schedule_for_refresh(query)
    context.remove_query("crashes")

    assert context.get_queries() == []
    assert context.scheduler.subscribed_queries() == set()
    assert events == [EVENT_QUERY_LIST_CHANGED, EVENT_QUERY_LIST_CHANGED]


def test_queries_loaded_from_config(make_context, config):
    config.put_query("ctx-shared", "mine", "login", "proj")

    context = make_context(context_id="ctx-shared")

    query = context.get_query("mine")
    assert query.pattern == "login"
    assert query.project_key == "proj"


def test_schedule_for_refresh_dispatches_on_target(context):
    query = context.create_query("q", "x")

    context.schedule_for_refresh(12)
    context.schedule_for_refresh(query)

    assert context.scheduler.subscribed_ids() == {"12"}
    assert context.scheduler.subscribed_queries() == {query}

    context.stop_refreshing("12")
    context.stop_refreshing(query)

    assert context.scheduler.subscribed_ids() == set()
    assert context.scheduler.subscribed_queries() == set()


def test_subscribed_refresh_skips_uncached_issue(context, fake_client):
    assert context._refresh_subscribed_issue("77") is False
    assert fake_client.calls == []


def test_statuses_are_cached(context, fake_client):
    assert [s.name for s in context.get_statuses()] == ["New", "Resolved"]
    context.get_statuses()

    assert fake_client.count("list_statuses") == 1
    assert context.get_status(3).name == "Resolved"
    assert context.get_status(99) is None


def test_statuses_fall_back_and_notify(context, fake_client):
    fake_client.exceptions["list_statuses"] = NotFoundError("no statuses")

    assert context.get_statuses() == [UNKNOWN_STATUS]
    assert len(context.notifications) == 1


def test_priorities_reversed_with_default(context):
    priorities = context.get_issue_priorities()

    assert [p.name for p in priorities] == ["Normal", "Low"]
    assert context.get_default_issue_priority().name == "Normal"
    assert context.get_issue_priority(3).name == "Low"


def test_priorities_fall_back_to_builtin(context, fake_client):
    fake_client.exceptions["list_issue_priorities"] = RemoteError("remote_unavailable", "offline")

    priorities = context.get_issue_priorities()

    assert [p.id for p in priorities] == [7, 6, 5, 4, 3]
    assert context.get_default_issue_priority().id == 4


def test_time_entry_activities_fall_back(context, fake_client):
    assert [a.name for a in context.get_time_entry_activities()] == ["Testing"]

    fake_client.exceptions["list_time_entry_activities"] = RemoteError("remote_unavailable", "offline")
    assert context.get_time_entry_activities() == list(FALLBACK_TIME_ENTRY_ACTIVITIES)


def test_issue_categories_need_project(make_context, fake_client):
    context = make_context(project=None)

    assert context.get_issue_categories() == []
    assert fake_client.count("list_categories") == 0


def test_set_project_resets_categories(context, fake_client):
    context.get_issue_categories()
    context.get_issue_categories()
    assert fake_client.count("list_categories") == 1

    context.set_project(Project(id=2, identifier="two", name="Two"))
    context.get_issue_categories()

    assert fake_client.count("list_categories") == 2
    assert context.project_key == "two"


def test_dispose_closes_client_and_stops_scheduler(context, fake_client):
    context.client
    context.schedule_for_refresh("1")

    context.dispose()

    assert fake_client.closed
    assert context.get_health()["scheduler"]["issueTimer"]["stopped"] is True


def test_health_reports_cache_and_drafts(context, fake_client):
    fake_client.add_issue(1, "one")
    context.get_issue("1")
    context.create_issue("draft")

    health = context.get_health()

    assert health["connected"] is True
    assert health["cachedIssues"] == 1
    assert health["drafts"] == 1
