"""Tests for session payload decoding and the HTTP client."""

from unittest.mock import MagicMock

import pytest
import requests

from agent_board.sessions import (
    API_BETA,
    AssistantText,
    ErrorEvent,
    OtherEvent,
    ResultEvent,
    Session,
    SessionClient,
    SessionError,
    SessionStatus,
    ToolResult,
    ToolUse,
    parse_events,
)


# ---------------------------------------------------------------------------
# Status and session parsing
# ---------------------------------------------------------------------------


def test_status_parse() -> None:
    assert SessionStatus.parse("IDLE") is SessionStatus.IDLE
    assert SessionStatus.parse("weird") is SessionStatus.UNKNOWN
    assert SessionStatus.parse(None) is SessionStatus.UNKNOWN
    assert SessionStatus.IDLE.resumable
    assert not SessionStatus.ARCHIVED.resumable
    assert SessionStatus.FAILED.terminal


def test_session_from_api_collects_branches() -> None:
    session = Session.from_api(
        {
            "id": "sess-1",
            "session_status": "running",
            "title": "Fix the thing",
            "session_context": {
                "outcomes": [
                    {"git_info": {"branches": ["claude/issue-7-abc"]}},
                    {"git_info": None},
                ]
            },
        }
    )
    assert session.status is SessionStatus.RUNNING
    assert session.branches == ["claude/issue-7-abc"]
    assert session.web_url.endswith("/sess-1")


# ---------------------------------------------------------------------------
# parse_events
# ---------------------------------------------------------------------------


def test_assistant_blocks() -> None:
    events = parse_events(
        [
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Pushing now."},
                        {"type": "tool_use", "name": "Bash", "input": {"command": "git push origin b"}},
                        {"type": "text", "text": "   "},
                    ]
                },
            }
        ]
    )
    assert events == [AssistantText("Pushing now."), ToolUse(name="Bash", command="git push origin b")]


def test_wrapped_event_is_unwrapped() -> None:
    events = parse_events(
        [{"type": "event", "data": {"type": "assistant", "message": {"content": "hello"}}}]
    )
    assert events == [AssistantText("hello")]


def test_tool_result_from_user_event() -> None:
    events = parse_events(
        [{"type": "user", "tool_use_result": {"stdout": "ok", "stderr": "warn", "is_error": False}}]
    )
    assert events == [ToolResult(output="ok\nwarn")]


def test_tool_result_content_block() -> None:
    events = parse_events(
        [
            {
                "type": "user",
                "message": {
                    "content": [
                        {"type": "tool_result", "content": [{"type": "text", "text": "fatal"}], "is_error": True}
                    ]
                },
            }
        ]
    )
    assert events == [ToolResult(output="fatal", is_error=True)]


def test_result_error_and_other() -> None:
    events = parse_events(
        [
            {"type": "result", "result": "All done", "is_error": False},
            {"type": "error", "error": {"message": "overloaded"}},
            {"type": "tool_progress", "data": {"extra": {"args": ["git", "push"]}}},
            "not a dict",
        ]
    )
    assert events == [
        ResultEvent(text="All done"),
        ErrorEvent(message="overloaded"),
        OtherEvent(type="tool_progress", args=("git", "push")),
    ]


# ---------------------------------------------------------------------------
# SessionClient
# ---------------------------------------------------------------------------


def make_response(status_code=200, payload=None, text=""):
    resp = MagicMock(status_code=status_code, ok=200 <= status_code < 300, text=text)
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    return resp


@pytest.fixture
def client():
    client = SessionClient("tok", "env-1", base_url="https://example.test/", org_uuid="org-1", model="m1")
    client.session = MagicMock(headers=client.session.headers)
    return client


def test_headers(client) -> None:
    assert client.session.headers["Authorization"] == "Bearer tok"
    assert client.session.headers["anthropic-beta"] == API_BETA
    assert client.session.headers["x-organization-uuid"] == "org-1"
    client.set_access_token("tok2")
    assert client.session.headers["Authorization"] == "Bearer tok2"


def test_create_session_payload(client) -> None:
    client.session.request.return_value = make_response(
        payload={"id": "sess-9", "session_status": "pending"}
    )
    session = client.create_session(
        "Do it", "https://github.com/acme/widgets.git", "claude/issue-7", "Task 7"
    )

    assert session.id == "sess-9"
    method, url = client.session.request.call_args.args
    assert (method, url) == ("POST", "https://example.test/v1/sessions")
    body = client.session.request.call_args.kwargs["json"]
    assert body["environment_id"] == "env-1"
    assert body["events"][0]["data"]["message"]["content"] == "Do it"
    context = body["session_context"]
    assert context["sources"] == [{"type": "git_repository", "url": "https://github.com/acme/widgets"}]
    assert context["outcomes"][0]["git_info"]["repo"] == "acme/widgets"
    assert context["outcomes"][0]["git_info"]["branches"] == ["claude/issue-7"]
    assert context["model"] == "m1"


def test_get_events_parses_data(client) -> None:
    client.session.request.return_value = make_response(
        payload={"data": [{"type": "result", "result": "done"}]}
    )
    assert client.get_events("sess-1") == [ResultEvent(text="done")]


def test_interrupt_posts_control_request(client) -> None:
    client.session.request.return_value = make_response(payload={})
    client.interrupt("sess-1")
    body = client.session.request.call_args.kwargs["json"]
    assert body["events"][0]["type"] == "control_request"
    assert body["events"][0]["request"] == {"subtype": "interrupt"}


def test_error_status_raises(client) -> None:
    client.session.request.return_value = make_response(status_code=404, text="not found")
    with pytest.raises(SessionError) as excinfo:
        client.get_session("missing")
    assert excinfo.value.status_code == 404


def test_network_error_raises(client) -> None:
    client.session.request.side_effect = requests.ConnectionError("down")
    with pytest.raises(SessionError) as excinfo:
        client.archive("sess-1")
    assert excinfo.value.status_code is None


def test_empty_body_returns_none(client) -> None:
    client.session.request.return_value = make_response(status_code=204)
    client.send_message("sess-1", "continue")
    assert client.session.request.call_args.args == ("POST", "https://example.test/v1/sessions/sess-1/events")
