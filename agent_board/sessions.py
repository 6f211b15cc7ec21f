"""Client for the remote coding-agent session service.

Raw event payloads are decoded once, in :func:`parse_events`, into a small
set of event types. Everything downstream matches on those types instead
of probing dictionaries.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"
API_BETA = "ccr-byoc-2025-07-29"


class SessionError(Exception):
    """Raised when the session service answers with an error or is unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> SessionStatus:
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def resumable(self) -> bool:
        """Whether the session can take another message."""
        return self in (SessionStatus.IDLE, SessionStatus.PENDING)

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ARCHIVED)


@dataclass
class Session:
    id: str
    status: SessionStatus
    title: str = ""
    branches: list[str] = field(default_factory=list)

    @property
    def web_url(self) -> str:
        return f"https://claude.ai/code/{self.id}"

    @classmethod
    def from_api(cls, data: dict) -> Session:
        branches: list[str] = []
        context = data.get("session_context") or {}
        for outcome in context.get("outcomes") or []:
            git_info = outcome.get("git_info") or {}
            branches.extend(b for b in git_info.get("branches") or [] if b)
        return cls(
            id=data["id"],
            status=SessionStatus.parse(data.get("session_status")),
            title=data.get("title", ""),
            branches=branches,
        )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolUse:
    name: str
    command: str  # shell command or JSON-ish rendering of the input


@dataclass(frozen=True)
class ToolResult:
    output: str
    is_error: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class ResultEvent:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class OtherEvent:
    type: str
    args: tuple[str, ...] = ()


SessionEvent = Union[AssistantText, ToolUse, ToolResult, ErrorEvent, ResultEvent, OtherEvent]


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


def _parse_one(raw: dict) -> list[SessionEvent]:
    # Some events arrive wrapped as {"type": "event", "data": {...}}
    if raw.get("type") == "event" and isinstance(raw.get("data"), dict) and "type" in raw["data"]:
        raw = raw["data"]
    kind = str(raw.get("type") or "").lower()
    message = raw.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None

    if kind == "assistant":
        events: list[SessionEvent] = []
        if isinstance(content, str):
            return [AssistantText(content)] if content.strip() else []
        for block in content or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text", "").strip():
                events.append(AssistantText(block["text"]))
            elif block.get("type") == "tool_use":
                tool_input = block.get("input") or {}
                command = tool_input.get("command") if isinstance(tool_input, dict) else None
                events.append(ToolUse(name=block.get("name", ""), command=command or str(tool_input)))
        return events

    if kind == "user":
        events = []
        result = raw.get("tool_use_result")
        if isinstance(result, dict):
            output = "\n".join(p for p in (result.get("stdout"), result.get("stderr")) if p)
            events.append(ToolResult(output=output, is_error=bool(result.get("is_error"))))
        elif isinstance(result, str):
            events.append(ToolResult(output=result))
        for block in content if isinstance(content, list) else []:
            if isinstance(block, dict) and block.get("type") == "tool_result" and not result:
                events.append(
                    ToolResult(output=_block_text(block.get("content")), is_error=bool(block.get("is_error")))
                )
        return events

    if kind == "result":
        return [ResultEvent(text=str(raw.get("result") or ""), is_error=bool(raw.get("is_error")))]

    if "error" in kind:
        error = raw.get("error")
        text = error.get("message") if isinstance(error, dict) else error
        return [ErrorEvent(message=str(text or raw.get("message") or kind))]

    extra = (raw.get("data") or {}).get("extra") if isinstance(raw.get("data"), dict) else None
    args = extra.get("args") if isinstance(extra, dict) else None
    return [OtherEvent(type=kind, args=tuple(str(a) for a in args) if isinstance(args, list) else ())]


def parse_events(raw_events: list[dict]) -> list[SessionEvent]:
    """Decode the service's raw event list, preserving order."""
    events: list[SessionEvent] = []
    for raw in raw_events:
        if isinstance(raw, dict):
            events.extend(_parse_one(raw))
    return events


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SessionClient:
    def __init__(
        self,
        access_token: str,
        environment_id: str,
        base_url: str = DEFAULT_BASE_URL,
        org_uuid: str | None = None,
        model: str | None = None,
        timeout: int = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.environment_id = environment_id
        self.model = model
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "anthropic-version": API_VERSION,
                "anthropic-beta": API_BETA,
                "Content-Type": "application/json",
            }
        )
        if org_uuid:
            self.session.headers["x-organization-uuid"] = org_uuid
        self.set_access_token(access_token)

    def set_access_token(self, access_token: str) -> None:
        self.session.headers["Authorization"] = f"Bearer {access_token}"

    def create_session(
        self,
        prompt: str,
        repo_url: str,
        branch_prefix: str,
        title: str,
    ) -> Session:
        repo = repo_url.rstrip("/").removesuffix(".git")
        repo_name = "/".join(repo.split("/")[-2:])
        payload = {
            "title": title,
            "events": [
                {
                    "type": "event",
                    "data": {
                        "uuid": str(uuid.uuid4()),
                        "session_id": "",
                        "type": "user",
                        "parent_tool_use_id": None,
                        "message": {"role": "user", "content": prompt},
                    },
                }
            ],
            "environment_id": self.environment_id,
            "session_context": {
                "sources": [{"type": "git_repository", "url": repo}],
                "outcomes": [
                    {
                        "type": "git_repository",
                        "git_info": {"type": "github", "repo": repo_name, "branches": [branch_prefix]},
                    }
                ],
            },
        }
        if self.model:
            payload["session_context"]["model"] = self.model
        data = self._request("POST", "/v1/sessions", json=payload)
        session = Session.from_api(data)
        logger.info("Started session %s (%s)", session.id, title)
        return session

    def send_message(self, session_id: str, message: str) -> None:
        payload = {
            "events": [
                {
                    "type": "user",
                    "uuid": str(uuid.uuid4()),
                    "session_id": session_id,
                    "parent_tool_use_id": None,
                    "message": {"role": "user", "content": message},
                }
            ]
        }
        self._request("POST", f"/v1/sessions/{session_id}/events", json=payload)

    def get_session(self, session_id: str) -> Session:
        return Session.from_api(self._request("GET", f"/v1/sessions/{session_id}"))

    def get_events(self, session_id: str) -> list[SessionEvent]:
        data = self._request("GET", f"/v1/sessions/{session_id}/events") or {}
        return parse_events(data.get("data") or [])

    def interrupt(self, session_id: str) -> None:
        payload = {
            "events": [
                {
                    "type": "control_request",
                    "request_id": str(uuid.uuid4()),
                    "request": {"subtype": "interrupt"},
                }
            ]
        }
        self._request("POST", f"/v1/sessions/{session_id}/events", json=payload)
        logger.info("Interrupted session %s", session_id)

    def archive(self, session_id: str) -> None:
        self._request("POST", f"/v1/sessions/{session_id}/archive", json={})
        logger.info("Archived session %s", session_id)

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json, timeout=self.timeout)
        except requests.RequestException as exc:
            raise SessionError(f"{method} {path} failed: {exc}") from exc
        if not response.ok:
            raise SessionError(
                f"{method} {path} returned {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()
