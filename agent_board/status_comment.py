"""Structured status comments: the daemon's only durable per-item memory.

A status comment is Markdown for humans followed by a hidden marker line::

    <!-- agent-board:status {"action": "session_start", "session_id": "..."} -->

Only this module knows that format. The latest comment carrying the marker
is the item's current record.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from agent_board.models import ActionKind

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"<!--\s*agent-board:status\s+(\{.*?\})\s*-->", re.DOTALL)


@dataclass(frozen=True)
class StatusRecord:
    action: ActionKind | None = None
    session_id: str | None = None
    recovery_session_id: str | None = None
    branch: str | None = None
    pr_number: int | None = None
    failure_count: int = 0
    review_approved: bool = False

    def evolve(self, **changes) -> StatusRecord:
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "action": self.action.value if self.action else None,
            "session_id": self.session_id,
            "recovery_session_id": self.recovery_session_id,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "failure_count": self.failure_count,
            "review_approved": self.review_approved,
        }


def encode_status(record: StatusRecord, message: str) -> str:
    payload = json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)
    # "-->" inside a value would end the HTML comment early
    payload = payload.replace("-->", "--\\u003e")
    return f"{message.rstrip()}\n\n<!-- agent-board:status {payload} -->"


def decode_status(body: str | None) -> StatusRecord | None:
    """Return the record embedded in *body*, or None if there is none."""
    if not body:
        return None
    matches = _MARKER_RE.findall(body)
    if not matches:
        return None
    try:
        data = json.loads(matches[-1])
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed status marker: %s", matches[-1][:200])
        return None
    if not isinstance(data, dict):
        return None

    pr_number = data.get("pr_number")
    try:
        pr_number = int(pr_number) if pr_number is not None else None
    except (TypeError, ValueError):
        pr_number = None
    try:
        failure_count = int(data.get("failure_count") or 0)
    except (TypeError, ValueError):
        failure_count = 0

    return StatusRecord(
        action=ActionKind.parse(data.get("action")),
        session_id=data.get("session_id") or None,
        recovery_session_id=data.get("recovery_session_id") or None,
        branch=data.get("branch") or None,
        pr_number=pr_number,
        failure_count=failure_count,
        review_approved=bool(data.get("review_approved", False)),
    )


def strip_marker(body: str) -> str:
    """The human-readable part of a status comment."""
    return _MARKER_RE.sub("", body or "").rstrip()


def latest_status_comment(bodies: Iterable[str]) -> tuple[StatusRecord | None, str]:
    """Record and readable text of the last body (in posting order) that carries a marker."""
    latest, text = None, ""
    for body in bodies:
        record = decode_status(body)
        if record is not None:
            latest, text = record, strip_marker(body)
    return latest, text
