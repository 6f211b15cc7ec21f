"""Heuristics that pull a branch name, a summary or a JSON block out of session output.

Branch matchers are plain ``str -> str | None`` functions tried in order; the
first hit wins. They are heuristics over free text, so a session service that
reports the pushed branch in its git context is always preferred.
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Callable, Iterable

from agent_board.sessions import (
    AssistantText,
    ErrorEvent,
    OtherEvent,
    ResultEvent,
    SessionEvent,
    ToolResult,
    ToolUse,
)

BranchMatcher = Callable[[str], "str | None"]

TRUNCATION_MARKER = "\n\n_[summary truncated]_"
MIN_SUMMARY_CHARS = 100

_BRANCH_CHARS = r"[A-Za-z0-9._/-]+"
_NOT_BRANCHES = {"main", "master", "head", "origin", "develop"}
_CREATED_BRANCH = re.compile(
    rf"(?:created|pushed(?:\s+to)?|new|switched to(?: a new)?)\s+branch[:\s]+[`'\"]?({_BRANCH_CHARS})",
    re.IGNORECASE,
)
_BACKTICK_BRANCH = re.compile(rf"branch\s+`({_BRANCH_CHARS})`", re.IGNORECASE)
_COMPLETION_WORDS = re.compile(
    r"\b(implemented|completed|finished|done|created|added|fixed|updated|changes|summary)\b",
    re.IGNORECASE,
)
_JSON_FENCE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _clean(candidate: str | None) -> str | None:
    if not candidate:
        return None
    candidate = candidate.strip("`'\".,;:)(")
    if candidate.startswith("HEAD:"):
        candidate = candidate[len("HEAD:"):]
    if not candidate or candidate.lower() in _NOT_BRANCHES or candidate.startswith("-"):
        return None
    return candidate


def _push_arguments(command: str) -> list[str]:
    """Arguments of a ``git push`` up to the first shell operator, redirections dropped."""
    try:
        lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        tokens = list(lexer)
    except ValueError:
        tokens = command.split()
    args: list[str] = []
    skip_target = False
    for token in tokens[2:]:
        if skip_target:
            skip_target = False
            continue
        if "<" in token or ">" in token:
            # A bare operator (">", ">&") is followed by its target; "2>&1" is self-contained.
            if args and args[-1].isdigit():
                args.pop()
            skip_target = not token.strip("<>&|")
            continue
        if not token.strip("|&;"):
            break
        args.append(token)
    return args


def match_push_command(text: str) -> str | None:
    """Branch from a ``git push`` invocation: the first positional after the remote."""
    for line in reversed(text.splitlines()):
        idx = line.find("git push")
        if idx < 0:
            continue
        positional = [t for t in _push_arguments(line[idx:]) if not t.startswith("-")]
        if len(positional) >= 2:
            branch = _clean(positional[1].split(":")[-1])
            if branch:
                return branch
    return None


def match_created_branch(text: str) -> str | None:
    """Phrases like ``created branch: X`` or ``Switched to a new branch 'X'``."""
    matches = _CREATED_BRANCH.findall(text)
    for candidate in reversed(matches):
        branch = _clean(candidate)
        if branch:
            return branch
    return None


def match_backtick_branch(text: str) -> str | None:
    matches = _BACKTICK_BRANCH.findall(text)
    return _clean(matches[-1]) if matches else None


def prefixed_branch_matcher(prefix: str) -> BranchMatcher:
    pattern = re.compile(rf"(?<![A-Za-z0-9_/-]){re.escape(prefix)}/[A-Za-z0-9_-]+")

    def match_prefixed_branch(text: str) -> str | None:
        matches = pattern.findall(text)
        return matches[-1] if matches else None

    return match_prefixed_branch


def branch_matchers(prefix: str) -> list[BranchMatcher]:
    return [
        match_push_command,
        match_created_branch,
        match_backtick_branch,
        prefixed_branch_matcher(prefix),
    ]


def event_texts(events: Iterable[SessionEvent]) -> list[str]:
    """Texts worth scanning for branch names, oldest first."""
    texts = []
    for event in events:
        if isinstance(event, ToolUse):
            texts.append(event.command)
        elif isinstance(event, ToolResult):
            texts.append(event.output)
        elif isinstance(event, (AssistantText, ResultEvent)):
            texts.append(event.text)
        elif isinstance(event, OtherEvent):
            texts.append(" ".join(event.args))
    return [t for t in texts if t]


def extract_branch(
    events: list[SessionEvent],
    prefix: str,
    git_branches: Iterable[str] = (),
    requested_prefix: str | None = None,
) -> str | None:
    """Return the branch the session pushed, or None.

    A branch reported by the service's git context wins unless it is just the
    prefix the daemon asked for. Otherwise each matcher is tried in turn over
    the activity, newest text first.
    """
    for branch in git_branches:
        if branch and branch != requested_prefix:
            return branch

    texts = event_texts(events)
    for matcher in branch_matchers(prefix):
        for text in reversed(texts):
            branch = matcher(text)
            if branch:
                return branch
    return None


def has_errors(events: Iterable[SessionEvent]) -> bool:
    return any(
        isinstance(e, ErrorEvent) or (isinstance(e, ResultEvent) and e.is_error)
        for e in events
    )


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + TRUNCATION_MARKER


def extract_summary(events: list[SessionEvent], max_chars: int = 2000) -> str | None:
    """Last long assistant message that reads like a wrap-up, truncated to *max_chars*."""
    texts = [e.text.strip() for e in events if isinstance(e, (AssistantText, ResultEvent))]
    long_texts = [t for t in texts if len(t) >= MIN_SUMMARY_CHARS]
    for text in reversed(long_texts):
        if _COMPLETION_WORDS.search(text):
            return truncate(text, max_chars)
    return None


def extract_json_block(text: str):
    """Parse the last ```json fenced block in *text*, falling back to the first bare array.

    Returns None when nothing parses.
    """
    for block in reversed(_JSON_FENCE.findall(text)):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue
    start, end = text.find("["), text.rfind("]")
    if 0 <= start < end:
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return None
    return None
