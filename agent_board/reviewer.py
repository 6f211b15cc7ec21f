"""Automated pull-request review through the Anthropic Messages API."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

import anthropic

from agent_board.github import PullRequestClient

logger = logging.getLogger(__name__)

SEVERITIES = ("error", "warning", "info")
MAX_DIFF_CHARS = 150_000

REVIEW_PROMPT_TEMPLATE = """\
Review pull request #{pr_number}, opened by an automated coding agent to resolve a tracked issue.
It will be merged automatically if you approve, so only block it for real defects.

## What the agent says it changed

{context}

## Diff

{diff}

## How to grade findings

Give each finding exactly one severity:

- **error**: must be fixed before merge. Incorrect behaviour, unhandled failures that
  are likely in practice, security problems, new logic with no tests.
- **warning**: should be fixed but does not block. Loose typing, unlikely edge cases,
  structure that could clearly be improved.
- **info**: optional polish such as naming, readability or small refactors.

Use `request_changes` only when at least one finding is an `error`; otherwise `approve`.

Answer with one JSON object and nothing else (no code fences, no prose):
{{
  "verdict": "approve" | "request_changes",
  "summary": "Two to four sentences on the change as a whole.",
  "comments": [
    {{
      "file": "path/relative/to/repo",
      "line": <integer line number>,
      "severity": "error" | "warning" | "info",
      "comment": "The problem and the fix."
    }}
  ]
}}

With nothing to report, return `"comments": []` and `"verdict": "approve"`.
"""


@dataclass
class ReviewComment:
    file: str
    line: int
    severity: str
    comment: str


@dataclass
class ReviewResult:
    verdict: str
    summary: str
    comments: list[ReviewComment]
    pr_number: int
    reviewed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def approved(self) -> bool:
        return self.verdict == "approve"

    def by_severity(self) -> dict[str, list[ReviewComment]]:
        grouped: dict[str, list[ReviewComment]] = {s: [] for s in SEVERITIES}
        for c in self.comments:
            grouped.setdefault(c.severity, []).append(c)
        return grouped

    def format_findings(self) -> str:
        """Markdown findings grouped by severity, most severe first."""
        sections = [self.summary.strip()] if self.summary.strip() else []
        for severity, comments in self.by_severity().items():
            if not comments:
                continue
            lines = [f"- `{c.file}:{c.line}`: {c.comment}" for c in comments]
            sections.append(f"#### {severity.capitalize()} ({len(comments)})\n\n" + "\n".join(lines))
        return "\n\n".join(sections) or "(no findings)"


class ReviewError(Exception):
    """Raised when the review agent encounters an unrecoverable error."""


class ReviewAgent:
    def __init__(
        self,
        prs: PullRequestClient,
        model: str = "claude-sonnet-4-5",
        client: anthropic.Anthropic | None = None,
        max_tokens: int = 4096,
    ) -> None:
        self.prs = prs
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or anthropic.Anthropic()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def review(self, pr_number: int, context: str | None = None) -> ReviewResult:
        """Review *pr_number*, post the verdict as a PR comment, and return it.

        *context* is optional background, typically the implementation
        session's own summary of what it changed.
        """
        logger.info("Starting review of PR #%d", pr_number)
        diff = self.prs.get_diff(pr_number)
        if not diff.strip():
            raise ReviewError(f"PR #{pr_number} has an empty diff")
        if len(diff) > MAX_DIFF_CHARS:
            logger.warning("Diff for PR #%d is %d chars; truncating", pr_number, len(diff))
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"

        prompt = REVIEW_PROMPT_TEMPLATE.format(
            pr_number=pr_number,
            context=context.strip() if context else "(no implementation notes)",
            diff=diff,
        )
        raw = self._call_claude(prompt)
        data = parse_review(raw)

        result = ReviewResult(
            verdict=data["verdict"],
            summary=str(data.get("summary", "")),
            comments=[
                ReviewComment(
                    file=str(c.get("file", "?")),
                    line=_as_int(c.get("line")),
                    severity=c["severity"],
                    comment=str(c.get("comment", "")),
                )
                for c in data.get("comments", [])
                if isinstance(c, dict)
            ],
            pr_number=pr_number,
        )
        self.post_review(result)
        logger.info("Review of PR #%d: verdict=%s, comments=%d", pr_number, result.verdict, len(result.comments))
        return result

    def post_review(self, result: ReviewResult) -> None:
        # Posted as a comment with a verdict tag; a bot cannot approve its own PR.
        event = "APPROVE" if result.approved else "REQUEST_CHANGES"
        body = f"## Agent Review\n\n[REVIEW: {event}]\n\n{result.format_findings()}"
        self.prs.comment(result.pr_number, body)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _call_claude(self, prompt: str) -> str:
        try:
            with self._client.messages.stream(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            ) as stream:
                response = stream.get_final_message()
        except anthropic.APIError as exc:
            raise ReviewError(f"Review request failed: {exc}") from exc

        text_block = next((b for b in response.content if b.type == "text"), None)
        if text_block is None:
            raise ReviewError("Claude response contained no text block")
        return text_block.text


def _as_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_review(text: str) -> dict:
    """Parse and normalise the model's verdict JSON.

    Unknown severities become ``info``. ``request_changes`` without a single
    ``error`` finding is turned into ``approve``.
    """
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r"\s*```\s*$", "", cleaned, flags=re.MULTILINE)
    cleaned = cleaned.strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise ReviewError(f"Could not find JSON in review response: {cleaned[:300]}")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ReviewError(f"Failed to parse review JSON: {e}") from e
    if not isinstance(data, dict):
        raise ReviewError(f"Review response is not a JSON object: {cleaned[:300]}")

    verdict = data.get("verdict", "")
    if verdict not in ("approve", "request_changes"):
        raise ReviewError(f"Unexpected verdict value: {verdict!r}")

    comments = [c for c in data.get("comments") or [] if isinstance(c, dict)]
    for c in comments:
        if c.get("severity") not in SEVERITIES:
            logger.warning("Invalid severity %r in review comment, using 'info'", c.get("severity"))
            c["severity"] = "info"
    data["comments"] = comments
    if verdict == "request_changes" and not any(c["severity"] == "error" for c in comments):
        logger.info("Overriding verdict from request_changes to approve: no error-severity comments")
        data["verdict"] = "approve"
    return data
