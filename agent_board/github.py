"""GitHub issue and pull-request access through the ``gh`` CLI.

Every call goes through :class:`GhRunner`, which asks the shared
:class:`~agent_board.rate_limiter.RateLimiter` for a slot first and feeds
rate-limit responses back into it.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_board.rate_limiter import RateLimiter
from agent_board.status_comment import StatusRecord, encode_status, latest_status_comment

logger = logging.getLogger(__name__)

_HTTP_STATUS = re.compile(r"HTTP (\d{3})")
_RATE_LIMIT_TEXT = re.compile(r"rate limit|abuse detection", re.IGNORECASE)
_RETRY_AFTER = re.compile(r"retry[- ]after\D{0,5}(\d+)", re.IGNORECASE)


class GitHubError(Exception):
    """Raised when a ``gh`` command fails or times out."""


class RateLimitedError(GitHubError):
    """Raised when GitHub keeps answering with a rate-limit response."""

    def __init__(self, message: str, status_code: int, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


def _rate_limit_status(stderr: str) -> int | None:
    """Return 403/429 when *stderr* reports a rate limit, else None."""
    match = _HTTP_STATUS.search(stderr)
    status = int(match.group(1)) if match else None
    if status == 429:
        return 429
    if _RATE_LIMIT_TEXT.search(stderr):
        return status if status in (403, 429) else 403
    return None


class GhRunner:
    """Run ``gh`` subcommands against one repository."""

    def __init__(
        self,
        repo: str,
        repo_path: str | Path = ".",
        limiter: RateLimiter | None = None,
        timeout: int = 60,
        max_attempts: int = 3,
    ) -> None:
        self.repo = repo
        self.repo_path = Path(repo_path).resolve()
        self.limiter = limiter
        self.timeout = timeout
        self.max_attempts = max_attempts

    def run(self, args: list[str], mutation: bool = False, timeout: int | None = None) -> str:
        cmd = ["gh"] + args
        timeout = timeout or self.timeout
        for attempt in range(1, self.max_attempts + 1):
            if self.limiter is not None:
                self.limiter.wait_for_slot(is_mutation=mutation)
            try:
                proc = subprocess.run(
                    cmd,
                    cwd=self.repo_path,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise GitHubError(f"gh {' '.join(args[:3])} timed out after {timeout}s") from exc
            if proc.returncode == 0:
                return proc.stdout

            status = _rate_limit_status(proc.stderr)
            if status is None:
                raise GitHubError(
                    f"gh {' '.join(args[:3])} failed (code {proc.returncode}): {proc.stderr.strip()[:500]}"
                )
            headers = {}
            retry_after = _RETRY_AFTER.search(proc.stderr)
            if retry_after:
                headers["retry-after"] = retry_after.group(1)
            if self.limiter is not None:
                self.limiter.handle_rate_limit_error(status, headers)
            if attempt < self.max_attempts:
                logger.info(
                    "gh rate limited (HTTP %d), waiting for a slot (attempt %d/%d)",
                    status,
                    attempt,
                    self.max_attempts,
                )
                continue
            raise RateLimitedError(
                f"gh {' '.join(args[:3])} still rate limited after {self.max_attempts} attempts",
                status,
                float(headers["retry-after"]) if "retry-after" in headers else None,
            )
        raise GitHubError(f"gh {' '.join(args[:3])} failed after retries")

    def json(self, args: list[str], mutation: bool = False) -> Any:
        output = self.run(args, mutation=mutation)
        try:
            return json.loads(output) if output.strip() else None
        except json.JSONDecodeError as exc:
            raise GitHubError(f"gh {' '.join(args[:3])} returned invalid JSON: {output[:200]}") from exc

    def graphql(self, query: str, variables: dict | None = None, mutation: bool = False) -> dict:
        args = ["api", "graphql", "-f", f"query={query}"]
        for key, value in (variables or {}).items():
            if value is None:
                continue
            if isinstance(value, bool) or isinstance(value, int):
                args += ["-F", f"{key}={json.dumps(value)}"]
            else:
                args += ["-f", f"{key}={value}"]
        data = self.json(args, mutation=mutation) or {}
        if data.get("errors"):
            messages = "; ".join(e.get("message", "?") for e in data["errors"])
            raise GitHubError(f"GraphQL error: {messages}")
        return data.get("data") or {}

    def refresh_quota(self) -> None:
        """Pull the primary quota into the limiter. Failures are only logged."""
        if self.limiter is None:
            return
        try:
            data = self.json(["api", "rate_limit"])
            core = data["resources"]["core"]
            self.limiter.update_quota(int(core["remaining"]), float(core["reset"]))
        except (GitHubError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Could not read GitHub rate limit: %s", exc)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


class TrackerClient:
    def __init__(self, gh: GhRunner) -> None:
        self.gh = gh

    def list_issues(self, label: str | None = None, state: str = "open", limit: int = 500) -> list[dict]:
        args = [
            "issue", "list",
            "-R", self.gh.repo,
            "--state", state,
            "--limit", str(limit),
            "--json", "number,title,id,state",
        ]
        if label:
            args += ["--label", label]
        return self.gh.json(args) or []

    def create_issue(self, title: str, body: str, labels: list[str] | None = None) -> tuple[int, str]:
        """Create an issue and return ``(number, node_id)``."""
        args = [
            "api", "-X", "POST", f"repos/{self.gh.repo}/issues",
            "-f", f"title={title}",
            "-f", f"body={body}",
        ]
        for label in labels or []:
            args += ["-f", f"labels[]={label}"]
        data = self.gh.json(args, mutation=True)
        logger.info("Created issue #%d: %s", data["number"], title)
        return int(data["number"]), data["node_id"]

    def add_comment(self, number: int, body: str) -> None:
        self.gh.run(
            ["issue", "comment", str(number), "-R", self.gh.repo, "--body", body],
            mutation=True,
            timeout=120,
        )

    def get_issue(self, number: int) -> dict:
        return self.gh.json(
            ["issue", "view", str(number), "-R", self.gh.repo, "--json", "number,title,body,state"]
        ) or {}

    def get_latest_status(self, number: int) -> StatusRecord | None:
        return self.get_status_comment(number)[0]

    def get_status_comment(self, number: int) -> tuple[StatusRecord | None, str]:
        """Latest status record and the readable text of the comment carrying it."""
        data = self.gh.json(["issue", "view", str(number), "-R", self.gh.repo, "--json", "comments"])
        comments = (data or {}).get("comments") or []
        return latest_status_comment(c.get("body", "") for c in comments)

    def post_status(self, number: int, record: StatusRecord, message: str) -> None:
        self.add_comment(number, encode_status(record, message))

    def add_label(self, number: int, label: str) -> None:
        self.gh.run(
            ["issue", "edit", str(number), "-R", self.gh.repo, "--add-label", label],
            mutation=True,
        )

    def close_issue(self, number: int) -> None:
        self.gh.run(["issue", "close", str(number), "-R", self.gh.repo], mutation=True, timeout=120)


# ---------------------------------------------------------------------------
# Pull requests
# ---------------------------------------------------------------------------

_MERGEABLE = {"MERGEABLE": True, "CONFLICTING": False}


@dataclass
class PullRequest:
    number: int
    state: str
    head_branch: str
    url: str = ""
    title: str = ""
    mergeable: bool | None = None
    merge_state: str = ""

    @property
    def blocked(self) -> bool:
        return self.merge_state.upper() == "BLOCKED"


class PullRequestClient:
    def __init__(self, gh: GhRunner) -> None:
        self.gh = gh

    def list_by_branch(self, branch: str, state: str = "open") -> list[PullRequest]:
        data = self.gh.json([
            "pr", "list",
            "-R", self.gh.repo,
            "--head", branch,
            "--state", state,
            "--json", "number,state,headRefName,url,title",
        ]) or []
        return [
            PullRequest(
                number=int(pr["number"]),
                state=pr.get("state", ""),
                head_branch=pr.get("headRefName", branch),
                url=pr.get("url", ""),
                title=pr.get("title", ""),
            )
            for pr in data
        ]

    def get(self, number: int) -> PullRequest:
        pr = self.gh.json([
            "pr", "view", str(number),
            "-R", self.gh.repo,
            "--json", "number,state,mergeable,mergeStateStatus,headRefName,url,title",
        ])
        return PullRequest(
            number=int(pr["number"]),
            state=pr.get("state", ""),
            head_branch=pr.get("headRefName", ""),
            url=pr.get("url", ""),
            title=pr.get("title", ""),
            mergeable=_MERGEABLE.get(pr.get("mergeable", "UNKNOWN")),
            merge_state=pr.get("mergeStateStatus", "") or "",
        )

    def create(self, branch: str, title: str, body: str, base: str = "main") -> PullRequest:
        output = self.gh.run(
            [
                "pr", "create",
                "-R", self.gh.repo,
                "--title", title,
                "--body", body,
                "--base", base,
                "--head", branch,
            ],
            mutation=True,
            timeout=120,
        )
        url = output.strip().splitlines()[-1] if output.strip() else ""
        try:
            number = int(url.rstrip("/").split("/")[-1])
        except ValueError as exc:
            raise GitHubError(f"Could not parse PR number from gh output: {output[:200]!r}") from exc
        logger.info("Created PR #%d for %s", number, branch)
        return PullRequest(number=number, state="OPEN", head_branch=branch, url=url, title=title)

    def merge(self, number: int, method: str = "squash") -> None:
        self.gh.run(
            ["pr", "merge", str(number), "-R", self.gh.repo, f"--{method}"],
            mutation=True,
            timeout=120,
        )

    def delete_branch(self, branch: str) -> None:
        self.gh.run(
            ["api", "-X", "DELETE", f"repos/{self.gh.repo}/git/refs/heads/{branch}"],
            mutation=True,
        )

    def get_diff(self, number: int) -> str:
        return self.gh.run(["pr", "diff", str(number), "-R", self.gh.repo], timeout=120)

    def comment(self, number: int, body: str) -> None:
        self.gh.run(
            ["pr", "comment", str(number), "-R", self.gh.repo, "--body", body],
            mutation=True,
            timeout=120,
        )
