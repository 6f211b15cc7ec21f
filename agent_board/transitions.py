"""Backlog -> Ready promotion and Ready -> In Progress session starts."""

from __future__ import annotations

import logging

from agent_board.context import DaemonContext, post_and_move, process_items
from agent_board.models import ActionKind, BoardSnapshot, Stage, WorkItem
from agent_board.sessions import SessionError
from agent_board.status_comment import StatusRecord

logger = logging.getLogger(__name__)


def _implementation_prompt(item: WorkItem, body: str, repo: str, branch_prefix: str) -> str:
    return (
        f"Implement GitHub issue #{item.number} in {repo}: {item.title}\n\n"
        "## Issue\n\n"
        + (body.strip() or "(no description)")
        + "\n\n## Instructions\n\n"
        "1. Read the relevant code before changing anything.\n"
        "2. Make the smallest change that fully resolves the issue, with tests.\n"
        "3. Run the project's tests and linters and fix any failures.\n"
        f"4. Commit with a message that references #{item.number}.\n"
        f"5. Push your work to a branch starting with `{branch_prefix}`.\n"
        "6. Finish with a short summary of what you changed.\n"
    )


def _rework_prompt(item: WorkItem, record: StatusRecord, feedback: str) -> str:
    return (
        f"Issue #{item.number} ({item.title}) needs more work.\n\n"
        f"Your earlier changes are on branch `{record.branch}` in pull request #{record.pr_number}. "
        "Check out that branch and continue from it; do not start a new branch.\n\n"
        "## Why it came back\n\n"
        + (feedback.strip() or "(no details recorded)")
        + "\n\n## Instructions\n\n"
        "1. Address every point above.\n"
        "2. Run the project's tests and linters and fix any failures.\n"
        f"3. Commit and push to `{record.branch}` so pull request #{record.pr_number} updates.\n"
        "4. Finish with a short summary of what you changed.\n"
    )


class StageTransitioner:
    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Backlog -> Ready
    # ------------------------------------------------------------------

    async def promote_to_ready(self, snapshot: BoardSnapshot) -> list[WorkItem]:
        """Move the least-failed Backlog items into Ready, up to Ready capacity.

        Returns the selected items in promotion order.
        """
        capacity = self.ctx.config.max_ready - snapshot.count(Stage.READY)
        backlog = list(snapshot.in_stage(Stage.BACKLOG))
        if capacity <= 0 or not backlog:
            return []

        for item in backlog:
            try:
                record = await self.ctx.run(self.ctx.tracker.get_latest_status, item.number)
                item.failure_count = record.failure_count if record else 0
            except Exception as exc:
                logger.warning("Could not read failure count for #%d: %s", item.number, exc)
                item.failure_count = 0

        selected = sorted(backlog, key=lambda i: (i.failure_count, i.number))[:capacity]

        async def _promote(item: WorkItem) -> None:
            await self.ctx.run(self.ctx.board.move_item, snapshot, item, Stage.READY)

        await process_items(selected, _promote, stage="promote")
        return selected

    # ------------------------------------------------------------------
    # Ready -> In Progress
    # ------------------------------------------------------------------

    async def start_ready(self, snapshot: BoardSnapshot) -> list[WorkItem]:
        ctx = self.ctx
        if not ctx.agent_available:
            logger.info("Agent unavailable; not starting sessions this cycle")
            return []
        capacity = ctx.config.max_in_progress - snapshot.count(Stage.IN_PROGRESS)
        if capacity <= 0:
            return []

        candidates = [
            item for item in snapshot.in_stage(Stage.READY) if not ctx.cooldowns.is_active(item.number)
        ]
        selected = sorted(candidates, key=lambda i: i.number)[:capacity]
        outcomes = await process_items(selected, lambda item: self._start(snapshot, item), stage="start")
        return [o.item for o in outcomes if o.ok]

    async def _start(self, snapshot: BoardSnapshot, item: WorkItem) -> None:
        ctx = self.ctx
        record, feedback = await ctx.run(ctx.tracker.get_status_comment, item.number)
        record = record or StatusRecord()

        if record.session_id and record.branch and record.pr_number:
            session_id, note = await self._start_rework(item, record, feedback)
            action = ActionKind.REWORK_START
        else:
            issue = await ctx.run(ctx.tracker.get_issue, item.number)
            prefix = ctx.branch_prefix_for(item)
            prompt = _implementation_prompt(item, issue.get("body") or "", ctx.config.repo, prefix)
            session = await ctx.run(
                ctx.sessions.create_session, prompt, ctx.config.repo_url, prefix, f"#{item.number}: {item.title}"
            )
            session_id = session.id
            note = f"Started implementation session [{session.id}]({session.web_url})."
            action = ActionKind.SESSION_START

        # Recorded before any further call so the monitor cannot see the new
        # session as stale.
        ctx.cooldowns.set(item.number, action, session_id)

        new_record = record.evolve(
            action=action,
            session_id=session_id,
            recovery_session_id=None,
            review_approved=False,
        )
        item.session_id = session_id
        await post_and_move(ctx, snapshot, item, Stage.IN_PROGRESS, new_record, f"**In progress.** {note}")

    async def _start_rework(self, item: WorkItem, record: StatusRecord, feedback: str) -> tuple[str, str]:
        """Resume the previous session if it can take a message, else start a fresh one on the same branch."""
        ctx = self.ctx
        prompt = _rework_prompt(item, record, feedback)
        try:
            session = await ctx.run(ctx.sessions.get_session, record.session_id)
            resumable = session.status.resumable
        except SessionError as exc:
            logger.info("Session %s for #%d is gone (%s); starting a new one", record.session_id, item.number, exc)
            resumable = False

        if resumable:
            await ctx.run(ctx.sessions.send_message, record.session_id, prompt)
            return record.session_id, f"Resumed session {record.session_id} for rework on `{record.branch}`."

        session = await ctx.run(
            ctx.sessions.create_session,
            prompt,
            ctx.config.repo_url,
            record.branch,
            f"#{item.number}: {item.title} (rework)",
        )
        return session.id, (
            f"Previous session was not resumable; started rework session "
            f"[{session.id}]({session.web_url}) on `{record.branch}`."
        )
