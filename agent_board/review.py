"""Review, merge and conflict recovery for In Review items."""

from __future__ import annotations

import logging

from agent_board.context import DaemonContext, post_and_move, process_items, read_status, return_item
from agent_board.extraction import extract_summary
from agent_board.models import ActionKind, BoardSnapshot, Stage, WorkItem
from agent_board.sessions import SessionError, SessionStatus
from agent_board.status_comment import StatusRecord

logger = logging.getLogger(__name__)

_RECOVERY_ACTIONS = (ActionKind.CONFLICT_RESOLUTION, ActionKind.REWORK_START)
_FINISHED = (
    SessionStatus.IDLE,
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.ARCHIVED,
)


def _conflict_prompt(item: WorkItem, record: StatusRecord, base: str) -> str:
    return (
        f"Pull request #{record.pr_number} for issue #{item.number} ({item.title}) cannot be merged "
        f"because branch `{record.branch}` conflicts with `{base}`.\n\n"
        "Resolve the conflicts. Follow these steps exactly:\n\n"
        f"1. Check out `{record.branch}`.\n"
        f"2. Fetch and merge `origin/{base}` into it.\n"
        "3. Resolve every conflict, keeping the intent of BOTH sides.\n"
        "4. Make sure no conflict markers remain and the tests pass.\n"
        f"5. Commit the merge and push to `{record.branch}`.\n"
        "6. Do NOT open a new pull request and do NOT change anything unrelated.\n"
    )


class ReviewCoordinator:
    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx

    async def run(self, snapshot: BoardSnapshot) -> None:
        if not self.ctx.agent_available or self.ctx.reviewer is None:
            logger.info("Agent unavailable; not reviewing this cycle")
            return
        await process_items(
            snapshot.in_stage(Stage.IN_REVIEW),
            lambda item: self._process(snapshot, item),
            concurrent=True,
            stage="review",
        )

    async def _process(self, snapshot: BoardSnapshot, item: WorkItem) -> None:
        ctx = self.ctx
        if ctx.cooldowns.is_active(item.number):
            logger.debug("#%d in cooldown; skipping review", item.number)
            return

        record = await read_status(ctx, item)
        if not record.pr_number:
            logger.warning("#%d is In Review but has no linked PR; skipping", item.number)
            return

        if record.action in _RECOVERY_ACTIONS and record.recovery_session_id:
            if not await self._recovery_finished(item, record):
                return

        review_summary = "Approved in an earlier cycle."
        if not record.review_approved:
            ctx.cooldowns.set(item.number, ActionKind.REVIEW_STARTED)
            context = await self._review_context(record)
            result = await ctx.run(ctx.reviewer.review, record.pr_number, context)
            ctx.cooldowns.clear(item.number)
            if not result.approved:
                await return_item(
                    ctx, snapshot, item, Stage.READY, record,
                    f"**Changes requested** on pull request #{record.pr_number}. "
                    "The next attempt will address these findings.\n\n"
                    + result.format_findings(),
                )
                return
            review_summary = result.summary or "Approved."

        await self._merge(snapshot, item, record, review_summary)

    # ------------------------------------------------------------------
    # Recovery sessions
    # ------------------------------------------------------------------

    async def _recovery_finished(self, item: WorkItem, record: StatusRecord) -> bool:
        """True once the recovery session is done; False while the item should wait."""
        ctx = self.ctx
        session_id = record.recovery_session_id
        try:
            session = await ctx.run(ctx.sessions.get_session, session_id)
        except SessionError as exc:
            logger.warning("#%d: recovery session %s unreadable (%s); reviewing anyway", item.number, session_id, exc)
            return True

        if session.status in _FINISHED:
            ctx.cooldowns.clear(item.number)
            logger.info("#%d: recovery session %s finished (%s)", item.number, session_id, session.status.value)
            return True

        elapsed = ctx.cooldowns.elapsed(item.number)
        if elapsed is None:
            ctx.cooldowns.set(item.number, record.action, session_id)
            return False
        if elapsed <= ctx.config.recovery_session_seconds:
            logger.debug("#%d: recovery session %s still running", item.number, session_id)
            return False

        logger.warning("#%d: recovery session %s timed out", item.number, session_id)
        try:
            await ctx.run(ctx.sessions.interrupt, session_id)
        except Exception as exc:
            logger.warning("Could not interrupt session %s: %s", session_id, exc)
        ctx.cooldowns.clear(item.number)
        await ctx.run(
            ctx.tracker.post_status,
            item.number,
            record.evolve(action=ActionKind.AWAITING_REVIEW, recovery_session_id=None, review_approved=False),
            f"**Recovery timed out.** Session {session_id} ran for more than "
            f"{ctx.config.recovery_session_minutes:g} minutes and was interrupted. "
            "The pull request will be reviewed again next cycle.",
        )
        return False

    async def _review_context(self, record: StatusRecord) -> str | None:
        """Implementation summary from the original session, if it is still resumable."""
        ctx = self.ctx
        if not record.session_id:
            return None
        try:
            session = await ctx.run(ctx.sessions.get_session, record.session_id)
            if not session.status.resumable:
                return None
            events = await ctx.run(ctx.sessions.get_events, record.session_id)
        except SessionError as exc:
            logger.debug("No review context from session %s: %s", record.session_id, exc)
            return None
        return extract_summary(events, ctx.config.summary_max_chars)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    async def _merge(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord, review_summary: str
    ) -> None:
        ctx = self.ctx
        pr = await ctx.run(ctx.prs.get, record.pr_number)

        if pr.state.upper() == "MERGED":
            await self._complete(snapshot, item, record, review_summary)
            return
        if pr.state.upper() == "CLOSED":
            await return_item(
                ctx, snapshot, item, Stage.READY, record.evolve(pr_number=None),
                f"**Pull request #{pr.number} was closed without merging.** Back to Ready.",
            )
            return

        if pr.mergeable is None or (pr.mergeable and pr.blocked):
            if pr.mergeable is None:
                reason = "mergeability is still being computed"
            else:
                reason = "required checks are blocking"
            logger.info("#%d: PR #%d not mergeable yet (%s)", item.number, pr.number, reason)
            await self._remember_approval(item, record, reason)
            return

        if pr.mergeable is False:
            await self._start_conflict_resolution(snapshot, item, record)
            return

        try:
            await ctx.run(ctx.prs.merge, pr.number)
        except Exception as exc:
            logger.error("#%d: merge of PR #%d failed: %s", item.number, pr.number, exc)
            await return_item(
                ctx, snapshot, item, Stage.READY, record,
                f"**Merge failed** for pull request #{pr.number}: {exc}. Back to Ready.",
            )
            return

        await self._complete(snapshot, item, record, review_summary)

    async def _remember_approval(self, item: WorkItem, record: StatusRecord, reason: str) -> None:
        """Persist a fresh approval so the retry next cycle goes straight to merge."""
        if record.review_approved:
            return
        await self.ctx.run(
            self.ctx.tracker.post_status,
            item.number,
            record.evolve(action=ActionKind.AWAITING_REVIEW, review_approved=True),
            f"**Approved.** Pull request #{record.pr_number} will be merged once it is mergeable ({reason}).",
        )

    async def _start_conflict_resolution(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord
    ) -> None:
        ctx = self.ctx
        prompt = _conflict_prompt(item, record, ctx.config.base_branch)
        try:
            session = await ctx.run(
                ctx.sessions.create_session,
                prompt,
                ctx.config.repo_url,
                record.branch,
                f"#{item.number}: resolve conflicts",
            )
        except Exception as exc:
            logger.error("#%d: could not start conflict resolution: %s", item.number, exc)
            await return_item(
                ctx, snapshot, item, Stage.READY, record,
                f"**Merge conflict.** Pull request #{record.pr_number} conflicts with "
                f"`{ctx.config.base_branch}` and a resolution session could not be started ({exc}). "
                "Back to Ready.",
            )
            return

        ctx.cooldowns.set(item.number, ActionKind.CONFLICT_RESOLUTION, session.id)
        await ctx.run(
            ctx.tracker.post_status,
            item.number,
            record.evolve(
                action=ActionKind.CONFLICT_RESOLUTION,
                recovery_session_id=session.id,
                review_approved=False,
            ),
            f"**Merge conflict.** Pull request #{record.pr_number} conflicts with "
            f"`{ctx.config.base_branch}`. Started resolution session [{session.id}]({session.web_url}).",
        )

    async def _complete(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord, review_summary: str
    ) -> None:
        ctx = self.ctx
        done = record.evolve(action=ActionKind.DONE, recovery_session_id=None, review_approved=True)
        await post_and_move(
            ctx, snapshot, item, Stage.DONE, done,
            f"**Done.** Pull request #{record.pr_number} was merged.\n\n### Review\n\n{review_summary}",
        )
        await ctx.run(ctx.tracker.close_issue, item.number)
        ctx.cooldowns.clear(item.number)

        for session_id in filter(None, {record.session_id, record.recovery_session_id}):
            try:
                await ctx.run(ctx.sessions.archive, session_id)
            except Exception as exc:
                logger.warning("Could not archive session %s: %s", session_id, exc)
        if record.branch:
            try:
                await ctx.run(ctx.prs.delete_branch, record.branch)
            except Exception as exc:
                logger.warning("Could not delete branch %s: %s", record.branch, exc)
