"""Watch In Progress sessions and route finished, failed, archived and stuck ones."""

from __future__ import annotations

import logging

from agent_board.context import DaemonContext, post_and_move, process_items, read_status, return_item
from agent_board.extraction import extract_branch, extract_summary, has_errors
from agent_board.models import ActionKind, BoardSnapshot, Stage, WorkItem
from agent_board.sessions import Session, SessionStatus
from agent_board.status_comment import StatusRecord

logger = logging.getLogger(__name__)


class InProgressMonitor:
    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx

    async def check(self, snapshot: BoardSnapshot) -> None:
        if not self.ctx.agent_available:
            logger.info("Agent unavailable; not polling sessions this cycle")
            return
        await process_items(
            snapshot.in_stage(Stage.IN_PROGRESS),
            lambda item: self._check(snapshot, item),
            stage="monitor",
        )

    async def _check(self, snapshot: BoardSnapshot, item: WorkItem) -> None:
        ctx = self.ctx
        record = await read_status(ctx, item)
        if not record.session_id:
            logger.warning("#%d is In Progress but has no linked session; skipping", item.number)
            return

        session = await ctx.run(ctx.sessions.get_session, record.session_id)
        status = session.status

        if status is SessionStatus.IDLE and ctx.cooldowns.is_active(item.number):
            logger.debug("#%d: session %s idle but still settling", item.number, session.id)
            return

        if status in (SessionStatus.COMPLETED, SessionStatus.IDLE):
            ctx.cooldowns.clear(item.number)
            await self._finished(snapshot, item, record, session)
        elif status is SessionStatus.FAILED:
            ctx.cooldowns.clear(item.number)
            await return_item(
                ctx, snapshot, item, Stage.BACKLOG, record,
                f"**Session failed.** Session {session.id} reported a failure; "
                "the item goes back to Backlog for another attempt.",
            )
        elif status is SessionStatus.ARCHIVED:
            ctx.cooldowns.clear(item.number)
            await self._archived(snapshot, item, record, session)
        else:
            await self._check_stuck(snapshot, item, record, session)

    async def _finished(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord, session: Session
    ) -> None:
        ctx = self.ctx
        cfg = ctx.config
        events = await ctx.run(ctx.sessions.get_events, session.id)
        branch = extract_branch(
            events,
            cfg.branch_prefix,
            git_branches=session.branches,
            requested_prefix=record.branch or ctx.branch_prefix_for(item),
        )
        if branch is None and record.action is ActionKind.REWORK_START:
            branch = record.branch

        if branch is None:
            if has_errors(events):
                message = (
                    f"**Session completed with errors.** Session {session.id} reported errors "
                    "and pushed no branch. Back to Backlog."
                )
            else:
                message = (
                    f"**Session completed, no branch.** Session {session.id} finished but no pushed "
                    "branch could be found. Back to Backlog."
                )
            await return_item(ctx, snapshot, item, Stage.BACKLOG, record, message)
            return

        summary = extract_summary(events, cfg.summary_max_chars)
        existing = await ctx.run(ctx.prs.list_by_branch, branch)
        if existing:
            pr = existing[0]
            logger.info("#%d: reusing PR #%d for %s", item.number, pr.number, branch)
        else:
            body = f"Implements #{item.number}.\n\n" + (summary or "")
            try:
                pr = await ctx.run(
                    ctx.prs.create, branch, f"{item.title} (#{item.number})", body, cfg.base_branch
                )
            except Exception as exc:
                logger.error("#%d: could not open PR for %s: %s", item.number, branch, exc)
                await return_item(
                    ctx, snapshot, item, Stage.BACKLOG, record.evolve(branch=branch),
                    f"**Could not open a pull request** for `{branch}`: {exc}. Back to Backlog.",
                )
                return

        new_record = record.evolve(
            action=ActionKind.AWAITING_REVIEW,
            branch=branch,
            pr_number=pr.number,
            recovery_session_id=None,
            review_approved=False,
        )
        message = f"**Ready for review.** Branch `{branch}`, pull request #{pr.number}."
        if summary:
            message += f"\n\n### Implementation summary\n\n{summary}"
        await post_and_move(ctx, snapshot, item, Stage.IN_REVIEW, new_record, message)

    async def _archived(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord, session: Session
    ) -> None:
        if record.pr_number:
            await post_and_move(
                self.ctx, snapshot, item, Stage.IN_REVIEW,
                record.evolve(action=ActionKind.AWAITING_REVIEW),
                f"**Session archived.** Session {session.id} was archived, but pull request "
                f"#{record.pr_number} exists; moving to review.",
            )
        else:
            await post_and_move(
                self.ctx, snapshot, item, Stage.READY,
                record.evolve(action=ActionKind.RETURNED, session_id=None),
                f"**Session archived.** Session {session.id} was archived before a pull request "
                "was opened; back to Ready for a fresh attempt.",
            )

    async def _check_stuck(
        self, snapshot: BoardSnapshot, item: WorkItem, record: StatusRecord, session: Session
    ) -> None:
        ctx = self.ctx
        elapsed = ctx.cooldowns.elapsed(item.number)
        if elapsed is None:
            # First sighting since restart: start the clock, check next cycle.
            action = ActionKind.SESSION_START
            if record.action is ActionKind.REWORK_START:
                action = ActionKind.REWORK_START
            ctx.cooldowns.set(item.number, action, session.id)
            logger.info("#%d: tracking running session %s", item.number, session.id)
            return

        limit = ctx.config.stuck_session_seconds
        if elapsed <= limit:
            logger.debug("#%d: session %s running for %.0fs", item.number, session.id, elapsed)
            return

        logger.warning("#%d: session %s stuck for %.0f minutes", item.number, session.id, elapsed / 60)
        try:
            await ctx.run(ctx.sessions.interrupt, session.id)
        except Exception as exc:
            logger.warning("Could not interrupt session %s: %s", session.id, exc)
        ctx.cooldowns.clear(item.number)
        await return_item(
            ctx, snapshot, item, Stage.BACKLOG, record,
            f"**Session timed out.** Session {session.id} ran for more than "
            f"{ctx.config.stuck_session_minutes:g} minutes and was interrupted. Back to Backlog.",
        )
