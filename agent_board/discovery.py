"""Find new work: inline markers first, then ask an agent when the pipeline runs dry."""

from __future__ import annotations

import asyncio
import logging

from agent_board.context import DaemonContext
from agent_board.extraction import extract_json_block
from agent_board.models import BoardSnapshot, Stage, WorkItem
from agent_board.sessions import AssistantText, ResultEvent, SessionStatus

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 120

DISCOVERY_PROMPT = """\
You are planning work for the repository {repo}.

Explore the codebase and propose {count} small, independent, concrete tasks that
would improve it (bug fixes, missing tests, robustness, small features). Each
task must be completable in a single pull request.

Do NOT propose any of these existing tasks:
{existing}

Do not modify any files. Reply with a single JSON code block and nothing else:

```json
[
  {{"title": "Short imperative title", "description": "What to change and why, with file paths"}}
]
```
"""

class TaskDiscoveryEngine:
    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx

    async def discover(self, snapshot: BoardSnapshot, existing_titles: set[str]) -> int:
        """Create Backlog items for new work and return how many were created."""
        created = await self.scan_pass(snapshot, existing_titles)

        cfg = self.ctx.config
        starved = snapshot.count(Stage.BACKLOG) + snapshot.count(Stage.READY) < cfg.max_ready
        if created == 0 and starved:
            if self.ctx.agent_available:
                created += await self.agent_pass(snapshot, existing_titles)
            else:
                logger.info("Pipeline is starved but no agent is available; skipping agent discovery")
        return created

    # ------------------------------------------------------------------
    # Pass 1: inline markers
    # ------------------------------------------------------------------

    async def scan_pass(self, snapshot: BoardSnapshot, existing_titles: set[str]) -> int:
        if self.ctx.scan is None:
            return 0
        markers = await self.ctx.run(lambda: list(self.ctx.scan()))
        created = 0
        for marker in markers:
            title = marker.title
            if self._is_known(title, existing_titles):
                continue
            body = (
                f"Found in `{marker.file}:{marker.line}`:\n\n"
                f"> {marker.kind}: {marker.text}\n\n"
                "Resolve the marker and remove the comment."
            )
            if await self._create(snapshot, title, body):
                created += 1
        if created:
            logger.info("Scan discovery created %d item(s)", created)
        return created

    # ------------------------------------------------------------------
    # Pass 2: agent proposals
    # ------------------------------------------------------------------

    async def agent_pass(self, snapshot: BoardSnapshot, existing_titles: set[str]) -> int:
        ctx = self.ctx
        cfg = ctx.config
        known = sorted(existing_titles | ctx.created_titles)
        prompt = DISCOVERY_PROMPT.format(
            repo=cfg.repo,
            count=cfg.discovery_task_count,
            existing="\n".join(f"- {t}" for t in known) or "- (none)",
        )
        session = None
        created = 0
        try:
            session = await ctx.run(
                ctx.sessions.create_session,
                prompt,
                cfg.repo_url,
                f"{cfg.branch_prefix}/discovery",
                "Task discovery",
            )
            status = await self._wait_for(session.id)
            if status is not SessionStatus.IDLE and status is not SessionStatus.COMPLETED:
                logger.warning("Discovery session %s ended as %s", session.id, status.value)
                return 0

            events = await ctx.run(ctx.sessions.get_events, session.id)
            texts = [e.text for e in events if isinstance(e, (AssistantText, ResultEvent)) and e.text]
            proposals = extract_json_block(texts[-1]) if texts else None
            if not isinstance(proposals, list):
                logger.warning("Discovery session %s returned no task list", session.id)
                return 0

            for proposal in proposals[: cfg.discovery_task_count]:
                if not isinstance(proposal, dict):
                    continue
                title = " ".join(str(proposal.get("title") or "").split())[:MAX_TITLE_CHARS]
                if not title or self._is_known(title, existing_titles):
                    continue
                body = str(proposal.get("description") or "").strip() or title
                if await self._create(snapshot, title, body + "\n\n_Proposed by automated discovery._"):
                    created += 1
            logger.info("Agent discovery created %d item(s)", created)
            return created
        except Exception as exc:
            logger.error("Agent discovery failed: %s", exc)
            return created
        finally:
            if session is not None:
                try:
                    await ctx.run(ctx.sessions.archive, session.id)
                except Exception as exc:
                    logger.warning("Could not archive discovery session %s: %s", session.id, exc)

    async def _wait_for(self, session_id: str) -> SessionStatus:
        ctx = self.ctx
        deadline = ctx.clock() + ctx.config.discovery_max_wait
        while True:
            session = await ctx.run(ctx.sessions.get_session, session_id)
            if session.status.terminal or session.status is SessionStatus.IDLE:
                return session.status
            if ctx.clock() >= deadline:
                logger.warning("Discovery session %s timed out", session_id)
                return SessionStatus.UNKNOWN
            await asyncio.sleep(ctx.config.discovery_poll_interval)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_known(self, title: str, existing_titles: set[str]) -> bool:
        return title in existing_titles or title in self.ctx.created_titles

    async def _create(self, snapshot: BoardSnapshot, title: str, body: str) -> bool:
        """Create issue + board item in Backlog. Failures are logged, never raised."""
        ctx = self.ctx
        try:
            number, node_id = await ctx.run(
                ctx.tracker.create_issue, title, body, [ctx.config.issue_label]
            )
            ctx.created_titles.add(title)
            item_id = await ctx.run(ctx.board.add_item, snapshot, node_id)
            item = WorkItem(
                number=number, node_id=node_id, item_id=item_id, title=title, stage=Stage.BACKLOG
            )
            await ctx.run(ctx.board.move_item, snapshot, item, Stage.BACKLOG)
        except Exception as exc:
            logger.error("Could not create item %r: %s", title, exc)
            return False
        return True
