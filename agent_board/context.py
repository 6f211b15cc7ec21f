"""Shared daemon context and the per-item processing helper used by every stage."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from agent_board.board import BoardClient
from agent_board.config import DaemonConfig
from agent_board.cooldown import CooldownTracker
from agent_board.credentials import TokenRefreshCoordinator
from agent_board.github import GhRunner, PullRequestClient, TrackerClient
from agent_board.models import ActionKind, BoardSnapshot, Stage, WorkItem
from agent_board.rate_limiter import RateLimiter
from agent_board.status_comment import StatusRecord

logger = logging.getLogger(__name__)

ATTENTION_LABEL = "needs-attention"


@dataclass
class DaemonContext:
    """Everything a stage needs, passed explicitly to every stage call.

    ``sessions`` and ``reviewer`` are None when no agent credential is
    configured. Clients are synchronous; stages reach them through
    :meth:`run`, which moves the call onto the worker pool.
    """

    config: DaemonConfig
    board: BoardClient
    tracker: TrackerClient
    prs: PullRequestClient
    limiter: RateLimiter
    cooldowns: CooldownTracker
    coordinator: TokenRefreshCoordinator
    gh: GhRunner | None = None
    sessions: Any = None
    reviewer: Any = None
    scan: Callable[[], Iterable] | None = None
    clock: Callable[[], float] = time.time
    executor: ThreadPoolExecutor | None = None
    created_titles: set[str] = field(default_factory=set)

    @property
    def agent_available(self) -> bool:
        return self.sessions is not None and self.coordinator.agent_available

    async def run(self, fn: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    def branch_prefix_for(self, item: WorkItem) -> str:
        return f"{self.config.branch_prefix}/issue-{item.number}"


# ---------------------------------------------------------------------------
# Per-item processing
# ---------------------------------------------------------------------------


@dataclass
class ItemOutcome:
    item: WorkItem
    ok: bool
    error: BaseException | None = None


async def process_items(
    items: Iterable[WorkItem],
    handler: Callable[[WorkItem], Awaitable[None]],
    concurrent: bool = False,
    stage: str = "",
) -> list[ItemOutcome]:
    """Run *handler* for every item; one item's failure never stops the others."""

    async def _one(item: WorkItem) -> ItemOutcome:
        try:
            await handler(item)
        except Exception as exc:
            logger.error("%s #%d failed: %s", stage or "stage", item.number, exc)
            return ItemOutcome(item=item, ok=False, error=exc)
        return ItemOutcome(item=item, ok=True)

    items = list(items)
    if concurrent:
        return list(await asyncio.gather(*(_one(item) for item in items)))
    return [await _one(item) for item in items]


async def read_status(ctx: DaemonContext, item: WorkItem) -> StatusRecord:
    """Latest status record for *item*, or an empty record if none was posted yet."""
    record = await ctx.run(ctx.tracker.get_latest_status, item.number)
    record = record or StatusRecord()
    item.session_id = record.session_id
    item.branch = record.branch
    item.pr_number = record.pr_number
    item.failure_count = record.failure_count
    return record


async def post_and_move(
    ctx: DaemonContext,
    snapshot: BoardSnapshot,
    item: WorkItem,
    stage: Stage,
    record: StatusRecord,
    message: str,
) -> None:
    """Post the new status record, then move the item.

    The comment goes first so the item never lands in a column without the
    record that explains it.
    """
    await ctx.run(ctx.tracker.post_status, item.number, record, message)
    await ctx.run(ctx.board.move_item, snapshot, item, stage)


async def return_item(
    ctx: DaemonContext,
    snapshot: BoardSnapshot,
    item: WorkItem,
    stage: Stage,
    record: StatusRecord,
    message: str,
) -> StatusRecord:
    """Send a failed item back to *stage*, bumping its failure count."""
    failures = record.failure_count + 1
    new_record = record.evolve(
        action=ActionKind.RETURNED,
        recovery_session_id=None,
        review_approved=False,
        failure_count=failures,
    )
    attention = failures >= ctx.config.max_failure_attempts
    if attention:
        message += (
            f"\n\n**This item has failed {failures} times; manual intervention may be needed.**"
        )
    await post_and_move(ctx, snapshot, item, stage, new_record, message)
    if attention:
        try:
            await ctx.run(ctx.tracker.add_label, item.number, ATTENTION_LABEL)
        except Exception as exc:
            logger.warning("Could not label #%d %s: %s", item.number, ATTENTION_LABEL, exc)
    return new_record
