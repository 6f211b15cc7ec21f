"""Tests for Backlog -> Ready promotion and Ready -> In Progress starts."""

import asyncio

from agent_board.models import ActionKind, Stage
from agent_board.sessions import SessionStatus
from agent_board.status_comment import StatusRecord
from agent_board.transitions import StageTransitioner
from fakes import make_ctx, make_item, make_snapshot


# ---------------------------------------------------------------------------
# promote_to_ready
# ---------------------------------------------------------------------------


def test_promotion_prefers_fewest_failures() -> None:
    a, b, c = make_item(1), make_item(2), make_item(3)
    snapshot = make_snapshot(a, b, c)
    ctx = make_ctx(snapshot, max_ready=2)
    ctx.tracker.seed(2, StatusRecord(failure_count=3))
    ctx.tracker.seed(3, StatusRecord(failure_count=1))

    selected = asyncio.run(StageTransitioner(ctx).promote_to_ready(snapshot))

    assert [i.number for i in selected] == [1, 3]
    assert ctx.board.moves == [(1, Stage.READY), (3, Stage.READY)]


def test_ties_go_to_older_issues() -> None:
    items = [make_item(n) for n in (9, 4, 6)]
    snapshot = make_snapshot(*items)
    ctx = make_ctx(snapshot, max_ready=2)

    selected = asyncio.run(StageTransitioner(ctx).promote_to_ready(snapshot))

    assert [i.number for i in selected] == [4, 6]


def test_unreadable_history_counts_as_zero_failures() -> None:
    snapshot = make_snapshot(make_item(1), make_item(2))
    ctx = make_ctx(snapshot, max_ready=1)
    ctx.tracker.seed(1, StatusRecord(failure_count=2))
    ctx.tracker.fail_status_reads.add(2)

    selected = asyncio.run(StageTransitioner(ctx).promote_to_ready(snapshot))

    assert [i.number for i in selected] == [2]


def test_one_failed_move_does_not_block_others() -> None:
    snapshot = make_snapshot(make_item(1), make_item(2), make_item(3))
    ctx = make_ctx(snapshot, max_ready=3)
    ctx.board.fail_moves.add(1)

    asyncio.run(StageTransitioner(ctx).promote_to_ready(snapshot))

    assert ctx.board.moves == [(2, Stage.READY), (3, Stage.READY)]


def test_no_promotion_when_ready_is_full() -> None:
    ready = [make_item(n, Stage.READY) for n in (10, 11)]
    snapshot = make_snapshot(make_item(1), *ready)
    ctx = make_ctx(snapshot, max_ready=2)

    assert asyncio.run(StageTransitioner(ctx).promote_to_ready(snapshot)) == []
    assert ctx.board.moves == []


# ---------------------------------------------------------------------------
# start_ready
# ---------------------------------------------------------------------------


def test_first_attempt_starts_new_session() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)

    started = asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert [i.number for i in started] == [7]
    created = ctx.sessions.created[0]
    assert created["branch_prefix"] == "claude/issue-7"
    assert "#7" in created["prompt"]
    assert ctx.board.moves == [(7, Stage.IN_PROGRESS)]
    record = ctx.tracker.last_record(7)
    assert record.action is ActionKind.SESSION_START
    assert record.session_id == "sess-1"
    cooldown = ctx.cooldowns.get(7)
    assert cooldown.action is ActionKind.SESSION_START
    assert cooldown.session_id == "sess-1"


def test_cooldown_recorded_before_status_comment() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)
    seen = []
    original = ctx.tracker.post_status

    def post_status(number, record, message):
        seen.append(ctx.cooldowns.is_active(number))
        original(number, record, message)

    ctx.tracker.post_status = post_status

    asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert seen == [True]


def test_capacity_counts_in_progress_items() -> None:
    ready = [make_item(n, Stage.READY) for n in (3, 1, 2)]
    busy = make_item(20, Stage.IN_PROGRESS)
    snapshot = make_snapshot(*ready, busy)
    ctx = make_ctx(snapshot, max_in_progress=2)

    started = asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert [i.number for i in started] == [1]
    assert len(ctx.sessions.created) == 1


def test_items_in_cooldown_are_skipped() -> None:
    snapshot = make_snapshot(make_item(1, Stage.READY), make_item(2, Stage.READY))
    ctx = make_ctx(snapshot)
    ctx.cooldowns.set(1, ActionKind.SESSION_START, "sess-x")

    started = asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert [i.number for i in started] == [2]


def test_rework_resumes_idle_session() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)
    ctx.sessions.add("sess-old", SessionStatus.IDLE)
    ctx.tracker.seed(
        7,
        StatusRecord(action=ActionKind.RETURNED, session_id="sess-old", branch="claude/issue-7-a", pr_number=42),
        "**Changes requested.** Missing tests for the empty case.",
    )

    asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert ctx.sessions.created == []
    session_id, prompt = ctx.sessions.messages[0]
    assert session_id == "sess-old"
    assert "claude/issue-7-a" in prompt
    assert "Missing tests for the empty case" in prompt
    record = ctx.tracker.last_record(7)
    assert record.action is ActionKind.REWORK_START
    assert record.session_id == "sess-old"
    assert record.pr_number == 42
    assert ctx.cooldowns.get(7).action is ActionKind.REWORK_START


def test_rework_with_archived_session_starts_new_on_same_branch() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)
    ctx.sessions.add("sess-old", SessionStatus.ARCHIVED)
    ctx.tracker.seed(7, StatusRecord(session_id="sess-old", branch="claude/issue-7-a", pr_number=42))

    asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert ctx.sessions.messages == []
    assert ctx.sessions.created[0]["branch_prefix"] == "claude/issue-7-a"
    record = ctx.tracker.last_record(7)
    assert record.action is ActionKind.REWORK_START
    assert record.session_id == "sess-1"


def test_rework_with_missing_session_starts_new() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)
    ctx.tracker.seed(7, StatusRecord(session_id="sess-gone", branch="claude/issue-7-a", pr_number=42))

    asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert len(ctx.sessions.created) == 1


def test_session_create_failure_leaves_item_in_ready() -> None:
    item = make_item(7, Stage.READY)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot)
    ctx.sessions.fail_create = True

    started = asyncio.run(StageTransitioner(ctx).start_ready(snapshot))

    assert started == []
    assert ctx.board.moves == []
    assert ctx.cooldowns.get(7) is None


def test_no_starts_without_agent() -> None:
    snapshot = make_snapshot(make_item(7, Stage.READY))
    ctx = make_ctx(snapshot, agent=False)

    assert asyncio.run(StageTransitioner(ctx).start_ready(snapshot)) == []
    assert ctx.board.moves == []
