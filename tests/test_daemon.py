"""Tests for the daemon cycle and the command line entry point."""

import asyncio
from unittest.mock import patch

from rich.console import Console

from agent_board.daemon import DaemonLoop, main, render_summary
from agent_board.github import GitHubError
from agent_board.models import ActionKind, Stage
from agent_board.scanner import Marker
from agent_board.sessions import SessionStatus
from agent_board.status_comment import StatusRecord
from fakes import make_ctx, make_item, make_snapshot


def test_one_cycle_takes_approved_pr_to_done() -> None:
    item = make_item(7, Stage.IN_REVIEW)
    snapshot = make_snapshot(item)
    ctx = make_ctx(snapshot, discovery_enabled=False)
    ctx.tracker.seed(
        7,
        StatusRecord(
            action=ActionKind.AWAITING_REVIEW,
            session_id="sess-7",
            branch="claude/issue-7-x",
            pr_number=42,
        ),
    )
    ctx.sessions.add("sess-7", SessionStatus.IDLE)
    ctx.prs.add(42, "claude/issue-7-x", mergeable=True)

    asyncio.run(DaemonLoop(ctx).run(once=True))

    assert ctx.board.moves == [(7, Stage.DONE)]
    assert ctx.prs.merged == [42]
    assert ctx.tracker.closed == [7]
    assert len(ctx.tracker.comments[7]) == 2
    assert "**Done.**" in ctx.tracker.last_message(7)
    assert ctx.sessions.archived == ["sess-7"]


def test_promoted_item_starts_on_the_next_snapshot() -> None:
    snapshot = make_snapshot(make_item(1))
    ctx = make_ctx(snapshot, discovery_enabled=False)

    asyncio.run(DaemonLoop(ctx).run_cycle())

    assert ctx.board.moves == [(1, Stage.READY)]
    assert ctx.sessions.created == []


def test_cycle_failure_is_contained() -> None:
    ctx = make_ctx(make_snapshot())

    def broken():
        raise RuntimeError("board unavailable")

    ctx.board.fetch_snapshot = broken
    daemon = DaemonLoop(ctx)

    asyncio.run(daemon.run(once=True))

    assert daemon.cycles == 1


def test_cooldowns_tick_once_per_cycle() -> None:
    ctx = make_ctx(make_snapshot(), discovery_enabled=False)
    ctx.cooldowns.set(3, ActionKind.SESSION_START)
    daemon = DaemonLoop(ctx)

    asyncio.run(daemon.run_cycle())
    asyncio.run(daemon.run_cycle())

    assert ctx.cooldowns.get(3).cycle_count == 2


def test_degraded_agent_skips_agent_stages() -> None:
    snapshot = make_snapshot(make_item(1, Stage.READY), make_item(2, Stage.IN_REVIEW))
    ctx = make_ctx(snapshot, discovery_enabled=False)
    ctx.coordinator.degraded = True

    asyncio.run(DaemonLoop(ctx).run_cycle())

    assert ctx.sessions.created == []
    assert ctx.reviewer.calls == []


def test_summary_shows_active_and_tracked_cooldowns() -> None:
    ctx = make_ctx(make_snapshot(make_item(1)), cooldown_threshold=1)
    ctx.cooldowns.set(3, ActionKind.SESSION_START)
    ctx.cooldowns.set(4, ActionKind.REVIEW_STARTED)
    ctx.cooldowns.tick()
    ctx.cooldowns.set(5, ActionKind.SESSION_START)
    daemon = DaemonLoop(ctx)
    recorder = Console(record=True, width=200)

    with patch("agent_board.daemon.console", recorder):
        render_summary(daemon, ctx.board.snapshot, 0.5)

    assert "1/3" in recorder.export_text()


def test_main_requires_repo_and_project() -> None:
    assert main([]) == 2


def test_main_rejects_unreadable_config(tmp_path) -> None:
    assert main(["--config", str(tmp_path / "missing.yaml"), "--repo", "a/b"]) == 2


def test_labelled_issue_off_the_board_is_not_recreated() -> None:
    ctx = make_ctx(make_snapshot())
    ctx.tracker.issues[55] = {"title": "[TODO] handle empty input", "body": "", "labels": ["agent-board"]}
    ctx.tracker.issues[56] = {"title": "[FIXME] close the cursor", "body": "", "labels": ["question"]}
    ctx.scan = lambda: [
        Marker(file="app.py", line=3, kind="TODO", text="handle empty input"),
        Marker(file="db.py", line=40, kind="FIXME", text="close the cursor"),
    ]

    asyncio.run(DaemonLoop(ctx).run_cycle())

    assert ctx.tracker.created == ["[FIXME] close the cursor"]


def test_issue_listing_failure_falls_back_to_board_titles() -> None:
    ctx = make_ctx(make_snapshot())
    ctx.scan = lambda: [Marker(file="app.py", line=3, kind="TODO", text="handle empty input")]

    def broken(label=None, state="open", limit=500):
        raise GitHubError("listing failed")

    ctx.tracker.list_issues = broken

    asyncio.run(DaemonLoop(ctx).run_cycle())

    assert ctx.tracker.created == ["[TODO] handle empty input"]
