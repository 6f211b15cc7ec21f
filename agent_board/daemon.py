"""Daemon loop: one fixed sequence of stages per cycle until a stop signal arrives."""

from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import os
import signal
import sys
import time
from concurrent.futures import ThreadPoolExecutor

from rich.console import Console
from rich.table import Table

from agent_board.board import BoardClient
from agent_board.config import DaemonConfig, load_config
from agent_board.context import DaemonContext
from agent_board.cooldown import CooldownTracker
from agent_board.credentials import (
    DEFAULT_CREDENTIALS_FILE,
    OAuthRefresher,
    TokenRefreshCoordinator,
    load_credential,
)
from agent_board.discovery import TaskDiscoveryEngine
from agent_board.github import GhRunner, PullRequestClient, TrackerClient
from agent_board.models import BoardSnapshot, Stage
from agent_board.monitor import InProgressMonitor
from agent_board.rate_limiter import RateLimiter
from agent_board.review import ReviewCoordinator
from agent_board.reviewer import ReviewAgent
from agent_board.scanner import scan_markers
from agent_board.sessions import SessionClient
from agent_board.transitions import StageTransitioner

logger = logging.getLogger(__name__)
console = Console()


class DaemonLoop:
    def __init__(self, ctx: DaemonContext) -> None:
        self.ctx = ctx
        self.discovery = TaskDiscoveryEngine(ctx)
        self.transitioner = StageTransitioner(ctx)
        self.monitor = InProgressMonitor(ctx)
        self.review = ReviewCoordinator(ctx)
        self.cycles = 0
        self._stop: asyncio.Event | None = None

    def stop(self) -> None:
        if self._stop is not None and not self._stop.is_set():
            logger.info("Stop requested; finishing the current cycle")
            self._stop.set()

    async def run_cycle(self) -> BoardSnapshot:
        ctx = self.ctx
        self.cycles += 1
        ctx.cooldowns.tick()

        credential = await ctx.run(ctx.coordinator.maybe_refresh)
        if credential is not None and ctx.sessions is not None:
            ctx.sessions.set_access_token(credential.access_token)
        if ctx.coordinator.degraded:
            logger.warning("Degraded mode: %s", ctx.coordinator.warning)

        if ctx.gh is not None:
            await ctx.run(ctx.gh.refresh_quota)
        snapshot = await ctx.run(ctx.board.fetch_snapshot)

        if ctx.config.discovery_enabled:
            try:
                existing = await self._existing_titles(snapshot)
                await self.discovery.discover(snapshot, existing)
            except Exception as exc:
                logger.error("Discovery failed: %s", exc)
        await self.transitioner.promote_to_ready(snapshot)
        await self.transitioner.start_ready(snapshot)
        await self.monitor.check(snapshot)
        await self.review.run(snapshot)
        return snapshot

    async def _existing_titles(self, snapshot: BoardSnapshot) -> set[str]:
        """Open titles on the board plus open labelled issues that never made it onto it."""
        titles = snapshot.open_titles()
        try:
            issues = await self.ctx.run(self.ctx.tracker.list_issues, self.ctx.config.issue_label)
        except Exception as exc:
            logger.warning("Could not list open %s issues: %s", self.ctx.config.issue_label, exc)
            return titles
        titles.update(issue["title"] for issue in issues if issue.get("title"))
        return titles

    async def run(self, once: bool = False) -> None:
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("Cannot install handler for %s on this platform", sig)

        logger.info("agent-board daemon started for %s", self.ctx.config.repo)
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                snapshot = await self.run_cycle()
                render_summary(self, snapshot, time.monotonic() - started)
            except Exception:
                logger.exception("Cycle %d failed", self.cycles)
            if once or self._stop.is_set():
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.ctx.coordinator.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("agent-board daemon stopped after %d cycle(s)", self.cycles)


def render_summary(daemon: DaemonLoop, snapshot: BoardSnapshot, elapsed: float) -> None:
    ctx = daemon.ctx
    stats = ctx.limiter.stats()
    table = Table(title=f"Cycle {daemon.cycles} ({elapsed:.1f}s)", show_header=True)
    for stage in Stage:
        table.add_column(stage.value, justify="right")
    table.add_column("Cooldowns (active/tracked)", justify="right")
    table.add_column("Mutations/min", justify="right")
    table.add_column("Agent", justify="center")
    table.add_column("Next poll", justify="right")
    table.add_row(
        *(str(snapshot.count(stage)) for stage in Stage),
        f"{ctx.cooldowns.active_count()}/{len(ctx.cooldowns)}",
        str(stats["last_minute"]),
        "[green]ok[/green]" if ctx.agent_available else "[red]degraded[/red]",
        f"{ctx.coordinator.poll_interval:.0f}s",
    )
    console.print(table)


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def build_context(
    cfg: DaemonConfig,
    access_token: str | None = None,
    credentials_file: str | None = None,
) -> DaemonContext:
    limiter = RateLimiter(
        mutation_delay_ms=cfg.mutation_delay_ms,
        max_mutations_per_minute=cfg.max_mutations_per_minute,
        max_mutations_per_hour=cfg.max_mutations_per_hour,
        quota_buffer=cfg.quota_buffer,
    )
    gh = GhRunner(cfg.repo, cfg.repo_path, limiter=limiter)
    prs = PullRequestClient(gh)

    credential = load_credential(access_token, credentials_file)
    coordinator = TokenRefreshCoordinator(
        credential,
        OAuthRefresher(credentials_file=credentials_file or DEFAULT_CREDENTIALS_FILE),
        base_poll_interval=cfg.poll_interval,
    )

    sessions = None
    reviewer = None
    if credential is None:
        logger.warning("No agent credential found; running scan-only discovery and promotion")
    elif not cfg.environment_id:
        logger.warning("No environment_id configured; agent sessions are disabled")
    else:
        sessions = SessionClient(
            credential.access_token,
            cfg.environment_id,
            base_url=cfg.session_api_url,
            org_uuid=cfg.org_uuid or None,
            model=cfg.session_model or None,
        )
        if os.environ.get("ANTHROPIC_API_KEY"):
            reviewer = ReviewAgent(prs, model=cfg.review_model)
        else:
            logger.warning("ANTHROPIC_API_KEY is not set; automated review is disabled")

    return DaemonContext(
        config=cfg,
        board=BoardClient(gh, cfg.project_owner, cfg.project_number),
        tracker=TrackerClient(gh),
        prs=prs,
        limiter=limiter,
        gh=gh,
        cooldowns=CooldownTracker(cfg.cooldown_threshold, cfg.cooldown_max_cycles),
        coordinator=coordinator,
        sessions=sessions,
        reviewer=reviewer,
        scan=functools.partial(scan_markers, cfg.repo_path),
        executor=ThreadPoolExecutor(max_workers=8, thread_name_prefix="agent-board"),
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Drive GitHub issues across a project board with coding-agent sessions"
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--repo", help="Repository as owner/name")
    parser.add_argument("--repo-path", help="Local checkout to scan for markers (default: cwd)")
    parser.add_argument("--project-owner", help="Login owning the project board")
    parser.add_argument("--project-number", type=int, help="Project board number")
    parser.add_argument("--poll-interval", type=float, help="Seconds between cycles (default: 60)")
    parser.add_argument("--max-ready", type=int, help="Ready column capacity (default: 5)")
    parser.add_argument("--max-in-progress", type=int, help="In Progress capacity (default: 2)")
    parser.add_argument(
        "--no-discovery",
        dest="discovery_enabled",
        action="store_const",
        const=False,
        help="Disable task discovery",
    )
    parser.add_argument("--access-token", help="Agent service access token")
    parser.add_argument("--credentials-file", help="Credentials JSON (default: ~/.claude/.credentials.json)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        cfg = load_config(
            args.config,
            repo=args.repo,
            repo_path=args.repo_path,
            project_owner=args.project_owner,
            project_number=args.project_number,
            poll_interval=args.poll_interval,
            max_ready=args.max_ready,
            max_in_progress=args.max_in_progress,
            discovery_enabled=args.discovery_enabled,
        )
    except (OSError, ValueError) as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        return 2
    missing = [
        name for name in ("repo", "project_owner", "project_number") if not getattr(cfg, name)
    ]
    if missing:
        console.print(f"[red]Missing required setting(s):[/red] {', '.join(missing)}")
        return 2

    ctx = build_context(cfg, args.access_token, args.credentials_file)
    try:
        asyncio.run(DaemonLoop(ctx).run(once=args.once))
    finally:
        if ctx.executor is not None:
            ctx.executor.shutdown(wait=False)
        if ctx.sessions is not None:
            ctx.sessions.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
