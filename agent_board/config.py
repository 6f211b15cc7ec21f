"""Daemon settings and the optional YAML config file."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path

import yaml


@dataclass
class DaemonConfig:
    # Repository and board identity
    repo: str = ""  # "owner/name"
    repo_path: str = "."
    project_owner: str = ""
    project_number: int = 0
    base_branch: str = "main"
    issue_label: str = "agent-board"
    branch_prefix: str = "claude"

    # Capacity and pacing
    max_ready: int = 5
    max_in_progress: int = 2
    poll_interval: float = 60.0

    # Discovery
    discovery_enabled: bool = True
    discovery_task_count: int = 5
    discovery_max_wait: float = 600.0
    discovery_poll_interval: float = 10.0

    # Rate limiting of tracker/board calls
    mutation_delay_ms: int = 1000
    max_mutations_per_minute: int = 60
    max_mutations_per_hour: int = 500
    quota_buffer: int = 100

    # Timeouts and cooldowns
    stuck_session_minutes: float = 30.0
    recovery_session_minutes: float = 30.0
    cooldown_threshold: int = 3
    cooldown_max_cycles: int = 720
    max_failure_attempts: int = 3

    # Agent service
    session_api_url: str = "https://api.anthropic.com"
    environment_id: str = ""
    org_uuid: str = ""
    session_model: str = ""
    review_model: str = "claude-sonnet-4-5"
    summary_max_chars: int = 2000

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.repo}"

    @property
    def stuck_session_seconds(self) -> float:
        return self.stuck_session_minutes * 60

    @property
    def recovery_session_seconds(self) -> float:
        return self.recovery_session_minutes * 60


def load_config(path: str | Path | None = None, **overrides) -> DaemonConfig:
    """Build a DaemonConfig from an optional YAML file plus keyword overrides.

    File keys mirror the dataclass field names. Overrides whose value is None
    are ignored so that unset CLI flags do not clobber file values.

    Raises ValueError on unknown keys or a file that is not a mapping.
    """
    known = {f.name for f in fields(DaemonConfig)}
    values: dict = {}

    if path is not None:
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping at the top level")
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config key(s) in {path}: {', '.join(unknown)}")
        values.update(data)

    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown config override: {key}")
        if value is not None:
            values[key] = value

    return DaemonConfig(**values)
