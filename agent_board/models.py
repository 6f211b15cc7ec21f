"""Board data model: stages, action kinds, work items and per-cycle snapshots."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Stage(str, enum.Enum):
    """Board columns, in pipeline order.

    The value is the status option name shown on the project board.
    """

    BACKLOG = "Backlog"
    READY = "Ready"
    IN_PROGRESS = "In Progress"
    IN_REVIEW = "In Review"
    DONE = "Done"

    @classmethod
    def from_name(cls, name: str | None) -> Stage | None:
        """Match a board status name case- and whitespace-insensitively."""
        if not name:
            return None
        wanted = "".join(name.lower().split())
        for stage in cls:
            if "".join(stage.value.lower().split()) == wanted:
                return stage
        return None


class ActionKind(str, enum.Enum):
    """The last asynchronous action the daemon took on an item.

    The first four are also the cooldown kinds; the rest only appear in
    status comments.
    """

    SESSION_START = "session_start"
    REWORK_START = "rework_start"
    CONFLICT_RESOLUTION = "conflict_resolution"
    REVIEW_STARTED = "review_started"
    AWAITING_REVIEW = "awaiting_review"
    RETURNED = "returned"
    CREATED = "created"
    DONE = "done"

    @classmethod
    def parse(cls, value: str | None) -> ActionKind | None:
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class WorkItem:
    """One issue on the board.

    ``branch``, ``pr_number``, ``session_id`` and ``failure_count`` are not
    part of the board read; stages fill them in from the item's latest status
    comment when they need them.
    """

    number: int
    node_id: str
    item_id: str
    title: str
    stage: Stage
    branch: str | None = None
    pr_number: int | None = None
    session_id: str | None = None
    failure_count: int = 0


@dataclass
class BoardSnapshot:
    """A fresh read of the whole board, taken once per cycle and never reused."""

    project_id: str
    status_field_id: str
    status_options: dict[str, str]
    items: dict[Stage, list[WorkItem]] = field(
        default_factory=lambda: {stage: [] for stage in Stage}
    )

    def in_stage(self, stage: Stage) -> list[WorkItem]:
        return self.items.get(stage, [])

    def count(self, stage: Stage) -> int:
        return len(self.in_stage(stage))

    def option_id(self, stage: Stage) -> str | None:
        """Return the status option id for *stage*, or None if the column is missing."""
        for name, option_id in self.status_options.items():
            if Stage.from_name(name) is stage:
                return option_id
        return None

    def open_titles(self) -> set[str]:
        return {
            item.title
            for stage in Stage
            if stage is not Stage.DONE
            for item in self.in_stage(stage)
        }
