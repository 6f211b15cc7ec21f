"""Per-item suppression while an asynchronous action settles."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from agent_board.models import ActionKind

logger = logging.getLogger(__name__)

COOLDOWN_ACTIONS = frozenset(
    {
        ActionKind.SESSION_START,
        ActionKind.REWORK_START,
        ActionKind.CONFLICT_RESOLUTION,
        ActionKind.REVIEW_STARTED,
    }
)


@dataclass
class Cooldown:
    action: ActionKind
    recorded_at: float
    cycle_count: int = 0
    session_id: str | None = None


class CooldownTracker:
    """Cooldown entries keyed by issue number.

    ``tick()`` runs once at the start of every cycle, before any stage reads
    cooldown state. An entry is active while ``cycle_count < threshold`` and is
    dropped once ``cycle_count`` exceeds ``max_cycles``.
    """

    def __init__(
        self,
        threshold: int = 3,
        max_cycles: int = 720,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.threshold = threshold
        self.max_cycles = max_cycles
        self._clock = clock
        self._entries: dict[int, Cooldown] = {}

    def set(self, number: int, action: ActionKind, session_id: str | None = None) -> Cooldown:
        if action not in COOLDOWN_ACTIONS:
            raise ValueError(f"{action.value} is not a cooldown action")
        entry = Cooldown(action=action, recorded_at=self._clock(), session_id=session_id)
        self._entries[number] = entry
        logger.debug("Cooldown set for #%d (%s)", number, action.value)
        return entry

    def get(self, number: int) -> Cooldown | None:
        return self._entries.get(number)

    def is_active(self, number: int) -> bool:
        entry = self._entries.get(number)
        return entry is not None and entry.cycle_count < self.threshold

    def clear(self, number: int) -> None:
        if self._entries.pop(number, None) is not None:
            logger.debug("Cooldown cleared for #%d", number)

    def elapsed(self, number: int) -> float | None:
        """Seconds since the entry's action was recorded, or None without an entry."""
        entry = self._entries.get(number)
        if entry is None:
            return None
        return self._clock() - entry.recorded_at

    def tick(self) -> None:
        expired = []
        for number, entry in self._entries.items():
            entry.cycle_count += 1
            if entry.cycle_count > self.max_cycles:
                expired.append(number)
        for number in expired:
            del self._entries[number]
        if expired:
            logger.info("Evicted %d stale cooldown entr%s", len(expired), "y" if len(expired) == 1 else "ies")

    def active_count(self) -> int:
        return sum(1 for n in self._entries if self.is_active(n))

    def __len__(self) -> int:
        return len(self._entries)
