"""Read-only scan of the working tree for inline work markers."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

MARKER_KINDS = ("TODO", "FIXME", "HACK", "BUG", "XXX")
MAX_FILE_BYTES = 512 * 1024
TITLE_TEXT_CHARS = 80

SKIP_DIRS = {
    ".git", ".hg", ".svn", ".venv", "venv", "env", "node_modules", "__pycache__",
    ".mypy_cache", ".pytest_cache", ".tox", "build", "dist", "vendor", "third_party",
    ".idea", ".vscode",
}

# Marker must sit in a comment: after #, //, /*, --, ;, or at the start of a * line.
_MARKER_RE = re.compile(
    r"(?:#|//|/\*|--|;|^\s*\*)\s*(" + "|".join(MARKER_KINDS) + r")\b(?:\([^)]*\))?[:\s]*(.*)$"
)


@dataclass(frozen=True)
class Marker:
    file: str
    line: int
    kind: str
    text: str

    @property
    def title(self) -> str:
        text = " ".join(self.text.split())
        if len(text) > TITLE_TEXT_CHARS:
            text = text[: TITLE_TEXT_CHARS - 3].rstrip() + "..."
        return f"[{self.kind}] {text}"


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\0" in f.read(1024)
    except OSError:
        return True


def scan_markers(root: str | Path) -> Iterator[Marker]:
    """Yield markers under *root* in a stable (sorted) walk order.

    Markers with no text after the keyword are skipped; there is nothing to
    title them with.
    """
    root = Path(root).resolve()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.endswith(".egg-info"))
        for name in sorted(filenames):
            path = Path(dirpath) / name
            try:
                if path.stat().st_size > MAX_FILE_BYTES or _is_binary(path):
                    continue
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.debug("Skipping %s: %s", path, exc)
                continue
            rel = str(path.relative_to(root))
            for lineno, line in enumerate(content.splitlines(), start=1):
                match = _MARKER_RE.search(line)
                if not match:
                    continue
                text = match.group(2).strip().rstrip("*/").strip()
                if text:
                    yield Marker(file=rel, line=lineno, kind=match.group(1), text=text)
