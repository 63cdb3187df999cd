"""Project memory loading from CLAUDE.md."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Protocol

MEMORY_FILENAMES = ("CLAUDE.md", ".claude/CLAUDE.md")


class ProjectMemoryLoader(Protocol):
    """Loads a condensed project memory summary for a project."""

    def load(self, project_id: str) -> str: ...


def summarize_memory(text: str, max_chars: int) -> str:
    """
    Condense a CLAUDE.md file.

    Keeps headings and bullet/first-paragraph lines, drops code fences and
    blank runs, and truncates to max_chars on a line boundary.
    """
    kept: list[str] = []
    in_fence = False

    for raw in text.splitlines():
        line = raw.rstrip()
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
            continue
        if in_fence or not line.strip():
            continue
        if line.lstrip().startswith("<!--"):
            continue
        kept.append(line)

    summary_lines: list[str] = []
    length = 0
    for line in kept:
        if length + len(line) + 1 > max_chars:
            break
        summary_lines.append(line)
        length += len(line) + 1

    return "\n".join(summary_lines)


class ClaudeMdMemoryLoader:
    """Reads CLAUDE.md from the project's directory.

    A project id is resolved to a directory with `resolve_path`; by default the
    id itself is treated as a path (the CLI uses the repository root).
    """

    def __init__(
        self,
        max_chars: int = 2000,
        resolve_path: Callable[[str], Path] | None = None,
    ):
        self.max_chars = max_chars
        self.resolve_path = resolve_path or Path

    def load(self, project_id: str) -> str:
        root = self.resolve_path(project_id)
        for name in MEMORY_FILENAMES:
            path = root / name
            if path.is_file():
                return summarize_memory(path.read_text(encoding="utf-8"), self.max_chars)
        return ""
