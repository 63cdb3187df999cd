"""JSON file store for loops, mistakes and loop traces.

Layout under the store root:

    loops/<loop_id>.json
    loops/<loop_id>.owner      pid of the process executing the loop
    mistakes/<mistake_id>.json
    traces/<loop_id>.jsonl

Records are loaded once and indexed in memory (loops by project, mistakes by
project and loop). Every write goes to disk before the in-memory index changes.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ralph_loop.core.errors import (
    LoopValidationError,
    MistakeAlreadyResolvedError,
    MistakeNotFoundError,
    StoreError,
)
from ralph_loop.core.models import Loop, LoopStatus, Mistake, TraceEvent
from ralph_loop.safety.secrets import redact_data, redact_text

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class LoopStore:
    """Persistent store for Loop and Mistake records."""

    def __init__(self, root: Path):
        self.root = root
        self.loops_dir = root / "loops"
        self.mistakes_dir = root / "mistakes"
        self.traces_dir = root / "traces"
        for directory in (self.loops_dir, self.mistakes_dir, self.traces_dir):
            directory.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._loops: dict[str, Loop] = {}
        self._loops_by_project: dict[str, list[str]] = {}
        self._mistakes: dict[str, Mistake] = {}
        # project_id -> loop_id (None for manual mistakes) -> mistake ids, oldest first
        self._mistakes_by_project: dict[str, dict[str | None, list[str]]] = {}
        self._mistake_order: dict[str, list[str]] = {}
        self._load()

    # --- loading -----------------------------------------------------------

    def _load(self) -> None:
        loops = self._read_records(self.loops_dir, Loop)
        for loop in sorted(loops, key=lambda l: l.created_at):
            self._index_loop(loop)

        mistakes = self._read_records(self.mistakes_dir, Mistake)
        for mistake in sorted(mistakes, key=lambda m: m.created_at):
            self._index_mistake(mistake)

    def _read_records(self, directory: Path, model: type[Loop] | type[Mistake]) -> list[Any]:
        records = []
        for path in directory.glob("*.json"):
            try:
                records.append(model.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, ValueError) as e:
                logger.warning(f"Skipping unreadable record {path}: {e}")
        return records

    def _index_loop(self, loop: Loop) -> None:
        if loop.id not in self._loops:
            self._loops_by_project.setdefault(loop.project_id, []).append(loop.id)
        self._loops[loop.id] = loop

    def _index_mistake(self, mistake: Mistake) -> None:
        if mistake.id not in self._mistakes:
            by_loop = self._mistakes_by_project.setdefault(mistake.project_id, {})
            by_loop.setdefault(mistake.loop_id, []).append(mistake.id)
            self._mistake_order.setdefault(mistake.project_id, []).append(mistake.id)
        self._mistakes[mistake.id] = mistake

    def _write(self, path: Path, content: str) -> None:
        try:
            atomic_write_text(path, content)
        except OSError as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    # --- loops -------------------------------------------------------------

    def save_loop(self, loop: Loop) -> Loop:
        """Insert or update a loop record."""
        loop.outcome = redact_text(loop.outcome)
        loop.last_error = redact_text(loop.last_error)
        with self._lock:
            self._write(
                self.loops_dir / f"{loop.id}.json",
                loop.model_dump_json(by_alias=True, indent=2),
            )
            self._index_loop(loop)
        return loop

    def get_loop(self, loop_id: str) -> Loop | None:
        with self._lock:
            return self._loops.get(loop_id)

    def list_loops(self, project_id: str) -> list[Loop]:
        """Loops for a project, newest first."""
        with self._lock:
            ids = self._loops_by_project.get(project_id, [])
            return [self._loops[i] for i in reversed(ids)]

    def active_loops(self, project_id: str | None = None) -> list[Loop]:
        """Loops in running or paused state, optionally for one project."""
        with self._lock:
            loops = (
                self.list_loops(project_id)
                if project_id is not None
                else list(self._loops.values())
            )
            return [l for l in loops if l.status in (LoopStatus.RUNNING, LoopStatus.PAUSED)]

    # --- ownership ---------------------------------------------------------

    def _owner_path(self, loop_id: str) -> Path:
        return self.loops_dir / f"{loop_id}.owner"

    def claim_loop(self, loop_id: str, pid: int | None = None) -> None:
        """Record the process executing a loop (loops/<id>.owner holds its pid)."""
        self._write(self._owner_path(loop_id), str(pid or os.getpid()))

    def release_loop(self, loop_id: str) -> None:
        self._owner_path(loop_id).unlink(missing_ok=True)

    def loop_owner(self, loop_id: str) -> int | None:
        try:
            return int(self._owner_path(loop_id).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def is_owned(self, loop_id: str) -> bool:
        """True while the process that claimed the loop is still alive."""
        pid = self.loop_owner(loop_id)
        return pid is not None and pid_alive(pid)

    # --- mistakes ----------------------------------------------------------

    def add_mistake(self, mistake: Mistake) -> Mistake:
        """Persist a new mistake."""
        mistake.description = redact_text(mistake.description) or ""
        mistake.context = redact_text(mistake.context)
        with self._lock:
            if mistake.id in self._mistakes:
                raise StoreError(f"Mistake already exists: {mistake.id}")
            self._write(
                self.mistakes_dir / f"{mistake.id}.json",
                mistake.model_dump_json(by_alias=True, indent=2),
            )
            self._index_mistake(mistake)
        return mistake

    def get_mistake(self, mistake_id: str) -> Mistake | None:
        with self._lock:
            return self._mistakes.get(mistake_id)

    def list_mistakes(
        self,
        project_id: str,
        *,
        loop_id: str | None = None,
        limit: int | None = None,
    ) -> list[Mistake]:
        """Mistakes for a project (optionally one loop), newest first."""
        with self._lock:
            if loop_id is not None:
                ids = self._mistakes_by_project.get(project_id, {}).get(loop_id, [])
            else:
                ids = self._mistake_order.get(project_id, [])
            ordered = [self._mistakes[i] for i in reversed(ids)]
        return ordered[:limit] if limit is not None else ordered

    def count_mistakes(self, project_id: str) -> int:
        with self._lock:
            return len(self._mistake_order.get(project_id, []))

    def resolve_mistake(
        self,
        mistake_id: str,
        resolution: str,
        learned_pattern: str | None = None,
    ) -> Mistake:
        """Record how a mistake was fixed. A resolution is never cleared or replaced."""
        resolution = resolution.strip()
        if not resolution:
            raise LoopValidationError("Resolution must not be empty")

        with self._lock:
            mistake = self._mistakes.get(mistake_id)
            if mistake is None:
                raise MistakeNotFoundError(f"Mistake not found: {mistake_id}")
            if mistake.resolution is not None:
                raise MistakeAlreadyResolvedError(
                    f"Mistake {mistake_id} is already resolved"
                )
            updated = mistake.model_copy(
                update={
                    "resolution": redact_text(resolution),
                    "learned_pattern": learned_pattern or mistake.learned_pattern,
                }
            )
            self._write(
                self.mistakes_dir / f"{mistake_id}.json",
                updated.model_dump_json(by_alias=True, indent=2),
            )
            self._mistakes[mistake_id] = updated
        return updated

    # --- traces ------------------------------------------------------------

    def append_trace(self, loop_id: str, event: TraceEvent) -> None:
        """Append an event to the loop trace log."""
        event.data = redact_data(event.data)
        path = self.traces_dir / f"{loop_id}.jsonl"
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")
        except OSError as e:
            raise StoreError(f"Failed to append trace for {loop_id}: {e}") from e

    def read_trace(self, loop_id: str) -> list[TraceEvent]:
        """Read trace events for a loop."""
        path = self.traces_dir / f"{loop_id}.jsonl"
        if not path.exists():
            return []

        events: list[TraceEvent] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(TraceEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError):
                continue

        return events

    def log_event(
        self,
        loop: Loop,
        event_type: str,
        data: dict[str, Any] | None = None,
    ) -> TraceEvent:
        """Build and append a trace event stamped with the loop's current status."""
        event = TraceEvent(
            timestamp=datetime.now(),
            event_type=event_type,
            status=loop.status.value,
            data=dict(data or {}),
        )
        self.append_trace(loop.id, event)
        return event
