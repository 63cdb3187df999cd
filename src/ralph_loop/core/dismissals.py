"""Per-project "smart next step" dismissals with timed expiry."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from ralph_loop.core.models import Dismissal
from ralph_loop.core.store import atomic_write_text

_DISMISSALS = TypeAdapter(dict[str, list[Dismissal]])


class DismissalStore:
    """Keyed store: project_id -> dismissals.

    Non-permanent dismissals expire `ttl` after they were made; expiry is
    checked on every read.
    """

    def __init__(self, path: Path, ttl: timedelta = timedelta(hours=24)):
        self.path = path
        self.ttl = ttl
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> dict[str, list[Dismissal]]:
        if not self.path.exists():
            return {}
        try:
            return _DISMISSALS.validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            return {}

    def _save(self) -> None:
        payload = {
            project_id: [d.model_dump(mode="json", by_alias=True) for d in dismissals]
            for project_id, dismissals in self._data.items()
        }
        atomic_write_text(self.path, json.dumps(payload, indent=2))

    def _is_valid(self, dismissal: Dismissal, now: datetime) -> bool:
        return dismissal.permanent or now - dismissal.dismissed_at < self.ttl

    def dismiss(
        self,
        project_id: str,
        recommendation_id: str,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> Dismissal:
        """Dismiss a recommendation, replacing any earlier dismissal of it."""
        dismissal = Dismissal(
            id=recommendation_id,
            dismissed_at=now or datetime.now(),
            permanent=permanent,
        )
        with self._lock:
            existing = [
                d for d in self._data.get(project_id, []) if d.id != recommendation_id
            ]
            existing.append(dismissal)
            self._data[project_id] = existing
            self._save()
        return dismissal

    def active(self, project_id: str, *, now: datetime | None = None) -> list[Dismissal]:
        """Dismissals that have not expired."""
        now = now or datetime.now()
        with self._lock:
            return [d for d in self._data.get(project_id, []) if self._is_valid(d, now)]

    def dismissed_ids(self, project_id: str, *, now: datetime | None = None) -> list[str]:
        return [d.id for d in self.active(project_id, now=now)]

    def is_dismissed(
        self,
        project_id: str,
        recommendation_id: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        return recommendation_id in self.dismissed_ids(project_id, now=now)

    def clear(self, project_id: str) -> None:
        with self._lock:
            if self._data.pop(project_id, None) is not None:
                self._save()
