"""Learned-context building for new loops and PRD stories."""

from __future__ import annotations

import logging

from ralph_loop.core.models import LoopContext
from ralph_loop.core.store import LoopStore
from ralph_loop.integrations.project_memory import ProjectMemoryLoader

logger = logging.getLogger(__name__)


class ContextBuilder:
    """Assembles a LoopContext from the mistake store and project memory.

    Building never fails and never writes: an unavailable project memory
    yields an empty summary.
    """

    def __init__(
        self,
        store: LoopStore,
        memory: ProjectMemoryLoader | None = None,
        *,
        mistake_limit: int = 10,
        inline_limit: int = 3,
        pattern_limit: int = 10,
    ):
        self.store = store
        self.memory = memory
        self.mistake_limit = mistake_limit
        self.inline_limit = inline_limit
        self.pattern_limit = pattern_limit

    def _load_summary(self, project_id: str) -> str:
        if self.memory is None:
            return ""
        try:
            return self.memory.load(project_id) or ""
        except Exception as e:
            logger.warning(f"Project memory unavailable for {project_id}: {e}")
            return ""

    def _collect_patterns(self, project_id: str) -> list[str]:
        patterns: list[str] = []
        if self.pattern_limit <= 0:
            return patterns
        for mistake in self.store.list_mistakes(project_id):
            pattern = (mistake.learned_pattern or "").strip()
            if pattern and pattern not in patterns:
                patterns.append(pattern)
                if len(patterns) >= self.pattern_limit:
                    break
        return patterns

    def build_context(self, project_id: str) -> LoopContext:
        """Build a fresh snapshot for a project."""
        return LoopContext(
            claude_md_summary=self._load_summary(project_id),
            recent_mistakes=self.store.list_mistakes(project_id, limit=self.mistake_limit),
            project_patterns=self._collect_patterns(project_id),
            total_mistakes=self.store.count_mistakes(project_id),
            inline_limit=self.inline_limit,
        )
