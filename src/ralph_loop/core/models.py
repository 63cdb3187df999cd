"""Data models for RALPH loop orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ralph_loop.core.errors import ErrorKind
from ralph_loop.safety.sanitizer import sanitize_context_text


class LoopStatus(str, Enum):
    """Status of a loop."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopStatus.COMPLETED, LoopStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (LoopStatus.RUNNING, LoopStatus.PAUSED)


class LoopMode(str, Enum):
    """Execution mode of a loop."""

    ITERATIVE = "iterative"
    PRD = "prd"


class MistakeType(str, Enum):
    """Classification of a captured failure."""

    FILE_NOT_FOUND = "file_not_found"
    SYNTAX_ERROR = "syntax_error"
    TYPE_ERROR = "type_error"
    PERMISSION_ERROR = "permission_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    RESOURCE_ERROR = "resource_error"
    USER_CANCELLED = "user_cancelled"
    IMPLEMENTATION = "implementation"


class StoryStatus(str, Enum):
    """Progress of a single PRD story inside a loop."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting snake_case too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoryRun(CamelModel):
    """Derived progress record for one story of a PRD loop."""

    story_id: str
    title: str = ""
    status: StoryStatus = StoryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    commit_hash: str | None = None

    @property
    def completed(self) -> bool:
        return self.status == StoryStatus.COMPLETED


class Loop(CamelModel):
    """One attempt at an AI-driven coding task."""

    id: str
    project_id: str
    mode: LoopMode = LoopMode.ITERATIVE
    status: LoopStatus = LoopStatus.RUNNING
    prompt: str
    enhanced_prompt: str | None = None
    outcome: str | None = None
    quality_score: int = Field(default=0, ge=0, le=100)
    iterations: int = Field(default=0, ge=0)
    current_story: int | None = None
    total_stories: int | None = None
    branch: str | None = None
    stories: list[StoryRun] = Field(default_factory=list)
    last_error: str | None = None
    started_at: datetime | None = None
    paused_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class Mistake(CamelModel):
    """One classified failure captured during (or outside) a loop."""

    id: str
    project_id: str
    loop_id: str | None = None
    mistake_type: MistakeType = MistakeType.IMPLEMENTATION
    description: str
    context: str | None = None
    resolution: str | None = None
    learned_pattern: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class LoopContext(CamelModel):
    """Read-only snapshot of what a project has learned, built before a loop starts."""

    claude_md_summary: str = ""
    recent_mistakes: list[Mistake] = Field(default_factory=list)
    project_patterns: list[str] = Field(default_factory=list)
    total_mistakes: int = Field(default=0, ge=0)
    inline_limit: int = Field(default=3, ge=1)

    @property
    def inline_mistakes(self) -> list[Mistake]:
        return self.recent_mistakes[: self.inline_limit]

    @property
    def overflow_count(self) -> int:
        total = max(self.total_mistakes, len(self.recent_mistakes))
        return max(0, total - self.inline_limit)

    @property
    def overflow_marker(self) -> str:
        return f"+{self.overflow_count}" if self.overflow_count else ""

    def is_empty(self) -> bool:
        return not (self.claude_md_summary or self.recent_mistakes or self.project_patterns)

    def render(self) -> str:
        """Render the context as a markdown section for an agent prompt."""
        sections: list[str] = []

        if self.claude_md_summary:
            sections.append(f"## Project Memory\n{self.claude_md_summary}")

        if self.recent_mistakes:
            lines = ["## Learned from Previous Loops"]
            for mistake in self.inline_mistakes:
                line = f"- [{mistake.mistake_type.value}] {sanitize_context_text(mistake.description)}"
                if mistake.resolution:
                    line += f" -> {sanitize_context_text(mistake.resolution)}"
                lines.append(line)
            if self.overflow_count:
                lines.append(f"{self.overflow_marker} more learned patterns")
            sections.append("\n".join(lines))

        if self.project_patterns:
            lines = ["## Known Patterns"]
            lines.extend(f"- {sanitize_context_text(p)}" for p in self.project_patterns)
            sections.append("\n".join(lines))

        return "\n\n".join(sections)


class PromptCriterion(CamelModel):
    """Individual scored criterion (clarity, specificity, context, scope)."""

    name: str
    score: int = Field(ge=0, le=25)
    max_score: int = Field(default=25, ge=1, le=25)
    feedback: str = ""


class PromptAnalysis(CamelModel):
    """Quality analysis result for a prompt."""

    quality_score: int = Field(ge=0, le=100, description="Overall quality 0-100")
    criteria: list[PromptCriterion] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    enhanced_prompt: str | None = None


class AttemptResult(CamelModel):
    """Outcome of one coding agent attempt."""

    success: bool
    outcome: str = ""
    error: str | None = None
    error_type: MistakeType | None = None


class ControlResult(CamelModel):
    """Typed result of pause/resume/kill."""

    ok: bool
    loop_id: str
    status: LoopStatus | None = None
    error_kind: ErrorKind | None = None
    message: str = ""

    @classmethod
    def accepted(cls, loop: Loop, message: str = "") -> ControlResult:
        return cls(ok=True, loop_id=loop.id, status=loop.status, message=message)

    @classmethod
    def rejected(
        cls,
        loop_id: str,
        kind: ErrorKind,
        message: str,
        status: LoopStatus | None = None,
    ) -> ControlResult:
        return cls(ok=False, loop_id=loop_id, status=status, error_kind=kind, message=message)


class Dismissal(CamelModel):
    """A dismissed "smart next step" recommendation."""

    id: str
    dismissed_at: datetime
    permanent: bool = False


@dataclass
class TraceEvent:
    """Event for the loop trace log."""

    timestamp: datetime
    event_type: str
    status: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "status": self.status,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TraceEvent:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=data["event_type"],
            status=data["status"],
            data=data.get("data", {}),
        )
