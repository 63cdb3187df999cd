"""PRD plan documents: parsing, validation and story ordering."""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ConfigDict, Field, ValidationError, model_validator

from ralph_loop.core.errors import LoopValidationError
from ralph_loop.core.models import CamelModel


class PrdStory(CamelModel):
    """A single story/task in a PRD."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    title: str = ""
    description: str = Field(min_length=1)
    acceptance_criteria: str | None = None
    priority: int = 0
    completed: bool = False
    commit_hash: str | None = None


class PlanDocument(CamelModel):
    """Full PRD document with metadata and stories. Immutable once parsed."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str | None = None
    branch: str = ""
    test_command: str | None = None
    typecheck_command: str | None = None
    max_iterations_per_story: int = Field(default=3, ge=1, le=5)
    stories: list[PrdStory] = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("branch"):
            data["branch"] = f"ralph/{slugify(str(data.get('name') or 'prd'))}"
        stories = data.get("stories")
        if isinstance(stories, list):
            filled = []
            for index, story in enumerate(stories):
                if isinstance(story, dict):
                    story = dict(story)
                    if not story.get("id"):
                        story["id"] = f"story-{index + 1}"
                    if not story.get("title"):
                        story["title"] = story["id"]
                filled.append(story)
            data["stories"] = filled
        return data

    @model_validator(mode="after")
    def _unique_story_ids(self) -> PlanDocument:
        ids = [story.id for story in self.stories]
        if len(ids) != len(set(ids)):
            raise ValueError("story ids must be unique")
        return self

    def ordered_stories(self, by_priority: bool = False) -> list[PrdStory]:
        """Stories in execution order: document order, or stable ascending priority."""
        if by_priority:
            return sorted(self.stories, key=lambda s: s.priority)
        return list(self.stories)


def slugify(value: str) -> str:
    """Make a git-safe branch component."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:50] or "prd"


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"])
        message = error["msg"]
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def parse_plan_document(
    payload: str | dict[str, Any] | PlanDocument,
    *,
    default_max_iterations: int | None = None,
) -> PlanDocument:
    """
    Validate a PRD payload (JSON text, dict, or PlanDocument).

    Raises LoopValidationError with a caller-facing message:
    "Invalid JSON", "PRD must have a name", "PRD must have at least one story",
    or "Invalid PRD: ..." for any other schema problem.
    """
    if isinstance(payload, PlanDocument):
        return payload

    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise LoopValidationError("Invalid JSON") from e
    else:
        data = payload

    if not isinstance(data, dict):
        raise LoopValidationError("Invalid PRD: expected a JSON object")

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise LoopValidationError("PRD must have a name")

    stories = data.get("stories")
    if not isinstance(stories, list) or not stories:
        raise LoopValidationError("PRD must have at least one story")

    if default_max_iterations is not None and "maxIterationsPerStory" not in data and (
        "max_iterations_per_story" not in data
    ):
        data = {**data, "maxIterationsPerStory": default_max_iterations}

    try:
        return PlanDocument.model_validate(data)
    except ValidationError as e:
        raise LoopValidationError(f"Invalid PRD: {_format_validation_error(e)}") from e
