"""Prompt quality analyzers: a local heuristic and the OpenAI Responses API."""

from __future__ import annotations

import json
import re
from typing import Protocol

from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, RateLimitError
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ralph_loop.config import get_settings
from ralph_loop.core.models import PromptAnalysis, PromptCriterion

# Scores below this get an enhanced prompt suggestion
ENHANCE_THRESHOLD = 70


class PromptAnalyzer(Protocol):
    """Scores a prompt 0-100 and suggests improvements."""

    async def analyze(self, text: str) -> PromptAnalysis: ...


ACTION_VERBS = re.compile(
    r"\b(add|fix|implement|create|refactor|update|remove|rename|migrate|write|build|"
    r"extract|replace|support|handle|validate|test)\b",
    re.IGNORECASE,
)
VAGUE_WORDS = re.compile(
    r"\b(something|stuff|things?|etc|somehow|whatever|better|nice|improve it)\b",
    re.IGNORECASE,
)
FILE_REFS = re.compile(r"[\w./-]+\.(py|ts|tsx|js|rs|go|md|json|toml|ya?ml|sql)\b|`[^`]+`")
REQUIREMENT_WORDS = re.compile(r"\b(must|should|when|returns?|expect(ed|s)?|so that)\b", re.IGNORECASE)
CONTEXT_WORDS = re.compile(
    r"\b(because|currently|existing|instead of|uses?|using|we have|the app|the api|"
    r"when the user)\b",
    re.IGNORECASE,
)
BROAD_SCOPE = re.compile(r"\b(everything|entire|whole|all of|rewrite|redesign)\b", re.IGNORECASE)
NARROW_SCOPE = re.compile(r"\b(only|just|single|one)\b", re.IGNORECASE)


def _clamp(value: int) -> int:
    return max(0, min(25, value))


def _score_clarity(text: str, words: list[str]) -> PromptCriterion:
    score = 10
    if ACTION_VERBS.search(text):
        score += 8
    if 8 <= len(words) <= 300:
        score += 7
    score -= 4 * len(VAGUE_WORDS.findall(text))
    score = _clamp(score)
    feedback = (
        "Clear, action-oriented request"
        if score >= 20
        else "State the action you want (add, fix, refactor...) and avoid vague words"
    )
    return PromptCriterion(name="clarity", score=score, feedback=feedback)


def _score_specificity(text: str) -> PromptCriterion:
    score = 5
    score += min(10, 5 * len(FILE_REFS.findall(text)))
    score += min(10, 3 * len(REQUIREMENT_WORDS.findall(text)))
    score = _clamp(score)
    feedback = (
        "Names concrete files and expected behavior"
        if score >= 20
        else "Name the files, functions or commands involved and the expected behavior"
    )
    return PromptCriterion(name="specificity", score=score, feedback=feedback)


def _score_context(text: str, words: list[str]) -> PromptCriterion:
    score = 5
    score += min(12, 4 * len(CONTEXT_WORDS.findall(text)))
    if len(words) >= 30:
        score += 8
    elif len(words) >= 15:
        score += 4
    score = _clamp(score)
    feedback = (
        "Explains the current state and motivation"
        if score >= 20
        else "Describe the current behavior and why the change is needed"
    )
    return PromptCriterion(name="context", score=score, feedback=feedback)


def _score_scope(text: str) -> PromptCriterion:
    score = 18
    if NARROW_SCOPE.search(text):
        score += 5
    score -= 6 * len(BROAD_SCOPE.findall(text))
    # Several independent tasks in one prompt
    if len(re.findall(r"\band also\b|;|\n\s*[-*\d]", text)) > 5:
        score -= 6
    score = _clamp(score)
    feedback = (
        "Scope fits a single loop"
        if score >= 20
        else "Narrow the task to one change; split large work into PRD stories"
    )
    return PromptCriterion(name="scope", score=score, feedback=feedback)


def build_enhanced_prompt(text: str, criteria: list[PromptCriterion]) -> str:
    """RALPH-structured rewrite of a weak prompt."""
    weak = {c.name for c in criteria if c.score < 20}
    sections = [f"## Task\n{text.strip()}"]
    if "context" in weak:
        sections.append("## Context\n- Current behavior: <describe>\n- Why it matters: <describe>")
    if "specificity" in weak:
        sections.append("## Requirements\n- Files involved: <list>\n- Expected behavior: <describe>")
    sections.append(
        "## Success Criteria\n- All existing tests pass\n- New behavior is covered by tests"
    )
    if "scope" in weak:
        sections.append("## Constraints\n- Change only what the task needs\n- No unrelated refactors")
    return "\n\n".join(sections)


def analyze_heuristically(text: str) -> PromptAnalysis:
    words = text.split()
    criteria = [
        _score_clarity(text, words),
        _score_specificity(text),
        _score_context(text, words),
        _score_scope(text),
    ]
    quality_score = sum(c.score for c in criteria)
    suggestions = [c.feedback for c in criteria if c.score < 20]

    return PromptAnalysis(
        quality_score=quality_score,
        criteria=criteria,
        suggestions=suggestions,
        enhanced_prompt=(
            build_enhanced_prompt(text, criteria) if quality_score < ENHANCE_THRESHOLD else None
        ),
    )


class HeuristicPromptAnalyzer:
    """Offline scorer: four 0-25 criteria (clarity, specificity, context, scope)."""

    async def analyze(self, text: str) -> PromptAnalysis:
        return analyze_heuristically(text)


ANALYSIS_SYSTEM_PROMPT = """You review prompts written for an autonomous coding agent.
Score the prompt on four criteria, each 0-25: clarity, specificity, context, scope.
quality_score is the sum of the four scores.
Give short feedback per criterion and concrete suggestions.
If quality_score is below 70, write enhanced_prompt: the same task restructured with
Task, Context, Requirements, Success Criteria and Constraints sections.
Otherwise enhanced_prompt is null. Never invent requirements the prompt does not imply."""

ANALYSIS_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": False,
    "required": ["quality_score", "criteria", "suggestions", "enhanced_prompt"],
    "properties": {
        "quality_score": {"type": "integer", "minimum": 0, "maximum": 100},
        "criteria": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["name", "score", "max_score", "feedback"],
                "properties": {
                    "name": {"type": "string", "enum": ["clarity", "specificity", "context", "scope"]},
                    "score": {"type": "integer", "minimum": 0, "maximum": 25},
                    "max_score": {"type": "integer", "enum": [25]},
                    "feedback": {"type": "string"},
                },
            },
        },
        "suggestions": {"type": "array", "items": {"type": "string"}},
        "enhanced_prompt": {"type": ["string", "null"]},
    },
}


class OpenAIPromptAnalyzer:
    """Score prompts via OpenAI Responses API with structured output."""

    def __init__(self, client: AsyncOpenAI | None = None) -> None:
        settings = get_settings()
        self.client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.http_timeout_secs,
        )
        self.model = settings.analyzer_model

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=60),
        retry=retry_if_exception_type((RateLimitError, APITimeoutError, APIConnectionError)),
    )
    async def _call_api(self, text: str) -> str:
        """Single API call with retries; returns the raw JSON text."""
        response = await self.client.responses.create(
            model=self.model,
            input=[
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": f"## Prompt\n{text}"},
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": "prompt_analysis",
                    "schema": ANALYSIS_SCHEMA,
                    "strict": True,
                }
            },
            store=False,
        )
        return response.output_text

    async def analyze(self, text: str) -> PromptAnalysis:
        raw_output = await self._call_api(text)
        # Fail closed: a malformed response is an error, never a default score
        try:
            analysis = PromptAnalysis.model_validate(json.loads(raw_output))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Failed to parse prompt analysis: {e}") from e

        if analysis.criteria:
            total = sum(c.score for c in analysis.criteria)
            if total != analysis.quality_score:
                analysis = analysis.model_copy(update={"quality_score": min(100, total)})
        return analysis
