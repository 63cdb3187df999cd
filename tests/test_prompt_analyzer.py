"""Tests for prompt quality analyzers."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from ralph_loop.integrations.prompt_analyzer import (
    ENHANCE_THRESHOLD,
    HeuristicPromptAnalyzer,
    OpenAIPromptAnalyzer,
    analyze_heuristically,
)

STRONG_PROMPT = (
    "Add rate limiting to the login endpoint in `src/api/auth.py`. Currently the app "
    "uses no throttling, because we have seen credential stuffing. The endpoint must "
    "return 429 after 5 failed attempts per minute per IP, and should reset after a "
    "successful login. Only change the auth module and add tests in tests/test_auth.py."
)


class TestHeuristicAnalyzer:
    """Tests for the offline scorer."""

    def test_four_criteria(self):
        analysis = analyze_heuristically("Fix the bug")

        assert [c.name for c in analysis.criteria] == ["clarity", "specificity", "context", "scope"]
        assert all(0 <= c.score <= 25 for c in analysis.criteria)
        assert analysis.quality_score == sum(c.score for c in analysis.criteria)

    def test_vague_prompt_gets_enhanced_prompt(self):
        analysis = analyze_heuristically("make stuff better somehow")

        assert analysis.quality_score < ENHANCE_THRESHOLD
        assert analysis.enhanced_prompt is not None
        assert analysis.enhanced_prompt.startswith("## Task\nmake stuff better somehow")
        assert "## Success Criteria" in analysis.enhanced_prompt
        assert analysis.suggestions

    def test_strong_prompt_scores_higher(self):
        strong = analyze_heuristically(STRONG_PROMPT)
        weak = analyze_heuristically("make stuff better somehow")

        assert strong.quality_score > weak.quality_score
        assert strong.quality_score >= ENHANCE_THRESHOLD
        assert strong.enhanced_prompt is None

    def test_broad_scope_penalized(self):
        narrow = analyze_heuristically("Only rename the helper in utils.py")
        broad = analyze_heuristically("Rewrite the entire app and redesign everything")

        def scope_score(analysis):
            return next(c.score for c in analysis.criteria if c.name == "scope")

        assert scope_score(narrow) > scope_score(broad)

    @pytest.mark.asyncio
    async def test_async_interface(self):
        analysis = await HeuristicPromptAnalyzer().analyze(STRONG_PROMPT)
        assert analysis.quality_score > 0


def make_client(output_text: str) -> MagicMock:
    client = MagicMock()
    client.responses.create = AsyncMock(return_value=SimpleNamespace(output_text=output_text))
    return client


class TestOpenAIAnalyzer:
    """Tests for OpenAIPromptAnalyzer with a stubbed client."""

    @pytest.mark.asyncio
    async def test_parses_structured_output(self):
        payload = {
            "quality_score": 72,
            "criteria": [
                {"name": "clarity", "score": 20, "max_score": 25, "feedback": "Clear"},
                {"name": "specificity", "score": 18, "max_score": 25, "feedback": "Name files"},
                {"name": "context", "score": 16, "max_score": 25, "feedback": "Why?"},
                {"name": "scope", "score": 18, "max_score": 25, "feedback": "OK"},
            ],
            "suggestions": ["Name the files involved"],
            "enhanced_prompt": None,
        }
        client = make_client(json.dumps(payload))
        analyzer = OpenAIPromptAnalyzer(client=client)

        analysis = await analyzer.analyze("Add caching")

        assert analysis.quality_score == 72
        assert analysis.suggestions == ["Name the files involved"]
        request = client.responses.create.call_args.kwargs
        assert request["text"]["format"]["type"] == "json_schema"
        assert request["store"] is False
        assert "Add caching" in request["input"][1]["content"]

    @pytest.mark.asyncio
    async def test_quality_score_follows_criteria(self):
        payload = {
            "quality_score": 99,
            "criteria": [{"name": "clarity", "score": 10, "max_score": 25, "feedback": ""}],
            "suggestions": [],
            "enhanced_prompt": None,
        }
        analyzer = OpenAIPromptAnalyzer(client=make_client(json.dumps(payload)))

        assert (await analyzer.analyze("x")).quality_score == 10

    @pytest.mark.asyncio
    async def test_malformed_output_fails_closed(self):
        analyzer = OpenAIPromptAnalyzer(client=make_client("not json"))

        with pytest.raises(ValueError, match="Failed to parse prompt analysis"):
            await analyzer.analyze("x")

    @pytest.mark.asyncio
    async def test_out_of_range_score_rejected(self):
        payload = {"quality_score": 140, "criteria": [], "suggestions": [], "enhanced_prompt": None}
        analyzer = OpenAIPromptAnalyzer(client=make_client(json.dumps(payload)))

        with pytest.raises(ValueError):
            await analyzer.analyze("x")
