"""Tests for Rich terminal views."""

from datetime import datetime, timedelta

import pytest
from rich.console import Console

from ralph_loop.core.dashboard import (
    RunFeed,
    build_analysis_table,
    build_loops_table,
    build_mistakes_table,
    format_relative_time,
    score_style,
)
from ralph_loop.core.models import (
    Loop,
    LoopContext,
    LoopMode,
    LoopStatus,
    Mistake,
    StoryRun,
    StoryStatus,
)
from ralph_loop.integrations.prompt_analyzer import analyze_heuristically

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.parametrize(
    "delta,expected",
    [
        (timedelta(seconds=10), "just now"),
        (timedelta(minutes=5), "5m ago"),
        (timedelta(hours=3, minutes=20), "3h ago"),
        (timedelta(days=2, hours=1), "2d ago"),
    ],
)
def test_format_relative_time(delta, expected):
    assert format_relative_time(NOW - delta, NOW) == expected


def test_score_style():
    assert score_style(85) == "green"
    assert score_style(60) == "yellow"
    assert score_style(12) == "red"


def render(renderable) -> str:
    console = Console(width=160, record=True)
    console.print(renderable)
    return console.export_text()


class TestTables:
    """Tests for the table builders."""

    def test_loops_table(self):
        loops = [
            Loop(id="a" * 32, project_id="/p", prompt="Add search", quality_score=82, created_at=NOW),
            Loop(
                id="b" * 32,
                project_id="/p",
                mode=LoopMode.PRD,
                status=LoopStatus.PAUSED,
                prompt="Search feature",
                total_stories=2,
                stories=[
                    StoryRun(story_id="s1", status=StoryStatus.COMPLETED),
                    StoryRun(story_id="s2"),
                ],
                created_at=NOW,
            ),
        ]

        table = build_loops_table(loops, NOW)
        output = render(table)

        assert table.row_count == 2
        assert "aaaaaaaa" in output
        assert "1/2" in output
        assert "paused" in output

    def test_mistakes_table_marks_unresolved(self):
        mistakes = [
            Mistake(id="m1", project_id="/p", description="Missed await", created_at=NOW),
            Mistake(
                id="m2",
                project_id="/p",
                description="Wrong path",
                resolution="Use repo root",
                created_at=NOW,
            ),
        ]

        output = render(build_mistakes_table(mistakes, NOW))

        assert "unresolved" in output
        assert "Use repo root" in output

    def test_analysis_table(self):
        table = build_analysis_table(analyze_heuristically("Fix the login bug"))

        assert table.row_count == 4
        assert "/100" in str(table.title)


class TestRunFeed:
    """Tests for RunFeed output."""

    def test_quiet_feed_hides_minor_events(self):
        console = Console(width=120, record=True)
        feed = RunFeed(console=console)

        feed.event("attempt_started", {"iteration": 1})
        feed.event("story_completed", {"story_id": "s1"})

        output = console.export_text()
        assert "attempt_started" not in output
        assert "story_completed: story_id=s1" in output

    def test_verbose_feed_shows_all(self):
        console = Console(width=120, record=True)
        RunFeed(console=console, verbose=True).event("attempt_started", {"iteration": 1})

        assert "attempt_started" in console.export_text()

    def test_empty_context(self):
        console = Console(width=120, record=True)
        RunFeed(console=console).show_context(LoopContext())

        assert "No learned context yet" in console.export_text()

    def test_result_shows_last_error(self):
        console = Console(width=120, record=True)
        loop = Loop(
            id="x",
            project_id="/p",
            prompt="t",
            status=LoopStatus.PAUSED,
            last_error="index.lock exists",
        )
        RunFeed(console=console).show_result(loop)

        output = console.export_text()
        assert "Loop is paused" in output
        assert "index.lock exists" in output
