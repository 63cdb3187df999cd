"""Terminal views for loops, mistakes and live run events using Rich."""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.table import Table
from rich.text import Text

from ralph_loop.core.models import Loop, LoopContext, LoopStatus, Mistake, PromptAnalysis

STATUS_STYLES = {
    LoopStatus.RUNNING: "bold yellow",
    LoopStatus.PAUSED: "bold blue",
    LoopStatus.COMPLETED: "bold green",
    LoopStatus.FAILED: "bold red",
}

# Events printed by the run feed even when not verbose
KEY_EVENTS = {
    "status_changed",
    "story_started",
    "story_completed",
    "story_failed",
    "attempt_failed",
    "checkpoint_failed",
    "mistake_recorded",
}


def format_relative_time(moment: datetime, now: datetime | None = None) -> str:
    """'just now', '5m ago', '3h ago', '2d ago'."""
    now = now or datetime.now()
    seconds = int((now - moment).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def status_text(status: LoopStatus) -> Text:
    return Text(status.value, style=STATUS_STYLES.get(status, ""))


def _truncate(value: str, width: int) -> str:
    value = " ".join(value.split())
    return value[: width - 3] + "..." if len(value) > width else value


def _progress(loop: Loop) -> str:
    if loop.total_stories:
        done = sum(1 for s in loop.stories if s.completed)
        return f"{done}/{loop.total_stories}"
    return "-"


def score_style(score: int) -> str:
    if score >= 80:
        return "green"
    if score >= 60:
        return "yellow"
    return "red"


def build_loops_table(loops: list[Loop], now: datetime | None = None) -> Table:
    """Loop monitor table, newest first."""
    table = Table(title="RALPH Loops", title_style="bold cyan", header_style="bold")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Mode", width=9)
    table.add_column("Status", width=10)
    table.add_column("Prompt", width=40)
    table.add_column("Score", justify="center", width=5)
    table.add_column("Iter", justify="center", width=4)
    table.add_column("Stories", justify="center", width=7)
    table.add_column("Created", width=9)

    for loop in loops:
        table.add_row(
            loop.id[:8],
            loop.mode.value,
            status_text(loop.status),
            _truncate(loop.prompt, 40),
            f"[{score_style(loop.quality_score)}]{loop.quality_score}[/{score_style(loop.quality_score)}]"
            if loop.quality_score
            else "-",
            str(loop.iterations),
            _progress(loop),
            format_relative_time(loop.created_at, now),
        )

    return table


def build_mistakes_table(mistakes: list[Mistake], now: datetime | None = None) -> Table:
    table = Table(title="Learned Mistakes", title_style="bold cyan", header_style="bold")
    table.add_column("ID", style="dim", width=8)
    table.add_column("Type", width=16)
    table.add_column("Description", width=44)
    table.add_column("Resolution", width=30)
    table.add_column("When", width=9)

    for mistake in mistakes:
        table.add_row(
            mistake.id[:8],
            mistake.mistake_type.value,
            _truncate(mistake.description, 44),
            _truncate(mistake.resolution, 30) if mistake.resolution else "[dim]unresolved[/dim]",
            format_relative_time(mistake.created_at, now),
        )

    return table


def build_analysis_table(analysis: PromptAnalysis) -> Table:
    style = score_style(analysis.quality_score)
    table = Table(
        title=f"Prompt quality: [{style}]{analysis.quality_score}/100[/{style}]",
        header_style="bold",
    )
    table.add_column("Criterion", width=12)
    table.add_column("Score", justify="center", width=7)
    table.add_column("Feedback")

    for criterion in analysis.criteria:
        table.add_row(
            criterion.name,
            f"{criterion.score}/{criterion.max_score}",
            criterion.feedback,
        )

    return table


class RunFeed:
    """Console output for a single in-process loop run."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def status_update(self, loop: Loop) -> None:
        story = ""
        if loop.total_stories and loop.current_story is not None:
            story = f" | Story {loop.current_story + 1}/{loop.total_stories}"
        self.console.print(
            Text.assemble(
                "[", status_text(loop.status), "] ",
                f"Iteration {loop.iterations}{story}",
            )
        )

    def event(self, event_type: str, data: dict) -> None:
        if event_type not in KEY_EVENTS and not self.verbose:
            return
        details = ", ".join(f"{k}={v}" for k, v in data.items())
        self.console.print(f"  -> {event_type}: {details}", style="dim")

    def show_context(self, context: LoopContext) -> None:
        if context.is_empty():
            self.console.print("[dim]No learned context yet[/dim]")
            return
        self.console.print(context.render())

    def show_result(self, loop: Loop) -> None:
        self.console.print()
        if loop.status == LoopStatus.COMPLETED:
            self.console.print(f"[bold green]Loop completed:[/bold green] {loop.outcome or ''}")
        elif loop.status == LoopStatus.FAILED:
            self.console.print(f"[bold red]Loop failed:[/bold red] {loop.outcome or 'Unknown error'}")
        else:
            self.console.print(f"Loop is {loop.status.value}")
        if loop.branch:
            self.console.print(f"Branch: {loop.branch}")
        if loop.last_error:
            self.console.print(f"[yellow]Last error:[/yellow] {loop.last_error}")
