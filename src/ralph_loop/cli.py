"""CLI for RALPH loops."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from ralph_loop.config import Settings, get_settings
from ralph_loop.core.dashboard import (
    RunFeed,
    build_analysis_table,
    build_loops_table,
    build_mistakes_table,
)
from ralph_loop.core.errors import ErrorKind, RalphError
from ralph_loop.core.logging import log
from ralph_loop.core.models import LoopStatus, MistakeType
from ralph_loop.core.registry import LoopRegistry
from ralph_loop.integrations.prompt_analyzer import HeuristicPromptAnalyzer, OpenAIPromptAnalyzer

app = typer.Typer(
    name="ralph-loop",
    help="RALPH loops: run Claude on a prompt or PRD with learned context from past mistakes",
    no_args_is_help=True,
)
console = Console()

ERROR_TITLES = {
    ErrorKind.VALIDATION: "Invalid request",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.INVALID_TRANSITION: "Not allowed in the loop's current state",
    ErrorKind.NOT_KILLABLE: "Loop cannot be killed",
    ErrorKind.INFRASTRUCTURE: "Infrastructure error",
}

EXIT_CODES = {
    ErrorKind.VALIDATION: 2,
    ErrorKind.NOT_FOUND: 3,
}

ProjectOption = Annotated[
    Optional[Path],
    typer.Option("--project", "-p", help="Project directory (defaults to the current directory)"),
]


def _fail(kind: ErrorKind, message: str) -> typer.Exit:
    """Print a styled error for `kind`; return the Exit to raise."""
    console.print(f"[bold red]{ERROR_TITLES[kind]}:[/bold red] {message}")
    return typer.Exit(EXIT_CODES.get(kind, 1))


def _project_id(project: Path | None) -> str:
    return str((project or Path.cwd()).resolve())


def _settings_for(project_id: str) -> Settings:
    """Settings with a relative store_dir anchored at the project directory."""
    settings = get_settings()
    if not settings.store_dir.is_absolute():
        settings = settings.model_copy(update={"store_dir": Path(project_id) / settings.store_dir})
    return settings


def _open_registry(project_id: str, *, recover: bool = False, **kwargs) -> LoopRegistry:
    # Only `run` recovers orphans: another process may own an active loop
    return LoopRegistry.open(
        _settings_for(project_id),
        repo_root=Path(project_id),
        recover=recover,
        **kwargs,
    )


@app.command()
def analyze(
    prompt: Annotated[str, typer.Argument(help="Prompt to score")],
    ai: Annotated[bool, typer.Option("--ai", help="Score with the OpenAI analyzer")] = False,
) -> None:
    """Score a prompt (clarity, specificity, context, scope)."""
    settings = get_settings()
    if ai and not settings.openai_api_key:
        raise _fail(ErrorKind.VALIDATION, "OPENAI_API_KEY is not set")
    analyzer = OpenAIPromptAnalyzer() if ai else HeuristicPromptAnalyzer()

    try:
        analysis = asyncio.run(analyzer.analyze(prompt))
    except Exception as e:
        raise _fail(ErrorKind.INFRASTRUCTURE, f"Prompt analysis failed: {e}")

    console.print(build_analysis_table(analysis))
    if analysis.suggestions:
        console.print("\n[bold]Suggestions[/bold]")
        for suggestion in analysis.suggestions:
            console.print(f"  - {suggestion}")
    if analysis.enhanced_prompt:
        console.print("\n[bold]Enhanced prompt[/bold]")
        console.print(analysis.enhanced_prompt)


@app.command()
def run(
    prompt: Annotated[Optional[str], typer.Option("--prompt", help="Task prompt (iterative mode)")] = None,
    prd: Annotated[Optional[Path], typer.Option("--prd", help="PRD JSON file (PRD mode)")] = None,
    project: ProjectOption = None,
    ai: Annotated[bool, typer.Option("--ai", help="Score the prompt with the OpenAI analyzer")] = False,
    retry_checkpoint_after: Annotated[
        int, typer.Option("--retry-checkpoint-after", help="Seconds before resuming after a failed checkpoint")
    ] = 30,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show every loop event")] = False,
) -> None:
    """Run one loop in-process with a live event feed. Ctrl-C kills the loop."""
    if (prompt is None) == (prd is None):
        raise _fail(ErrorKind.VALIDATION, "Pass exactly one of --prompt or --prd")

    plan_json = None
    if prd is not None:
        try:
            plan_json = prd.read_text(encoding="utf-8")
        except OSError as e:
            raise _fail(ErrorKind.NOT_FOUND, f"Cannot read PRD file {prd}: {e}")

    project_id = _project_id(project)
    feed = RunFeed(console, verbose=verbose)

    async def run_async() -> LoopStatus:
        aio_loop = asyncio.get_running_loop()
        kill_task: asyncio.Task | None = None
        loop_id: str | None = None

        def on_event(event_type: str, data: dict) -> None:
            feed.event(event_type, data)
            if event_type == "checkpoint_failed" and loop_id:
                console.print(
                    f"[yellow]Checkpoint failed; resuming in {retry_checkpoint_after}s "
                    "(Ctrl-C to kill)[/yellow]"
                )
                aio_loop.call_later(
                    retry_checkpoint_after,
                    lambda: asyncio.ensure_future(registry.resume(loop_id)),
                )

        registry = _open_registry(
            project_id,
            recover=True,
            use_ai_analyzer=ai,
            on_status_change=feed.status_update,
            on_event=on_event,
        )

        if prompt is not None:
            analysis = await registry.analyze_prompt(prompt)
            console.print(build_analysis_table(analysis))
            loop = await registry.start_loop(project_id, prompt, analysis=analysis)
        else:
            loop = await registry.start_loop_prd(project_id, plan_json)
        loop_id = loop.id

        console.print(f"\n[bold cyan]Started {loop.mode.value} loop:[/bold cyan] {loop.id}")
        feed.show_context(registry.build_context(project_id))
        console.print()

        def handle_sigint() -> None:
            """Asyncio-safe signal handler: kills the loop instead of raising."""
            nonlocal kill_task
            if kill_task is None:
                log("LOOP", f"Interrupted: killing {loop.id}")
                kill_task = asyncio.ensure_future(registry.kill(loop.id))

        aio_loop.add_signal_handler(signal.SIGINT, handle_sigint)
        try:
            result = await registry.wait(loop.id)
            if kill_task is not None:
                await kill_task
        finally:
            aio_loop.remove_signal_handler(signal.SIGINT)

        feed.show_result(result)
        return result.status

    try:
        status = asyncio.run(run_async())
    except RalphError as e:
        raise _fail(e.kind, e.message)

    if status != LoopStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def loops(project: ProjectOption = None) -> None:
    """List loops for the project, newest first."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    project_loops = registry.list_loops(project_id)
    if not project_loops:
        console.print("[dim]No loops found[/dim]")
        return
    console.print(build_loops_table(project_loops))


@app.command()
def mistakes(
    project: ProjectOption = None,
    loop_id: Annotated[Optional[str], typer.Option("--loop", help="Only mistakes from this loop")] = None,
    limit: Annotated[int, typer.Option("--limit", help="Max mistakes to show")] = 20,
) -> None:
    """List captured mistakes, newest first."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    items = registry.list_mistakes(project_id, loop_id=loop_id, limit=limit)
    if not items:
        console.print("[dim]No mistakes recorded[/dim]")
        return
    console.print(build_mistakes_table(items))


@app.command()
def context(project: ProjectOption = None) -> None:
    """Show the learned context the next loop would receive."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    RunFeed(console).show_context(registry.build_context(project_id))


@app.command()
def trace(
    loop_id: Annotated[str, typer.Argument(help="Loop ID")],
    project: ProjectOption = None,
) -> None:
    """Show the event trace of a loop."""
    registry = _open_registry(_project_id(project))
    try:
        events = registry.read_trace(loop_id)
    except RalphError as e:
        raise _fail(e.kind, e.message)

    if not events:
        console.print(f"[yellow]No trace found for loop: {loop_id}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[bold]Trace for loop:[/bold] {loop_id}")
    console.print()
    for event in events:
        timestamp = event.timestamp.strftime("%H:%M:%S")
        console.print(f"[dim]{timestamp}[/dim] [{event.status}] {event.event_type}")
        for key, value in event.data.items():
            console.print(f"        {key}: {value}")


@app.command("record-mistake")
def record_mistake(
    description: Annotated[str, typer.Argument(help="What went wrong")],
    mistake_type: Annotated[
        Optional[MistakeType], typer.Option("--type", "-t", help="Mistake type (classified if omitted)")
    ] = None,
    loop_id: Annotated[Optional[str], typer.Option("--loop", help="Loop the mistake belongs to")] = None,
    context_text: Annotated[Optional[str], typer.Option("--context", help="Where it happened")] = None,
    pattern: Annotated[Optional[str], typer.Option("--pattern", help="Learned pattern")] = None,
    project: ProjectOption = None,
) -> None:
    """Record a mistake by hand."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    try:
        mistake = registry.record_mistake(
            project_id,
            description,
            mistake_type=mistake_type,
            loop_id=loop_id,
            context=context_text,
            learned_pattern=pattern,
        )
    except RalphError as e:
        raise _fail(e.kind, e.message)
    console.print(f"[green]Recorded[/green] {mistake.id} ({mistake.mistake_type.value})")


@app.command()
def resolve(
    mistake_id: Annotated[str, typer.Argument(help="Mistake ID")],
    resolution: Annotated[str, typer.Argument(help="How it was fixed")],
    pattern: Annotated[Optional[str], typer.Option("--pattern", help="Learned pattern to carry forward")] = None,
    project: ProjectOption = None,
) -> None:
    """Record the resolution of a mistake (once)."""
    registry = _open_registry(_project_id(project))
    try:
        mistake = registry.resolve_mistake(mistake_id, resolution, pattern)
    except RalphError as e:
        raise _fail(e.kind, e.message)
    console.print(f"[green]Resolved[/green] {mistake.id}")


@app.command()
def dismiss(
    recommendation_id: Annotated[str, typer.Argument(help="Recommendation ID")],
    permanent: Annotated[bool, typer.Option("--permanent", help="Never show it again")] = False,
    project: ProjectOption = None,
) -> None:
    """Dismiss a smart next step recommendation."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    registry.dismissals.dismiss(project_id, recommendation_id, permanent=permanent)
    suffix = "permanently" if permanent else f"for {registry.settings.dismissal_ttl_hours}h"
    console.print(f"Dismissed {recommendation_id} {suffix}")


@app.command()
def dismissed(project: ProjectOption = None) -> None:
    """List active dismissals."""
    project_id = _project_id(project)
    registry = _open_registry(project_id)
    active = registry.dismissals.active(project_id)
    if not active:
        console.print("[dim]No active dismissals[/dim]")
        return
    for dismissal in active:
        kind = "permanent" if dismissal.permanent else dismissal.dismissed_at.strftime("%Y-%m-%d %H:%M")
        console.print(f"  {dismissal.id} [dim]({kind})[/dim]")


if __name__ == "__main__":
    app()
