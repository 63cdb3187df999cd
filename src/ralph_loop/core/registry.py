"""Loop registry: the entry point for submitting and controlling loops."""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from ralph_loop.config import Settings, get_settings
from ralph_loop.core.classifier import classify_error
from ralph_loop.core.context import ContextBuilder
from ralph_loop.core.dismissals import DismissalStore
from ralph_loop.core.errors import (
    ActiveLoopError,
    ErrorKind,
    InfrastructureError,
    LoopNotFoundError,
    LoopValidationError,
)
from ralph_loop.core.lifecycle import LoopLifecycleManager
from ralph_loop.core.logging import log
from ralph_loop.core.models import (
    ControlResult,
    Loop,
    LoopContext,
    LoopMode,
    LoopStatus,
    Mistake,
    MistakeType,
    PromptAnalysis,
    TraceEvent,
)
from ralph_loop.core.plan import PlanDocument, parse_plan_document
from ralph_loop.core.sequencer import StorySequencer, build_story_runs
from ralph_loop.core.store import LoopStore
from ralph_loop.integrations.claude_runner import AttemptExecutor, ClaudeRunner
from ralph_loop.integrations.git_tools import CheckpointCommitter, GitTools
from ralph_loop.integrations.project_memory import ClaudeMdMemoryLoader, ProjectMemoryLoader
from ralph_loop.integrations.prompt_analyzer import (
    HeuristicPromptAnalyzer,
    OpenAIPromptAnalyzer,
    PromptAnalyzer,
)


class LoopRegistry:
    """
    Creates loops, owns their lifecycle managers and answers queries.

    At most one running or paused loop exists per project. Submissions for a
    project are serialized by a per-project lock; loops in different projects
    run concurrently, each as its own asyncio task.
    """

    def __init__(
        self,
        store: LoopStore,
        *,
        analyzer: PromptAnalyzer,
        executor: AttemptExecutor,
        committer: CheckpointCommitter | None = None,
        memory: ProjectMemoryLoader | None = None,
        settings: Settings | None = None,
        on_status_change: Callable[[Loop], None] | None = None,
        on_event: Callable[[str, dict], None] | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.analyzer = analyzer
        self.executor = executor
        self.committer = committer
        self.context_builder = ContextBuilder(
            store,
            memory,
            mistake_limit=self.settings.context_mistake_limit,
            inline_limit=self.settings.context_inline_mistakes,
            pattern_limit=self.settings.context_pattern_limit,
        )
        self.dismissals = DismissalStore(
            store.root / "dismissals.json",
            ttl=timedelta(hours=self.settings.dismissal_ttl_hours),
        )
        self.on_status_change = on_status_change
        self.on_event = on_event

        self._managers: dict[str, LoopLifecycleManager] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._project_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def open(
        cls,
        settings: Settings | None = None,
        *,
        repo_root: Path | None = None,
        use_ai_analyzer: bool = False,
        recover: bool = True,
        **overrides: Any,
    ) -> LoopRegistry:
        """
        Open the registry over the configured store with the default collaborators.

        With `recover`, loops left active by a previous process are failed.
        """
        settings = settings or get_settings()
        store = LoopStore(settings.store_dir)

        if "analyzer" not in overrides:
            overrides["analyzer"] = (
                OpenAIPromptAnalyzer()
                if use_ai_analyzer and settings.openai_api_key
                else HeuristicPromptAnalyzer()
            )
        if "executor" not in overrides:
            overrides["executor"] = ClaudeRunner(working_dir=repo_root)
        if "committer" not in overrides:
            overrides["committer"] = GitTools(repo_root)
        if "memory" not in overrides:
            overrides["memory"] = ClaudeMdMemoryLoader(max_chars=settings.memory_summary_max_chars)

        registry = cls(store, settings=settings, **overrides)
        if recover:
            registry.recover_orphans()
        return registry

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._project_locks:
            self._project_locks[project_id] = asyncio.Lock()
        return self._project_locks[project_id]

    def _ensure_no_active_loop(self, project_id: str) -> None:
        active = self.store.active_loops(project_id)
        if active:
            raise ActiveLoopError(
                f"Project {project_id} already has a {active[0].status.value} loop: {active[0].id}"
            )

    def _new_manager(self, loop: Loop, context: LoopContext | None = None) -> LoopLifecycleManager:
        return LoopLifecycleManager(
            loop,
            store=self.store,
            context_builder=self.context_builder,
            executor=self.executor,
            context=context,
            on_status_change=self.on_status_change,
            on_event=self.on_event,
        )

    # --- submission ----------------------------------------------------------

    async def analyze_prompt(self, text: str) -> PromptAnalysis:
        """Score a prompt with the configured analyzer."""
        if not text or not text.strip():
            raise LoopValidationError("Prompt must not be empty")
        try:
            return await self.analyzer.analyze(text)
        except Exception as e:
            raise InfrastructureError(f"Prompt analysis failed: {e}") from e

    async def submit(
        self,
        project_id: str,
        mode: LoopMode | str,
        payload: str | dict | PlanDocument,
        *,
        analysis: PromptAnalysis | None = None,
    ) -> Loop:
        """
        Validate a submission, create its Loop and schedule execution.

        Raises LoopValidationError (or ActiveLoopError) before any record is
        created. Returns the Loop as persisted, with status running.
        """
        if not project_id or not str(project_id).strip():
            raise LoopValidationError("Project id must not be empty")
        try:
            mode = LoopMode(mode)
        except ValueError as e:
            raise LoopValidationError(f"Unknown loop mode: {mode}") from e

        plan: PlanDocument | None = None
        if mode == LoopMode.ITERATIVE:
            if not isinstance(payload, str) or not payload.strip():
                raise LoopValidationError("Prompt must not be empty")
            prompt = payload.strip()
        else:
            plan = parse_plan_document(
                payload,
                default_max_iterations=self.settings.max_iterations_per_story_default,
            )
            prompt = plan.description or plan.name
            if self.committer is None:
                raise LoopValidationError("PRD loops need a checkpoint committer")

        self._ensure_no_active_loop(project_id)
        if mode == LoopMode.ITERATIVE and analysis is None:
            analysis = await self.analyze_prompt(prompt)

        async with self._lock_for(project_id):
            # Re-check: another submission may have won while analyzing
            self._ensure_no_active_loop(project_id)

            context = self.context_builder.build_context(project_id)
            loop = Loop(
                id=str(uuid.uuid4()),
                project_id=project_id,
                mode=mode,
                status=LoopStatus.RUNNING,
                prompt=prompt,
                quality_score=analysis.quality_score if analysis else 0,
                enhanced_prompt=analysis.enhanced_prompt if analysis else None,
                iterations=0,
            )

            if plan is not None:
                stories = plan.ordered_stories(by_priority=self.settings.prd_order_by_priority)
                loop.current_story = 0
                loop.total_stories = len(stories)
                loop.branch = plan.branch
                loop.stories = build_story_runs(stories)

            self.store.save_loop(loop)
            log(
                "REGISTRY",
                f"Created {mode.value} loop {loop.id} for {project_id} "
                f"(score {loop.quality_score}, {len(context.recent_mistakes)} learned mistakes)",
            )

            manager = self._new_manager(loop, context)
            body = None
            if plan is not None:
                body = StorySequencer(
                    manager,
                    plan,
                    self.committer,
                    order_by_priority=self.settings.prd_order_by_priority,
                    failure_policy=self.settings.story_failure_policy,
                ).run
            self._schedule(manager, body)

        return loop

    async def start_loop(
        self,
        project_id: str,
        prompt: str,
        *,
        analysis: PromptAnalysis | None = None,
    ) -> Loop:
        return await self.submit(project_id, LoopMode.ITERATIVE, prompt, analysis=analysis)

    async def start_loop_prd(self, project_id: str, plan: str | dict | PlanDocument) -> Loop:
        return await self.submit(project_id, LoopMode.PRD, plan)

    def _schedule(self, manager: LoopLifecycleManager, body) -> None:
        loop_id = manager.loop.id
        task = asyncio.create_task(manager.run(body), name=f"ralph-loop-{loop_id}")
        manager.attach_task(task)
        self._managers[loop_id] = manager
        self._tasks[loop_id] = task
        self.store.claim_loop(loop_id)

        def _finished(t: asyncio.Task) -> None:
            self._managers.pop(loop_id, None)
            self._tasks.pop(loop_id, None)
            self.store.release_loop(loop_id)
            if not t.cancelled() and t.exception() is not None:
                log("ERROR", f"Loop {loop_id} task ended with error: {t.exception()}")

        task.add_done_callback(_finished)

    # --- control -------------------------------------------------------------

    def _control_without_manager(self, loop_id: str, kind: ErrorKind, verb: str) -> ControlResult:
        loop = self.store.get_loop(loop_id)
        if loop is None:
            return ControlResult.rejected(loop_id, ErrorKind.NOT_FOUND, f"Loop not found: {loop_id}")
        return ControlResult.rejected(
            loop_id,
            kind,
            f"Cannot {verb} a {loop.status.value} loop",
            status=loop.status,
        )

    async def pause(self, loop_id: str) -> ControlResult:
        manager = self._managers.get(loop_id)
        if manager is None:
            return self._control_without_manager(loop_id, ErrorKind.INVALID_TRANSITION, "pause")
        return manager.pause()

    async def resume(self, loop_id: str) -> ControlResult:
        manager = self._managers.get(loop_id)
        if manager is None:
            return self._control_without_manager(loop_id, ErrorKind.INVALID_TRANSITION, "resume")
        return manager.resume()

    async def kill(self, loop_id: str) -> ControlResult:
        """Kill a running or paused loop and wait for its task to unwind."""
        manager = self._managers.get(loop_id)
        if manager is None:
            return self._control_without_manager(loop_id, ErrorKind.NOT_KILLABLE, "kill")
        task = self._tasks.get(loop_id)
        result = manager.kill()
        if result.ok and task is not None and task is not asyncio.current_task():
            await asyncio.wait([task])
        return result

    # pauseLoop / resumeLoop / killLoop
    pause_loop = pause
    resume_loop = resume
    kill_loop = kill

    async def wait(self, loop_id: str) -> Loop:
        """Wait until the loop's task finishes; return the stored loop."""
        task = self._tasks.get(loop_id)
        if task is not None:
            await asyncio.wait([task])
        loop = self.store.get_loop(loop_id)
        if loop is None:
            raise LoopNotFoundError(f"Loop not found: {loop_id}")
        return loop

    async def shutdown(self) -> None:
        """Kill every loop this registry is executing."""
        for loop_id in list(self._managers):
            await self.kill(loop_id)

    def recover_orphans(self) -> list[Loop]:
        """Fail loops left running or paused by a process that has exited.

        Loops whose owning process is still alive (another `run`) are left alone.
        """
        recovered = []
        for loop in self.store.active_loops():
            if loop.id in self._managers or self.store.is_owned(loop.id):
                continue
            manager = self._new_manager(loop)
            manager.fail(
                MistakeType.RESOURCE_ERROR,
                f"Loop interrupted: process exited while {loop.status.value}",
                context=loop.prompt,
                outcome="Interrupted",
            )
            self.store.release_loop(loop.id)
            log("REGISTRY", f"Recovered orphaned loop {loop.id} as failed")
            recovered.append(loop)
        return recovered

    # --- queries -------------------------------------------------------------

    def get_loop(self, loop_id: str) -> Loop:
        loop = self.store.get_loop(loop_id)
        if loop is None:
            raise LoopNotFoundError(f"Loop not found: {loop_id}")
        return loop

    def list_loops(self, project_id: str) -> list[Loop]:
        return self.store.list_loops(project_id)

    def list_mistakes(
        self,
        project_id: str,
        *,
        loop_id: str | None = None,
        limit: int | None = None,
    ) -> list[Mistake]:
        return self.store.list_mistakes(project_id, loop_id=loop_id, limit=limit)

    def build_context(self, project_id: str) -> LoopContext:
        return self.context_builder.build_context(project_id)

    def read_trace(self, loop_id: str) -> list[TraceEvent]:
        self.get_loop(loop_id)
        return self.store.read_trace(loop_id)

    # --- mistakes ------------------------------------------------------------

    def record_mistake(
        self,
        project_id: str,
        description: str,
        *,
        mistake_type: MistakeType | str | None = None,
        loop_id: str | None = None,
        context: str | None = None,
        learned_pattern: str | None = None,
    ) -> Mistake:
        """Record a mistake outside loop execution (loop_id may be null)."""
        if not description or not description.strip():
            raise LoopValidationError("Mistake description must not be empty")
        if loop_id is not None:
            loop = self.get_loop(loop_id)
            if loop.project_id != project_id:
                raise LoopValidationError(f"Loop {loop_id} belongs to another project")

        try:
            resolved_type = (
                MistakeType(mistake_type) if mistake_type else classify_error(description)
            )
        except ValueError as e:
            raise LoopValidationError(f"Unknown mistake type: {mistake_type}") from e

        mistake = Mistake(
            id=str(uuid.uuid4()),
            project_id=project_id,
            loop_id=loop_id,
            mistake_type=resolved_type,
            description=description.strip(),
            context=context,
            learned_pattern=learned_pattern,
        )
        return self.store.add_mistake(mistake)

    def resolve_mistake(
        self,
        mistake_id: str,
        resolution: str,
        learned_pattern: str | None = None,
    ) -> Mistake:
        return self.store.resolve_mistake(mistake_id, resolution, learned_pattern)
