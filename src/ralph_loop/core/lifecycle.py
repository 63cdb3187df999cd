"""Lifecycle manager: drives one loop through its status state machine."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

from ralph_loop.core.classifier import classify_error, classify_exception
from ralph_loop.core.context import ContextBuilder
from ralph_loop.core.errors import ErrorKind, InvalidTransitionError
from ralph_loop.core.logging import log
from ralph_loop.core.models import (
    AttemptResult,
    ControlResult,
    Loop,
    LoopContext,
    LoopStatus,
    Mistake,
    MistakeType,
    StoryStatus,
)
from ralph_loop.core.states import ensure_transition
from ralph_loop.core.store import LoopStore
from ralph_loop.integrations.claude_runner import AttemptExecutor


class LoopLifecycleManager:
    """Owns one Loop record while it executes.

    Every status change goes through `_transition`, which checks the edge
    against LOOP_TRANSITIONS, persists the loop and emits a trace event.
    Execution only blocks at `checkpoint()`; pause never interrupts an attempt
    that is already in flight.
    """

    def __init__(
        self,
        loop: Loop,
        *,
        store: LoopStore,
        context_builder: ContextBuilder,
        executor: AttemptExecutor,
        context: LoopContext | None = None,
        on_status_change: Callable[[Loop], None] | None = None,
        on_event: Callable[[str, dict], None] | None = None,
    ):
        self.loop = loop
        self.store = store
        self.context_builder = context_builder
        self.executor = executor
        self.initial_context = context
        self.on_status_change = on_status_change
        self.on_event = on_event

        self._running = asyncio.Event()
        if loop.status == LoopStatus.RUNNING:
            self._running.set()
        self._killed = False
        self._task: asyncio.Task | None = None

    @property
    def killed(self) -> bool:
        return self._killed

    def attach_task(self, task: asyncio.Task) -> None:
        self._task = task

    # --- persistence and events ---------------------------------------------

    def save(self) -> None:
        self.store.save_loop(self.loop)

    def emit(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Append a trace event and forward it to the event callback."""
        self.store.log_event(self.loop, event_type, data)
        if self.on_event:
            self.on_event(event_type, data or {})

    def _transition(self, target: LoopStatus, **changes: Any) -> None:
        previous = self.loop.status
        ensure_transition(self.loop.id, previous, target)

        now = datetime.now()
        self.loop.status = target
        if target == LoopStatus.PAUSED:
            self.loop.paused_at = now
        elif target == LoopStatus.RUNNING:
            self.loop.paused_at = None
        elif target.is_terminal:
            self.loop.completed_at = now
        for field, value in changes.items():
            setattr(self.loop, field, value)

        self.save()
        log("LOOP", f"{self.loop.id}: {previous.value} -> {target.value}")
        self.emit("status_changed", {"from": previous.value, "to": target.value})
        if self.on_status_change:
            self.on_status_change(self.loop)

    # --- execution -----------------------------------------------------------

    async def run(self, body: Callable[[], Awaitable[None]] | None = None) -> Loop:
        """
        Execute the loop until it reaches a terminal status.

        `body` drives PRD execution; without it the loop makes a single
        iterative attempt. A kill cancels this coroutine, which then returns
        the already-failed loop.
        """
        if self.loop.started_at is None:
            self.loop.started_at = datetime.now()
            self.save()
        self.emit("loop_started", {"mode": self.loop.mode.value})

        try:
            await (body or self._run_iterative)()
        except asyncio.CancelledError:
            if self._killed:
                return self.loop
            raise
        except Exception as e:
            log("ERROR", f"Loop {self.loop.id} crashed: {e}")
            if not self.loop.status.is_terminal:
                self.fail(classify_exception(e), f"{type(e).__name__}: {e}")

        return self.loop

    async def _run_iterative(self) -> None:
        await self.checkpoint()
        context = self.initial_context or self.context_builder.build_context(
            self.loop.project_id
        )

        self.loop.iterations += 1
        self.save()
        self.emit("attempt_started", {"iteration": self.loop.iterations})

        result = await self.attempt(self.loop.prompt, context)
        await self.checkpoint()

        if result.success:
            self.emit("attempt_succeeded", {"iteration": self.loop.iterations})
            self.complete(result.outcome or "Completed")
        else:
            error = result.error or "Attempt failed"
            self.emit("attempt_failed", {"iteration": self.loop.iterations, "error": error})
            self.fail(
                result.error_type or classify_error(error),
                error,
                context=self.loop.prompt,
            )

    async def checkpoint(self) -> None:
        """Safe point: blocks while the loop is paused."""
        if self._running.is_set():
            return
        log("LOOP", f"{self.loop.id}: waiting at checkpoint")
        self.emit("checkpoint_wait")
        await self._running.wait()

    async def attempt(self, prompt: str, context: LoopContext) -> AttemptResult:
        """Run one executor attempt; exceptions become failed attempts."""
        try:
            return await self.executor.execute_attempt(prompt, context)
        except Exception as e:
            return AttemptResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                error_type=classify_exception(e),
            )

    def advance_story(self, index: int) -> None:
        """Point currentStory at `index`; it only moves forward."""
        current = self.loop.current_story
        if current is not None and index < current:
            raise InvalidTransitionError(
                f"currentStory cannot move backwards for {self.loop.id}: {current} -> {index}"
            )
        self.loop.current_story = index
        self.save()

    # --- outcomes ------------------------------------------------------------

    def record_mistake(
        self,
        mistake_type: MistakeType,
        description: str,
        *,
        context: str | None = None,
    ) -> Mistake:
        mistake = Mistake(
            id=str(uuid.uuid4()),
            project_id=self.loop.project_id,
            loop_id=self.loop.id,
            mistake_type=mistake_type,
            description=description,
            context=context,
        )
        self.store.add_mistake(mistake)
        self.emit(
            "mistake_recorded",
            {"mistake_id": mistake.id, "type": mistake_type.value},
        )
        return mistake

    def complete(self, outcome: str) -> None:
        self._transition(LoopStatus.COMPLETED, outcome=outcome)

    def fail(
        self,
        mistake_type: MistakeType,
        description: str,
        *,
        context: str | None = None,
        outcome: str | None = None,
    ) -> Mistake:
        """Record the mistake, then move to failed."""
        mistake = self.record_mistake(mistake_type, description, context=context)
        # A story interrupted mid-flight cannot stay running on a failed loop
        for story_run in self.loop.stories:
            if story_run.status == StoryStatus.RUNNING:
                story_run.status = StoryStatus.FAILED
        self._transition(LoopStatus.FAILED, outcome=outcome or description)
        return mistake

    def suspend_for_infrastructure(self, error: str) -> None:
        """Pause after a non-fatal infrastructure failure such as a checkpoint commit."""
        log("CHECKPOINT", f"{self.loop.id}: {error}")
        self.loop.last_error = error
        self.emit("checkpoint_failed", {"error": error})
        if self.loop.status == LoopStatus.RUNNING:
            self._running.clear()
            self._transition(LoopStatus.PAUSED)
        else:
            self.save()

    # --- control -------------------------------------------------------------

    def pause(self) -> ControlResult:
        if self.loop.status != LoopStatus.RUNNING:
            return ControlResult.rejected(
                self.loop.id,
                ErrorKind.INVALID_TRANSITION,
                f"Cannot pause a {self.loop.status.value} loop",
                status=self.loop.status,
            )
        self._running.clear()
        self._transition(LoopStatus.PAUSED)
        return ControlResult.accepted(self.loop, "Loop paused")

    def resume(self) -> ControlResult:
        if self.loop.status != LoopStatus.PAUSED:
            return ControlResult.rejected(
                self.loop.id,
                ErrorKind.INVALID_TRANSITION,
                f"Cannot resume a {self.loop.status.value} loop",
                status=self.loop.status,
            )
        self._transition(LoopStatus.RUNNING)
        self._running.set()
        return ControlResult.accepted(self.loop, "Loop resumed")

    def kill(self) -> ControlResult:
        """Fail the loop with a user_cancelled mistake and cancel its task."""
        if self.loop.status.is_terminal:
            return ControlResult.rejected(
                self.loop.id,
                ErrorKind.NOT_KILLABLE,
                f"Loop is already {self.loop.status.value}",
                status=self.loop.status,
            )

        self._killed = True
        from_status = self.loop.status
        self.fail(
            MistakeType.USER_CANCELLED,
            "Loop killed by user",
            context=f"Killed while {from_status.value}",
            outcome="Killed by user",
        )
        # Unblock a checkpoint wait so cancellation lands promptly
        self._running.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return ControlResult.accepted(self.loop, "Loop killed")
