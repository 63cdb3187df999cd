"""PRD story sequencing: one story at a time, fresh context each, checkpointed."""

from __future__ import annotations

from typing import Literal

from ralph_loop.core.errors import CheckpointError
from ralph_loop.core.lifecycle import LoopLifecycleManager
from ralph_loop.core.logging import log
from ralph_loop.core.models import MistakeType, StoryRun, StoryStatus
from ralph_loop.core.plan import PlanDocument, PrdStory
from ralph_loop.integrations.git_tools import CheckpointCommitter
from ralph_loop.safety.sanitizer import sanitize_title


def build_story_runs(stories: list[PrdStory]) -> list[StoryRun]:
    """Initial progress records; stories submitted as completed are skipped."""
    return [
        StoryRun(
            story_id=story.id,
            title=story.title,
            status=StoryStatus.SKIPPED if story.completed else StoryStatus.PENDING,
            commit_hash=story.commit_hash,
        )
        for story in stories
    ]


def build_story_prompt(plan: PlanDocument, story: PrdStory, index: int, total: int) -> str:
    """Prompt for a single story. Learned context is added by the executor."""
    parts = [
        f"# {plan.name}: story {index + 1}/{total}",
        f"## {sanitize_title(story.title)}",
        story.description,
    ]
    if story.acceptance_criteria:
        parts.append(f"## Acceptance Criteria\n{story.acceptance_criteria}")

    checks = []
    if plan.test_command:
        checks.append(f"- Tests must pass: `{plan.test_command}`")
    if plan.typecheck_command:
        checks.append(f"- Type check must pass: `{plan.typecheck_command}`")
    if checks:
        parts.append("## Verification\n" + "\n".join(checks))

    parts.append("Work on this story only. Do not start the next story.")
    return "\n\n".join(parts)


class StorySequencer:
    """Runs the stories of a PRD loop in order through its lifecycle manager."""

    def __init__(
        self,
        manager: LoopLifecycleManager,
        plan: PlanDocument,
        committer: CheckpointCommitter,
        *,
        order_by_priority: bool = False,
        failure_policy: Literal["fail", "skip"] = "fail",
    ):
        self.manager = manager
        self.plan = plan
        self.committer = committer
        self.stories = plan.ordered_stories(by_priority=order_by_priority)
        self.failure_policy = failure_policy

        loop = manager.loop
        if not loop.stories:
            loop.stories = build_story_runs(self.stories)
        loop.total_stories = len(self.stories)
        loop.branch = loop.branch or plan.branch

    @property
    def max_attempts(self) -> int:
        return self.plan.max_iterations_per_story

    async def run(self) -> None:
        loop = self.manager.loop
        await self._prepare_branch()

        for index, story in enumerate(self.stories):
            story_run = loop.stories[index]
            if story_run.status in (StoryStatus.COMPLETED, StoryStatus.SKIPPED):
                continue

            await self.manager.checkpoint()
            self.manager.advance_story(index)

            passed = await self._run_story(index, story, story_run)
            if not passed and self.failure_policy == "fail":
                return

        # A pause may land while the last commit is in flight
        await self.manager.checkpoint()
        self.manager.complete(self._summarize())

    async def _prepare_branch(self) -> None:
        branch = self.manager.loop.branch or self.plan.branch
        while True:
            try:
                await self.committer.prepare_branch(branch)
            except CheckpointError as e:
                self.manager.suspend_for_infrastructure(f"Branch preparation failed: {e}")
                await self.manager.checkpoint()
                continue
            self.manager.emit("branch_prepared", {"branch": branch})
            return

    async def _run_story(self, index: int, story: PrdStory, story_run: StoryRun) -> bool:
        loop = self.manager.loop
        total = len(self.stories)

        story_run.status = StoryStatus.RUNNING
        self.manager.save()
        log("STORY", f"{loop.id}: [{index + 1}/{total}] {story.title}")
        self.manager.emit("story_started", {"story_id": story.id, "index": index})

        # Fresh context per story: earlier stories' mistakes are visible
        context = self.manager.context_builder.build_context(loop.project_id)
        prompt = build_story_prompt(self.plan, story, index, total)

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            await self.manager.checkpoint()
            story_run.attempts = attempt
            loop.iterations += 1
            self.manager.save()
            self.manager.emit(
                "attempt_started",
                {"story_id": story.id, "attempt": attempt, "iteration": loop.iterations},
            )

            result = await self.manager.attempt(prompt, context)
            await self.manager.checkpoint()

            if result.success:
                commit_hash = await self._commit(story)
                story_run.commit_hash = commit_hash
                story_run.status = StoryStatus.COMPLETED
                self.manager.save()
                self.manager.emit(
                    "story_completed",
                    {"story_id": story.id, "attempts": attempt, "commit": commit_hash},
                )
                return True

            last_error = result.error or "Attempt failed"
            self.manager.emit(
                "attempt_failed",
                {"story_id": story.id, "attempt": attempt, "error": last_error},
            )

        story_run.status = StoryStatus.FAILED
        description = (
            f"Story {story.id} ({story.title}) failed after "
            f"{self.max_attempts} attempts: {last_error}"
        )
        log("STORY", f"{loop.id}: {description}")
        self.manager.emit("story_failed", {"story_id": story.id, "attempts": self.max_attempts})

        if self.failure_policy == "skip":
            self.manager.save()
            self.manager.record_mistake(
                MistakeType.IMPLEMENTATION, description, context=story.description
            )
        else:
            self.manager.fail(
                MistakeType.IMPLEMENTATION,
                description,
                context=story.description,
            )
        return False

    async def _commit(self, story: PrdStory) -> str:
        """Checkpoint commit; on failure pause and retry after resume."""
        branch = self.manager.loop.branch or self.plan.branch
        message = f"ralph: {story.id} {story.title}"
        while True:
            try:
                commit_hash = await self.committer.commit_checkpoint(branch, message)
            except CheckpointError as e:
                self.manager.suspend_for_infrastructure(
                    f"Checkpoint commit failed for {story.id}: {e}"
                )
                await self.manager.checkpoint()
                continue
            log("CHECKPOINT", f"{self.manager.loop.id}: {story.id} -> {commit_hash}")
            return commit_hash

    def _summarize(self) -> str:
        runs = self.manager.loop.stories
        completed = sum(1 for r in runs if r.status == StoryStatus.COMPLETED)
        skipped = sum(1 for r in runs if r.status == StoryStatus.SKIPPED)
        failed = [r.story_id for r in runs if r.status == StoryStatus.FAILED]

        summary = f"Completed {completed + skipped}/{len(runs)} stories"
        if skipped:
            summary += f" ({skipped} already complete)"
        if failed:
            summary += f"; failed: {', '.join(failed)}"
        return summary
