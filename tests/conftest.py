"""Shared fakes and fixtures for loop orchestration tests."""

import asyncio
from pathlib import Path

import pytest

from ralph_loop.config import Settings
from ralph_loop.core.errors import CheckpointError
from ralph_loop.core.models import (
    AttemptResult,
    LoopContext,
    LoopStatus,
    PromptAnalysis,
    PromptCriterion,
)
from ralph_loop.core.registry import LoopRegistry
from ralph_loop.core.store import LoopStore


class ScriptedExecutor:
    """Returns scripted results in order; exceptions in the script are raised.

    With a gate, every attempt blocks until the gate is set.
    """

    def __init__(self, results=None, default=None, gate: asyncio.Event | None = None):
        self.results = list(results or [])
        self.default = default or AttemptResult(success=True, outcome="All done")
        self.gate = gate
        self.calls: list[tuple[str, LoopContext]] = []
        self.started = asyncio.Event()

    async def execute_attempt(self, prompt: str, context: LoopContext) -> AttemptResult:
        self.calls.append((prompt, context))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingCommitter:
    """Records branch preparation and checkpoint commits.

    The first `fail_commits` commits raise CheckpointError. `prepare_gate`
    blocks branch preparation and `commit_gate` blocks commit number
    `gated_commit` (1-based) until set; `busy` is set while either waits.
    """

    def __init__(
        self,
        fail_commits: int = 0,
        fail_prepare: int = 0,
        *,
        prepare_gate: asyncio.Event | None = None,
        commit_gate: asyncio.Event | None = None,
        gated_commit: int = 1,
    ):
        self.prepared: list[str] = []
        self.commits: list[tuple[str, str]] = []
        self.fail_commits = fail_commits
        self.fail_prepare = fail_prepare
        self.prepare_gate = prepare_gate
        self.commit_gate = commit_gate
        self.gated_commit = gated_commit
        self.busy = asyncio.Event()

    async def _hold(self, gate: asyncio.Event) -> None:
        self.busy.set()
        await gate.wait()
        self.busy.clear()

    async def prepare_branch(self, branch: str) -> None:
        if self.prepare_gate is not None:
            await self._hold(self.prepare_gate)
        if self.fail_prepare:
            self.fail_prepare -= 1
            raise CheckpointError("branch is locked")
        self.prepared.append(branch)

    async def commit_checkpoint(self, branch: str, message: str) -> str:
        if self.commit_gate is not None and len(self.commits) + 1 == self.gated_commit:
            await self._hold(self.commit_gate)
        if self.fail_commits:
            self.fail_commits -= 1
            raise CheckpointError("index.lock exists")
        self.commits.append((branch, message))
        return f"c0ffee{len(self.commits):04d}"


class FixedAnalyzer:
    """Always scores the same."""

    def __init__(self, score: int = 72, enhanced_prompt: str | None = None):
        self.score = score
        self.enhanced_prompt = enhanced_prompt
        self.analyzed: list[str] = []

    async def analyze(self, text: str) -> PromptAnalysis:
        self.analyzed.append(text)
        return PromptAnalysis(
            quality_score=self.score,
            criteria=[PromptCriterion(name="clarity", score=min(25, self.score // 4))],
            enhanced_prompt=self.enhanced_prompt,
        )


class DictMemory:
    """Project memory backed by a dict; exception values are raised."""

    def __init__(self, summaries=None):
        self.summaries = dict(summaries or {})

    def load(self, project_id: str) -> str:
        value = self.summaries.get(project_id, "")
        if isinstance(value, Exception):
            raise value
        return value


async def settle(rounds: int = 20) -> None:
    """Let scheduled loop tasks run up to their next blocking point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for_status(registry: LoopRegistry, loop_id: str, status: LoopStatus) -> None:
    for _ in range(200):
        if registry.get_loop(loop_id).status == status:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"loop never reached {status.value}")


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def settings(store_dir: Path) -> Settings:
    return Settings(_env_file=None, store_dir=store_dir)


@pytest.fixture
def store(store_dir: Path) -> LoopStore:
    return LoopStore(store_dir)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def committer() -> RecordingCommitter:
    return RecordingCommitter()


@pytest.fixture
def make_registry(store, settings, executor, committer):
    """Factory: registry over the test store with fake collaborators."""

    def _make(**overrides) -> LoopRegistry:
        options = {
            "analyzer": FixedAnalyzer(),
            "executor": executor,
            "committer": committer,
            "memory": DictMemory(),
            "settings": settings,
        }
        options.update(overrides)
        return LoopRegistry(store, **options)

    return _make


@pytest.fixture
def registry(make_registry) -> LoopRegistry:
    return make_registry()
