"""Tests for the loop status state machine and lifecycle manager."""

import asyncio

import pytest

from conftest import DictMemory, ScriptedExecutor
from ralph_loop.core.context import ContextBuilder
from ralph_loop.core.errors import ErrorKind, InvalidTransitionError
from ralph_loop.core.lifecycle import LoopLifecycleManager
from ralph_loop.core.models import AttemptResult, Loop, LoopContext, LoopStatus, MistakeType
from ralph_loop.core.states import LOOP_TRANSITIONS, can_transition, ensure_transition


class TestTransitionTable:
    """Tests for LOOP_TRANSITIONS."""

    def test_covers_all_statuses(self):
        assert set(LOOP_TRANSITIONS) == set(LoopStatus)

    def test_terminal_states_have_no_edges(self):
        assert LOOP_TRANSITIONS[LoopStatus.COMPLETED] == frozenset()
        assert LOOP_TRANSITIONS[LoopStatus.FAILED] == frozenset()

    @pytest.mark.parametrize(
        "current,target",
        [
            (LoopStatus.RUNNING, LoopStatus.PAUSED),
            (LoopStatus.PAUSED, LoopStatus.RUNNING),
            (LoopStatus.RUNNING, LoopStatus.COMPLETED),
            (LoopStatus.RUNNING, LoopStatus.FAILED),
            (LoopStatus.PAUSED, LoopStatus.FAILED),
        ],
    )
    def test_allowed_edges(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (LoopStatus.PAUSED, LoopStatus.COMPLETED),
            (LoopStatus.COMPLETED, LoopStatus.RUNNING),
            (LoopStatus.FAILED, LoopStatus.RUNNING),
            (LoopStatus.COMPLETED, LoopStatus.FAILED),
            (LoopStatus.RUNNING, LoopStatus.RUNNING),
        ],
    )
    def test_illegal_edges_raise(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError, match="Illegal loop status transition"):
            ensure_transition("loop-1", current, target)

    def test_status_properties(self):
        assert LoopStatus.FAILED.is_terminal
        assert not LoopStatus.PAUSED.is_terminal
        assert LoopStatus.PAUSED.is_active


@pytest.fixture
def make_manager(store):
    def _make(executor=None, status=LoopStatus.RUNNING, **kwargs) -> LoopLifecycleManager:
        loop = store.save_loop(Loop(id="loop-1", project_id="proj", prompt="Do it", status=status))
        return LoopLifecycleManager(
            loop,
            store=store,
            context_builder=ContextBuilder(store, DictMemory()),
            executor=executor or ScriptedExecutor(),
            **kwargs,
        )

    return _make


class TestLifecycleManager:
    """Tests for LoopLifecycleManager."""

    @pytest.mark.asyncio
    async def test_run_iterative_success(self, make_manager, store):
        manager = make_manager()
        loop = await manager.run()

        assert loop.status == LoopStatus.COMPLETED
        assert loop.started_at is not None
        assert store.get_loop("loop-1").status == LoopStatus.COMPLETED

    def test_pause_rejected_when_not_running(self, make_manager):
        manager = make_manager(status=LoopStatus.PAUSED)
        result = manager.pause()

        assert result.ok is False
        assert result.error_kind == ErrorKind.INVALID_TRANSITION
        assert result.status == LoopStatus.PAUSED

    def test_kill_terminal_loop_not_killable(self, make_manager, store):
        manager = make_manager(status=LoopStatus.COMPLETED)
        result = manager.kill()

        assert result.error_kind == ErrorKind.NOT_KILLABLE
        assert store.count_mistakes("proj") == 0

    def test_kill_records_user_cancelled(self, make_manager, store):
        manager = make_manager()
        result = manager.kill()

        assert result.ok
        assert manager.killed
        mistake = store.list_mistakes("proj")[0]
        assert mistake.mistake_type == MistakeType.USER_CANCELLED
        assert mistake.context == "Killed while running"

    def test_current_story_never_decreases(self, make_manager):
        manager = make_manager()
        manager.advance_story(1)
        manager.advance_story(1)
        with pytest.raises(InvalidTransitionError):
            manager.advance_story(0)
        assert manager.loop.current_story == 1

    @pytest.mark.asyncio
    async def test_attempt_converts_exceptions(self, make_manager):
        manager = make_manager(executor=ScriptedExecutor([PermissionError("denied: /etc")]))

        result = await manager.attempt("Do it", LoopContext())

        assert result.success is False
        assert result.error_type == MistakeType.PERMISSION_ERROR
        assert "PermissionError" in result.error

    @pytest.mark.asyncio
    async def test_failure_without_type_hint_is_classified(self, make_manager, store):
        executor = ScriptedExecutor([AttemptResult(success=False, error="ENOENT: no such file")])
        manager = make_manager(executor=executor)

        await manager.run()

        assert manager.loop.status == LoopStatus.FAILED
        assert store.list_mistakes("proj")[0].mistake_type == MistakeType.FILE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_crashing_body_fails_loop(self, make_manager, store):
        manager = make_manager()

        async def body():
            raise MemoryError("out of memory")

        loop = await manager.run(body)

        assert loop.status == LoopStatus.FAILED
        assert store.list_mistakes("proj")[0].mistake_type == MistakeType.RESOURCE_ERROR

    @pytest.mark.asyncio
    async def test_suspend_pauses_and_sets_last_error(self, make_manager, store):
        manager = make_manager()

        manager.suspend_for_infrastructure("commit failed")

        assert manager.loop.status == LoopStatus.PAUSED
        assert manager.loop.last_error == "commit failed"
        assert [e.event_type for e in store.read_trace("loop-1")][:1] == ["checkpoint_failed"]

    @pytest.mark.asyncio
    async def test_checkpoint_blocks_while_paused(self, make_manager):
        manager = make_manager()
        manager.pause()

        waiter = asyncio.ensure_future(manager.checkpoint())
        await asyncio.sleep(0)
        assert not waiter.done()

        manager.resume()
        await asyncio.wait_for(waiter, timeout=1)
        assert manager.loop.paused_at is None

    def test_status_change_callback(self, make_manager):
        seen = []
        manager = make_manager(on_status_change=lambda loop: seen.append(loop.status))

        manager.pause()
        manager.resume()
        manager.complete("done")

        assert seen == [LoopStatus.PAUSED, LoopStatus.RUNNING, LoopStatus.COMPLETED]
