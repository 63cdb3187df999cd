"""Loop status state machine."""

from __future__ import annotations

from ralph_loop.core.errors import InvalidTransitionError
from ralph_loop.core.models import LoopStatus

# Allowed status edges. Terminal states have no outgoing edges.
LOOP_TRANSITIONS: dict[LoopStatus, frozenset[LoopStatus]] = {
    LoopStatus.RUNNING: frozenset(
        {LoopStatus.PAUSED, LoopStatus.COMPLETED, LoopStatus.FAILED}
    ),
    LoopStatus.PAUSED: frozenset({LoopStatus.RUNNING, LoopStatus.FAILED}),
    LoopStatus.COMPLETED: frozenset(),
    LoopStatus.FAILED: frozenset(),
}


def can_transition(current: LoopStatus, target: LoopStatus) -> bool:
    """Check if a status change is an edge of the state machine."""
    return target in LOOP_TRANSITIONS[current]


def ensure_transition(loop_id: str, current: LoopStatus, target: LoopStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal loop status transition for {loop_id}: "
            f"{current.value} -> {target.value}"
        )
