"""Error taxonomy for loop orchestration."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Kind of failure reported to callers."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    NOT_KILLABLE = "not_killable"
    INFRASTRUCTURE = "infrastructure"


class RalphError(Exception):
    """Base class for all orchestration errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class LoopValidationError(RalphError):
    """Submission rejected before any record was created."""

    kind = ErrorKind.VALIDATION


class ActiveLoopError(LoopValidationError):
    """Project already has a running or paused loop."""


class MistakeAlreadyResolvedError(LoopValidationError):
    """Resolution was already recorded for a mistake."""


class LoopNotFoundError(RalphError):
    """No loop with the given id."""

    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(RalphError):
    """Status change not allowed by the loop state machine."""

    kind = ErrorKind.INVALID_TRANSITION


class InfrastructureError(RalphError):
    """Non-fatal failure of a side-effecting collaborator."""

    kind = ErrorKind.INFRASTRUCTURE


class CheckpointError(InfrastructureError):
    """Checkpoint commit or branch preparation failed."""


class StoreError(InfrastructureError):
    """Persistent store could not be written."""


class MistakeNotFoundError(RalphError):
    """No mistake with the given id."""

    kind = ErrorKind.NOT_FOUND
