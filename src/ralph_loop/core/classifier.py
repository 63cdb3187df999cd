"""Failure classification for captured mistakes.

Maps an attempt error (exception or captured text) onto a MistakeType.
Anything unrecognized is an implementation mistake.
"""

from __future__ import annotations

import asyncio
import re

from ralph_loop.core.models import MistakeType

# Checked in order; the first matching type wins.
ERROR_PATTERNS: list[tuple[MistakeType, list[str]]] = [
    (
        MistakeType.USER_CANCELLED,
        [r"cancelled by user", r"canceled by user", r"killed by user", r"KeyboardInterrupt"],
    ),
    (
        MistakeType.TIMEOUT,
        [r"timed out", r"timeout", r"deadline exceeded", r"ETIMEDOUT"],
    ),
    (
        MistakeType.PERMISSION_ERROR,
        [r"PermissionError", r"permission denied", r"EACCES", r"EPERM", r"not permitted"],
    ),
    (
        MistakeType.FILE_NOT_FOUND,
        [r"FileNotFoundError", r"No such file or directory", r"ENOENT", r"file not found", r"cannot find (the )?file"],
    ),
    (
        MistakeType.SYNTAX_ERROR,
        [r"SyntaxError", r"syntax error", r"unexpected token", r"parse error", r"IndentationError"],
    ),
    (
        MistakeType.TYPE_ERROR,
        [r"TypeError", r"type error", r"error TS\d+", r"mypy", r"incompatible types?", r"mismatched types"],
    ),
    (
        MistakeType.NETWORK_ERROR,
        [r"ConnectionError", r"connection refused", r"ECONNREFUSED", r"ECONNRESET", r"network (is )?unreachable", r"name resolution", r"getaddrinfo"],
    ),
    (
        MistakeType.RESOURCE_ERROR,
        [r"MemoryError", r"out of memory", r"ENOSPC", r"no space left", r"rate limit", r"quota exceeded", r"too many open files"],
    ),
]

_COMPILED = [
    (mistake_type, [re.compile(p, re.IGNORECASE) for p in patterns])
    for mistake_type, patterns in ERROR_PATTERNS
]

# Exception types with a direct classification (checked before message patterns)
EXCEPTION_TYPES: list[tuple[type[BaseException], MistakeType]] = [
    (asyncio.CancelledError, MistakeType.USER_CANCELLED),
    (KeyboardInterrupt, MistakeType.USER_CANCELLED),
    (TimeoutError, MistakeType.TIMEOUT),
    (asyncio.TimeoutError, MistakeType.TIMEOUT),
    (PermissionError, MistakeType.PERMISSION_ERROR),
    (FileNotFoundError, MistakeType.FILE_NOT_FOUND),
    (SyntaxError, MistakeType.SYNTAX_ERROR),
    (TypeError, MistakeType.TYPE_ERROR),
    (ConnectionError, MistakeType.NETWORK_ERROR),
    (MemoryError, MistakeType.RESOURCE_ERROR),
]


def classify_error(text: str | None) -> MistakeType:
    """Classify captured error text."""
    if not text:
        return MistakeType.IMPLEMENTATION

    for mistake_type, patterns in _COMPILED:
        if any(p.search(text) for p in patterns):
            return mistake_type

    return MistakeType.IMPLEMENTATION


def classify_exception(exc: BaseException) -> MistakeType:
    """Classify an exception by type, then by its message."""
    for exc_type, mistake_type in EXCEPTION_TYPES:
        if isinstance(exc, exc_type):
            return mistake_type
    return classify_error(f"{type(exc).__name__}: {exc}")
