"""Sanitization for text that is fed back into agent prompts."""

from __future__ import annotations

import re

# Maximum length of a single context entry
MAX_CONTEXT_LENGTH = 2_000

# Maximum length of a single-line title
MAX_TITLE_LENGTH = 200

# Patterns that could be injection attempts or terminal garbage in captured output
INJECTION_PATTERNS = [
    # Shell command substitution
    (r"\$\([^)]+\)", "[FILTERED:subshell]"),
    # Environment variable expansion
    (r"\$\{[^}]+\}", "[FILTERED:env-expansion]"),
    # XML/HTML injection (could affect prompt parsing)
    (r"<script[^>]*>.*?</script>", "[FILTERED:script]"),
    (r"<iframe[^>]*>.*?</iframe>", "[FILTERED:iframe]"),
    # Instruction override attempts
    (r"ignore (all )?(previous|prior|above) instructions", "[FILTERED:override]"),
    # ANSI escape sequences
    (r"\x1b\[[0-9;]*[a-zA-Z]", ""),
    # Null bytes
    (r"\x00", ""),
]


def _apply_filters(text: str) -> str:
    for pattern, replacement in INJECTION_PATTERNS:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE | re.DOTALL)
    return text


def sanitize_context_text(text: str | None, max_length: int = MAX_CONTEXT_LENGTH) -> str:
    """
    Sanitize captured text (mistakes, resolutions, patterns) for reuse in prompts.

    - Filters injection patterns and terminal control sequences
    - Collapses whitespace to a single line
    - Truncates to max_length
    """
    if not text:
        return ""

    text = _apply_filters(text)
    text = " ".join(text.split())

    if len(text) > max_length:
        text = text[:max_length] + " [TRUNCATED]"

    return text


def sanitize_title(title: str) -> str:
    """Sanitize a story or loop title (shorter, single line)."""
    title = title.replace("\n", " ").replace("\r", " ")
    title = _apply_filters(title).strip()

    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH] + "..."

    return title
