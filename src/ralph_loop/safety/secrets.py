"""Secrets scanning and redaction for agent output before it is persisted."""

from __future__ import annotations

import re
from typing import Any, NamedTuple


class SecretMatch(NamedTuple):
    """A detected secret match."""

    pattern_name: str
    start: int
    end: int


# Patterns for common secrets
SECRET_PATTERNS = [
    # API Keys (generic)
    ("api_key_generic", r"(?i)(api[_-]?key|apikey)['\"]?\s*[:=]\s*['\"]?([a-zA-Z0-9_\-]{20,})['\"]?"),
    # AWS
    ("aws_access_key", r"AKIA[0-9A-Z]{16}"),
    ("aws_secret_key", r"(?i)aws[_-]?secret[_-]?access[_-]?key['\"]?\s*[:=]\s*['\"]?([a-zA-Z0-9/+=]{40})['\"]?"),
    # GitHub
    ("github_token", r"gh[pousr]_[A-Za-z0-9_]{36,}"),
    ("github_pat", r"github_pat_[A-Za-z0-9_]{22,}"),
    # OpenAI
    ("openai_key_proj", r"sk-proj-[A-Za-z0-9\-_]{40,}"),
    # Anthropic
    ("anthropic_key", r"sk-ant-[A-Za-z0-9\-_]{40,}"),
    # JWT
    ("jwt", r"eyJ[A-Za-z0-9_-]*\.eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]*"),
    # Private Keys
    ("private_key", r"-----BEGIN (RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"),
    # Generic secrets in env format
    ("env_secret", r"(?i)(password|secret|token|credential)['\"]?\s*[:=]\s*['\"]?([^\s'\"]{8,})['\"]?"),
]


def scan_for_secrets(text: str) -> list[SecretMatch]:
    """Scan text for potential secrets, returning matches sorted by position."""
    matches: list[SecretMatch] = []

    for pattern_name, pattern in SECRET_PATTERNS:
        for match in re.finditer(pattern, text):
            matches.append(SecretMatch(pattern_name, match.start(), match.end()))

    matches.sort(key=lambda m: (m.start, -m.end))
    return matches


def redact_secrets(text: str) -> tuple[str, list[SecretMatch]]:
    """
    Redact all detected secrets from text.

    Overlapping matches collapse into the first (outermost) one.
    Returns (redacted_text, list of matches that were applied).
    """
    applied: list[SecretMatch] = []
    for match in scan_for_secrets(text):
        if applied and match.start < applied[-1].end:
            continue
        applied.append(match)

    if not applied:
        return text, []

    parts: list[str] = []
    cursor = 0
    for match in applied:
        parts.append(text[cursor : match.start])
        parts.append(f"[REDACTED:{match.pattern_name}]")
        cursor = match.end
    parts.append(text[cursor:])

    return "".join(parts), applied


def redact_text(text: str | None) -> str | None:
    """Redact a nullable text field."""
    if not text:
        return text
    return redact_secrets(text)[0]


def redact_data(data: dict[str, Any]) -> dict[str, Any]:
    """Redact string values of a (shallow) event payload."""
    return {
        key: redact_secrets(value)[0] if isinstance(value, str) else value
        for key, value in data.items()
    }
