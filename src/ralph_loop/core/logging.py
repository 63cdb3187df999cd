"""Single logging path for RALPH loops. Replaces all ad-hoc print() calls.

Prefixes in use: REGISTRY, LOOP, STORY, CHECKPOINT, CLAUDE, CONTEXT, ERROR.
"""

import sys
from datetime import datetime

from ralph_loop.safety.secrets import redact_secrets


def format_line(prefix: str, message: str, now: datetime | None = None) -> str:
    """Timestamped, redacted log line. Agent errors can echo credentials."""
    timestamp = (now or datetime.now()).strftime("%H:%M:%S")
    return f"[{timestamp}] [{prefix}] {redact_secrets(message)[0]}"


def log(prefix: str, message: str) -> None:
    """Log with timestamp. Always to stderr (won't interfere with stdout capture)."""
    print(format_line(prefix, message), file=sys.stderr, flush=True)
