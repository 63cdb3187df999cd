"""Claude CLI runner: executes one coding agent attempt."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Protocol

from ralph_loop.config import get_settings
from ralph_loop.core.classifier import classify_error, classify_exception
from ralph_loop.core.logging import log
from ralph_loop.core.models import AttemptResult, LoopContext, MistakeType

# Characters of agent output kept as the attempt outcome
OUTCOME_TAIL_CHARS = 4000


class AttemptExecutor(Protocol):
    """Runs one coding agent attempt for a prompt with learned context."""

    async def execute_attempt(self, prompt: str, context: LoopContext) -> AttemptResult: ...


def build_attempt_prompt(prompt: str, context: LoopContext, working_dir: Path | None) -> str:
    """Combine the task prompt with the learned context section."""
    context_section = context.render()
    learned = (
        f"""
---

# Learned Context
{context_section}
"""
        if context_section
        else ""
    )

    return f"""# Task
{prompt}
{learned}
---

## Instructions
- You are working in: {working_dir or "the current directory"}
- Avoid repeating the mistakes listed above
- Keep changes focused on the task
- Run tests after implementation
- Do NOT expand scope beyond the task
"""


class ClaudeRunner:
    """Runner for Claude CLI subprocess."""

    def __init__(
        self,
        cmd: str | None = None,
        working_dir: Path | None = None,
        timeout: int | None = None,
    ):
        settings = get_settings()
        self.cmd = cmd or settings.claude_cmd
        self.working_dir = working_dir
        self.timeout = timeout or settings.attempt_timeout_secs

    async def _run_claude(self, prompt: str) -> tuple[str, str]:
        """Run Claude CLI with the prompt, return (stdout, stderr)."""
        log("CLAUDE", f"Invoking: {self.cmd} --print -p <prompt>")
        log("CLAUDE", f"Working dir: {self.working_dir}")
        log("CLAUDE", f"Timeout: {self.timeout}s")

        start_time = time.time()

        proc = await asyncio.create_subprocess_exec(
            self.cmd,
            "--print",
            "-p", prompt,
            cwd=self.working_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"Claude timed out after {self.timeout}s")
        except asyncio.CancelledError:
            # Loop was killed: don't leave the agent running
            proc.kill()
            await proc.wait()
            raise

        elapsed = time.time() - start_time

        if proc.returncode != 0:
            raise RuntimeError(
                f"Claude exited with code {proc.returncode}: {stderr.decode(errors='replace')}"
            )

        log("CLAUDE", f"Completed in {elapsed:.1f}s, output: {len(stdout)} chars")
        return stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def execute_attempt(self, prompt: str, context: LoopContext) -> AttemptResult:
        """Run one attempt; failures are returned, not raised."""
        full_prompt = build_attempt_prompt(prompt, context, self.working_dir)
        try:
            stdout, _ = await self._run_claude(full_prompt)
        except asyncio.CancelledError:
            raise
        except RuntimeError as e:
            return AttemptResult(success=False, error=str(e), error_type=classify_error(str(e)))
        except (TimeoutError, OSError) as e:
            error_type = classify_exception(e)
            if error_type == MistakeType.IMPLEMENTATION:
                error_type = MistakeType.RESOURCE_ERROR
            return AttemptResult(success=False, error=str(e), error_type=error_type)

        return AttemptResult(success=True, outcome=stdout[-OUTCOME_TAIL_CHARS:].strip())
