"""Git operations for PRD checkpoint branches and commits."""

from __future__ import annotations

import asyncio
import subprocess
from pathlib import Path
from typing import Protocol

from ralph_loop.core.errors import CheckpointError
from ralph_loop.core.logging import log


class CheckpointCommitter(Protocol):
    """Prepares the plan branch and records one commit per completed story."""

    async def prepare_branch(self, branch: str) -> None: ...

    async def commit_checkpoint(self, branch: str, message: str) -> str: ...


class GitTools:
    """Git operations helper."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or self._detect_repo_root()

    @staticmethod
    def _detect_repo_root() -> Path:
        """Detect git repository root, falling back to the current directory."""
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--show-toplevel"],
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError):
            return Path.cwd()
        return Path(result.stdout.strip())

    async def _run_git_async(self, *args: str) -> str:
        """Run a git command asynchronously."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=self.repo_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CheckpointError(f"Git unavailable: {e}") from e
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise CheckpointError(f"Git error: {stderr.decode(errors='replace').strip()}")
        return stdout.decode(errors="replace").strip()

    async def get_current_branch(self) -> str:
        """Get the current branch name."""
        return await self._run_git_async("branch", "--show-current")

    async def branch_exists(self, branch: str) -> bool:
        try:
            await self._run_git_async("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except CheckpointError:
            return False
        return True

    async def has_changes(self) -> bool:
        """Check if there are uncommitted changes."""
        status = await self._run_git_async("status", "--porcelain")
        return bool(status.strip())

    async def prepare_branch(self, branch: str) -> None:
        """Check out the plan branch, creating it from HEAD if needed."""
        if await self.get_current_branch() == branch:
            return
        if await self.branch_exists(branch):
            await self._run_git_async("checkout", branch)
        else:
            await self._run_git_async("checkout", "-b", branch)
        log("CHECKPOINT", f"On branch {branch}")

    async def commit_checkpoint(self, branch: str, message: str) -> str:
        """Stage and commit all changes on the plan branch; return the commit hash."""
        current = await self.get_current_branch()
        if current != branch:
            raise CheckpointError(f"Expected branch {branch}, found {current or 'detached HEAD'}")

        await self._run_git_async("add", "-A")
        if await self.has_changes():
            await self._run_git_async("commit", "-m", message)
        else:
            # Story produced no diff: still mark the checkpoint
            await self._run_git_async("commit", "--allow-empty", "-m", message)
        return await self._run_git_async("rev-parse", "HEAD")
