"""Configuration management using pydantic-settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # CLI commands
    claude_cmd: str = Field(default="claude", description="Claude CLI command")
    attempt_timeout_secs: int = Field(
        default=600, description="Timeout for a single agent attempt in seconds"
    )

    # Storage
    store_dir: Path = Field(default=Path(".ralph"), description="Root of the loop store")

    # Learned context
    context_mistake_limit: int = Field(
        default=10, ge=1, description="Recent mistakes retained in a loop context"
    )
    context_inline_mistakes: int = Field(
        default=3, ge=1, description="Mistakes surfaced inline before the overflow marker"
    )
    context_pattern_limit: int = Field(
        default=10, ge=0, description="Learned patterns retained in a loop context"
    )
    memory_summary_max_chars: int = Field(
        default=2000, ge=0, description="Max length of the CLAUDE.md summary"
    )

    # PRD defaults
    max_iterations_per_story_default: int = Field(
        default=3, ge=1, le=5, description="Attempts per story when the PRD omits it"
    )
    prd_order_by_priority: bool = Field(
        default=False, description="Run PRD stories by ascending priority"
    )
    story_failure_policy: Literal["fail", "skip"] = Field(
        default="fail", description="What happens when a story exhausts its attempts"
    )

    # Smart next step dismissals
    dismissal_ttl_hours: int = Field(
        default=24, ge=1, description="Hours before a non-permanent dismissal expires"
    )

    # OpenAI prompt analysis
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    analyzer_model: str = Field(default="gpt-4.1", description="Model for prompt analysis")
    http_timeout_secs: int = Field(default=60, description="HTTP timeout in seconds")


def get_settings() -> Settings:
    """Get application settings, loading from .env if present."""
    return Settings()
