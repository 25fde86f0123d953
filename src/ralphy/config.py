"""Configuration management for Ralphy."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

EngineName = Literal["claude", "opencode"]
TaskSourceName = Literal["markdown", "markdown-folder", "yaml", "github"]


class RalphySettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    engine: EngineName = Field(default="claude", validation_alias="RALPHY_ENGINE")
    engine_path: str | None = Field(default=None, validation_alias="RALPHY_ENGINE_PATH")

    task_source: TaskSourceName = Field(default="markdown", validation_alias="RALPHY_TASK_SOURCE")
    prd_file: Path = Field(default=Path("PRD.md"), validation_alias="RALPHY_PRD_FILE")
    github_repo: str | None = Field(default=None, validation_alias="RALPHY_GITHUB_REPO")
    github_label: str | None = Field(default=None, validation_alias="RALPHY_GITHUB_LABEL")

    max_iterations: int = Field(default=0, validation_alias="RALPHY_MAX_ITERATIONS")
    max_retries: int = Field(default=3, validation_alias="RALPHY_MAX_RETRIES")
    retry_delay: float = Field(default=5.0, validation_alias="RALPHY_RETRY_DELAY")

    parallel: bool = Field(default=False, validation_alias="RALPHY_PARALLEL")
    max_parallel: int = Field(default=3, validation_alias="RALPHY_MAX_PARALLEL")
    poll_interval: float = Field(default=0.3, validation_alias="RALPHY_POLL_INTERVAL")
    worktree_base: Path | None = Field(default=None, validation_alias="RALPHY_WORKTREE_BASE")

    branch_per_task: bool = Field(default=False, validation_alias="RALPHY_BRANCH_PER_TASK")
    base_branch: str | None = Field(default=None, validation_alias="RALPHY_BASE_BRANCH")
    create_pr: bool = Field(default=False, validation_alias="RALPHY_CREATE_PR")
    draft_pr: bool = Field(default=False, validation_alias="RALPHY_DRAFT_PR")

    skip_tests: bool = Field(default=False, validation_alias="RALPHY_SKIP_TESTS")
    skip_lint: bool = Field(default=False, validation_alias="RALPHY_SKIP_LINT")
    dry_run: bool = Field(default=False, validation_alias="RALPHY_DRY_RUN")

    history_enabled: bool = Field(default=False, validation_alias="RALPHY_HISTORY_ENABLED")
    history_path: Path = Field(
        default=Path("./.ralphy/history"), validation_alias="RALPHY_HISTORY_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="RALPHY_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RALPHY_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("engine", "task_source", mode="before")
    @classmethod
    def _normalize_choice(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("base_branch", "engine_path", "github_repo", "github_label", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("max_retries", "max_parallel")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("RALPHY_MAX_RETRIES and RALPHY_MAX_PARALLEL must be >= 1")
        return value

    @field_validator("max_iterations")
    @classmethod
    def _validate_max_iterations(cls, value: int) -> int:
        if value < 0:
            raise ValueError("RALPHY_MAX_ITERATIONS must be >= 0 (0 means unlimited)")
        return value

    @field_validator("retry_delay", "poll_interval")
    @classmethod
    def _validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("RALPHY_RETRY_DELAY and RALPHY_POLL_INTERVAL must be >= 0")
        return value

    @property
    def decoder_profile(self) -> str:
        """Name of the output decoder matching the configured engine."""

        return "opencode-json" if self.engine == "opencode" else "stream-json"


@lru_cache(maxsize=1)
def get_settings() -> RalphySettings:
    """Return cached settings instance."""

    settings = RalphySettings()
    settings.history_path = settings.history_path.expanduser().resolve()
    return settings


def configure_logging(level: str) -> None:
    """Configure root logging for Ralphy entry points."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


__all__ = ["EngineName", "RalphySettings", "TaskSourceName", "configure_logging", "get_settings"]
