"""Configuration management for Sandbox MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SandboxSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    project_dir: Path = Field(default_factory=Path.cwd, validation_alias="SANDBOX_PROJECT_DIR")
    project_name: str | None = Field(default=None, validation_alias="SANDBOX_PROJECT_NAME")
    tmp_root: Path = Field(default=Path("/tmp"), validation_alias="SANDBOX_TMP_ROOT")
    namespace: str = Field(default="sandbox-mcp", validation_alias="SANDBOX_NAMESPACE")
    vm_workspace: str = Field(default="/workspace", validation_alias="SANDBOX_VM_WORKSPACE")
    vm_backend: Literal["docker", "local"] = Field(
        default="docker", validation_alias="SANDBOX_VM_BACKEND"
    )
    docker_image: str = Field(default="ubuntu:24.04", validation_alias="SANDBOX_DOCKER_IMAGE")
    command_timeout_ms: int = Field(default=120_000, validation_alias="SANDBOX_COMMAND_TIMEOUT_MS")
    max_metadata_length: int = Field(default=30_000, validation_alias="SANDBOX_MAX_METADATA_LENGTH")
    git_timeout: float = Field(default=30.0, validation_alias="SANDBOX_GIT_TIMEOUT")
    auto_branch_on_teardown: bool = Field(default=True, validation_alias="SANDBOX_AUTO_BRANCH")
    branch_prefix: str = Field(default="sandbox", validation_alias="SANDBOX_BRANCH_PREFIX")
    path_rules_file: Path | None = Field(default=None, validation_alias="SANDBOX_PATH_RULES")
    chroma_persist_path: Path | None = Field(default=None, validation_alias="CHROMA_PERSIST_PATH")
    log_level: str = Field(default="INFO", validation_alias="SANDBOX_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SANDBOX_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("command_timeout_ms", "max_metadata_length")
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Timeouts and length limits must be >= 1")
        return value

    @field_validator("git_timeout")
    @classmethod
    def _validate_git_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SANDBOX_GIT_TIMEOUT must be positive")
        return value

    @field_validator("vm_workspace")
    @classmethod
    def _validate_vm_workspace(cls, value: str) -> str:
        if not PurePosixPath(value).is_absolute():
            raise ValueError("SANDBOX_VM_WORKSPACE must be an absolute path")
        return value.rstrip("/") or "/"

    @field_validator("path_rules_file", "chroma_persist_path", mode="before")
    @classmethod
    def _empty_path_is_unset(cls, value):
        if value == "":
            return None
        return value

    @property
    def resolved_project_name(self) -> str:
        return self.project_name or self.project_dir.name

    @property
    def base_dir(self) -> Path:
        """Directory holding one worktree per session for this project."""

        return self.tmp_root / self.namespace / self.resolved_project_name


@lru_cache(maxsize=1)
def get_settings() -> SandboxSettings:
    """Return cached settings instance."""

    settings = SandboxSettings()
    settings.project_dir = settings.project_dir.expanduser().resolve()
    settings.tmp_root = settings.tmp_root.expanduser()
    if settings.chroma_persist_path is not None:
        settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if settings.path_rules_file is not None:
        settings.path_rules_file = settings.path_rules_file.expanduser().resolve()
    return settings


__all__ = ["SandboxSettings", "get_settings"]
