"""Git plumbing: subprocess runner and per-session worktrees."""

from .runner import (
    FakeGitRunner,
    GitCommandError,
    GitExecutionResult,
    GitNotFoundError,
    GitRunner,
    GitRunnerError,
)
from .worktree import WorktreeError, WorktreeManager, validate_session_id

__all__ = [
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
    "WorktreeError",
    "WorktreeManager",
    "validate_session_id",
]
