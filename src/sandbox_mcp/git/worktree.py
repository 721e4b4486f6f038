"""Git worktree management for session isolation.

Every session works in its own detached worktree under ``base_dir``. Detached
checkouts never hold a branch, so any number of sessions can check out the
same commit without git refusing the second one. Worktrees share the object
store with the project, so creating one is cheap.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from .runner import GitCommandError, GitRunner

logger = logging.getLogger(__name__)


class WorktreeError(RuntimeError):
    """Failed to create a session worktree."""


def validate_session_id(session_id: str) -> str:
    """Return ``session_id`` if it can be used as a single directory name."""

    if not session_id or session_id in {".", ".."} or "/" in session_id or "\\" in session_id:
        raise ValueError(f"Invalid session id {session_id!r}: must be a single path component")
    return session_id


class WorktreeManager:
    """Create, inspect and remove per-session worktrees of one project."""

    def __init__(self, project_dir: Path, base_dir: Path, *, runner: GitRunner) -> None:
        self._project_dir = Path(project_dir)
        self._base_dir = Path(base_dir)
        self._runner = runner

    @property
    def project_dir(self) -> Path:
        return self._project_dir

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def runner(self) -> GitRunner:
        return self._runner

    def path_for(self, session_id: str) -> Path:
        return self._base_dir / validate_session_id(session_id)

    async def create(self, session_id: str) -> Path:
        """Add a detached worktree of ``HEAD`` for ``session_id``."""

        worktree_dir = self.path_for(session_id)
        await asyncio.to_thread(worktree_dir.mkdir, parents=True, exist_ok=True)

        try:
            await self._runner.check(
                "worktree", "add", "--detach", str(worktree_dir), "HEAD", cwd=self._project_dir
            )
        except GitCommandError as exc:
            raise WorktreeError(f"Failed to create worktree for session {session_id}: {exc}") from exc

        logger.info("Created worktree", extra={"session_id": session_id, "path": str(worktree_dir)})
        return worktree_dir

    async def remove(self, worktree_dir: Path) -> None:
        """Unregister and delete a worktree. Never raises."""

        try:
            result = await self._runner.run(
                "worktree", "remove", "--force", str(worktree_dir), cwd=self._project_dir
            )
            if not result.ok:
                logger.debug(
                    "git worktree remove failed",
                    extra={"path": str(worktree_dir), "stderr": result.stderr.strip()},
                )
        except Exception as exc:
            logger.debug("git worktree remove errored", extra={"path": str(worktree_dir), "error": str(exc)})

        try:
            await asyncio.to_thread(shutil.rmtree, worktree_dir, True)
        except Exception as exc:
            logger.debug("Worktree directory cleanup errored", extra={"path": str(worktree_dir), "error": str(exc)})

    async def prune(self) -> None:
        """Drop registrations of worktrees whose directories are gone. Never raises."""

        try:
            result = await self._runner.run("worktree", "prune", cwd=self._project_dir)
        except Exception as exc:
            logger.warning("git worktree prune errored", extra={"error": str(exc)})
            return
        if not result.ok:
            logger.warning("git worktree prune failed", extra={"stderr": result.stderr.strip()})

    async def has_changes(self, worktree_dir: Path) -> bool:
        """Return True if the worktree has tracked or untracked modifications."""

        result = await self._runner.check("status", "--porcelain", cwd=worktree_dir)
        return bool(result.stdout.strip())

    async def commit_all(self, worktree_dir: Path, message: str) -> None:
        """Stage every change (untracked files included) and commit."""

        await self._runner.check("add", "-A", cwd=worktree_dir)
        await self._runner.check("commit", "-m", message, cwd=worktree_dir)

    async def get_remote_url(self, directory: Path | None = None) -> str | None:
        """Return the ``origin`` URL, or None when it cannot be read."""

        try:
            result = await self._runner.run(
                "remote", "get-url", "origin", cwd=directory or self._project_dir
            )
        except Exception:
            return None
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def list_worktrees(self) -> list[dict[str, str]]:
        """Return ``git worktree list --porcelain`` entries located under ``base_dir``."""

        result = await self._runner.check("worktree", "list", "--porcelain", cwd=self._project_dir)
        entries: list[dict[str, str]] = []
        current: dict[str, str] = {}
        for line in result.stdout.splitlines():
            if not line.strip():
                if current:
                    entries.append(current)
                current = {}
                continue
            key, _, value = line.partition(" ")
            current[key] = value
        if current:
            entries.append(current)

        base = str(self._base_dir)
        return [
            entry
            for entry in entries
            if entry.get("worktree", "") == base or entry.get("worktree", "").startswith(base + "/")
        ]


__all__ = ["WorktreeError", "WorktreeManager", "validate_session_id"]
