"""Publish a session's worktree changes as a new branch on ``origin``."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from urllib.parse import quote

from .executor import ProgressCallback, ProgressUpdate, publish
from .git import GitCommandError, WorktreeManager
from .sessions import SessionState

logger = logging.getLogger(__name__)

_SSH_REMOTE = re.compile(r"^git@([^:]+):")
_EXISTS_MARKERS = ("already exists", "stale info")


class BranchPublishError(RuntimeError):
    """Base class for branch publication failures."""


class BranchExistsError(BranchPublishError):
    """Raised when the target branch already exists on the remote."""

    def __init__(self, branch_name: str) -> None:
        self.branch_name = branch_name
        super().__init__(f"Branch '{branch_name}' already exists on the remote")


def pull_request_url(remote_url: str, branch_name: str) -> str | None:
    """Build a "create pull request" URL for common git hosts, if recognized."""

    normalized = _SSH_REMOTE.sub(r"https://\1/", remote_url.strip())
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    encoded = quote(branch_name, safe="")

    if "github.com" in normalized:
        return f"{normalized}/compare/{encoded}?expand=1"
    if "gitlab" in normalized:
        return f"{normalized}/-/merge_requests/new?merge_request[source_branch]={encoded}"
    if "bitbucket.org" in normalized:
        return f"{normalized}/pull-requests/new?source={encoded}"
    return None


def auto_branch_name(session_id: str, prefix: str = "sandbox") -> str:
    short_id = session_id.removeprefix("ses_")[:8]
    return f"{prefix}/session-{short_id}"


class BranchPublisher:
    """Commit outstanding worktree changes and push them as a new branch."""

    def __init__(self, worktrees: WorktreeManager, *, branch_prefix: str = "sandbox") -> None:
        self._worktrees = worktrees
        self._branch_prefix = branch_prefix

    async def publish(self, worktree_dir: Path, branch_name: str) -> None:
        """Push ``HEAD`` to ``refs/heads/<branch_name>`` on origin.

        Raises:
            BranchExistsError: If the branch already exists on the remote.
            GitCommandError: For any other git failure.
        """

        runner = self._worktrees.runner
        ref = f"refs/heads/{branch_name}"

        existing = await runner.check("ls-remote", "--heads", "origin", ref, cwd=worktree_dir)
        if existing.stdout.strip():
            raise BranchExistsError(branch_name)

        # An empty lease value requires that the remote ref does not exist yet.
        result = await runner.run(
            "push", f"--force-with-lease={ref}:", "origin", f"HEAD:{ref}", cwd=worktree_dir
        )
        if not result.ok:
            if any(marker in result.stderr for marker in _EXISTS_MARKERS):
                raise BranchExistsError(branch_name)
            raise GitCommandError(f"git push origin HEAD:{ref}", result.stderr, result.returncode)

        logger.info("Published branch", extra={"branch": branch_name, "worktree_dir": str(worktree_dir)})

    async def create_branch(
        self,
        session: SessionState | None,
        branch_name: str,
        commit_message: str,
        *,
        description: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> str:
        """Commit, push and describe the result for the agent."""

        if session is None:
            return "Error: No active session found. The sandbox may not have been initialized."

        worktree_dir = session.worktree_dir
        title = description or f"Creating branch: {branch_name}"

        def report(status: str) -> None:
            publish(
                progress,
                ProgressUpdate(
                    title=title,
                    metadata={"branchName": branch_name, "commitMessage": commit_message, "status": status},
                ),
            )

        report("checking for changes")
        try:
            changes = await self._worktrees.has_changes(worktree_dir)
        except (GitCommandError, OSError) as exc:
            return f"Error checking for changes: {exc}"
        if not changes:
            return "No changes to push. The working tree is clean."

        report("committing changes")
        try:
            await self._worktrees.commit_all(worktree_dir, commit_message)
        except (GitCommandError, OSError) as exc:
            return f"Error committing changes: {exc}"

        report("pushing to remote")
        try:
            await self.publish(worktree_dir, branch_name)
        except BranchExistsError:
            return (
                f"Error: Branch '{branch_name}' already exists on the remote. "
                "Please choose a different branch name."
            )
        except (GitCommandError, OSError) as exc:
            return f"Error pushing branch: {exc}"

        result = f"Successfully created branch '{branch_name}' with your changes."
        remote_url = await self._worktrees.get_remote_url()
        if remote_url:
            pr_url = pull_request_url(remote_url, branch_name)
            if pr_url:
                result += f"\n\nCreate a PR: {pr_url}"
            else:
                result += f"\n\nRemote: {remote_url}"
        return result

    async def auto_publish(self, session: SessionState | None) -> str | None:
        """Best-effort publish at teardown. Returns the branch name, or None if skipped."""

        if session is None:
            return None

        try:
            if not await self._worktrees.has_changes(session.worktree_dir):
                return None
        except Exception:
            return None

        branch_name = auto_branch_name(session.session_id, self._branch_prefix)
        commit_message = f"Changes from sandbox session {session.session_id}"
        try:
            await self._worktrees.commit_all(session.worktree_dir, commit_message)
            await self.publish(session.worktree_dir, branch_name)
        except Exception as exc:
            logger.info(
                "Skipped automatic branch",
                extra={"session_id": session.session_id, "branch": branch_name, "error": str(exc)},
            )
            return None
        return branch_name


__all__ = [
    "BranchExistsError",
    "BranchPublishError",
    "BranchPublisher",
    "auto_branch_name",
    "pull_request_url",
]
