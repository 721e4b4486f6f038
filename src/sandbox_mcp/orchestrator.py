"""Entry points the hosting server calls: commands, branches, file-tool hooks, lifecycle."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from .config import SandboxSettings
from .executor import CommandExecutor, ProgressCallback
from .git import GitRunner, WorktreeManager
from .paths import PathRuleLoader, remap_tool_args
from .publisher import BranchPublisher
from .sessions import SessionRegistry, SessionState
from .storage import ChromaStore
from .vm import VMFactory, create_vm_factory

logger = logging.getLogger(__name__)


class SandboxOrchestrator:
    """Wire the session registry, executor and publisher for one project."""

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        vm_factory: VMFactory | None = None,
        git_runner: GitRunner | None = None,
        event_store: ChromaStore | None = None,
        path_rules: Mapping[str, tuple[str, ...]] | None = None,
    ) -> None:
        self._settings = settings
        runner = git_runner or GitRunner(timeout=settings.git_timeout)
        self._worktrees = WorktreeManager(settings.project_dir, settings.base_dir, runner=runner)
        self._registry = SessionRegistry(
            self._worktrees,
            vm_factory or create_vm_factory(settings.vm_backend, docker_image=settings.docker_image),
            vm_workspace=settings.vm_workspace,
            listener=self._on_session_event,
        )
        self._executor = CommandExecutor(
            settings.project_dir,
            default_timeout_ms=settings.command_timeout_ms,
            max_metadata_length=settings.max_metadata_length,
        )
        self._publisher = BranchPublisher(self._worktrees, branch_prefix=settings.branch_prefix)
        self._event_store = event_store
        self._path_rules = dict(path_rules) if path_rules is not None else PathRuleLoader(settings.path_rules_file).load()

    @property
    def settings(self) -> SandboxSettings:
        return self._settings

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def publisher(self) -> BranchPublisher:
        return self._publisher

    @property
    def event_store(self) -> ChromaStore | None:
        return self._event_store

    @property
    def path_rules(self) -> dict[str, tuple[str, ...]]:
        return dict(self._path_rules)

    @property
    def base_dir(self) -> Path:
        return self._worktrees.base_dir

    async def startup(self) -> None:
        """Clean up worktree registrations left behind by a previous crash."""

        await self._worktrees.prune()

    async def shutdown(self) -> None:
        """Tear down every session. Call when the hosting process terminates."""

        await self._registry.destroy_all()

    async def run_command(
        self,
        session_id: str,
        command: str,
        *,
        timeout: int | float | None = None,
        workdir: str | None = None,
        description: str | None = None,
        progress: ProgressCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> str:
        session = await self._registry.get_or_create(session_id)
        outcome = await self._executor.run(
            session,
            command,
            workdir=workdir,
            timeout=timeout,
            description=description,
            progress=progress,
            abort=abort,
        )
        self._record(
            session_id,
            "command_executed",
            {
                "command": command,
                "cwd": outcome.cwd,
                "exit_code": outcome.exit_code,
                "timed_out": outcome.timed_out,
                "aborted": outcome.aborted,
                "output_preview": outcome.output[-2000:],
            },
        )
        return outcome.text

    async def create_branch(
        self,
        session_id: str,
        branch_name: str,
        commit_message: str,
        *,
        description: str | None = None,
        progress: ProgressCallback | None = None,
    ) -> str:
        result = await self._publisher.create_branch(
            self._registry.get(session_id),
            branch_name,
            commit_message,
            description=description,
            progress=progress,
        )
        if result.startswith("Successfully"):
            self._record(session_id, "branch_published", {"branch": branch_name, "mode": "explicit"})
        return result

    async def before_tool(self, tool: str, session_id: str, args: Mapping[str, Any]) -> dict[str, Any]:
        """Return ``args`` with path arguments pointed at the session worktree."""

        if not self._path_rules.get(tool):
            return dict(args)
        session = await self._registry.get_or_create(session_id)
        return remap_tool_args(
            tool, args, self._settings.project_dir, session.worktree_dir, self._path_rules
        )

    def allows_directory(self, patterns: Iterable[str]) -> bool:
        """True if a filesystem permission request targets sandbox worktrees."""

        base = str(self.base_dir)
        return any(pattern.startswith(base) for pattern in patterns)

    def system_prompt(self, session_id: str) -> str | None:
        session = self._registry.get(session_id)
        if session is None:
            return None
        return "\n".join(
            [
                "<sandbox>",
                "This session is running inside a sandboxed execution environment.",
                f"Shell commands execute inside the sandbox at {session.vm_workspace}.",
                f"File operations target the worktree at {session.worktree_dir}.",
                f"Use {session.worktree_dir} as the base directory for file paths.",
                "</sandbox>",
            ]
        )

    async def end_session(self, session_id: str) -> str | None:
        """Handle a session-ended notification. Returns the auto-published branch, if any."""

        branch = None
        session = self._registry.get(session_id)
        if session is not None and self._settings.auto_branch_on_teardown:
            branch = await self._publisher.auto_publish(session)
            if branch is not None:
                self._record(session_id, "branch_published", {"branch": branch, "mode": "automatic"})
        await self._registry.destroy(session_id)
        return branch

    def status(self) -> dict[str, Any]:
        return {
            "project_dir": str(self._settings.project_dir),
            "base_dir": str(self.base_dir),
            "vm_backend": self._settings.vm_backend,
            "vm_workspace": self._settings.vm_workspace,
            "sessions": [session.summary() for session in self._registry.sessions()],
            "path_rules": {tool: list(names) for tool, names in self._path_rules.items()},
        }

    def _on_session_event(self, event_type: str, session: SessionState) -> None:
        self._record(session.session_id, event_type, session.summary())

    def _record(self, session_id: str, event_type: str, body: dict[str, Any]) -> None:
        if self._event_store is None:
            return
        try:
            self._event_store.record_event(
                session_id=session_id,
                event_type=event_type,
                body=body,
                metadata={key: value for key, value in body.items() if key != "output_preview"},
            )
        except Exception as exc:
            logger.warning(
                "Failed to record session event",
                extra={"session_id": session_id, "event_type": event_type, "error": str(exc)},
            )


__all__ = ["SandboxOrchestrator"]
