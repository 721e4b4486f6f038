"""Session registry: one worktree and one execution handle per session id."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .git import WorktreeManager, validate_session_id
from .vm import VMFactory, VMHandle

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionState:
    """Live sandbox resources owned by one session."""

    session_id: str
    vm: VMHandle
    worktree_dir: Path
    vm_workspace: str
    created_at: datetime

    def summary(self) -> dict[str, str]:
        return {
            "session_id": self.session_id,
            "worktree_dir": str(self.worktree_dir),
            "vm_workspace": self.vm_workspace,
            "created_at": self.created_at.isoformat(),
        }


SessionListener = Callable[[str, SessionState], None]


def _retrieve_exception(task: asyncio.Task[SessionState]) -> None:
    # Mark the failure as seen even when every awaiting caller was cancelled.
    if not task.cancelled():
        task.exception()


class SessionRegistry:
    """Owns the session map and guarantees single-flight creation per id.

    ``_sessions`` holds ready sessions. ``_initializing`` holds the task that
    is creating a session; it is published before the task first suspends, so
    every concurrent caller for the same id awaits that one task.
    """

    def __init__(
        self,
        worktrees: WorktreeManager,
        vm_factory: VMFactory,
        *,
        vm_workspace: str = "/workspace",
        listener: SessionListener | None = None,
    ) -> None:
        self._worktrees = worktrees
        self._vm_factory = vm_factory
        self._vm_workspace = vm_workspace
        self._listener = listener
        self._sessions: dict[str, SessionState] = {}
        self._initializing: dict[str, asyncio.Task[SessionState]] = {}

    @property
    def worktrees(self) -> WorktreeManager:
        return self._worktrees

    @property
    def vm_workspace(self) -> str:
        return self._vm_workspace

    async def get_or_create(self, session_id: str) -> SessionState:
        """Return the session for ``session_id``, creating it on first use."""

        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        task = self._initializing.get(session_id)
        if task is None:
            validate_session_id(session_id)
            task = asyncio.ensure_future(self._create(session_id))
            task.add_done_callback(_retrieve_exception)
            self._initializing[session_id] = task

        # A cancelled caller must not cancel the creation other callers share.
        return await asyncio.shield(task)

    def get(self, session_id: str) -> SessionState | None:
        """Return an existing session without creating one."""

        return self._sessions.get(session_id)

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def sessions(self) -> list[SessionState]:
        return list(self._sessions.values())

    async def destroy(self, session_id: str) -> None:
        """Close the handle and remove the worktree. No-op for unknown ids."""

        state = self._sessions.pop(session_id, None)
        if state is None:
            return

        try:
            await state.vm.close()
        except Exception as exc:
            logger.warning(
                "Failed to close execution handle",
                extra={"session_id": session_id, "error": str(exc)},
            )
        await self._worktrees.remove(state.worktree_dir)

        logger.info("Destroyed session", extra={"session_id": session_id})
        self._notify("session_destroyed", state)

    async def destroy_all(self) -> None:
        """Destroy every registered session concurrently."""

        ids = list(self._sessions)
        results = await asyncio.gather(*(self.destroy(session_id) for session_id in ids), return_exceptions=True)
        for session_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Session teardown failed",
                    extra={"session_id": session_id, "error": str(result)},
                )

    async def _create(self, session_id: str) -> SessionState:
        try:
            state = await self._init(session_id)
            self._sessions[session_id] = state
            return state
        finally:
            if self._initializing.get(session_id) is asyncio.current_task():
                del self._initializing[session_id]

    async def _init(self, session_id: str) -> SessionState:
        worktree_dir = await self._worktrees.create(session_id)
        try:
            vm = await self._vm_factory.create({self._vm_workspace: worktree_dir})
        except BaseException:
            await self._worktrees.remove(worktree_dir)
            raise

        state = SessionState(
            session_id=session_id,
            vm=vm,
            worktree_dir=worktree_dir,
            vm_workspace=self._vm_workspace,
            created_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Created session",
            extra={"session_id": session_id, "worktree_dir": str(worktree_dir)},
        )
        self._notify("session_created", state)
        return state

    def _notify(self, event_type: str, state: SessionState) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event_type, state)
        except Exception as exc:
            logger.debug("Session listener failed", extra={"event_type": event_type, "error": str(exc)})


__all__ = ["SessionRegistry", "SessionState"]
