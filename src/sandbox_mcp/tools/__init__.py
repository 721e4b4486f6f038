"""Tool registration for Sandbox MCP."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from fastmcp import Context, FastMCP

from ..config import SandboxSettings
from ..executor import ProgressCallback, ProgressUpdate
from ..orchestrator import SandboxOrchestrator
from .files import FileToolError, edit_file, glob_files, grep_files, read_file, write_file

DEFAULT_SESSION_ID = "default"


@dataclass(slots=True)
class ToolHandles:
    run_command: Any
    create_branch: Any
    read: Any
    write: Any
    edit: Any
    glob: Any
    grep: Any
    end_session: Any
    session_history: Any
    progress_state: dict[str, dict[str, Any]]


def _resolve_session_id(context: Context | None, session_id: str | None) -> str:
    if session_id:
        return session_id
    if context is not None:
        try:
            ctx_session = getattr(context, "session_id", None)
        except Exception:  # no active request
            ctx_session = None
        if isinstance(ctx_session, str) and ctx_session:
            return ctx_session
    return DEFAULT_SESSION_ID


def register_tools(
    server: FastMCP,
    *,
    orchestrator: SandboxOrchestrator,
    settings: SandboxSettings,
) -> ToolHandles:
    """Register the sandbox tools on the server."""

    progress_state: dict[str, dict[str, Any]] = {}

    def _progress(session_id: str, tool: str) -> ProgressCallback:
        def report(update: ProgressUpdate) -> None:
            progress_state[session_id] = {
                "tool": tool,
                "title": update.title,
                "metadata": update.metadata,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            logger.debug(update.title, extra={"session_id": session_id, "tool": tool})

        return report

    async def _run_file_tool(
        tool: str,
        session_id: str,
        args: dict[str, Any],
        operation: Callable[[dict[str, Any]], str],
        context: Context | None,
    ) -> str:
        try:
            remapped = await orchestrator.before_tool(tool, session_id, args)
        except Exception as exc:
            _emit_log(context, "error", "Sandbox initialization failed", extra={"session_id": session_id, "error": str(exc)})
            return f"Error: failed to initialize sandbox session: {exc}"
        try:
            return await asyncio.to_thread(operation, remapped)
        except FileToolError as exc:
            return f"Error: {exc}"
        except OSError as exc:
            return f"Error: {exc}"

    async def _run_command(
        command: str,
        timeout: int | None = None,
        workdir: str | None = None,
        description: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Run a bash command inside the session sandbox."""

        sid = _resolve_session_id(context, session_id)
        try:
            result = await orchestrator.run_command(
                sid,
                command,
                timeout=timeout,
                workdir=workdir,
                description=description,
                progress=_progress(sid, "run_command"),
            )
        except Exception as exc:
            _emit_log(context, "error", "Sandbox initialization failed", extra={"session_id": sid, "error": str(exc)})
            return f"Error: failed to initialize sandbox session: {exc}"

        _emit_log(context, "info", "Ran command", extra={"session_id": sid, "command": command[:200]})
        return result

    async def _create_branch(
        branch_name: str,
        commit_message: str,
        description: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Commit the sandbox changes and push them as a new remote branch."""

        sid = _resolve_session_id(context, session_id)
        result = await orchestrator.create_branch(
            sid,
            branch_name,
            commit_message,
            description=description,
            progress=_progress(sid, "create_branch"),
        )
        _emit_log(context, "info", "Create branch finished", extra={"session_id": sid, "branch": branch_name})
        return result

    async def _read(
        file_path: str,
        offset: int = 0,
        limit: int = 2000,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Read a file from the session worktree."""

        sid = _resolve_session_id(context, session_id)
        return await _run_file_tool(
            "read",
            sid,
            {"file_path": file_path, "offset": offset, "limit": limit},
            lambda args: read_file(args["file_path"], offset=args["offset"], limit=args["limit"]),
            context,
        )

    async def _write(
        file_path: str,
        content: str,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Write a file in the session worktree."""

        sid = _resolve_session_id(context, session_id)
        return await _run_file_tool(
            "write",
            sid,
            {"file_path": file_path, "content": content},
            lambda args: write_file(args["file_path"], args["content"]),
            context,
        )

    async def _edit(
        file_path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Replace text in a file of the session worktree."""

        sid = _resolve_session_id(context, session_id)
        return await _run_file_tool(
            "edit",
            sid,
            {"file_path": file_path, "old_string": old_string, "new_string": new_string, "replace_all": replace_all},
            lambda args: edit_file(
                args["file_path"], args["old_string"], args["new_string"], replace_all=args["replace_all"]
            ),
            context,
        )

    async def _glob(
        pattern: str,
        path: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Find files by glob pattern in the session worktree."""

        sid = _resolve_session_id(context, session_id)
        return await _run_file_tool(
            "glob",
            sid,
            {"pattern": pattern, "path": path or "."},
            lambda args: glob_files(args["pattern"], args["path"]),
            context,
        )

    async def _grep(
        pattern: str,
        path: str | None = None,
        include: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> str:
        """Search file contents by regular expression in the session worktree."""

        sid = _resolve_session_id(context, session_id)
        return await _run_file_tool(
            "grep",
            sid,
            {"pattern": pattern, "path": path or ".", "include": include},
            lambda args: grep_files(args["pattern"], args["path"], include=args["include"]),
            context,
        )

    tool_run_command = server.tool(
        name="run_command",
        description=(
            "Run a bash command inside the session's sandbox. The working directory "
            f"defaults to {settings.vm_workspace}; paths under {settings.project_dir} are "
            "translated into the sandbox. Timeout is in milliseconds."
        ),
    )(_run_command)

    tool_create_branch = server.tool(
        name="create_branch",
        description=(
            "Create a new branch on the project repository with all changes from this "
            "sandbox session. Stages all changes, commits them and pushes a new branch to "
            "origin. Fails if the branch already exists on the remote."
        ),
    )(_create_branch)

    tool_read = server.tool(name="read", description="Read a file (with line numbers) from the sandbox worktree.")(_read)
    tool_write = server.tool(name="write", description="Write a file in the sandbox worktree.")(_write)
    tool_edit = server.tool(
        name="edit",
        description="Replace an exact string in a file of the sandbox worktree.",
    )(_edit)
    tool_glob = server.tool(name="glob", description="Find files matching a glob pattern in the sandbox worktree.")(_glob)
    tool_grep = server.tool(
        name="grep",
        description="Search file contents with a regular expression in the sandbox worktree.",
    )(_grep)

    async def _end_session(session_id: str | None = None, context: Context | None = None) -> str:
        """Tear down the session sandbox, publishing leftover changes when enabled."""

        sid = _resolve_session_id(context, session_id)
        if not orchestrator.registry.has(sid):
            return f"No active sandbox for session '{sid}'."
        branch = await orchestrator.end_session(sid)
        progress_state.pop(sid, None)
        _emit_log(context, "info", "Ended session", extra={"session_id": sid, "branch": branch})
        if branch:
            return f"Session '{sid}' ended. Changes were pushed to branch '{branch}'."
        return f"Session '{sid}' ended. Automatic branch skipped."

    def _session_history(
        limit: int | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return recorded audit events for the session."""

        sid = _resolve_session_id(context, session_id)
        store = orchestrator.event_store
        if store is None:
            raise RuntimeError("Audit log is unavailable; set CHROMA_PERSIST_PATH to enable it")
        events = store.fetch_session_events(sid, limit=limit)
        _emit_log(context, "debug", "Session history", extra={"session_id": sid, "count": len(events)})
        return {"session_id": sid, "events": [event.as_dict() for event in events]}

    tool_end_session = server.tool(
        name="end_session",
        description="End the sandbox session: push leftover changes to an automatic branch and clean up.",
    )(_end_session)

    tool_history = server.tool(
        name="session_history",
        description="List audit events (sessions, commands, branches) recorded for this session.",
    )(_session_history)

    return ToolHandles(
        run_command=tool_run_command,
        create_branch=tool_create_branch,
        read=tool_read,
        write=tool_write,
        edit=tool_edit,
        glob=tool_glob,
        grep=tool_grep,
        end_session=tool_end_session,
        session_history=tool_history,
        progress_state=progress_state,
    )


__all__ = ["DEFAULT_SESSION_ID", "ToolHandles", "register_tools"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return
        ctx_log = getattr(context, "log", None)
        if callable(ctx_log):  # pragma: no cover - depends on FastMCP internals
            try:
                pending = ctx_log(message, level=level, extra=payload)
            except TypeError:
                pass
            else:
                if inspect.isawaitable(pending):
                    asyncio.ensure_future(pending)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
