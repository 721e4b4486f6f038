"""Supervised shell command execution inside a session's execution handle."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .sessions import SessionState

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120_000
MAX_METADATA_LENGTH = 30_000
TIMEOUT_MARKER = "\n<metadata>Command timed out</metadata>"
ABORT_MARKER = "\n<metadata>Command was aborted</metadata>"
SHELL = ("/bin/bash", "-lc")


@dataclass(slots=True)
class ProgressUpdate:
    """A progress notification: display title plus a metadata map."""

    title: str
    metadata: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass(slots=True)
class CommandOutcome:
    """Result of one command run.

    ``output`` holds everything the command printed, never truncated.
    """

    command: str
    cwd: str
    output: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    aborted: bool = False

    @property
    def text(self) -> str:
        """Output followed by the termination markers, as returned to the agent."""

        text = self.output
        if self.timed_out:
            text += TIMEOUT_MARKER
        if self.aborted:
            text += ABORT_MARKER
        return text


def resolve_cwd(workdir: str | None, project_dir: str | Path, vm_workspace: str) -> str:
    """Translate a requested working directory into a path inside the handle."""

    if not workdir:
        return vm_workspace

    project = os.path.normpath(os.fspath(project_dir))
    if workdir == project or workdir.startswith(project.rstrip("/") + "/"):
        return vm_workspace.rstrip("/") + workdir[len(project.rstrip("/")) :] or "/"
    return workdir


def publish(progress: ProgressCallback | None, update: ProgressUpdate) -> None:
    if progress is None:
        return
    try:
        progress(update)
    except Exception as exc:
        logger.debug("Progress callback failed", extra={"error": str(exc)})


class CommandExecutor:
    """Run commands in session execution handles with timeout and cancellation."""

    def __init__(
        self,
        project_dir: Path,
        *,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_metadata_length: int = MAX_METADATA_LENGTH,
    ) -> None:
        self._project_dir = Path(project_dir)
        self._default_timeout_ms = default_timeout_ms
        self._max_metadata_length = max_metadata_length

    def resolve_timeout(self, timeout: int | float | None) -> float:
        """Return the timeout in milliseconds; non-positive values mean the default."""

        if timeout is not None and timeout > 0:
            return float(timeout)
        return float(self._default_timeout_ms)

    async def run(
        self,
        session: SessionState,
        command: str,
        *,
        workdir: str | None = None,
        timeout: int | float | None = None,
        description: str | None = None,
        progress: ProgressCallback | None = None,
        abort: asyncio.Event | None = None,
    ) -> CommandOutcome:
        """Run ``command`` with ``/bin/bash -lc`` and collect its output.

        Failures of the command or the handle never raise; they end up in the
        outcome text. Cancelling the calling task kills the process and
        re-raises.
        """

        cwd = resolve_cwd(workdir, self._project_dir, session.vm_workspace)
        timeout_ms = self.resolve_timeout(timeout)
        title = description or command
        outcome = CommandOutcome(command=command, cwd=cwd)

        def report(tail: str) -> None:
            publish(progress, ProgressUpdate(title=title, metadata={"command": command, "cwd": cwd, "output": tail}))

        report("")

        try:
            process = session.vm.exec([*SHELL, command], cwd=cwd)
        except Exception as exc:
            logger.warning("Failed to start command", extra={"session_id": session.session_id, "error": str(exc)})
            outcome.output = f"Failed to start command: {exc}"
            return outcome

        def on_timeout() -> None:
            outcome.timed_out = True
            process.kill()

        def on_abort(listener: asyncio.Future) -> None:
            if listener.cancelled():
                return
            outcome.aborted = True
            process.kill()

        loop = asyncio.get_running_loop()
        timer = loop.call_later(timeout_ms / 1000, on_timeout)
        abort_listener: asyncio.Future | None = None
        if abort is not None:
            abort_listener = asyncio.ensure_future(abort.wait())
            abort_listener.add_done_callback(on_abort)

        parts: list[str] = []
        tail = ""
        streamed_stderr = ""
        try:
            try:
                async for chunk in process.output():
                    parts.append(chunk.data)
                    if chunk.stream == "stderr":
                        streamed_stderr += chunk.data
                    tail = (tail + chunk.data)[-self._max_metadata_length :]
                    report(tail)
                    if outcome.timed_out or outcome.aborted:
                        break

                result = await process.wait()
                outcome.exit_code = result.exit_code
                if result.exit_code != 0 and result.stderr:
                    if result.stderr.startswith(streamed_stderr):
                        missing = result.stderr[len(streamed_stderr) :]
                    else:
                        missing = result.stderr
                    if missing:
                        parts.append(missing)
            except asyncio.CancelledError:
                outcome.aborted = True
                process.kill()
                raise
            except Exception as exc:
                # A killed process may surface as an error; only report unrequested failures.
                if not (outcome.timed_out or outcome.aborted):
                    logger.warning(
                        "Command execution failed",
                        extra={"session_id": session.session_id, "error": str(exc)},
                    )
                    parts.append(f"\n{exc}" if parts else str(exc))
        finally:
            timer.cancel()
            if abort_listener is not None:
                abort_listener.cancel()

        outcome.output = "".join(parts)
        logger.info(
            "Command finished",
            extra={
                "session_id": session.session_id,
                "cwd": cwd,
                "exit_code": outcome.exit_code,
                "timed_out": outcome.timed_out,
                "aborted": outcome.aborted,
                "output_length": len(outcome.output),
            },
        )
        return outcome


__all__ = [
    "ABORT_MARKER",
    "CommandExecutor",
    "CommandOutcome",
    "DEFAULT_TIMEOUT_MS",
    "MAX_METADATA_LENGTH",
    "ProgressCallback",
    "ProgressUpdate",
    "TIMEOUT_MARKER",
    "resolve_cwd",
]
