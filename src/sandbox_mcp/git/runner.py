"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from .utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitRunnerError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, command: str, stderr: str, returncode: int) -> None:
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"{command} failed: {detail}")


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    """Execute git commands asynchronously against a working directory."""

    def __init__(self, executable: Path | None = None, *, timeout: float = 30.0) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(self, *args: str, cwd: Path | str) -> GitExecutionResult:
        """Run ``git <args>`` in ``cwd`` and return the captured result."""

        return await self._invoke(Path(cwd), *args)

    async def check(self, *args: str, cwd: Path | str) -> GitExecutionResult:
        """Like :meth:`run` but raise :class:`GitCommandError` on failure."""

        result = await self.run(*args, cwd=cwd)
        if not result.ok:
            raise GitCommandError(" ".join(("git", *args)), result.stderr, result.returncode)
        return result

    async def _invoke(self, cwd: Path, *args: str) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=sanitize_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return GitExecutionResult(
                args=tuple(cmd),
                returncode=-1,
                stdout="",
                stderr=f"git timed out after {self._timeout}s",
            )
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that records git invocations and replays scripted results.

    ``responder`` receives the argument tuple and working directory and may
    return a result; otherwise queued ``responses`` are used, then success.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[GitExecutionResult] | None = None,
        *,
        responder: Callable[[tuple[str, ...], Path], GitExecutionResult | None] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._responder = responder
        self._invocations: list[tuple[tuple[str, ...], Path]] = []
        self._executable_path = Path("/tmp/fake-git")
        self._timeout = 30.0

    async def _invoke(self, cwd: Path, *args: str) -> GitExecutionResult:  # type: ignore[override]
        self._invocations.append((tuple(args), cwd))
        if self._responder is not None:
            scripted = self._responder(tuple(args), cwd)
            if scripted is not None:
                return scripted
        if self._responses:
            return self._responses.pop(0)
        return GitExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[tuple[str, ...], Path]]:
        return self._invocations

    def commands(self) -> list[tuple[str, ...]]:
        return [args for args, _ in self._invocations]
