"""Execution-handle protocols consumed by the session layer."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Literal, Mapping, Protocol, Sequence


class VMError(RuntimeError):
    """Raised when an execution handle cannot be created or used."""


@dataclass(slots=True)
class OutputChunk:
    """A piece of process output tagged with the stream it came from."""

    stream: Literal["stdout", "stderr"]
    data: str


@dataclass(slots=True)
class ProcessResult:
    """Final status of a process started inside an execution handle."""

    exit_code: int | None
    stderr: str


class VMProcess(Protocol):
    """A process running inside an execution handle."""

    def output(self) -> AsyncIterator[OutputChunk]:
        """Yield output chunks until the process exits. Not restartable."""
        ...

    def kill(self) -> None:
        """Request termination. Best-effort and idempotent."""
        ...

    async def wait(self) -> ProcessResult:
        ...


class VMHandle(Protocol):
    """An isolated environment with host directories mounted inside it."""

    def exec(self, argv: Sequence[str], *, cwd: str) -> VMProcess:
        ...

    async def close(self) -> None:
        ...


class VMFactory(Protocol):
    """Creates execution handles for a mount map of ``guest path -> host path``."""

    async def create(self, mounts: Mapping[str, Path]) -> VMHandle:
        ...


__all__ = ["OutputChunk", "ProcessResult", "VMError", "VMFactory", "VMHandle", "VMProcess"]
