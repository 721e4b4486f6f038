"""Host-process execution handle.

Commands run directly on the host with their working directory translated
through the mount map. This gives worktree isolation only and is meant for
development and tests; use the docker backend for process isolation.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Mapping, Sequence

from .base import VMError
from .process import SubprocessVMProcess

logger = logging.getLogger(__name__)


class LocalVM:
    """Execution handle that maps guest paths onto host directories."""

    def __init__(self, mounts: Mapping[str, Path]) -> None:
        # Longest guest path first so nested mounts win.
        self._mounts = sorted(
            ((str(PurePosixPath(guest)), Path(host)) for guest, host in mounts.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self._processes: list[SubprocessVMProcess] = []
        self._closed = False

    def host_path(self, guest_path: str) -> str:
        """Translate a guest path to the host directory backing it."""

        for guest, host in self._mounts:
            if guest_path == guest:
                return str(host)
            if guest_path.startswith(guest.rstrip("/") + "/"):
                return str(host / guest_path[len(guest.rstrip("/")) + 1 :])
        return guest_path

    def exec(self, argv: Sequence[str], *, cwd: str) -> SubprocessVMProcess:
        if self._closed:
            raise VMError("Execution handle is closed")
        self._processes = [proc for proc in self._processes if not proc.finished]
        process = SubprocessVMProcess(argv, cwd=self.host_path(cwd))
        self._processes.append(process)
        return process

    async def close(self) -> None:
        self._closed = True
        for process in self._processes:
            process.kill()
        self._processes.clear()


class LocalVMFactory:
    """Factory for :class:`LocalVM` handles."""

    async def create(self, mounts: Mapping[str, Path]) -> LocalVM:
        for host in mounts.values():
            if not Path(host).is_dir():
                raise VMError(f"Mount source {host} is not a directory")
        logger.debug("Created local execution handle", extra={"mounts": {k: str(v) for k, v in mounts.items()}})
        return LocalVM(mounts)


__all__ = ["LocalVM", "LocalVMFactory"]
