"""Docker-backed execution handle: one long-lived container per session."""

from __future__ import annotations

import asyncio
import logging
import shutil
import uuid
from pathlib import Path
from typing import Mapping, Sequence

from .base import VMError
from .process import SubprocessVMProcess, run_capture

logger = logging.getLogger(__name__)

_DOCKER_TIMEOUT = 120.0
_KILL_TIMEOUT = 10.0

# Record the pid in "$0", then replace the shell with "$@" so the pid is the command's.
_LAUNCH_SCRIPT = 'echo $$ > "$0"; exec "$@"'
# Stop each process before walking its children so nothing is respawned mid-walk.
_KILL_SCRIPT = (
    'kill_tree() { kill -STOP "$1" 2>/dev/null; '
    'for child in $(cat /proc/"$1"/task/*/children 2>/dev/null); do kill_tree "$child"; done; '
    'kill -KILL "$1" 2>/dev/null; }; '
    'if [ -s "$0" ]; then kill_tree "$(cat "$0")"; fi; rm -f "$0"'
)


def docker_available(cli: str = "docker") -> bool:
    """Check if the docker CLI is on PATH."""
    return shutil.which(cli) is not None


class DockerVMProcess(SubprocessVMProcess):
    """A ``docker exec`` client whose kill also reaches the in-container job.

    Killing the host client alone leaves the command running inside the
    container, so :meth:`kill` also kills the command's process tree there.
    """

    def __init__(self, argv: Sequence[str], *, cli: str, container: str, pid_file: str) -> None:
        super().__init__(argv)
        self._cli = cli
        self._container = container
        self._pid_file = pid_file
        self._kill_task: asyncio.Future[None] | None = None

    @property
    def pid_file(self) -> str:
        return self._pid_file

    @property
    def kill_task(self) -> asyncio.Future[None] | None:
        return self._kill_task

    def kill(self) -> None:
        if self._kill_task is None and not self.finished:
            self._kill_task = asyncio.ensure_future(self._kill_in_container())
        super().kill()

    async def _kill_in_container(self) -> None:
        try:
            returncode, _, stderr = await run_capture(
                self._cli,
                "exec",
                self._container,
                "sh",
                "-c",
                _KILL_SCRIPT,
                self._pid_file,
                timeout=_KILL_TIMEOUT,
            )
        except VMError as exc:
            logger.warning(
                "Failed to kill command in container",
                extra={"container": self._container, "error": str(exc)},
            )
            return
        if returncode != 0:
            logger.debug(
                "In-container kill reported an error",
                extra={"container": self._container, "stderr": stderr.strip()},
            )


class DockerVM:
    """Execution handle backed by a running container."""

    def __init__(self, container: str, *, cli: str = "docker") -> None:
        self._container = container
        self._cli = cli
        self._processes: list[DockerVMProcess] = []
        self._closed = False

    @property
    def container(self) -> str:
        return self._container

    def exec(self, argv: Sequence[str], *, cwd: str) -> DockerVMProcess:
        if self._closed:
            raise VMError("Execution handle is closed")
        self._processes = [proc for proc in self._processes if not proc.finished]
        pid_file = f"/tmp/sandbox-mcp-{uuid.uuid4().hex}.pid"
        process = DockerVMProcess(
            [self._cli, "exec", "-w", cwd, self._container, "sh", "-c", _LAUNCH_SCRIPT, pid_file, *argv],
            cli=self._cli,
            container=self._container,
            pid_file=pid_file,
        )
        self._processes.append(process)
        return process

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for process in self._processes:
            process.kill()
        kills = [process.kill_task for process in self._processes if process.kill_task is not None]
        if kills:
            await asyncio.gather(*kills, return_exceptions=True)
        self._processes.clear()
        returncode, _, stderr = await run_capture(
            self._cli, "rm", "-f", self._container, timeout=_DOCKER_TIMEOUT
        )
        if returncode != 0:
            logger.warning(
                "Failed to remove container",
                extra={"container": self._container, "stderr": stderr.strip()},
            )


class DockerVMFactory:
    """Start containers with the session worktree bind-mounted read-write."""

    def __init__(self, image: str, *, cli: str = "docker", name_prefix: str = "sandbox-mcp") -> None:
        self._image = image
        self._cli = cli
        self._name_prefix = name_prefix

    async def create(self, mounts: Mapping[str, Path]) -> DockerVM:
        if not docker_available(self._cli):
            raise VMError(f"{self._cli} CLI not found on PATH")

        name = f"{self._name_prefix}-{uuid.uuid4().hex[:12]}"
        args = [self._cli, "run", "-d", "--rm", "--init", "--name", name]
        for guest, host in mounts.items():
            args.extend(["-v", f"{Path(host)}:{guest}:rw"])
        workdir = next(iter(mounts), None)
        if workdir is not None:
            args.extend(["-w", workdir])
        args.extend([self._image, "sleep", "infinity"])

        returncode, stdout, stderr = await run_capture(*args, timeout=_DOCKER_TIMEOUT)
        if returncode != 0:
            raise VMError(f"docker run failed: {stderr.strip() or f'exit code {returncode}'}")

        container = stdout.strip() or name
        logger.info("Started sandbox container", extra={"container": name, "image": self._image})
        return DockerVM(container, cli=self._cli)


__all__ = ["DockerVM", "DockerVMFactory", "DockerVMProcess", "docker_available"]
