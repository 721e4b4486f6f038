"""Process wrapper shared by the subprocess-based execution handles."""

from __future__ import annotations

import asyncio
import codecs
import os
import signal
from typing import AsyncIterator, Mapping, Sequence

from .base import OutputChunk, ProcessResult, VMError

_READ_SIZE = 64 * 1024


class SubprocessVMProcess:
    """Run ``argv`` as a host subprocess and expose it as a :class:`VMProcess`.

    The process is spawned in its own session so :meth:`kill` reaches every
    child of the shell. Stdout and stderr are read concurrently and merged into
    one queue in arrival order.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not argv:
            raise VMError("Cannot execute an empty argument vector")
        self._argv = list(argv)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        self._stderr_parts: list[str] = []
        self._process: asyncio.subprocess.Process | None = None
        self._kill_requested = False
        self._consumed = False
        self._start_task = asyncio.ensure_future(self._start())

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def finished(self) -> bool:
        return self._start_task.done()

    async def _start(self) -> asyncio.subprocess.Process:
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._cwd,
                    env=self._env,
                    start_new_session=True,
                )
            except OSError as exc:
                raise VMError(f"Failed to start {self._argv[0]}: {exc}") from exc

            self._process = process
            if self._kill_requested:
                self._signal(process)
            await asyncio.gather(
                self._pump(process.stdout, "stdout"),
                self._pump(process.stderr, "stderr"),
            )
            return process
        finally:
            self._queue.put_nowait(None)

    async def _pump(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            final = not data
            text = decoder.decode(data, final=final)
            if text:
                if name == "stderr":
                    self._stderr_parts.append(text)
                self._queue.put_nowait(OutputChunk(stream=name, data=text))  # type: ignore[arg-type]
            if final:
                return

    async def output(self) -> AsyncIterator[OutputChunk]:
        if self._consumed:
            raise VMError("Process output has already been consumed")
        self._consumed = True
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    def kill(self) -> None:
        self._kill_requested = True
        if self._process is not None:
            self._signal(self._process)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    async def wait(self) -> ProcessResult:
        process = await self._start_task
        exit_code = await process.wait()
        return ProcessResult(exit_code=exit_code, stderr="".join(self._stderr_parts))


async def run_capture(*argv: str, timeout: float | None = None) -> tuple[int, str, str]:
    """Run a short-lived helper command and return ``(returncode, stdout, stderr)``."""

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise VMError(f"Failed to start {argv[0]}: {exc}") from exc
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        raise VMError(f"{argv[0]} timed out after {timeout}s") from exc
    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


__all__ = ["SubprocessVMProcess", "run_capture"]
