from __future__ import annotations

import asyncio
import gc
from pathlib import Path
from typing import Mapping

import pytest

from sandbox_mcp.git import FakeGitRunner, WorktreeManager
from sandbox_mcp.sessions import SessionRegistry
from sandbox_mcp.vm import VMError


class StubVM:
    def __init__(self, mounts: Mapping[str, Path], *, close_error: Exception | None = None) -> None:
        self.mounts = dict(mounts)
        self.closed = 0
        self._close_error = close_error

    def exec(self, argv, *, cwd):  # pragma: no cover - not used here
        raise NotImplementedError

    async def close(self) -> None:
        self.closed += 1
        if self._close_error is not None:
            raise self._close_error


class StubVMFactory:
    def __init__(self, *, fail: bool = False, delay: float = 0.01, close_error: Exception | None = None) -> None:
        self.fail = fail
        self.delay = delay
        self.close_error = close_error
        self.created: list[StubVM] = []
        self.calls = 0

    async def create(self, mounts: Mapping[str, Path]) -> StubVM:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail:
            raise VMError("vm boot failed")
        vm = StubVM(mounts, close_error=self.close_error)
        self.created.append(vm)
        return vm


def _registry(tmp_path: Path, factory: StubVMFactory, listener=None):
    runner = FakeGitRunner()
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    worktrees = WorktreeManager(project, tmp_path / "base", runner=runner)
    return SessionRegistry(worktrees, factory, vm_workspace="/workspace", listener=listener), runner


def _adds(runner: FakeGitRunner) -> list[tuple[str, ...]]:
    return [args for args in runner.commands() if args[:2] == ("worktree", "add")]


def test_concurrent_get_or_create_builds_one_session(tmp_path: Path) -> None:
    factory = StubVMFactory()
    registry, runner = _registry(tmp_path, factory)

    async def scenario():
        return await asyncio.gather(*(registry.get_or_create("ses_abc") for _ in range(10)))

    states = asyncio.run(scenario())

    assert all(state is states[0] for state in states)
    assert factory.calls == 1
    assert len(_adds(runner)) == 1
    assert states[0].worktree_dir == tmp_path / "base" / "ses_abc"
    assert factory.created[0].mounts == {"/workspace": tmp_path / "base" / "ses_abc"}


def test_existing_session_is_reused(tmp_path: Path) -> None:
    factory = StubVMFactory()
    registry, runner = _registry(tmp_path, factory)

    async def scenario():
        first = await registry.get_or_create("ses_1")
        second = await registry.get_or_create("ses_1")
        other = await registry.get_or_create("ses_2")
        return first, second, other

    first, second, other = asyncio.run(scenario())

    assert first is second
    assert other is not first
    assert factory.calls == 2
    assert {state.session_id for state in registry.sessions()} == {"ses_1", "ses_2"}


def test_failed_creation_cleans_up_and_allows_retry(tmp_path: Path) -> None:
    factory = StubVMFactory(fail=True)
    registry, runner = _registry(tmp_path, factory)
    worktree = tmp_path / "base" / "ses_1"

    async def scenario():
        results = await asyncio.gather(
            *(registry.get_or_create("ses_1") for _ in range(3)), return_exceptions=True
        )
        assert all(isinstance(result, VMError) for result in results)
        assert factory.calls == 1
        assert not registry.has("ses_1")
        assert ("worktree", "remove", "--force", str(worktree)) in runner.commands()
        assert not worktree.exists()

        factory.fail = False
        return await registry.get_or_create("ses_1")

    state = asyncio.run(scenario())

    assert factory.calls == 2
    assert registry.get("ses_1") is state


def test_failure_after_caller_cancellation_is_not_reported_as_unretrieved(tmp_path: Path) -> None:
    factory = StubVMFactory(fail=True, delay=0.05)
    registry, _ = _registry(tmp_path, factory)
    reported: list[dict] = []

    async def scenario():
        asyncio.get_running_loop().set_exception_handler(lambda loop, context: reported.append(context))
        caller = asyncio.ensure_future(registry.get_or_create("ses_1"))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.1)
        gc.collect()
        await asyncio.sleep(0)

    asyncio.run(scenario())

    assert factory.calls == 1
    assert not registry.has("ses_1")
    assert not any("never retrieved" in str(context.get("message")) for context in reported)


def test_invalid_session_id_is_rejected(tmp_path: Path) -> None:
    registry, runner = _registry(tmp_path, StubVMFactory())

    with pytest.raises(ValueError):
        asyncio.run(registry.get_or_create("../escape"))
    assert runner.commands() == []


def test_destroy_is_idempotent(tmp_path: Path) -> None:
    factory = StubVMFactory()
    registry, runner = _registry(tmp_path, factory)

    async def scenario():
        state = await registry.get_or_create("ses_1")
        await registry.destroy("ses_1")
        await registry.destroy("ses_1")
        await registry.destroy("never-created")
        return state

    state = asyncio.run(scenario())

    assert factory.created[0].closed == 1
    assert not registry.has("ses_1")
    assert registry.get("ses_1") is None
    removes = [args for args in runner.commands() if args[:2] == ("worktree", "remove")]
    assert removes == [("worktree", "remove", "--force", str(state.worktree_dir))]
    assert not state.worktree_dir.exists()


def test_destroy_all_tolerates_close_failures(tmp_path: Path) -> None:
    factory = StubVMFactory(close_error=VMError("already gone"))
    registry, runner = _registry(tmp_path, factory)

    async def scenario():
        for session_id in ("a", "b", "c"):
            await registry.get_or_create(session_id)
        await registry.destroy_all()

    asyncio.run(scenario())

    assert registry.sessions() == []
    assert all(vm.closed == 1 for vm in factory.created)
    removes = [args for args in runner.commands() if args[:2] == ("worktree", "remove")]
    assert len(removes) == 3


def test_listener_receives_lifecycle_events(tmp_path: Path) -> None:
    events: list[tuple[str, str]] = []

    def listener(event_type, state):
        events.append((event_type, state.session_id))

    registry, _ = _registry(tmp_path, StubVMFactory(), listener=listener)

    async def scenario():
        await registry.get_or_create("ses_1")
        await registry.destroy("ses_1")

    asyncio.run(scenario())

    assert events == [("session_created", "ses_1"), ("session_destroyed", "ses_1")]


def test_listener_errors_do_not_break_sessions(tmp_path: Path) -> None:
    def listener(event_type, state):
        raise RuntimeError("audit down")

    registry, _ = _registry(tmp_path, StubVMFactory(), listener=listener)

    state = asyncio.run(registry.get_or_create("ses_1"))

    assert registry.get("ses_1") is state
