from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import pytest

from sandbox_mcp.config import SandboxSettings
from sandbox_mcp.git import FakeGitRunner, GitExecutionResult
from sandbox_mcp.orchestrator import SandboxOrchestrator
from sandbox_mcp.vm import OutputChunk, ProcessResult


class StubProcess:
    def __init__(self, text: str) -> None:
        self._text = text

    async def output(self):
        yield OutputChunk(stream="stdout", data=self._text)

    def kill(self) -> None:
        return None

    async def wait(self) -> ProcessResult:
        return ProcessResult(exit_code=0, stderr="")


class StubVM:
    def __init__(self, mounts: Mapping[str, Path]) -> None:
        self.mounts = dict(mounts)
        self.commands: list[tuple[list[str], str]] = []
        self.closed = False

    def exec(self, argv, *, cwd):
        self.commands.append((list(argv), cwd))
        return StubProcess(f"ran {argv[-1]}\n")

    async def close(self) -> None:
        self.closed = True


class StubVMFactory:
    def __init__(self) -> None:
        self.created: list[StubVM] = []

    async def create(self, mounts):
        vm = StubVM(mounts)
        self.created.append(vm)
        return vm


class StubEventStore:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record_event(self, *, session_id, event_type, body, metadata=None):
        self.events.append(
            {"session_id": session_id, "event_type": event_type, "body": body, "metadata": metadata}
        )


def _settings(tmp_path: Path, **overrides) -> SandboxSettings:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    values = {
        "project_dir": project,
        "tmp_root": tmp_path / "tmp",
        "vm_backend": "local",
    }
    values.update(overrides)
    return SandboxSettings(**values)


def _dirty(args, cwd):
    if args[:2] == ("status", "--porcelain"):
        return GitExecutionResult(args=args, returncode=0, stdout=" M app.py\n", stderr="")
    return None


def _orchestrator(tmp_path: Path, *, responder=None, store=None, **overrides):
    runner = FakeGitRunner(responder=responder)
    factory = StubVMFactory()
    orchestrator = SandboxOrchestrator(
        _settings(tmp_path, **overrides),
        vm_factory=factory,
        git_runner=runner,
        event_store=store,
    )
    return orchestrator, runner, factory


def test_base_dir_is_namespaced_by_project(tmp_path: Path) -> None:
    orchestrator, _, _ = _orchestrator(tmp_path)

    assert orchestrator.base_dir == tmp_path / "tmp" / "sandbox-mcp" / "project"


def test_startup_prunes_and_shutdown_destroys_sessions(tmp_path: Path) -> None:
    orchestrator, runner, factory = _orchestrator(tmp_path)

    async def scenario():
        await orchestrator.startup()
        await orchestrator.registry.get_or_create("a")
        await orchestrator.registry.get_or_create("b")
        await orchestrator.shutdown()

    asyncio.run(scenario())

    assert runner.commands()[0] == ("worktree", "prune")
    assert orchestrator.registry.sessions() == []
    assert all(vm.closed for vm in factory.created)


def test_run_command_creates_session_and_records_event(tmp_path: Path) -> None:
    store = StubEventStore()
    orchestrator, _, factory = _orchestrator(tmp_path, store=store)
    project = orchestrator.settings.project_dir

    result = asyncio.run(
        orchestrator.run_command("ses_1", "make test", workdir=str(project / "pkg"))
    )

    assert result == "ran make test\n"
    assert factory.created[0].commands == [(["/bin/bash", "-lc", "make test"], "/workspace/pkg")]
    assert [event["event_type"] for event in store.events] == ["session_created", "command_executed"]
    executed = store.events[-1]
    assert executed["metadata"]["exit_code"] == 0
    assert "output_preview" not in executed["metadata"]
    assert executed["body"]["output_preview"] == "ran make test\n"


def test_recording_failures_do_not_affect_results(tmp_path: Path) -> None:
    class BrokenStore:
        def record_event(self, **kwargs):
            raise RuntimeError("disk full")

    orchestrator, _, _ = _orchestrator(tmp_path, store=BrokenStore())

    assert asyncio.run(orchestrator.run_command("ses_1", "ls")) == "ran ls\n"


def test_before_tool_remaps_into_session_worktree(tmp_path: Path) -> None:
    orchestrator, _, factory = _orchestrator(tmp_path)
    project = orchestrator.settings.project_dir

    args = asyncio.run(orchestrator.before_tool("read", "ses_1", {"file_path": str(project / "a.txt")}))

    assert args == {"file_path": str(orchestrator.base_dir / "ses_1" / "a.txt")}
    assert len(factory.created) == 1


def test_before_tool_leaves_unlisted_tools_alone(tmp_path: Path) -> None:
    orchestrator, _, factory = _orchestrator(tmp_path)

    args = asyncio.run(orchestrator.before_tool("webfetch", "ses_1", {"url": "https://example.com"}))

    assert args == {"url": "https://example.com"}
    assert factory.created == []
    assert not orchestrator.registry.has("ses_1")


def test_allows_directory(tmp_path: Path) -> None:
    orchestrator, _, _ = _orchestrator(tmp_path)
    base = str(orchestrator.base_dir)

    assert orchestrator.allows_directory(["/etc/*", f"{base}/ses_1/*"])
    assert not orchestrator.allows_directory(["/etc/*"])
    assert not orchestrator.allows_directory([])


def test_system_prompt_only_for_live_sessions(tmp_path: Path) -> None:
    orchestrator, _, _ = _orchestrator(tmp_path)

    assert orchestrator.system_prompt("ses_1") is None

    asyncio.run(orchestrator.registry.get_or_create("ses_1"))
    prompt = orchestrator.system_prompt("ses_1")

    assert prompt.startswith("<sandbox>") and prompt.endswith("</sandbox>")
    assert "/workspace" in prompt
    assert str(orchestrator.base_dir / "ses_1") in prompt


def test_create_branch_without_session(tmp_path: Path) -> None:
    orchestrator, runner, _ = _orchestrator(tmp_path)

    result = asyncio.run(orchestrator.create_branch("ses_1", "feat/x", "msg"))

    assert result.startswith("Error: No active session found.")
    assert not orchestrator.registry.has("ses_1")


def test_create_branch_records_publication(tmp_path: Path) -> None:
    store = StubEventStore()
    orchestrator, _, _ = _orchestrator(tmp_path, responder=_dirty, store=store)

    async def scenario():
        await orchestrator.registry.get_or_create("ses_1")
        return await orchestrator.create_branch("ses_1", "feat/x", "msg")

    result = asyncio.run(scenario())

    assert result.startswith("Successfully created branch 'feat/x'")
    assert store.events[-1]["event_type"] == "branch_published"
    assert store.events[-1]["body"] == {"branch": "feat/x", "mode": "explicit"}


def test_end_session_publishes_leftover_changes(tmp_path: Path) -> None:
    orchestrator, runner, factory = _orchestrator(tmp_path, responder=_dirty)

    async def scenario():
        await orchestrator.registry.get_or_create("ses_abcdef123456")
        return await orchestrator.end_session("ses_abcdef123456")

    branch = asyncio.run(scenario())

    assert branch == "sandbox/session-abcdef12"
    assert factory.created[0].closed
    assert not orchestrator.registry.has("ses_abcdef123456")
    assert any(args[0] == "push" for args in runner.commands())


@pytest.mark.parametrize("auto_branch", [True, False])
def test_end_session_skips_publication(tmp_path: Path, auto_branch: bool) -> None:
    responder = None if auto_branch else _dirty
    orchestrator, runner, _ = _orchestrator(
        tmp_path, responder=responder, auto_branch_on_teardown=auto_branch
    )

    async def scenario():
        await orchestrator.registry.get_or_create("ses_1")
        return await orchestrator.end_session("ses_1")

    assert asyncio.run(scenario()) is None
    assert not any(args[0] == "push" for args in runner.commands())
    assert not orchestrator.registry.has("ses_1")


def test_status_lists_sessions(tmp_path: Path) -> None:
    orchestrator, _, _ = _orchestrator(tmp_path)
    asyncio.run(orchestrator.registry.get_or_create("ses_1"))

    status = orchestrator.status()

    assert status["vm_backend"] == "local"
    assert [session["session_id"] for session in status["sessions"]] == ["ses_1"]
    assert status["path_rules"]["read"] == ["file_path"]
