from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sandbox_mcp.git import (
    FakeGitRunner,
    GitCommandError,
    GitExecutionResult,
    GitNotFoundError,
    GitRunner,
)
from sandbox_mcp.git.utils import sanitize_environment


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "git"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def test_git_runner_executes_script(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, 'echo "$@"'))
    result = asyncio.run(runner.run("status", "--porcelain", cwd=tmp_path))

    assert result.ok
    assert result.stdout.strip() == "status --porcelain"


def test_git_runner_runs_in_cwd(tmp_path: Path) -> None:
    workdir = tmp_path / "checkout"
    workdir.mkdir()
    runner = GitRunner(_script(tmp_path, "pwd"))

    result = asyncio.run(runner.run("rev-parse", cwd=workdir))

    assert Path(result.stdout.strip()).resolve() == workdir.resolve()


def test_git_check_raises_command_error(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, "echo 'fatal: not a git repository' >&2\nexit 128"))

    with pytest.raises(GitCommandError) as excinfo:
        asyncio.run(runner.check("status", cwd=tmp_path))

    assert excinfo.value.returncode == 128
    assert "not a git repository" in excinfo.value.stderr
    assert str(excinfo.value).startswith("git status failed")


def test_git_runner_times_out(tmp_path: Path) -> None:
    runner = GitRunner(_script(tmp_path, "exec sleep 5"), timeout=0.2)

    result = asyncio.run(runner.run("fetch", cwd=tmp_path))

    assert not result.ok
    assert result.returncode == -1
    assert "timed out" in result.stderr


def test_git_not_found(tmp_path: Path) -> None:
    with pytest.raises(GitNotFoundError):
        GitRunner(tmp_path / "missing")


def test_fake_git_runner_records_invocations(tmp_path: Path) -> None:
    fake = FakeGitRunner(
        [GitExecutionResult(args=("status",), returncode=0, stdout=" M file.txt\n", stderr="")]
    )

    first = asyncio.run(fake.run("status", "--porcelain", cwd=tmp_path))
    second = asyncio.run(fake.run("add", "-A", cwd=tmp_path))

    assert first.stdout == " M file.txt\n"
    assert second.ok and second.stdout == ""
    assert fake.commands() == [("status", "--porcelain"), ("add", "-A")]
    assert fake.invocations[0][1] == tmp_path


def test_fake_git_runner_responder_takes_precedence(tmp_path: Path) -> None:
    def responder(args, cwd):
        if args[0] == "push":
            return GitExecutionResult(args=args, returncode=1, stdout="", stderr="rejected")
        return None

    fake = FakeGitRunner(responder=responder)

    with pytest.raises(GitCommandError):
        asyncio.run(fake.check("push", "origin", "HEAD", cwd=tmp_path))
    assert asyncio.run(fake.run("fetch", cwd=tmp_path)).ok


def test_sanitize_environment_drops_repository_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GIT_DIR", "/elsewhere/.git")
    monkeypatch.setenv("GIT_WORK_TREE", "/elsewhere")
    env = sanitize_environment({"GIT_AUTHOR_NAME": "Sandbox"})

    assert "GIT_DIR" not in env
    assert "GIT_WORK_TREE" not in env
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_AUTHOR_NAME"] == "Sandbox"
