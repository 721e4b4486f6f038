"""Utility helpers for the git runner."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return an environment for git subprocesses.

    Repository-locating variables are dropped so ``cwd`` alone decides which
    checkout a command acts on, and interactive credential prompts are disabled.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if additional:
        env.update(additional)
    return env
