"""Path argument remapping between the project checkout and session worktrees."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import RootModel, ValidationError, field_validator

DEFAULT_TOOL_PATH_ARGS: dict[str, tuple[str, ...]] = {
    "read": ("file_path",),
    "write": ("file_path",),
    "edit": ("file_path",),
    "glob": ("path",),
    "grep": ("path",),
}


class PathRuleError(RuntimeError):
    """Raised when a path rule file cannot be parsed or validated."""


def remap_path(file_path: str, project_dir: str | Path, worktree_dir: str | Path) -> str:
    """Map ``file_path`` from the project checkout onto ``worktree_dir``.

    Relative paths resolve against the worktree. Absolute paths inside the
    project keep their remainder under the worktree. Anything else is returned
    unchanged.
    """

    worktree = os.path.abspath(os.fspath(worktree_dir))
    if not os.path.isabs(file_path):
        return os.path.normpath(os.path.join(worktree, file_path))

    normalized = os.path.normpath(file_path)
    project = os.path.normpath(os.fspath(project_dir))
    prefix = "" if project == os.sep else project

    if normalized == project or normalized.startswith(prefix + os.sep):
        remapped = worktree.rstrip(os.sep) + normalized[len(prefix) :]
        if file_path.endswith(os.sep) and not remapped.endswith(os.sep):
            remapped += os.sep
        return remapped or os.sep

    return file_path


def remap_tool_args(
    tool: str,
    args: Mapping[str, Any],
    project_dir: str | Path,
    worktree_dir: str | Path,
    rules: Mapping[str, tuple[str, ...]] | None = None,
) -> dict[str, Any]:
    """Return a copy of ``args`` with the allow-listed path arguments remapped.

    Tools without rules, arguments not listed and non-string values are left
    untouched. ``args`` itself is never modified.
    """

    remapped = dict(args)
    arg_names = (DEFAULT_TOOL_PATH_ARGS if rules is None else rules).get(tool)
    if not arg_names:
        return remapped

    for name in arg_names:
        value = args.get(name)
        if isinstance(value, str):
            remapped[name] = remap_path(value, project_dir, worktree_dir)
    return remapped


class PathRules(RootModel[dict[str, list[str]]]):
    """Tool name to path-valued argument names."""

    @field_validator("root")
    @classmethod
    def _validate_rules(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        cleaned: dict[str, list[str]] = {}
        for tool, names in value.items():
            tool_name = tool.strip()
            if not tool_name:
                raise ValueError("Tool names must not be empty")
            arg_names = [name.strip() for name in names if name and name.strip()]
            cleaned[tool_name] = arg_names
        return cleaned


class PathRuleLoader:
    """Loads path remapping rules from a YAML file on disk."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self) -> dict[str, tuple[str, ...]]:
        """Return the default rules overlaid with the rules from the file.

        Tools named in the file replace the default entry; an empty list
        disables remapping for that tool.
        """

        rules = dict(DEFAULT_TOOL_PATH_ARGS)
        if self._path is None:
            return rules
        if not self._path.exists():
            raise PathRuleError(f"Path rule file {self._path} does not exist")

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - library type
            raise PathRuleError(f"Failed to parse YAML in {self._path}: {exc}") from exc

        if document is None:
            return rules

        try:
            parsed = PathRules.model_validate(document)
        except ValidationError as exc:
            raise PathRuleError(f"Path rule validation error in {self._path}: {exc}") from exc

        for tool, names in parsed.root.items():
            rules[tool] = tuple(names)
        return rules


__all__ = [
    "DEFAULT_TOOL_PATH_ARGS",
    "PathRuleError",
    "PathRuleLoader",
    "PathRules",
    "remap_path",
    "remap_tool_args",
]
