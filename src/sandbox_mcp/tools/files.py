"""File operations behind the read/write/edit/glob/grep tools.

Paths arrive already remapped onto the session worktree. Errors a caller can
act on are raised as :class:`FileToolError`.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

MAX_READ_LINES = 2000
MAX_LINE_LENGTH = 2000
MAX_GLOB_RESULTS = 200
MAX_GREP_MATCHES = 200
_SKIPPED_DIRS = {".git", "node_modules", "__pycache__"}


class FileToolError(RuntimeError):
    """A file tool request that cannot be satisfied."""


def read_file(file_path: str, *, offset: int = 0, limit: int = MAX_READ_LINES) -> str:
    path = Path(file_path)
    if not path.exists():
        raise FileToolError(f"File not found: {file_path}")
    if path.is_dir():
        raise FileToolError(f"{file_path} is a directory")

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except UnicodeDecodeError as exc:
        raise FileToolError(f"Cannot read binary file: {file_path}") from exc

    start = max(offset, 0)
    window = lines[start : start + max(limit, 1)]
    rendered = [
        f"{number:6d}\t{line[:MAX_LINE_LENGTH]}" for number, line in enumerate(window, start=start + 1)
    ]
    if start + len(window) < len(lines):
        rendered.append(f"\n(File has more lines. Use offset={start + len(window)} to continue.)")
    return "\n".join(rendered)


def write_file(file_path: str, content: str) -> str:
    path = Path(file_path)
    if path.is_dir():
        raise FileToolError(f"{file_path} is a directory")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return f"Wrote {len(content.encode('utf-8'))} bytes to {file_path}"


def edit_file(file_path: str, old_string: str, new_string: str, *, replace_all: bool = False) -> str:
    if old_string == new_string:
        raise FileToolError("old_string and new_string must be different")

    path = Path(file_path)
    if not path.is_file():
        raise FileToolError(f"File not found: {file_path}")
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise FileToolError(f"Cannot edit binary file: {file_path}") from exc

    count = content.count(old_string)
    if count == 0:
        raise FileToolError(f"old_string not found in {file_path}")
    if count > 1 and not replace_all:
        raise FileToolError(
            f"old_string appears {count} times in {file_path}; "
            "provide more context or set replace_all"
        )

    updated = content.replace(old_string, new_string) if replace_all else content.replace(old_string, new_string, 1)
    path.write_text(updated, encoding="utf-8")
    replaced = count if replace_all else 1
    return f"Edited {file_path} ({replaced} replacement{'s' if replaced != 1 else ''})"


def glob_files(pattern: str, path: str) -> str:
    if not pattern:
        raise FileToolError("Glob pattern must not be empty")
    if Path(pattern).is_absolute():
        raise FileToolError(f"Glob pattern must be relative to the search directory: {pattern}")
    root = Path(path)
    if not root.is_dir():
        raise FileToolError(f"Directory not found: {path}")

    matches = sorted(
        (match for match in root.glob(pattern) if not _SKIPPED_DIRS.intersection(match.relative_to(root).parts)),
        key=lambda match: match.stat().st_mtime if match.exists() else 0,
        reverse=True,
    )
    if not matches:
        return "No files found"
    lines = [str(match) for match in matches[:MAX_GLOB_RESULTS]]
    if len(matches) > MAX_GLOB_RESULTS:
        lines.append(f"(Results truncated: showing {MAX_GLOB_RESULTS} of {len(matches)} matches)")
    return "\n".join(lines)


def grep_files(pattern: str, path: str, *, include: str | None = None) -> str:
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise FileToolError(f"Invalid regular expression: {exc}") from exc

    root = Path(path)
    if root.is_file():
        candidates = [root]
    elif root.is_dir():
        candidates = _walk(root, include)
    else:
        raise FileToolError(f"Path not found: {path}")

    matches: list[str] = []
    for candidate in candidates:
        try:
            with candidate.open(encoding="utf-8") as handle:
                for number, line in enumerate(handle, start=1):
                    if regex.search(line):
                        matches.append(f"{candidate}:{number}:{line.rstrip()[:MAX_LINE_LENGTH]}")
                        if len(matches) >= MAX_GREP_MATCHES:
                            matches.append(f"(Results truncated at {MAX_GREP_MATCHES} matches)")
                            return "\n".join(matches)
        except (UnicodeDecodeError, OSError):
            continue

    return "\n".join(matches) if matches else "No matches found"


def _walk(root: Path, include: str | None) -> list[Path]:
    files: list[Path] = []
    for directory, subdirs, filenames in os.walk(root):
        subdirs[:] = sorted(name for name in subdirs if name not in _SKIPPED_DIRS)
        for filename in sorted(filenames):
            candidate = Path(directory) / filename
            if include and not candidate.match(include):
                continue
            files.append(candidate)
    return files


__all__ = [
    "FileToolError",
    "edit_file",
    "glob_files",
    "grep_files",
    "read_file",
    "write_file",
]
