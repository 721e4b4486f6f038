"""Sandbox MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from sandbox_mcp.config import SandboxSettings
from sandbox_mcp.git import GitRunner, GitRunnerError, WorktreeManager
from sandbox_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: SandboxSettings) -> ChromaStore:
    if settings.chroma_persist_path is None:
        print("Chroma unavailable: CHROMA_PERSIST_PATH is not set")
        raise SystemExit(1)
    try:
        store = ChromaStore(settings.chroma_persist_path)
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def load_worktrees(settings: SandboxSettings) -> WorktreeManager:
    try:
        runner = GitRunner(timeout=settings.git_timeout)
    except GitRunnerError as exc:
        print(f"Git unavailable: {exc}")
        raise SystemExit(1)
    return WorktreeManager(settings.project_dir, settings.base_dir, runner=runner)


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = SandboxSettings()
    manager = load_worktrees(settings)
    try:
        entries = asyncio.run(manager.list_worktrees())
    except GitRunnerError as exc:
        print(f"git failed: {exc}")
        raise SystemExit(1)
    print(json.dumps(entries, indent=2))


def cmd_prune(args: argparse.Namespace) -> None:
    settings = SandboxSettings()
    manager = load_worktrees(settings)
    asyncio.run(manager.prune())
    print(f"Pruned stale worktrees of {settings.project_dir}")


def cmd_events(args: argparse.Namespace) -> None:
    settings = SandboxSettings()
    store = load_store(settings)
    try:
        if args.session_id:
            events = store.fetch_session_events(args.session_id, limit=args.limit)
        else:
            filters = {"event_type": args.event_type} if args.event_type else None
            events = store.search_events(filters=filters, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    if args.event_type:
        events = [event for event in events if event.event_type == args.event_type]
    print(json.dumps([event.as_dict() for event in events], indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sandbox MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_worktrees = sub.add_parser("worktrees", help="List session worktrees of the project")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_prune = sub.add_parser("prune", help="Drop registrations of deleted worktrees")
    p_prune.set_defaults(func=cmd_prune)

    p_events = sub.add_parser("events", help="List recorded session events")
    p_events.add_argument("--session-id")
    p_events.add_argument("--event-type")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only N events",
    )
    p_events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
