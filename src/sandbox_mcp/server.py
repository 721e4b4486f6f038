"""FastMCP server bootstrap for Sandbox MCP."""

import asyncio
import json
import logging
import signal
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import SandboxSettings, get_settings
from .orchestrator import SandboxOrchestrator
from .storage import AUDIT_COLLECTION, ChromaStore, ChromaUnavailableError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Sandbox MCP server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _interrupt_on_terminate(signum, frame) -> None:
    """Turn SIGTERM into KeyboardInterrupt so ``main`` tears sessions down."""

    raise KeyboardInterrupt


def create_server(
    settings: Optional[SandboxSettings] = None,
    orchestrator: SandboxOrchestrator | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the sandbox tools and resources."""

    settings = settings or get_settings()

    chroma_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path) if settings.chroma_persist_path else None,
        "collection": AUDIT_COLLECTION,
        "error": None,
    }

    if orchestrator is None:
        if settings.chroma_persist_path is not None:
            try:
                chroma_store = ChromaStore(settings.chroma_persist_path)
                chroma_store.ping()
                chroma_metadata["available"] = True
            except ChromaUnavailableError as exc:
                chroma_metadata["error"] = str(exc)
                chroma_store = None
        orchestrator = SandboxOrchestrator(settings, event_store=chroma_store)
    elif orchestrator.event_store is not None:
        chroma_metadata["available"] = True

    _run_sync(orchestrator.startup())

    server = FastMCP(
        name="Sandbox MCP",
        version=__version__,
        instructions=(
            "Sandbox MCP gives every session its own git worktree and isolated execution "
            f"environment. Shell commands run inside the sandbox at {settings.vm_workspace}; "
            "file tools operate on the session worktree. Use create_branch to publish changes."
        ),
    )

    handles = register_tools(server, orchestrator=orchestrator, settings=settings)

    @server.resource(
        "resource://sandbox/status",
        name="sandbox_status",
        title="Sandbox MCP Status",
        description="Provides the current sessions and configuration of the Sandbox MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            **orchestrator.status(),
            "progress": handles.progress_state,
            "storage": {"chroma": chroma_metadata},
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    @server.prompt(
        name="sandbox_context",
        description="Describe the sandbox a session is running in, for inclusion in the system prompt.",
    )
    def sandbox_context(session_id: str) -> str:
        return orchestrator.system_prompt(session_id) or ""

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Sandbox MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    orchestrator: SandboxOrchestrator = getattr(server, "orchestrator")
    logging.getLogger(__name__).info(
        "Launching Sandbox MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "project_dir": str(settings.project_dir),
            "vm_backend": settings.vm_backend,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    previous_handler = signal.signal(signal.SIGTERM, _interrupt_on_terminate)
    try:
        server.run()
    finally:
        try:
            _run_sync(orchestrator.shutdown())
        finally:
            signal.signal(signal.SIGTERM, previous_handler)


if __name__ == "__main__":
    main()
