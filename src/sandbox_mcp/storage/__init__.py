"""Audit storage for Sandbox MCP."""

from .chroma import AUDIT_COLLECTION, ChromaEvent, ChromaStore, ChromaUnavailableError

__all__ = [
    "AUDIT_COLLECTION",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
]
