"""API routes for the orchestrator server."""

from . import queue, sessions

__all__ = ["queue", "sessions"]
