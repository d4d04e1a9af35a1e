"""HTTP server for the feature orchestrator.

Provides REST endpoints for sessions and the queue, and SSE streams for
real-time progress.
"""

from .main import create_app, run_server

__all__ = ["create_app", "run_server"]
