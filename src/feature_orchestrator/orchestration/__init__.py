"""Orchestration components.

- Orchestrator: the per-session implement/review state machine
- SessionRegistry: sessions running in this process and their questions
- SessionQueue: durable single-lane FIFO of feature requests
"""

from .engine import Orchestrator, OrchestratorCallbacks
from .queue import SessionQueue
from .registry import QuestionChannel, SessionRegistry

__all__ = [
    "Orchestrator",
    "OrchestratorCallbacks",
    "QuestionChannel",
    "SessionQueue",
    "SessionRegistry",
]
