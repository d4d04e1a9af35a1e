"""Protocol definitions for dependency injection.

These protocols define the seams between the orchestration core and its
collaborators, so the engine and queue can be driven by fakes in tests:
- AgentInvoker: one external agent call with a timeout
- SessionRepository: durable session records
- QueueRepository: the persisted queue document
"""

from typing import List, Optional, Protocol, runtime_checkable

from .models import AgentResult, OrchestrationState, QueueState


@runtime_checkable
class AgentInvoker(Protocol):
    """Protocol for an external agent.

    Implementations must never raise past this boundary. Failures and
    timeouts are reported through ``AgentResult.success`` and ``error``.
    """

    async def invoke(self, prompt: str, working_dir: str, timeout: float) -> AgentResult:
        """Run the agent once against ``working_dir``."""
        ...


@runtime_checkable
class SessionRepository(Protocol):
    """Protocol for session persistence.

    One record per session id, last write wins.
    """

    def save(self, state: OrchestrationState) -> None:
        """Persist the full session record."""
        ...

    def load(self, session_id: Optional[str] = None) -> Optional[OrchestrationState]:
        """Load a session, or the most recent one when no id is given."""
        ...

    def list(self) -> List[str]:
        """Session ids, newest first."""
        ...


@runtime_checkable
class QueueRepository(Protocol):
    """Protocol for queue persistence."""

    def save(self, state: QueueState) -> None:
        ...

    def load(self) -> Optional[QueueState]:
        ...
