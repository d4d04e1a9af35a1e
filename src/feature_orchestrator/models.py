"""Data models for the feature orchestrator.

Uses Pydantic for validation. Session records and the queue are persisted as
JSON so they stay human-inspectable between runs.
"""

import json
import os
import secrets
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field


class OrchestrationStatus(str, Enum):
    """Lifecycle status of an orchestration session."""
    PROMPTING = "prompting"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    COMMITTING = "committing"            # Reserved, never entered by the engine
    APPROVED = "approved"
    FAILED = "failed"
    WAITING_FOR_INPUT = "waiting_for_input"


TERMINAL_STATUSES = (OrchestrationStatus.APPROVED, OrchestrationStatus.FAILED)


class PipelineStep(str, Enum):
    """A side-effecting step of the pipeline, used as the exact-resume marker."""
    PROMPTING = "prompting"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"


class AgentName(str, Enum):
    """External agent CLIs the orchestrator drives."""
    CLAUDE = "claude"
    CODEX = "codex"


class AgentRole(str, Enum):
    """Role an agent plays in a pipeline step."""
    PROMPT_GENERATOR = "prompt-generator"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    COMMITTER = "committer"


class AgentResponse(BaseModel):
    """One completed step in a session transcript. Never mutated once appended."""
    agent: AgentName
    role: AgentRole
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    iteration: int = 0


class OrchestratorOptions(BaseModel):
    """Per-session options supplied by the caller."""
    max_iterations: int = Field(
        default=5,
        ge=1,
        description="Implement/review cycles allowed before asking or failing"
    )
    interactive: bool = Field(
        default=True,
        description="Ask for confirmation at the pipeline's question gates"
    )
    verbose: bool = Field(
        default=False,
        description="Emit full agent output as verbose log events"
    )
    working_dir: str = Field(
        default_factory=os.getcwd,
        description="Directory the agents operate in"
    )
    auto_commit: bool = Field(
        default=False,
        description="Accepted for compatibility; committing is not performed"
    )


class OrchestrationState(BaseModel):
    """Durable record of one session.

    ``last_failed_step`` is set exactly while a step's side effect has not yet
    been durably recorded; it drives exact resume.
    """
    id: str
    feature: str
    iteration: int = 0
    max_iterations: int = 5
    status: OrchestrationStatus = OrchestrationStatus.PROMPTING
    history: list[AgentResponse] = Field(default_factory=list)
    working_dir: str
    generated_prompt: Optional[str] = None
    last_failed_step: Optional[PipelineStep] = None
    created_at: datetime = Field(default_factory=datetime.now)
    pending_question: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def last_review(self) -> Optional[AgentResponse]:
        """Most recent reviewer entry in the transcript, if any."""
        for entry in reversed(self.history):
            if entry.role == AgentRole.REVIEWER:
                return entry
        return None


class SessionSummary(BaseModel):
    """Compact view of a stored session for listings."""
    id: str
    feature: str
    status: OrchestrationStatus
    iteration: int
    max_iterations: int
    created_at: datetime
    working_dir: str

    @classmethod
    def from_state(cls, state: OrchestrationState) -> "SessionSummary":
        return cls(
            id=state.id,
            feature=state.feature,
            status=state.status,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            created_at=state.created_at,
            working_dir=state.working_dir,
        )


class AgentResult(BaseModel):
    """Outcome of one agent invocation. Invokers never raise; they return this."""
    success: bool
    output: str = ""
    error: Optional[str] = None


class ServerEventType(str, Enum):
    """Kinds of progress events published on the event bus."""
    STATUS = "status"
    LOG = "log"
    AGENT_START = "agent_start"
    AGENT_COMPLETE = "agent_complete"
    QUESTION = "question"
    ITERATION = "iteration"
    COMPLETE = "complete"
    ERROR = "error"
    PING = "ping"
    SESSION_STARTED = "session_started"


class LogLevel(str, Enum):
    """Level carried in the data of a log event."""
    INFO = "info"
    ERROR = "error"
    VERBOSE = "verbose"


class ServerEvent(BaseModel):
    """Ephemeral progress event. Only ever lives in the bus buffer."""
    type: ServerEventType
    session_id: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    data: dict[str, Any] = Field(default_factory=dict)


class QueueItemStatus(str, Enum):
    """Status of a queued feature request. Transitions only move forward."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueEventType(str, Enum):
    """Queue-level events, published under the reserved queue session id."""
    ITEM_ADDED = "queue_item_added"
    ITEM_REMOVED = "queue_item_removed"
    ITEM_STARTED = "queue_item_started"
    ITEM_COMPLETED = "queue_item_completed"
    ITEM_FAILED = "queue_item_failed"
    CLEARED = "queue_cleared"


class QueueItem(BaseModel):
    """A feature request waiting in (or processed by) the queue."""
    id: str
    feature: str
    options: OrchestratorOptions = Field(default_factory=OrchestratorOptions)
    status: QueueItemStatus = QueueItemStatus.PENDING
    session_id: Optional[str] = None
    added_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class QueueState(BaseModel):
    """The whole queue. Item order is insertion order and processing order."""
    items: list[QueueItem] = Field(default_factory=list)
    is_processing: bool = False
    current_item_id: Optional[str] = None

    def first_pending(self) -> Optional[QueueItem]:
        for item in self.items:
            if item.status == QueueItemStatus.PENDING:
                return item
        return None

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def count(self, status: QueueItemStatus) -> int:
        return sum(1 for item in self.items if item.status == status)


def default_state_dir() -> Path:
    """Root directory for sessions, the queue file and config.json."""
    override = os.environ.get("ORCHESTRATOR_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".orchestrator"


class OrchestratorConfig(BaseModel):
    """Process-wide configuration."""
    state_dir: Path = Field(
        default_factory=default_state_dir,
        description="Where sessions/, queue.json and config.json live"
    )

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3100)

    # Pipeline
    default_max_iterations: int = Field(default=5, ge=1)
    extension_iterations: int = Field(
        default=3,
        ge=1,
        description="Iterations added when the user asks to keep going"
    )

    # Agent timeouts
    generator_timeout_seconds: float = Field(default=300.0)
    reviewer_timeout_seconds: float = Field(default=300.0)
    implementer_timeout_seconds: float = Field(default=600.0)

    # Event bus / streaming
    event_buffer_max_size: int = Field(
        default=100,
        description="Maximum buffered events per session for replay"
    )
    event_buffer_ttl_seconds: float = Field(
        default=30.0,
        description="Buffered events older than this are dropped"
    )
    keepalive_interval_seconds: float = Field(
        default=15.0,
        description="Ping interval for sessions with live stream connections"
    )

    # Agent executables
    claude_command: str = Field(default="claude")
    codex_command: str = Field(default="codex")

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def queue_file(self) -> Path:
        return self.state_dir / "queue.json"

    @classmethod
    def load(cls, state_dir: Optional[Path] = None) -> "OrchestratorConfig":
        """Load config.json from the state directory, falling back to defaults."""
        root = Path(state_dir).expanduser() if state_dir else default_state_dir()
        config_file = root / "config.json"
        if not config_file.exists():
            return cls(state_dir=root)
        data = json.loads(config_file.read_text())
        data.setdefault("state_dir", str(root))
        return cls.model_validate(data)


def generate_session_id(now: Optional[datetime] = None) -> str:
    """Time-sortable session id: lexicographic order equals creation order."""
    now = now or datetime.now()
    return now.strftime("%Y%m%d-%H%M%S-%f")


def generate_queue_item_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"q-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(2)}"
