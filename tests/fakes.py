"""Test doubles for agents, stores and engine callbacks."""

import asyncio
from typing import Optional, Union

from feature_orchestrator.agents import AgentSet
from feature_orchestrator.models import (
    AgentResult,
    OrchestrationState,
    QueueState,
    ServerEvent,
    ServerEventType,
)
from feature_orchestrator.orchestration import OrchestratorCallbacks


class ScriptedAgent:
    """AgentInvoker that replays scripted responses; the last one repeats."""

    def __init__(self, *responses: Union[str, AgentResult], gate: Optional[asyncio.Event] = None):
        self.responses = [
            r if isinstance(r, AgentResult) else AgentResult(success=True, output=r)
            for r in responses
        ] or [AgentResult(success=True, output="ok")]
        self.gate = gate
        self.calls: list[tuple[str, str, float]] = []

    async def invoke(self, prompt: str, working_dir: str, timeout: float) -> AgentResult:
        self.calls.append((prompt, working_dir, timeout))
        if self.gate is not None:
            await self.gate.wait()
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    @property
    def call_count(self) -> int:
        return len(self.calls)


def make_agents(
    generator: Optional[ScriptedAgent] = None,
    implementer: Optional[ScriptedAgent] = None,
    reviewer: Optional[ScriptedAgent] = None,
) -> AgentSet:
    return AgentSet(
        generator=generator or ScriptedAgent("Implementation brief"),
        implementer=implementer or ScriptedAgent("Implemented"),
        reviewer=reviewer or ScriptedAgent("APPROVED"),
    )


class MemorySessionStore:
    """SessionRepository keeping every saved snapshot."""

    def __init__(self, fail_saves: bool = False):
        self.records: dict[str, OrchestrationState] = {}
        self.saves: list[OrchestrationState] = []
        self.fail_saves = fail_saves

    def save(self, state: OrchestrationState) -> None:
        if self.fail_saves:
            raise OSError("disk full")
        snapshot = state.model_copy(deep=True)
        self.saves.append(snapshot)
        self.records[state.id] = snapshot

    def load(self, session_id: Optional[str] = None) -> Optional[OrchestrationState]:
        if session_id is None:
            ids = self.list()
            if not ids:
                return None
            session_id = ids[0]
        record = self.records.get(session_id)
        return record.model_copy(deep=True) if record else None

    def list(self) -> list[str]:
        return sorted(self.records, reverse=True)


class MemoryQueueStore:
    """QueueRepository keeping every saved snapshot."""

    def __init__(self, initial: Optional[QueueState] = None):
        self.state = initial.model_copy(deep=True) if initial else None
        self.saves: list[QueueState] = []

    def save(self, state: QueueState) -> None:
        self.state = state.model_copy(deep=True)
        self.saves.append(self.state)

    def load(self) -> Optional[QueueState]:
        return self.state.model_copy(deep=True) if self.state else None


class RecordingCallbacks:
    """Collects events and answers questions from a scripted list."""

    def __init__(self, *answers: bool):
        self.events: list[ServerEvent] = []
        self.questions: list[str] = []
        self.question_ids: list[str] = []
        self.answers = list(answers)

    def on_event(self, event: ServerEvent) -> None:
        self.events.append(event)

    async def on_question(self, question: str, question_id: str) -> bool:
        self.questions.append(question)
        self.question_ids.append(question_id)
        return self.answers.pop(0) if self.answers else True

    def as_callbacks(self) -> OrchestratorCallbacks:
        return OrchestratorCallbacks(on_event=self.on_event, on_question=self.on_question)

    def of_type(self, event_type: ServerEventType) -> list[ServerEvent]:
        return [e for e in self.events if e.type == event_type]

    def log_messages(self) -> list[str]:
        return [e.data["message"] for e in self.of_type(ServerEventType.LOG)]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
