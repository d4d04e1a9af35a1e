"""Registry of sessions running in this process.

Owns the lifecycle of every active run: an entry is created when a session
starts or resumes and removed when the run reaches a terminal state. Pending
questions are one-shot rendezvous channels: the engine waits on the channel,
the ``respond`` verb sends the answer.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from rich.console import Console

from ..bus import EventBus
from ..errors import (
    NoPendingQuestionError,
    QuestionMismatchError,
    SessionActiveError,
    SessionNotFoundError,
    SessionNotResumableError,
)
from ..models import (
    OrchestrationState,
    OrchestrationStatus,
    OrchestratorOptions,
    ServerEventType,
    generate_session_id,
)
from ..protocols import SessionRepository
from .engine import Orchestrator, OrchestratorCallbacks

console = Console()


class QuestionChannel:
    """One question, one answer."""

    def __init__(self, question: str, question_id: str):
        self.question = question
        self.question_id = question_id
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def answered(self) -> bool:
        return self._future.done()

    def send(self, answer: bool) -> bool:
        """Deliver the answer. Returns False if the channel was already used."""
        if self._future.done():
            return False
        self._future.set_result(bool(answer))
        return True

    async def receive(self) -> bool:
        return await self._future

    def close(self) -> None:
        if not self._future.done():
            self._future.cancel()


@dataclass
class ActiveSession:
    session_id: str
    task: Optional[asyncio.Task] = None
    channel: Optional[QuestionChannel] = None


class SessionRegistry:
    """Starts, resumes and answers sessions; tracks the ones still running."""

    def __init__(self, orchestrator: Orchestrator, store: SessionRepository, bus: EventBus):
        self.orchestrator = orchestrator
        self.store = store
        self.bus = bus
        self._active: dict[str, ActiveSession] = {}

    @property
    def active_session_ids(self) -> list[str]:
        return list(self._active)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def _pending_channel(self, session_id: str) -> Optional[QuestionChannel]:
        entry = self._active.get(session_id)
        if entry is None or entry.channel is None or entry.channel.answered:
            return None
        return entry.channel

    def pending_question(self, session_id: str) -> Optional[str]:
        channel = self._pending_channel(session_id)
        return channel.question if channel else None

    def pending_question_id(self, session_id: str) -> Optional[str]:
        channel = self._pending_channel(session_id)
        return channel.question_id if channel else None

    def _register(self, session_id: str) -> ActiveSession:
        if session_id in self._active:
            raise SessionActiveError(session_id)
        entry = ActiveSession(session_id=session_id)
        self._active[session_id] = entry
        return entry

    def _callbacks(self, entry: ActiveSession) -> OrchestratorCallbacks:
        async def on_question(question: str, question_id: str) -> bool:
            channel = QuestionChannel(question, question_id)
            entry.channel = channel
            try:
                return await channel.receive()
            finally:
                entry.channel = None

        return OrchestratorCallbacks(on_event=self.bus.publish, on_question=on_question)

    async def _drive(
        self,
        entry: ActiveSession,
        feature: str,
        options: OrchestratorOptions,
        resume_state: Optional[OrchestrationState],
    ) -> OrchestrationState:
        session_id = entry.session_id
        self.bus.emit(ServerEventType.SESSION_STARTED, session_id, {
            "session_id": session_id,
            "feature": resume_state.feature if resume_state else feature,
            "resumed": resume_state is not None,
        })
        try:
            return await self.orchestrator.run(
                feature,
                options,
                self._callbacks(entry),
                resume_state=resume_state,
                session_id=session_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.bus.emit(ServerEventType.ERROR, session_id, {"message": str(e), "fatal": True})
            self.bus.emit(ServerEventType.COMPLETE, session_id, {
                "status": OrchestrationStatus.FAILED.value,
                "iterations": 0,
            })
            raise
        finally:
            if entry.channel is not None:
                entry.channel.close()
            self._active.pop(session_id, None)

    async def run_session(
        self,
        feature: str,
        options: OrchestratorOptions,
        session_id: Optional[str] = None,
    ) -> OrchestrationState:
        """Run a fresh session to completion in the caller's task."""
        entry = self._register(session_id or generate_session_id())
        return await self._drive(entry, feature, options, None)

    def _spawn(
        self,
        entry: ActiveSession,
        feature: str,
        options: OrchestratorOptions,
        resume_state: Optional[OrchestrationState],
    ) -> None:
        async def runner() -> None:
            try:
                final = await self._drive(entry, feature, options, resume_state)
                console.print(f"[dim][Sessions] {final.id} finished: {final.status.value}[/dim]")
            except Exception as e:
                console.print(f"[red][Sessions] {entry.session_id} crashed: {e}[/red]")

        entry.task = asyncio.create_task(runner())

    def start(self, feature: str, options: OrchestratorOptions) -> str:
        """Start a session in the background and return its id."""
        entry = self._register(generate_session_id())
        self._spawn(entry, feature, options, None)
        return entry.session_id

    def resume(self, session_id: str, interactive: bool = True, verbose: bool = False) -> str:
        """Resume a stored session in the background.

        Raises:
            SessionNotFoundError: No such session
            SessionActiveError: The session is already running here
            SessionNotResumableError: The session was approved
        """
        state = self.store.load(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        if self.is_active(session_id):
            raise SessionActiveError(session_id)
        if state.status == OrchestrationStatus.APPROVED:
            raise SessionNotResumableError(session_id, state.status.value)

        options = OrchestratorOptions(
            max_iterations=state.max_iterations,
            interactive=interactive,
            verbose=verbose,
            working_dir=state.working_dir,
        )
        entry = self._register(session_id)
        self._spawn(entry, state.feature, options, state)
        return session_id

    def respond(self, session_id: str, answer: bool, question_id: Optional[str] = None) -> None:
        """Answer the session's pending question.

        When ``question_id`` is given it must name the pending question, so an
        answer to a question that was already settled never lands on the next one.

        Raises:
            NoPendingQuestionError: Nothing is waiting for an answer
            QuestionMismatchError: A different question is pending
        """
        channel = self._pending_channel(session_id)
        if channel is None:
            raise NoPendingQuestionError(session_id)
        if question_id is not None and question_id != channel.question_id:
            raise QuestionMismatchError(session_id, question_id)
        channel.send(answer)

    async def shutdown(self) -> None:
        """Cancel background runs still in flight."""
        tasks = [entry.task for entry in self._active.values() if entry.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
